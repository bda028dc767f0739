"""Pure settlement rules shared by the services and the HTTP layer."""
