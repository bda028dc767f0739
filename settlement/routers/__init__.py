"""Router package exports."""
from . import agents, payments, reconciliation, referrals, tiers

__all__ = [
	"agents",
	"payments",
	"reconciliation",
	"referrals",
	"tiers",
]
