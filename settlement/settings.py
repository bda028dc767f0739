"""Runtime configuration read from the environment."""
from __future__ import annotations

import os
from pathlib import Path

DEFAULT_SQLITE_PATH = Path("data/settlement.db")

DATABASE_URL = os.getenv("SETTLEMENT_DATABASE_URL", f"sqlite:///{DEFAULT_SQLITE_PATH}")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()
LOG_LEVEL = os.getenv("SETTLEMENT_LOG_LEVEL", "INFO").upper()

# Payouts (minor currency units)
MIN_PAYOUT_AMOUNT = int(os.getenv("SETTLEMENT_MIN_PAYOUT", "1000"))

# Act signing codes
OTP_TTL_SECONDS = int(os.getenv("SETTLEMENT_OTP_TTL_SECONDS", "300"))
OTP_RESEND_COOLDOWN_SECONDS = int(os.getenv("SETTLEMENT_OTP_RESEND_COOLDOWN_SECONDS", "60"))
OTP_MAX_ATTEMPTS = int(os.getenv("SETTLEMENT_OTP_MAX_ATTEMPTS", "0"))  # 0 disables the limit
OTP_SWEEP_INTERVAL_SECONDS = int(os.getenv("SETTLEMENT_OTP_SWEEP_INTERVAL_SECONDS", "60"))

# Referral bonus points move to the balance once this many referrals are paid
BONUS_UNLOCK_THRESHOLD = int(os.getenv("SETTLEMENT_BONUS_UNLOCK_THRESHOLD", "10"))

# "database" keeps codes in otp_sessions; "memory" keeps them in this process only
OTP_STORE = os.getenv("SETTLEMENT_OTP_STORE", "database").lower()
