# backend/slipsafe/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/slipsafe.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///slipsafe.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Claim credential signing. Falls back to SECRET_KEY when unset.
    CLAIM_SIGNING_KEY = os.environ.get("CLAIM_SIGNING_KEY")
    CLAIM_SIGNING_SALT = os.environ.get("CLAIM_SIGNING_SALT", "slipsafe.claim")

    # Claim lifetime and the base URL embedded in QR payloads
    CLAIM_VALIDITY_DAYS = int(os.environ.get("CLAIM_VALIDITY_DAYS", "90"))
    CLAIM_VERIFIER_URL = os.environ.get("CLAIM_VERIFIER_URL", "https://slipsafe.app/verify")

    # PIN throttling, computed from the verification audit log
    PIN_FAILURE_THRESHOLD = int(os.environ.get("PIN_FAILURE_THRESHOLD", "5"))
    PIN_FAILURE_WINDOW_MINUTES = int(os.environ.get("PIN_FAILURE_WINDOW_MINUTES", "15"))

    SESSION_TIMEOUT_HOURS = int(os.environ.get("SESSION_TIMEOUT_HOURS", "12"))
