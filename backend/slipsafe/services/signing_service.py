"""
Claim Credential Signing

WHY: The portable credential (QR payload) must fail closed if anyone edits
it. A forged or altered payload is rejected by signature alone, before any
database lookup.

DESIGN:
- ClaimSigner is constructed once per app from config (no module-level key)
  and passed explicitly into issuance and verification
- HMAC-SHA256 via itsdangerous, URL-safe output so the token fits in a QR
  code and a query string
- The signature proves the payload was not edited, NOT that the claim is
  still valid; eligibility always requires a live lookup
"""

from __future__ import annotations

import hashlib

from itsdangerous import BadData, URLSafeSerializer


class InvalidCredentialError(Exception):
    """Raised when a credential fails signature or schema validation."""
    pass


# Required payload fields and their types. Anything else is ignored.
CREDENTIAL_SCHEMA = {
    "claim_code": str,
    "merchant_name": str,
    "purchase_date": str,
    "amount_cents": int,
    "purchase_fingerprint": str,
}


class ClaimSigner:
    """Signs and verifies claim credentials with a server-held key."""

    algorithm = "HS256"

    def __init__(self, secret_key: str, salt: str = "slipsafe.claim"):
        if not secret_key:
            raise ValueError("A signing key is required")
        self._serializer = URLSafeSerializer(
            secret_key,
            salt=salt,
            signer_kwargs={"key_derivation": "hmac", "digest_method": hashlib.sha256},
        )

    def sign(self, payload: dict) -> str:
        _check_schema(payload)
        return self._serializer.dumps({key: payload[key] for key in CREDENTIAL_SCHEMA})

    def load(self, token: str) -> dict:
        """
        Decode and verify a credential.

        Raises InvalidCredentialError on any signature, encoding or schema
        failure.
        """
        if not token or not isinstance(token, str):
            raise InvalidCredentialError("Credential is empty")
        try:
            payload = self._serializer.loads(token)
        except BadData as exc:
            raise InvalidCredentialError("Credential signature is invalid") from exc
        _check_schema(payload)
        return {key: payload[key] for key in CREDENTIAL_SCHEMA}


def _check_schema(payload) -> None:
    if not isinstance(payload, dict):
        raise InvalidCredentialError("Credential payload must be an object")
    for key, expected in CREDENTIAL_SCHEMA.items():
        value = payload.get(key)
        # bool is an int subclass; reject it for amounts
        if not isinstance(value, expected) or isinstance(value, bool):
            raise InvalidCredentialError(f"Credential field '{key}' is missing or malformed")


def current_signer() -> ClaimSigner:
    """The signer constructed by create_app for the active application."""
    from flask import current_app
    return current_app.extensions["claim_signer"]
