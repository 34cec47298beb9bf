from __future__ import annotations

import hashlib
import hmac
import secrets


def hash_token(raw_token: str) -> str:
    # Verification links carry high-entropy tokens, so an unsalted digest is enough.
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_verification_token() -> tuple[str, str]:
    raw_token = secrets.token_urlsafe(32)
    return raw_token, hash_token(raw_token)


def generate_pin(length: int = 10) -> str:
    # Uniform digits from the OS CSPRNG; leading zeros are allowed.
    return "".join(secrets.choice("0123456789") for _ in range(max(1, length)))


def hash_pin(credential_id: str, pin: str) -> str:
    # Salt with the credential id so equal PINs never share a stored hash.
    return hashlib.sha256(f"{credential_id}:{pin.strip()}".encode("utf-8")).hexdigest()


def verify_pin(credential_id: str, pin: str, pin_hash: str) -> bool:
    return hmac.compare_digest(hash_pin(credential_id, pin), pin_hash)
