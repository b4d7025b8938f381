"""Keyed-hash helpers for webhook signatures and API-key storage."""

import hashlib
import hmac
import json
import secrets
from typing import Any

_BASE32_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"


def resolve_algorithm(name: str) -> str:
    """Normalize a configured hash name and reject anything hashlib can't guarantee."""

    normalized = name.strip().lower()
    if normalized.startswith("hmac"):
        normalized = normalized[4:].lstrip("-_")
    # Accepts "sha-512" and "sha3-256" spellings.
    for candidate in (normalized, normalized.replace("-", ""), normalized.replace("-", "_")):
        if candidate in hashlib.algorithms_guaranteed:
            return candidate
    raise ValueError(f"unsupported signature algorithm: {name}")


def sign(body: bytes, secret: str, algorithm: str = "sha512") -> str:
    """Hex HMAC of `body` under `secret`."""

    return hmac.new(secret.encode("utf-8"), body, algorithm).hexdigest()


def signatures_match(expected: str, provided: str) -> bool:
    """Constant-time comparison of two hex signatures."""

    candidate = provided.strip().lower()
    if not candidate.isascii():
        return False
    return hmac.compare_digest(expected.lower(), candidate)


def canonical_json(payload: dict[str, Any]) -> bytes:
    """Sorted-key compact JSON, the byte form merchants verify callbacks against."""

    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


def hash_api_secret(secret: str, signing_secret: str) -> str:
    """HMAC-SHA256 of an API secret; the only form ever persisted."""

    return hmac.new(signing_secret.encode("utf-8"), secret.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_api_secret(secret: str, stored_hash: str, signing_secret: str) -> bool:
    return hmac.compare_digest(hash_api_secret(secret, signing_secret), stored_hash)


def generate_api_key() -> tuple[str, str]:
    """Return a fresh `(public_id, secret)` pair."""

    public_id = f"bgp_live_{secrets.token_hex(8)}"
    secret = "".join(secrets.choice(_BASE32_ALPHABET) for _ in range(32))
    return public_id, secret
