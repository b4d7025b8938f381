"""Merchant API-key authentication.

Credentials arrive as a single `publicId:secret` header value. Every failure
raises a distinct `AuthenticationError` subclass for logging and metrics; the
HTTP layer collapses them into one uniform 401.
"""

import ipaddress
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select, update

from bgpay.common.errors import (
    InactiveCredential,
    IPNotAllowed,
    MalformedCredential,
    SecretMismatch,
    UnknownCredential,
)
from bgpay.common.logging import logger
from bgpay.common.signing import generate_api_key, hash_api_secret, verify_api_secret
from bgpay.services.merchant_auth.models import ApiCredential, Merchant

ACTIVE = "active"
_UNKNOWN_CREDENTIAL_HASH = "0" * 64


@dataclass(frozen=True)
class AuthenticatedMerchant:
    merchant_id: str
    credential_id: str
    public_id: str


def parse_credential(header_value: str | None) -> tuple[str, str]:
    """Split `publicId:secret` on the first colon; both parts must be non-empty."""

    if not header_value:
        raise MalformedCredential("credential header missing")
    public_id, sep, secret = header_value.strip().partition(":")
    if not sep or not public_id or not secret:
        raise MalformedCredential("credential is not publicId:secret")
    return public_id, secret


def ip_allowed(client_ip: str | None, allowlist: list[str]) -> bool:
    """True when `client_ip` falls inside any CIDR of `allowlist`."""

    if not client_ip:
        return False
    try:
        address = ipaddress.ip_address(client_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            network = ipaddress.ip_network(entry, strict=False)
        except ValueError:
            logger.warning("ip_allowlist_entry_invalid entry=%s", entry)
            continue
        if address.version == network.version and address in network:
            return True
    return False


class ApiKeyAuthenticator:
    """Resolves a credential header to an active merchant identity."""

    def __init__(self, session_factory, signing_secret: str) -> None:
        self.session_factory = session_factory
        self.signing_secret = signing_secret

    def authenticate(self, header_value: str | None, client_ip: str | None) -> AuthenticatedMerchant:
        public_id, secret = parse_credential(header_value)

        with self.session_factory() as db:
            row = db.execute(
                select(ApiCredential, Merchant)
                .join(Merchant, Merchant.merchant_id == ApiCredential.merchant_id)
                .where(ApiCredential.public_id == public_id)
            ).one_or_none()
        if row is None:
            # Same HMAC work as a known id, so timing does not reveal which ids exist.
            verify_api_secret(secret, _UNKNOWN_CREDENTIAL_HASH, self.signing_secret)
            raise UnknownCredential(f"no credential for public_id={public_id}")
        credential, merchant = row

        if credential.status != ACTIVE or merchant.status != ACTIVE:
            raise InactiveCredential(
                f"credential_status={credential.status} merchant_status={merchant.status}"
            )
        if not verify_api_secret(secret, credential.secret_hash, self.signing_secret):
            raise SecretMismatch(f"secret mismatch for public_id={public_id}")
        allowlist = merchant.ip_allowlist or []
        if allowlist and not ip_allowed(client_ip, allowlist):
            raise IPNotAllowed(f"client_ip={client_ip} not in allowlist")

        return AuthenticatedMerchant(
            merchant_id=merchant.merchant_id,
            credential_id=credential.credential_id,
            public_id=credential.public_id,
        )

    def touch_last_used(self, credential_id: str) -> None:
        """Record credential use. Runs after the response; failures are only logged."""

        try:
            with self.session_factory() as db:
                db.execute(
                    update(ApiCredential)
                    .where(ApiCredential.credential_id == credential_id)
                    .values(last_used_at=datetime.now(timezone.utc))
                )
                db.commit()
        except Exception as exc:
            logger.warning("credential_touch_failed credential_id=%s error=%s", credential_id, exc)


def issue_credential(db, merchant_id: str, signing_secret: str) -> tuple[ApiCredential, str]:
    """Create a credential for `merchant_id` and return it with the one-time `publicId:secret`."""

    public_id, secret = generate_api_key()
    credential = ApiCredential(
        merchant_id=merchant_id,
        public_id=public_id,
        secret_hash=hash_api_secret(secret, signing_secret),
        status=ACTIVE,
    )
    db.add(credential)
    db.flush()
    return credential, f"{public_id}:{secret}"


def revoke_credential(db, public_id: str) -> bool:
    result = db.execute(
        update(ApiCredential).where(ApiCredential.public_id == public_id).values(status="revoked")
    )
    return result.rowcount == 1
