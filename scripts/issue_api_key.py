"""Issue a new API credential for an existing merchant.

The combined `publicId:secret` value is printed exactly once; only its keyed
hash is stored.
"""

import argparse

from bgpay.common.config import settings
from bgpay.common.db import SessionLocal
from bgpay.services.merchant_auth.models import Merchant
from bgpay.services.merchant_auth.service import issue_credential, revoke_credential


def main() -> None:
    """CLI entrypoint for credential issuance and revocation."""

    parser = argparse.ArgumentParser(description="Issue or revoke a merchant API credential.")
    parser.add_argument("--merchant-id", default=None, help="Merchant to issue a credential for")
    parser.add_argument("--revoke", default=None, metavar="PUBLIC_ID", help="Revoke this public id instead")
    args = parser.parse_args()

    if bool(args.merchant_id) == bool(args.revoke):
        raise SystemExit("Provide exactly one of --merchant-id or --revoke")

    with SessionLocal() as db:
        if args.revoke:
            if not revoke_credential(db, args.revoke):
                raise SystemExit(f"No credential with public_id={args.revoke}")
            db.commit()
            print(f"Revoked public_id={args.revoke}")
            return

        if db.get(Merchant, args.merchant_id) is None:
            raise SystemExit(f"No merchant with merchant_id={args.merchant_id}")
        credential, header_value = issue_credential(db, args.merchant_id, settings.brand_signing_secret)
        db.commit()

    print(f"credential_id={credential.credential_id}")
    print(f"x-merchant-key: {header_value}")
    print("Store this value now; the secret cannot be shown again.")


if __name__ == "__main__":
    main()
