"""Sign and POST a processor-style IPN to a running gateway.

Useful for manual status-change, duplicate-event and bad-signature testing.
"""

import argparse
import json
from pathlib import Path

import httpx

from bgpay.common.signing import sign


def main() -> None:
    """Parse CLI args and deliver one signed callback."""

    parser = argparse.ArgumentParser(description="Send a signed processor webhook.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--secret", required=True, help="Webhook secret shared with the processor")
    parser.add_argument("--algorithm", default="sha512")
    parser.add_argument("--header", default="x-nowpayments-sig", choices=["x-bgp-signature", "x-nowpayments-sig"])
    parser.add_argument("--external-id", default=None, help="Processor payment id")
    parser.add_argument("--status", default="finished", help="Processor payment_status")
    parser.add_argument("--file", dest="json_file", default=None, help="Path to a full JSON body")
    parser.add_argument("--tamper", action="store_true", help="Flip one byte after signing")
    args = parser.parse_args()

    if bool(args.external_id) == bool(args.json_file):
        raise SystemExit("Provide exactly one of --external-id or --file")

    if args.json_file:
        body = Path(args.json_file).read_bytes()
    else:
        body = json.dumps({"payment_id": args.external_id, "payment_status": args.status}).encode("utf-8")

    signature = sign(body, args.secret, args.algorithm)
    if args.tamper:
        body = body[:-1] + bytes([body[-1] ^ 0x01])

    resp = httpx.post(
        f"{args.base_url}/webhooks/processor",
        content=body,
        headers={"Content-Type": "application/json", args.header: signature},
        timeout=10.0,
    )
    print(resp.status_code, resp.text)


if __name__ == "__main__":
    main()
