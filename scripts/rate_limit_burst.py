"""Send a burst of authenticated requests to observe the sliding-window limit."""

import argparse
import asyncio
from uuid import uuid4

import httpx


async def main() -> None:
    """CLI entrypoint for rate-limit smoke tests."""

    parser = argparse.ArgumentParser(description="Send many requests with one merchant credential.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--merchant-key", required=True, help="publicId:secret")
    parser.add_argument("--count", type=int, default=120)
    args = parser.parse_args()

    statuses: dict[int, int] = {}
    retry_after = None
    async with httpx.AsyncClient(timeout=10.0) as client:
        for _ in range(args.count):
            resp = await client.get(
                f"{args.base_url}/payments/{uuid4()}",
                headers={"x-merchant-key": args.merchant_key, "x-correlation-id": str(uuid4())},
            )
            statuses[resp.status_code] = statuses.get(resp.status_code, 0) + 1
            if resp.status_code == 429:
                retry_after = resp.headers.get("Retry-After")

    print("status_counts=", statuses)
    if retry_after is not None:
        print(f"last Retry-After={retry_after}s")


if __name__ == "__main__":
    asyncio.run(main())
