"""Sign a processor event with the webhook secret and post it to the service.

Useful for local duplicate-delivery and out-of-order testing without the
processor CLI.
"""

import argparse
import hashlib
import hmac
import json
import time
from pathlib import Path

import httpx


def stripe_signature(payload: str, secret: str, timestamp: int | None = None) -> str:
    """Build a `Stripe-Signature` header value (`t=...,v1=...`) for `payload`."""

    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def main() -> None:
    """Parse CLI args and deliver one JSON event, optionally several times."""

    parser = argparse.ArgumentParser(description="Replay a signed webhook event against the checkout service.")
    parser.add_argument("--url", default="http://localhost:8000/webhooks/stripe")
    parser.add_argument("--secret", required=True, help="Webhook signing secret (whsec_...)")
    parser.add_argument("--json", dest="json_inline", default=None, help="Inline JSON event")
    parser.add_argument("--file", dest="json_file", default=None, help="Path to JSON event file")
    parser.add_argument("--times", type=int, default=1, help="Deliver the same event this many times")
    args = parser.parse_args()

    if bool(args.json_inline) == bool(args.json_file):
        raise SystemExit("Provide exactly one of --json or --file")

    raw = args.json_inline if args.json_inline else Path(args.json_file).read_text()
    payload = json.dumps(json.loads(raw))

    with httpx.Client(timeout=10.0) as client:
        for attempt in range(1, args.times + 1):
            resp = client.post(
                args.url,
                content=payload,
                headers={
                    "Content-Type": "application/json",
                    "Stripe-Signature": stripe_signature(payload, args.secret),
                },
            )
            print(f"delivery={attempt} status={resp.status_code} body={resp.text}")


if __name__ == "__main__":
    main()
