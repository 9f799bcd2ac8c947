"""Delete database-backed checkout attempts older than a cutoff.

Only needed with `CHECKOUT_ATTEMPT_BACKEND=database`; Redis attempts expire
on their own TTL.
"""

import argparse
from datetime import timedelta

from scoopshop.common.config import load_settings
from scoopshop.common.db import build_engine, build_session_factory
from scoopshop.services.checkout.attempt_store import SqlCheckoutAttemptStore


def main() -> None:
    """CLI entrypoint for the attempt cleanup job."""

    parser = argparse.ArgumentParser(description="Purge stale checkout attempts.")
    parser.add_argument("--max-age-hours", type=float, default=None, help="Defaults to the attempt TTL")
    args = parser.parse_args()

    settings = load_settings()
    if args.max_age_hours is None:
        max_age = timedelta(seconds=settings.checkout_attempt_ttl_seconds)
    else:
        max_age = timedelta(hours=args.max_age_hours)

    store = SqlCheckoutAttemptStore(build_session_factory(build_engine(settings.postgres_dsn)))
    deleted = store.purge_older_than(max_age)
    print(f"Purged {deleted} checkout attempts older than {max_age}")


if __name__ == "__main__":
    main()
