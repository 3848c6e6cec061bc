import argparse
import os
from pathlib import Path

from dotenv import load_dotenv

from billing_sync.infrastructure.persistence.sqlite import SQLitePersistence


def main() -> None:
    load_dotenv()

    parser = argparse.ArgumentParser(
        description="Register a user and bind it to its Stripe customer for webhook resolution."
    )
    parser.add_argument("user_id")
    parser.add_argument("customer_id", nargs="?", help="Stripe customer ID (cus_...)")
    parser.add_argument("--email")
    args = parser.parse_args()

    database_path = Path(os.getenv("DATABASE_PATH", "data/billing.db")).resolve()
    persistence = SQLitePersistence(database_path)
    try:
        persistence.create_user(args.user_id, email=args.email, stripe_customer_id=args.customer_id)
        record = persistence.find_by_user(args.user_id)
    finally:
        persistence.close()

    print(f"User {args.user_id} registered in {database_path}.")
    if record is not None:
        print(f"Current subscription: {record.provider_subscription_id} ({record.status().value})")


if __name__ == "__main__":
    main()
