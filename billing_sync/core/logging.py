import logging
import os


def configure_logging() -> None:
    """Configure logging defaults; the Stripe SDK stays quiet unless asked."""
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logging.getLogger("stripe").setLevel(os.getenv("STRIPE_LOG_LEVEL", "WARNING").upper())
