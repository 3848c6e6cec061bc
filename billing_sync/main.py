"""ASGI entrypoint for the billing sync service."""

from .core.app_factory import create_application

app = create_application()

__all__ = ("app",)
