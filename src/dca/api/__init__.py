"""HTTP surface for plan management, markets and interest quotes."""

from dca.api.app import create_app

__all__ = ["create_app"]
