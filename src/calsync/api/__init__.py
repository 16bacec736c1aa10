"""HTTP API for calsync."""

from calsync.api.app import create_app

__all__ = ["create_app"]
