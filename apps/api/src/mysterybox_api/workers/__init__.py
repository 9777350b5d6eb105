"""Background workers supporting async processing."""

from .box_expiry import BoxExpiryWorker

__all__ = ["BoxExpiryWorker"]
