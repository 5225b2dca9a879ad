"""Remote publishing of finished archives."""

from .publisher import PublishError, Publisher

__all__ = ["PublishError", "Publisher"]
