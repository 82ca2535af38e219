"""Publication of reviewable change-sets."""

from .publisher import ChangePublisher, change_digest

__all__ = ["ChangePublisher", "change_digest"]
