"""Site adapters."""

from .json_feed import JsonFeedAdapter

__all__ = ["JsonFeedAdapter"]
