"""Shared helpers for upstream calls"""

from .pacing import UpstreamPacer, upstream_pacer
from .retry import async_retry_with_backoff, retry_delay

__all__ = ["UpstreamPacer", "async_retry_with_backoff", "retry_delay", "upstream_pacer"]
