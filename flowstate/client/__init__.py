"""Client-side helpers for consumers of the flow engine."""

from .poller import FlowPoller

__all__ = ["FlowPoller"]
