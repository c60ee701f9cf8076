"""Error taxonomy for the relay pipeline.

Adapters wrap third-party exceptions in one of these so the dispatcher can
report a per-event failure without knowing which SDK produced it.
"""
from __future__ import annotations


class RelayError(Exception):
    """Base class for all relay failures."""


class StoreError(RelayError):
    """Message store backend failure."""


class StoreWriteError(StoreError):
    """A message could not be appended."""


class StoreReadError(StoreError):
    """A participant's history could not be listed."""


class CompletionServiceError(RelayError):
    """The completion service failed or returned no usable reply."""


class ReplyDeliveryError(RelayError):
    """The reply could not be delivered to the conversation."""


class UnsupportedEventError(RelayError):
    """Inbound event is not handled. Not a failure: the event is skipped."""
