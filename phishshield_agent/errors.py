from __future__ import annotations


class PhishShieldError(Exception):
    """Base class for errors raised by the agent."""


class StorageError(PhishShieldError):
    """The key-value state store could not be read or written."""


class RemoteModelError(PhishShieldError):
    """The remote prediction service answered with something unusable.

    Raised and caught inside the remote client; callers only ever see the
    local fallback record.
    """
