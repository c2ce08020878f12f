"""
Exception types shared by iamsync modules.

Transport/remote failures surface as IAMError (status, url, body).
Reconciliation outcomes are NOT exceptions; see reconciler.SyncResult.
"""

from __future__ import annotations

from dataclasses import dataclass


class IAMSyncError(Exception):
    """Base error for iamsync."""


class ConfigError(IAMSyncError):
    """Raised when runtime configuration cannot be resolved."""


class NormalizationFailed(IAMSyncError):
    """Raised when a desired resource cannot be projected to its IAM form."""


@dataclass
class IAMError(IAMSyncError):
    """HTTP/transport or remote API error with context."""
    status: int
    url: str
    body: str = ""
    message: str = ""

    def __str__(self) -> str:  # pragma: no cover (simple formatting)
        base = f"IAMError(status={self.status}, url={self.url})"
        if self.message:
            base += f": {self.message}"
        if self.body:
            base += f" body={self.body[:200]}"
        return base


class IAMCancelled(IAMError):
    """Raised when the cancellation event was set before or during a call."""

    def __init__(self, url: str = "", message: str = "cancelled") -> None:
        super().__init__(status=0, url=url, message=message)


class RemoteListError(IAMSyncError):
    """Raised by task entries when the remote resource set cannot be listed."""
