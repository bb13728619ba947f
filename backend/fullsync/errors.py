"""
Error taxonomy for the full-sync engine.

Intent:
    Keep failure classes framework-agnostic so the orchestrator, the CLI and
    the web adapter can all map them to their own surface (session state,
    exit codes, HTTP status codes).

Design:
    - Fatal errors (configuration, external tools, transport) propagate to the
      orchestrator, which marks the session FAILED and re-raises.
    - Peer auth errors never reach snapshot/restore logic.
    - Partial statement failures in the fallback restorer are counted, not raised.
"""

from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for all full-sync failures."""


class ConfigurationError(SyncError):
    """Required configuration (connection string, shared secret) is missing or invalid."""


# ------------------------------ Peer auth -----------------------------------


class PeerAuthError(SyncError):
    """Base class for auth gate rejections."""

    status_code = 401
    code = "unauthenticated"


class AuthenticationError(PeerAuthError):
    """Identity or registration-hash header missing."""

    status_code = 401
    code = "missing_auth_headers"


class AuthorizationError(PeerAuthError):
    """Registration hash does not match the shared secret."""

    status_code = 403
    code = "invalid_registration_key"


# ------------------------------ Requests ------------------------------------


class InvalidRequestError(SyncError):
    """Peer request is malformed (missing sessionId, bad filename, bad payload)."""


class SnapshotNotFoundError(SyncError):
    """No snapshot file exists for the requested session."""


class SessionNotFoundError(SyncError):
    """No session record exists for the requested id."""


class InvalidTransitionError(SyncError):
    """A session state change would move backwards or leave a terminal state."""


# ------------------------------ Collaborators -------------------------------


class ExternalToolError(SyncError):
    """Export/restore utility missing or exited non-zero."""

    def __init__(self, message: str, *, tool: str, returncode: Optional[int] = None, stderr: str = "") -> None:
        super().__init__(message)
        self.tool = tool
        self.returncode = returncode
        self.stderr = stderr


class TransportError(SyncError):
    """HTTP call to a peer failed or returned a non-2xx status."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


__all__ = [
    "SyncError",
    "ConfigurationError",
    "PeerAuthError",
    "AuthenticationError",
    "AuthorizationError",
    "InvalidRequestError",
    "SnapshotNotFoundError",
    "SessionNotFoundError",
    "InvalidTransitionError",
    "ExternalToolError",
    "TransportError",
]
