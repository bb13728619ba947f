"""
Peer auth gate.

Every peer-to-peer request carries two headers:
    X-Node-ID            identity of the calling node (free text, logged)
    X-Registration-Hash  hex SHA-256 of the shared registration key

Missing headers -> AuthenticationError (401); hash mismatch ->
AuthorizationError (403). The comparison is constant-time. A node without a
configured registration key refuses every peer call (ConfigurationError).
"""
from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Dict, Optional

from backend.fullsync.config import SyncConfig
from backend.fullsync.errors import AuthenticationError, AuthorizationError

LOG = logging.getLogger("peersync.fullsync.auth")

NODE_ID_HEADER = "X-Node-ID"
REGISTRATION_HASH_HEADER = "X-Registration-Hash"


def registration_hash(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def peer_headers(config: SyncConfig) -> Dict[str, str]:
    """Headers identifying this node to a peer."""
    return {
        NODE_ID_HEADER: config.node_id,
        REGISTRATION_HASH_HEADER: registration_hash(config.require_registration_key()),
    }


def verify_peer_headers(node_id: Optional[str], reg_hash: Optional[str], config: SyncConfig) -> str:
    """Return the caller's node id when the headers prove knowledge of the shared key."""
    if not node_id or not reg_hash:
        raise AuthenticationError("Missing authentication headers")
    expected = registration_hash(config.require_registration_key())
    presented = reg_hash.strip().lower().encode("utf-8", "replace")
    if not hmac.compare_digest(expected.encode("ascii"), presented):
        LOG.warning("peer auth rejected for node %s", node_id)
        raise AuthorizationError("Invalid registration key")
    return node_id


__all__ = [
    "NODE_ID_HEADER",
    "REGISTRATION_HASH_HEADER",
    "peer_headers",
    "registration_hash",
    "verify_peer_headers",
]
