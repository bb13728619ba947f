"""
HTTP client for the peer sync endpoints.

Intent:
    The orchestrator talks to a remote node through four calls:
    send_backup -> POST /sync/receive-backup
    trigger_restore -> POST /sync/restore-backup
    request_backup -> POST /sync/initiate-backup
    download_backup -> GET  /sync/download-backup

Transfer modes:
    "stream" uploads the raw file as `application/octet-stream` and downloads
    with `Accept: application/octet-stream`; neither side holds the whole
    snapshot in memory. "json" sends base64 inside a JSON body, as older nodes
    expect.

Errors:
    Any httpx failure or non-2xx response becomes TransportError. Size or
    checksum mismatches reported by the peer are TransportError as well.
"""
from __future__ import annotations

import base64
from hashlib import sha256
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import httpx

from backend.fullsync.auth import peer_headers
from backend.fullsync.config import SyncConfig
from backend.fullsync.errors import TransportError
from backend.fullsync.snapshots import file_digest, iter_file

LOG = logging.getLogger("peersync.fullsync.peer_client")

OCTET_STREAM = "application/octet-stream"
_BODY_PREVIEW = 500


class PeerClient:
    """Authenticated client for one remote node.

    Parameters:
        base_url: Peer address, e.g. `https://node-b.example` (trailing slash ignored).
        config: Local node config (identity, shared key, timeout, transfer mode).
        client: Optional preconfigured `httpx.Client`; the caller keeps ownership.
    """

    def __init__(self, base_url: str, config: SyncConfig, *, client: Optional[httpx.Client] = None) -> None:
        if not base_url or not base_url.strip():
            raise TransportError("Peer URL is required")
        self.base_url = base_url.strip().rstrip("/")
        self._config = config
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=float(config.peer_timeout_seconds), follow_redirects=False)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "PeerClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------ helpers ---------------------------------

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _headers(self, **extra: str) -> Dict[str, str]:
        headers = peer_headers(self._config)
        headers.update(extra)
        return headers

    @staticmethod
    def _check(resp: httpx.Response, what: str) -> None:
        if 200 <= resp.status_code < 300:
            return
        body = resp.text[:_BODY_PREVIEW] if resp.content else ""
        raise TransportError(f"{what} failed: HTTP {resp.status_code} {body}".strip(), status_code=resp.status_code, body=body)

    def _post_json(self, path: str, payload: Dict[str, Any], what: str) -> Dict[str, Any]:
        try:
            resp = self._client.post(self._url(path), json=payload, headers=self._headers())
        except httpx.HTTPError as exc:
            raise TransportError(f"{what} failed: {exc}") from exc
        self._check(resp, what)
        return _json_body(resp, what)

    # ------------------------------ calls -----------------------------------

    def send_backup(self, session_id: str, path: Path) -> Dict[str, Any]:
        """Upload a snapshot and verify the peer stored exactly these bytes."""
        path = Path(path)
        size, digest = file_digest(path)
        what = "Transfer to remote"
        if self._config.transfer_mode == "json":
            payload = {
                "sessionId": session_id,
                "sourceNodeId": self._config.node_id,
                "backupContent": base64.b64encode(path.read_bytes()).decode("ascii"),
                "filename": path.name,
            }
            body = self._post_json("/sync/receive-backup", payload, what)
        else:
            try:
                resp = self._client.post(
                    self._url("/sync/receive-backup"),
                    params={"sessionId": session_id, "filename": path.name, "sourceNodeId": self._config.node_id},
                    content=iter_file(path),
                    headers=self._headers(**{"Content-Type": OCTET_STREAM, "Content-Length": str(size)}),
                )
            except httpx.HTTPError as exc:
                raise TransportError(f"{what} failed: {exc}") from exc
            self._check(resp, what)
            body = _json_body(resp, what)

        _verify(body.get("size"), body.get("sha256"), size, digest, what)
        LOG.info("sent %s (%d bytes) to %s", path.name, size, self.base_url)
        return body

    def trigger_restore(self, session_id: str, filename: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"sessionId": session_id, "sourceNodeId": self._config.node_id}
        if filename:
            payload["filename"] = filename
        return self._post_json("/sync/restore-backup", payload, "Remote restore")

    def request_backup(self, session_id: str) -> Dict[str, Any]:
        """Ask the peer to produce a snapshot; returns its size, filename and sha256."""
        return self._post_json("/sync/initiate-backup", {"sessionId": session_id}, "Remote backup request")

    def release_backup(self, session_id: str) -> Dict[str, Any]:
        """Ask the peer to delete a snapshot prepared by `request_backup`."""
        return self._post_json("/sync/release-backup", {"sessionId": session_id}, "Remote release")

    def download_backup(self, session_id: str, dest: Path) -> Tuple[int, str]:
        """Fetch the peer's snapshot into `dest`; returns (size, sha256) of what was written."""
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        what = "Download from remote"
        url = self._url("/sync/download-backup")
        params = {"sessionId": session_id}

        if self._config.transfer_mode == "json":
            try:
                resp = self._client.get(url, params=params, headers=self._headers())
            except httpx.HTTPError as exc:
                raise TransportError(f"{what} failed: {exc}") from exc
            self._check(resp, what)
            body = _json_body(resp, what)
            content = body.get("backupContent")
            if not isinstance(content, str):
                raise TransportError(f"{what} failed: response has no backupContent")
            try:
                data = base64.b64decode(content, validate=True)
            except ValueError as exc:
                raise TransportError(f"{what} failed: invalid base64 payload") from exc
            dest.write_bytes(data)
            size, digest = len(data), sha256(data).hexdigest()
            _verify(body.get("size"), body.get("sha256"), size, digest, what)
        else:
            h = sha256()
            size = 0
            try:
                with self._client.stream("GET", url, params=params, headers=self._headers(Accept=OCTET_STREAM)) as resp:
                    if not 200 <= resp.status_code < 300:
                        resp.read()
                        self._check(resp, what)
                    expected_size = resp.headers.get("X-Backup-Size")
                    expected_digest = resp.headers.get("X-Backup-SHA256")
                    with dest.open("wb") as fh:
                        for chunk in resp.iter_bytes():
                            if not chunk:
                                continue
                            size += len(chunk)
                            h.update(chunk)
                            fh.write(chunk)
            except httpx.HTTPError as exc:
                raise TransportError(f"{what} failed: {exc}") from exc
            digest = h.hexdigest()
            _verify(expected_size, expected_digest, size, digest, what)

        LOG.info("downloaded %d bytes from %s into %s", size, self.base_url, dest.name)
        return size, digest


def _json_body(resp: httpx.Response, what: str) -> Dict[str, Any]:
    try:
        body = resp.json()
    except ValueError as exc:
        raise TransportError(f"{what} failed: response is not JSON", status_code=resp.status_code) from exc
    if not isinstance(body, dict):
        raise TransportError(f"{what} failed: unexpected response", status_code=resp.status_code)
    return body


def _verify(reported_size: Any, reported_digest: Any, size: int, digest: str, what: str) -> None:
    """Compare peer-reported size/sha256 with local values; missing reports are skipped."""
    if reported_size is not None:
        try:
            reported = int(reported_size)
        except (TypeError, ValueError) as exc:
            raise TransportError(f"{what} failed: invalid size {reported_size!r}") from exc
        if reported != size:
            raise TransportError(f"{what} failed: size mismatch (local {size}, remote {reported})")
    if reported_digest is not None and str(reported_digest).lower() != digest:
        raise TransportError(f"{what} failed: checksum mismatch")


__all__ = ["PeerClient"]
