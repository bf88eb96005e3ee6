"""Grafana HTTP API client used to push dashboards.

Only the handful of endpoints the reconciler needs are wrapped: health,
folders, dashboard create-or-update and delete-by-uid.  Every failure is
raised as :class:`GrafanaAPIError` carrying the HTTP status (``None`` for
transport failures and timeouts) so callers can tell conflicts apart from
retryable infrastructure errors.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Self

import httpx

from grafana_sync.src.state import ControllerState

LOGGER = logging.getLogger(__name__)

# Grafana answers 412 for several precondition failures; only a version
# mismatch means another writer got there first.
VERSION_MISMATCH = "version-mismatch"


class ClientConfigError(ValueError):
    """Raised when a client cannot be built from the current state snapshot."""


class GrafanaAPIError(Exception):
    """Raised for any failed Grafana API call.

    ``reason`` carries the ``status`` field of Grafana's error body when
    present (``version-mismatch``, ``name-exists``, ``plugin-dashboard``...).
    """

    def __init__(
        self, message: str, status_code: int | None = None, reason: str | None = None
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason

    @property
    def conflict(self) -> bool:
        """Concurrent modification detected by Grafana."""
        if self.status_code == 409:
            return True
        return self.status_code == 412 and self.reason == VERSION_MISMATCH

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500


@dataclass(frozen=True)
class DeleteStatus:
    uid: str
    status: str
    message: str


class GrafanaClient:
    """Thin synchronous wrapper around the Grafana HTTP API.

    Usable as a context manager; :meth:`close` may be called from another
    thread to abort requests in flight during shutdown.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout_seconds: float,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._http = httpx.Client(
            base_url=self.base_url,
            auth=(username, password),
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Accept": "application/json"},
            transport=transport,
        )

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._http.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise GrafanaAPIError(f"{method} {path} timed out") from exc
        except (httpx.HTTPError, RuntimeError) as exc:
            # RuntimeError: the client was closed underneath us during shutdown.
            raise GrafanaAPIError(f"{method} {path} failed: {exc}") from exc
        return response

    @staticmethod
    def _error_from(method: str, path: str, response: httpx.Response) -> GrafanaAPIError:
        detail = response.reason_phrase
        reason = None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            if body.get("message"):
                detail = str(body["message"])
            if body.get("status"):
                reason = str(body["status"])
        return GrafanaAPIError(
            f"{method} {path} returned {response.status_code}: {detail}",
            status_code=response.status_code,
            reason=reason,
        )

    def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        response = self._request(method, path, **kwargs)
        if response.status_code >= 400:
            raise self._error_from(method, path, response)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise GrafanaAPIError(
                f"{method} {path} returned invalid JSON", status_code=response.status_code
            ) from exc

    def health(self) -> bool:
        """Return True when Grafana answers ``/api/health`` with a healthy database."""
        body = self._json("GET", "/api/health")
        return isinstance(body, dict) and body.get("database", "ok") == "ok"

    def _find_folder(self, title: str) -> dict[str, Any] | None:
        folders = self._json("GET", "/api/folders", params={"limit": 1000})
        for folder in folders if isinstance(folders, list) else []:
            if isinstance(folder, dict) and folder.get("title") == title:
                return folder
        return None

    def get_or_create_folder(self, namespace: str) -> int:
        """Return the id of the folder titled *namespace*, creating it if absent.

        Grafana reports no id for the implicit General folder; that maps to 0.
        A conflict on create means another writer created the folder first,
        so it is looked up again.
        """
        folder = self._find_folder(namespace)
        if folder is None:
            try:
                folder = self._json("POST", "/api/folders", json={"title": namespace})
                LOGGER.info("Created Grafana folder for namespace %s", namespace)
            except GrafanaAPIError as exc:
                if not exc.conflict:
                    raise
                folder = self._find_folder(namespace)
                if folder is None:
                    raise
        folder_id = folder.get("id") if isinstance(folder, dict) else None
        return int(folder_id) if folder_id is not None else 0

    def create_or_update(self, payload: dict[str, Any], folder_id: int) -> str:
        """Submit a dashboard and return the uid Grafana stored it under."""
        body = self._json(
            "POST",
            "/api/dashboards/db",
            json={"dashboard": payload, "folderId": folder_id, "overwrite": True},
        )
        uid = body.get("uid") if isinstance(body, dict) else None
        if not uid:
            uid = payload.get("uid")
        if not uid:
            raise GrafanaAPIError("POST /api/dashboards/db returned no dashboard uid")
        return str(uid)

    def delete_by_uid(self, uid: str) -> DeleteStatus:
        """Delete a dashboard by uid.  A dashboard that is already gone counts as deleted."""
        path = f"/api/dashboards/uid/{uid}"
        response = self._request("DELETE", path)
        if response.status_code == 404:
            return DeleteStatus(uid=uid, status="not-found", message="dashboard already absent")
        if response.status_code >= 400:
            raise self._error_from("DELETE", path, response)
        message = "dashboard deleted"
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("message"):
            message = str(body["message"])
        return DeleteStatus(uid=uid, status="success", message=message)


def build_client(
    state: ControllerState, transport: httpx.BaseTransport | None = None
) -> GrafanaClient:
    """Return an authenticated client for the snapshot, or raise :class:`ClientConfigError`."""
    if not state.base_url:
        raise ClientConfigError("cannot get grafana admin url")
    if not state.username:
        raise ClientConfigError("invalid credentials (username)")
    if not state.password:
        raise ClientConfigError("invalid credentials (password)")
    return GrafanaClient(
        base_url=state.base_url,
        username=state.username,
        password=state.password,
        timeout_seconds=state.timeout_seconds,
        transport=transport,
    )
