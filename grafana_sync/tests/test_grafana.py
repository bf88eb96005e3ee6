from __future__ import annotations

import base64
import json
from collections.abc import Callable

import httpx
import pytest

from grafana_sync.src.grafana import (
    ClientConfigError,
    GrafanaAPIError,
    GrafanaClient,
    build_client,
)
from grafana_sync.src.state import ControllerState

Handler = Callable[[httpx.Request], httpx.Response]


def make_client(handler: Handler) -> GrafanaClient:
    return GrafanaClient(
        base_url="http://grafana:3000/",
        username="admin",
        password="secret",
        timeout_seconds=5,
        transport=httpx.MockTransport(handler),
    )


class FakeGrafanaServer:
    """Just enough of the Grafana folder and dashboard API to exercise the client."""

    def __init__(self) -> None:
        self.folders: list[dict[str, object]] = [{"id": 1, "uid": "f1", "title": "existing"}]
        self.dashboards: dict[str, dict[str, object]] = {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/api/health":
            return httpx.Response(200, json={"database": "ok", "version": "10.0.0"})
        if path == "/api/folders" and request.method == "GET":
            return httpx.Response(200, json=self.folders)
        if path == "/api/folders" and request.method == "POST":
            title = json.loads(request.content)["title"]
            folder = {"id": len(self.folders) + 1, "uid": f"f{len(self.folders) + 1}", "title": title}
            self.folders.append(folder)
            return httpx.Response(200, json=folder)
        if path == "/api/dashboards/db":
            body = json.loads(request.content)
            uid = body["dashboard"]["uid"]
            self.dashboards[uid] = body
            return httpx.Response(200, json={"status": "success", "uid": uid, "id": 7})
        if path.startswith("/api/dashboards/uid/") and request.method == "DELETE":
            uid = path.rsplit("/", 1)[-1]
            if self.dashboards.pop(uid, None) is None:
                return httpx.Response(404, json={"message": "Dashboard not found"})
            return httpx.Response(200, json={"title": uid, "message": f"Dashboard {uid} deleted"})
        return httpx.Response(404)


def test_requests_use_basic_auth_and_base_url() -> None:
    server = FakeGrafanaServer()
    with make_client(server) as client:
        assert client.health()

    request = server.requests[0]
    assert str(request.url) == "http://grafana:3000/api/health"
    expected = base64.b64encode(b"admin:secret").decode()
    assert request.headers["Authorization"] == f"Basic {expected}"


def test_health_reports_unhealthy_database() -> None:
    client = make_client(lambda request: httpx.Response(200, json={"database": "failing"}))

    assert client.health() is False


def test_get_or_create_folder_reuses_existing_folder() -> None:
    server = FakeGrafanaServer()
    client = make_client(server)

    assert client.get_or_create_folder("existing") == 1
    assert [r.method for r in server.requests] == ["GET"]


def test_get_or_create_folder_creates_missing_folder() -> None:
    server = FakeGrafanaServer()
    client = make_client(server)

    assert client.get_or_create_folder("ns1") == 2
    assert client.get_or_create_folder("ns1") == 2
    assert [r.method for r in server.requests] == ["GET", "POST", "GET"]


def test_get_or_create_folder_recovers_from_create_conflict() -> None:
    lookups = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal lookups
        if request.method == "POST":
            return httpx.Response(409, json={"message": "a folder with the same name already exists"})
        lookups += 1
        folders = [] if lookups == 1 else [{"id": 9, "title": "ns1"}]
        return httpx.Response(200, json=folders)

    assert make_client(handler).get_or_create_folder("ns1") == 9


def test_create_or_update_posts_overwrite_payload() -> None:
    server = FakeGrafanaServer()
    client = make_client(server)

    uid = client.create_or_update({"uid": "abc", "title": "A"}, folder_id=3)

    assert uid == "abc"
    assert server.dashboards["abc"] == {
        "dashboard": {"uid": "abc", "title": "A"},
        "folderId": 3,
        "overwrite": True,
    }


def test_create_or_update_raises_with_status_and_message() -> None:
    client = make_client(
        lambda request: httpx.Response(
            412,
            json={
                "status": "version-mismatch",
                "message": "The dashboard has been changed by someone else",
            },
        )
    )

    with pytest.raises(GrafanaAPIError, match="changed by someone else") as exc_info:
        client.create_or_update({"uid": "abc", "title": "A"}, folder_id=0)

    assert exc_info.value.status_code == 412
    assert exc_info.value.reason == "version-mismatch"
    assert exc_info.value.conflict
    assert not exc_info.value.retryable


@pytest.mark.parametrize(
    "body",
    [
        {"status": "name-exists", "message": "A dashboard with the same name in the folder already exists"},
        {"status": "plugin-dashboard", "message": "Cannot save provisioned dashboard"},
        {"message": "Precondition failed"},
    ],
)
def test_other_precondition_failures_are_not_conflicts(body: dict[str, str]) -> None:
    client = make_client(lambda request: httpx.Response(412, json=body))

    with pytest.raises(GrafanaAPIError) as exc_info:
        client.create_or_update({"uid": "abc", "title": "A"}, folder_id=0)

    assert exc_info.value.status_code == 412
    assert not exc_info.value.conflict


def test_delete_by_uid_treats_missing_dashboard_as_deleted() -> None:
    server = FakeGrafanaServer()
    client = make_client(server)
    client.create_or_update({"uid": "abc", "title": "A"}, folder_id=0)

    deleted = client.delete_by_uid("abc")
    missing = client.delete_by_uid("abc")

    assert deleted.status == "success"
    assert deleted.message == "Dashboard abc deleted"
    assert missing.status == "not-found"


def test_delete_by_uid_raises_on_server_error() -> None:
    client = make_client(lambda request: httpx.Response(500, text="internal"))

    with pytest.raises(GrafanaAPIError) as exc_info:
        client.delete_by_uid("abc")

    assert exc_info.value.status_code == 500
    assert exc_info.value.retryable


def test_transport_errors_become_api_errors_without_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GrafanaAPIError) as exc_info:
        make_client(handler).health()

    assert exc_info.value.status_code is None
    assert exc_info.value.retryable


def test_timeouts_become_api_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(GrafanaAPIError, match="timed out"):
        make_client(handler).health()


def test_closed_client_raises_api_error() -> None:
    client = make_client(FakeGrafanaServer())
    client.close()

    with pytest.raises(GrafanaAPIError):
        client.health()


@pytest.mark.parametrize(
    ("state", "message"),
    [
        (ControllerState(username="admin", password="x"), "cannot get grafana admin url"),
        (ControllerState(base_url="http://g", password="x"), r"invalid credentials \(username\)"),
        (ControllerState(base_url="http://g", username="admin"), r"invalid credentials \(password\)"),
    ],
)
def test_build_client_validates_state(state: ControllerState, message: str) -> None:
    with pytest.raises(ClientConfigError, match=message):
        build_client(state)


def test_build_client_uses_state_snapshot() -> None:
    state = ControllerState(base_url="http://grafana:3000", username="admin", password="x")

    with build_client(state, transport=httpx.MockTransport(FakeGrafanaServer())) as client:
        assert client.base_url == "http://grafana:3000"
        assert client.health()
