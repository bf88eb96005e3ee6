from __future__ import annotations

import threading
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from grafana_sync.src.grafana import GrafanaAPIError
from grafana_sync.src.reconciler import FullResync, RequeueDirective, ResourceChanged
from grafana_sync.src.state import ControllerState, StateHolder
from grafana_sync.src.trigger import DashboardWatcher, ReadinessProbe, ResyncTimer, WorkQueue


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def drain(queue: WorkQueue) -> list[Any]:
    items = []
    while True:
        request = queue.get(timeout=0)
        if request is None:
            return items
        items.append(request)
        queue.done(request, RequeueDirective.done())


def make_object(namespace: str, name: str, resource_version: str = "5") -> dict[str, Any]:
    return {
        "metadata": {
            "namespace": namespace,
            "name": name,
            "resourceVersion": resource_version,
            "labels": {"app": "grafana"},
        },
        "spec": {"json": "{}"},
    }


class FakeCustomApi:
    def __init__(self, listings: list[Any]) -> None:
        self.listings = list(listings)
        self.list_calls = 0

    def _next(self) -> Any:
        self.list_calls += 1
        listing = self.listings.pop(0) if len(self.listings) > 1 else self.listings[0]
        if isinstance(listing, Exception):
            raise listing
        return listing

    def list_namespaced_custom_object(self, **kwargs: Any) -> Any:
        return self._next()

    def list_cluster_custom_object(self, **kwargs: Any) -> Any:
        return self._next()


def listing(resource_version: str, *objects: dict[str, Any]) -> dict[str, Any]:
    return {"metadata": {"resourceVersion": resource_version}, "items": list(objects)}


# -- WorkQueue ---------------------------------------------------------------


def test_identical_requests_are_coalesced() -> None:
    queue = WorkQueue()
    queue.add(ResourceChanged("ns1", "a"))
    queue.add(ResourceChanged("ns1", "a"))
    queue.add(FullResync("ns2"))
    queue.add(FullResync("ns2"))

    assert drain(queue) == [ResourceChanged("ns1", "a"), FullResync("ns2")]


def test_full_resync_absorbs_resource_changes_in_same_namespace() -> None:
    queue = WorkQueue()
    queue.add(ResourceChanged("ns1", "a"))
    queue.add(ResourceChanged("ns2", "x"))
    queue.add(FullResync("ns1"))
    queue.add(ResourceChanged("ns1", "b"))

    assert drain(queue) == [ResourceChanged("ns2", "x"), FullResync("ns1")]


def test_request_added_while_processing_is_requeued_once_done() -> None:
    queue = WorkQueue()
    queue.add(FullResync("ns1"))
    request = queue.get(timeout=0)
    queue.add(FullResync("ns1"))
    queue.add(FullResync("ns1"))

    assert queue.get(timeout=0) is None
    queue.done(request, RequeueDirective.done())  # type: ignore[arg-type]

    assert drain(queue) == [FullResync("ns1")]


def test_after_directive_delivers_request_after_delay() -> None:
    clock = FakeClock()
    queue = WorkQueue(clock=clock)
    queue.add(FullResync("ns1"))
    request = queue.get(timeout=0)

    delay = queue.done(request, RequeueDirective.after(10))  # type: ignore[arg-type]

    assert delay == 10
    assert queue.get(timeout=0) is None
    clock.now += 10
    assert queue.get(timeout=0) == FullResync("ns1")


def test_error_directive_backs_off_exponentially_and_caps() -> None:
    queue = WorkQueue(max_backoff_seconds=30, clock=FakeClock())
    request = FullResync("ns1")
    delays = []
    for _ in range(7):
        queue.add(request)
        # A delayed copy is promoted by add(); take it for processing.
        taken = queue.get(timeout=0)
        assert taken == request
        delays.append(queue.done(request, RequeueDirective.failed("boom")))

    assert delays == [1, 2, 4, 8, 16, 30, 30]


def test_success_resets_backoff() -> None:
    queue = WorkQueue(clock=FakeClock())
    request = FullResync("ns1")
    for _ in range(3):
        queue.add(request)
        queue.get(timeout=0)
        queue.done(request, RequeueDirective.failed("boom"))

    queue.add(request)
    queue.get(timeout=0)
    queue.done(request, RequeueDirective.done())
    queue.add(request)
    queue.get(timeout=0)

    assert queue.done(request, RequeueDirective.failed("boom")) == 1


def test_earlier_deadline_wins_for_delayed_request() -> None:
    clock = FakeClock()
    queue = WorkQueue(clock=clock)
    queue.add_after(FullResync("ns1"), 30)
    queue.add_after(FullResync("ns1"), 5)

    assert queue.delayed() == {FullResync("ns1"): 1005.0}


def test_get_returns_none_after_shutdown() -> None:
    queue = WorkQueue()
    queue.add(FullResync("ns1"))
    queue.shut_down()

    assert queue.get(timeout=1) is None
    queue.add(FullResync("ns2"))
    assert len(queue) == 1


def test_get_blocks_until_request_arrives() -> None:
    queue = WorkQueue()
    received: list[Any] = []

    def consumer() -> None:
        received.append(queue.get(timeout=2))

    thread = threading.Thread(target=consumer)
    thread.start()
    queue.add(ResourceChanged("ns1", "a"))
    thread.join(timeout=3)

    assert received == [ResourceChanged("ns1", "a")]


# -- ResyncTimer -------------------------------------------------------------


def test_resync_all_enqueues_one_full_resync_per_namespace() -> None:
    queue = WorkQueue()
    timer = ResyncTimer(queue, lambda: ["ns2", "ns1", "ns2"], period_seconds=60)

    assert timer.resync_all() == 2
    assert drain(queue) == [FullResync("ns1"), FullResync("ns2")]


def test_resync_timer_survives_enumeration_errors() -> None:
    queue = WorkQueue()
    stop = threading.Event()
    calls = 0

    def namespaces() -> list[str]:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise ApiException(status=500, reason="boom")
        stop.set()
        return ["ns1"]

    timer = ResyncTimer(queue, namespaces, period_seconds=0.01)
    timer.run(stop)

    assert calls == 2
    assert drain(queue) == [FullResync("ns1")]


# -- DashboardWatcher --------------------------------------------------------


def test_initial_list_enqueues_full_resync_per_namespace() -> None:
    custom_api = FakeCustomApi(
        [listing("100", make_object("ns2", "b"), make_object("ns1", "a"))]
    )
    queue = WorkQueue()
    watcher = DashboardWatcher(custom_api, queue)  # type: ignore[arg-type]

    assert watcher.list_and_enqueue() == "100"
    assert drain(queue) == [FullResync("ns1"), FullResync("ns2")]


def test_namespaced_watcher_resyncs_its_namespace_even_when_empty() -> None:
    queue = WorkQueue()
    watcher = DashboardWatcher(FakeCustomApi([listing("7")]), queue, namespace="ns1")  # type: ignore[arg-type]

    watcher.list_and_enqueue()

    assert drain(queue) == [FullResync("ns1")]


@pytest.mark.parametrize("event_type", ["ADDED", "MODIFIED", "DELETED"])
def test_watch_events_enqueue_resource_changed(event_type: str) -> None:
    queue = WorkQueue()
    watcher = DashboardWatcher(FakeCustomApi([listing("1")]), queue)  # type: ignore[arg-type]

    request = watcher.handle_event(event_type, make_object("ns1", "a"))

    assert request == ResourceChanged("ns1", "a")
    assert drain(queue) == [ResourceChanged("ns1", "a")]


def test_bookmark_events_are_ignored() -> None:
    queue = WorkQueue()
    watcher = DashboardWatcher(FakeCustomApi([listing("1")]), queue)  # type: ignore[arg-type]

    assert watcher.handle_event("BOOKMARK", make_object("ns1", "a")) is None
    assert len(queue) == 0


def test_run_streams_from_list_resource_version_and_enqueues_events() -> None:
    custom_api = FakeCustomApi([listing("100", make_object("ns1", "a"))])
    queue = WorkQueue()
    watcher = DashboardWatcher(custom_api, queue)  # type: ignore[arg-type]
    shutdown_event = threading.Event()
    resource_versions_seen: list[Any] = []
    mock_watch = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        resource_versions_seen.append(kwargs.get("resource_version"))
        if len(resource_versions_seen) == 1:
            return iter([{"type": "MODIFIED", "object": make_object("ns2", "b", "101")}])
        shutdown_event.set()
        return iter([])

    mock_watch.stream.side_effect = patched_stream

    with patch("grafana_sync.src.trigger.watch.Watch", return_value=mock_watch):
        watcher.run(shutdown_event)

    assert resource_versions_seen == ["100", "101"]
    assert drain(queue) == [FullResync("ns1"), ResourceChanged("ns2", "b")]
    assert mock_watch.stop.call_count >= 1
    assert not watcher.ready.is_set()


def test_run_relists_on_410_gone() -> None:
    custom_api = FakeCustomApi(
        [listing("100", make_object("ns1", "a")), listing("200", make_object("ns1", "a"))]
    )
    queue = WorkQueue()
    watcher = DashboardWatcher(custom_api, queue)  # type: ignore[arg-type]
    shutdown_event = threading.Event()
    resource_versions_seen: list[Any] = []
    mock_watch = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        resource_versions_seen.append(kwargs.get("resource_version"))
        if len(resource_versions_seen) == 1:
            raise ApiException(status=410, reason="Gone")
        shutdown_event.set()
        return iter([])

    mock_watch.stream.side_effect = patched_stream

    with patch("grafana_sync.src.trigger.watch.Watch", return_value=mock_watch):
        watcher.run(shutdown_event)

    assert resource_versions_seen == ["100", "200"]
    assert custom_api.list_calls == 2


def test_run_treats_error_event_as_api_error() -> None:
    custom_api = FakeCustomApi([listing("100"), listing("300")])
    watcher = DashboardWatcher(custom_api, WorkQueue())  # type: ignore[arg-type]
    shutdown_event = threading.Event()
    calls = 0
    mock_watch = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal calls
        calls += 1
        if calls == 1:
            return iter([{"type": "ERROR", "object": {"code": 410, "message": "too old"}}])
        shutdown_event.set()
        return iter([])

    mock_watch.stream.side_effect = patched_stream

    with patch("grafana_sync.src.trigger.watch.Watch", return_value=mock_watch):
        watcher.run(shutdown_event)

    assert custom_api.list_calls == 2


def test_run_exits_fast_on_startup_rbac_denied() -> None:
    custom_api = FakeCustomApi([ApiException(status=403, reason="Forbidden")])
    watcher = DashboardWatcher(custom_api, WorkQueue())  # type: ignore[arg-type]

    with patch("grafana_sync.src.trigger.watch.Watch") as mock_watch_cls:
        watcher.run(threading.Event())

    mock_watch_cls.assert_not_called()
    assert not watcher.ready.is_set()


def test_run_exits_fast_on_watch_rbac_denied() -> None:
    watcher = DashboardWatcher(FakeCustomApi([listing("1")]), WorkQueue())  # type: ignore[arg-type]
    mock_watch = MagicMock()
    mock_watch.stream.side_effect = ApiException(status=401, reason="Unauthorized")

    with patch("grafana_sync.src.trigger.watch.Watch", return_value=mock_watch):
        watcher.run(threading.Event())

    assert mock_watch.stream.call_count == 1
    assert not watcher.ready.is_set()


def test_run_applies_exponential_backoff_on_api_error() -> None:
    watcher = DashboardWatcher(FakeCustomApi([listing("1")]), WorkQueue())  # type: ignore[arg-type]
    shutdown_event = threading.Event()
    wait_values: list[float] = []
    calls = 0
    mock_watch = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal calls
        calls += 1
        if calls <= 3:
            raise ApiException(status=500, reason="Internal Server Error")
        shutdown_event.set()
        return iter([])

    mock_watch.stream.side_effect = patched_stream

    def fake_wait(timeout: float | None = None) -> bool:
        if timeout is not None:
            wait_values.append(timeout)
        return False

    with (
        patch("grafana_sync.src.trigger.watch.Watch", return_value=mock_watch),
        patch("grafana_sync.src.trigger.threading.Event.wait", side_effect=fake_wait),
        patch("grafana_sync.src.trigger.random.random", return_value=0.5),
    ):
        watcher.run(shutdown_event)

    assert wait_values == [pytest.approx(1.0), pytest.approx(2.0), pytest.approx(4.0)]


def test_request_stop_interrupts_open_stream() -> None:
    watcher = DashboardWatcher(FakeCustomApi([listing("1")]), WorkQueue())  # type: ignore[arg-type]
    mock_watch = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        watcher.request_stop()
        return iter([{"type": "ADDED", "object": make_object("ns1", "a")}])

    mock_watch.stream.side_effect = patched_stream

    with patch("grafana_sync.src.trigger.watch.Watch", return_value=mock_watch):
        watcher.run(threading.Event())

    assert mock_watch.stop.call_count >= 1
    assert mock_watch.stream.call_count == 1


# -- ReadinessProbe ----------------------------------------------------------


class FakeHealthClient:
    def __init__(self, healthy: bool | Exception) -> None:
        self.healthy = healthy

    def __enter__(self) -> FakeHealthClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None

    def health(self) -> bool:
        if isinstance(self.healthy, Exception):
            raise self.healthy
        return self.healthy


def test_readiness_probe_flips_state_and_notifies_listeners() -> None:
    state = StateHolder(ControllerState(ready=False, base_url="http://grafana"))
    transitions: list[tuple[bool, bool]] = []
    state.subscribe(lambda prev, cur: transitions.append((prev.ready, cur.ready)))
    results: list[bool | Exception] = [True, True, GrafanaAPIError("down"), True]

    probe = ReadinessProbe(
        state,
        lambda _snapshot: FakeHealthClient(results.pop(0)),  # type: ignore[arg-type,return-value]
        period_seconds=10,
    )

    assert [probe.check_once() for _ in range(4)] == [True, True, False, True]
    assert transitions == [(False, True), (True, False), (False, True)]
    assert state.current().base_url == "http://grafana"
