from __future__ import annotations

import threading
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from preview_controller.src.model import EventType, ReconcileEvent
from preview_controller.src.reconciler import ReconcileResult
from preview_controller.src.watcher import ConnectionState, SubscriptionError, WatchLoop


class RecordingReconciler:
    def __init__(self, fail_names: set[str] | None = None) -> None:
        self.events: list[ReconcileEvent] = []
        self.fail_names = fail_names or set()

    def reconcile(self, event: ReconcileEvent) -> ReconcileResult:
        self.events.append(event)
        name = event.resource.name if event.resource is not None else None
        if name in self.fail_names:
            raise RuntimeError(f"reconcile blew up for {name}")
        return ReconcileResult(event_type=event.type, source_name=name)


def make_raw(event_type: str, name: str, resource_version: str) -> dict[str, Any]:
    return {
        "type": event_type,
        "object": {
            "metadata": {"name": name, "namespace": "default", "resourceVersion": resource_version},
            "spec": {"image": "app:1", "fqdn": f"{name}.example.com"},
        },
    }


def _make_loop(
    reconciler: Any = None,
    max_consecutive_failures: int = 0,
) -> WatchLoop:
    return WatchLoop(
        custom_api=MagicMock(),
        reconciler=reconciler or RecordingReconciler(),
        namespace="default",
        group="platform9.com",
        version="v1",
        plural="previewenvironments",
        watch_timeout_seconds=30,
        max_consecutive_failures=max_consecutive_failures,
    )


def _fake_wait(wait_values: list[float]) -> Any:
    def fake_wait(timeout: float | None = None) -> bool:
        if timeout is not None:
            wait_values.append(timeout)
        return False

    return fake_wait


# ---------------------------------------------------------------------------
# handle_event
# ---------------------------------------------------------------------------


def test_handle_event_tracks_resource_version_and_reconciles() -> None:
    reconciler = RecordingReconciler()
    loop = _make_loop(reconciler)

    result = loop.handle_event(make_raw("ADDED", "pr42", "101"))

    assert result is not None
    assert loop.resource_version == "101"
    assert reconciler.events[0].type is EventType.ADDED


def test_handle_event_skips_unreadable_objects() -> None:
    reconciler = RecordingReconciler()
    loop = _make_loop(reconciler)

    result = loop.handle_event({"type": "ADDED", "object": {"metadata": {}}})

    assert result is None
    assert reconciler.events == []


def test_handle_event_bookmark_advances_version_without_reconciling() -> None:
    reconciler = RecordingReconciler()
    loop = _make_loop(reconciler)

    loop.handle_event({"type": "BOOKMARK", "object": {"metadata": {"resourceVersion": "555"}}})

    assert loop.resource_version == "555"
    assert reconciler.events == []


def test_handle_event_forwards_error_events() -> None:
    reconciler = RecordingReconciler()
    loop = _make_loop(reconciler)

    loop.handle_event({"type": "ERROR", "object": {"code": 500, "message": "boom"}})

    assert reconciler.events[0].type is EventType.ERROR
    assert loop.resource_version is None


# ---------------------------------------------------------------------------
# run_forever
# ---------------------------------------------------------------------------


def test_run_forever_processes_events_in_order_and_resubscribes() -> None:
    reconciler = RecordingReconciler()
    loop = _make_loop(reconciler)
    shutdown_event = threading.Event()
    mock_watcher = MagicMock()
    versions_seen: list[Any] = []

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        versions_seen.append(kwargs.get("resource_version"))
        if len(versions_seen) == 1:
            return iter([make_raw("ADDED", "pr42", "10"), make_raw("DELETED", "pr42", "11")])
        if len(versions_seen) == 2:
            return iter([make_raw("ADDED", "pr43", "12")])
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("preview_controller.src.watcher.watch.Watch", return_value=mock_watcher):
        loop.run_forever(shutdown_event=shutdown_event)

    assert [(e.type, e.resource.name) for e in reconciler.events] == [  # type: ignore[union-attr]
        (EventType.ADDED, "pr42"),
        (EventType.DELETED, "pr42"),
        (EventType.ADDED, "pr43"),
    ]
    assert versions_seen == [None, "11", "12"]
    assert mock_watcher.stop.call_count >= 3
    assert loop.state is ConnectionState.DISCONNECTED
    assert not loop.ready.is_set()


def test_run_forever_passes_subscription_coordinates() -> None:
    loop = _make_loop()
    shutdown_event = threading.Event()
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("preview_controller.src.watcher.watch.Watch", return_value=mock_watcher):
        loop.run_forever(shutdown_event=shutdown_event)

    args, kwargs = mock_watcher.stream.call_args
    assert args[0] is loop.custom_api.list_namespaced_custom_object
    assert kwargs["group"] == "platform9.com"
    assert kwargs["version"] == "v1"
    assert kwargs["namespace"] == "default"
    assert kwargs["plural"] == "previewenvironments"
    assert kwargs["timeout_seconds"] == 30


def test_run_forever_continues_after_event_processing_failure() -> None:
    reconciler = RecordingReconciler(fail_names={"broken"})
    loop = _make_loop(reconciler)
    shutdown_event = threading.Event()
    mock_watcher = MagicMock()
    call_count = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            return iter([make_raw("ADDED", "broken", "1"), make_raw("ADDED", "pr42", "2")])
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("preview_controller.src.watcher.watch.Watch", return_value=mock_watcher):
        loop.run_forever(shutdown_event=shutdown_event)

    assert [e.resource.name for e in reconciler.events] == ["broken", "pr42"]  # type: ignore[union-attr]


def test_run_forever_resets_resource_version_on_410() -> None:
    loop = _make_loop()
    shutdown_event = threading.Event()
    mock_watcher = MagicMock()
    versions_seen: list[Any] = []
    wait_values: list[float] = []

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        versions_seen.append(kwargs.get("resource_version"))
        if len(versions_seen) == 1:
            return iter([make_raw("ADDED", "pr42", "100")])
        if len(versions_seen) == 2:
            raise ApiException(status=410, reason="Gone")
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with (
        patch("preview_controller.src.watcher.watch.Watch", return_value=mock_watcher),
        patch("preview_controller.src.watcher.threading.Event.wait", side_effect=_fake_wait(wait_values)),
    ):
        loop.run_forever(shutdown_event=shutdown_event)

    assert versions_seen == [None, "100", None]
    assert wait_values == []


def test_run_forever_resubscribes_on_expired_error_event() -> None:
    reconciler = RecordingReconciler()
    loop = _make_loop(reconciler)
    shutdown_event = threading.Event()
    mock_watcher = MagicMock()
    versions_seen: list[Any] = []

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        versions_seen.append(kwargs.get("resource_version"))
        if len(versions_seen) == 1:
            return iter(
                [
                    make_raw("ADDED", "pr42", "100"),
                    {"type": "ERROR", "object": {"code": 410, "reason": "Expired"}},
                    make_raw("ADDED", "never-seen", "101"),
                ]
            )
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("preview_controller.src.watcher.watch.Watch", return_value=mock_watcher):
        loop.run_forever(shutdown_event=shutdown_event)

    assert versions_seen == [None, None]
    assert [e.resource.name for e in reconciler.events] == ["pr42"]  # type: ignore[union-attr]


def test_run_forever_applies_exponential_backoff_on_api_error() -> None:
    loop = _make_loop()
    shutdown_event = threading.Event()
    wait_values: list[float] = []
    mock_watcher = MagicMock()
    call_count = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count <= 3:
            raise ApiException(status=500, reason="Internal Server Error")
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with (
        patch("preview_controller.src.watcher.watch.Watch", return_value=mock_watcher),
        patch("preview_controller.src.watcher.threading.Event.wait", side_effect=_fake_wait(wait_values)),
        patch("preview_controller.src.watcher.random.random", return_value=0.5),
    ):
        loop.run_forever(shutdown_event=shutdown_event)

    assert wait_values == [pytest.approx(1.0), pytest.approx(2.0), pytest.approx(4.0)]


def test_run_forever_resets_backoff_after_successful_stream() -> None:
    loop = _make_loop()
    shutdown_event = threading.Event()
    wait_values: list[float] = []
    mock_watcher = MagicMock()
    call_count = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count in {1, 2, 4}:
            raise ApiException(status=503, reason="Unavailable")
        if call_count == 3:
            return iter([])
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with (
        patch("preview_controller.src.watcher.watch.Watch", return_value=mock_watcher),
        patch("preview_controller.src.watcher.threading.Event.wait", side_effect=_fake_wait(wait_values)),
        patch("preview_controller.src.watcher.random.random", return_value=0.5),
    ):
        loop.run_forever(shutdown_event=shutdown_event)

    assert wait_values == [pytest.approx(1.0), pytest.approx(2.0), pytest.approx(1.0)]


def test_run_forever_retries_access_denied() -> None:
    loop = _make_loop()
    shutdown_event = threading.Event()
    wait_values: list[float] = []
    mock_watcher = MagicMock()
    call_count = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            raise ApiException(status=403, reason="Forbidden")
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with (
        patch("preview_controller.src.watcher.watch.Watch", return_value=mock_watcher),
        patch("preview_controller.src.watcher.threading.Event.wait", side_effect=_fake_wait(wait_values)),
        patch("preview_controller.src.watcher.random.random", return_value=0.5),
    ):
        loop.run_forever(shutdown_event=shutdown_event)

    assert call_count == 2
    assert wait_values == [pytest.approx(1.0)]


def test_run_forever_handles_unexpected_exception_with_backoff() -> None:
    loop = _make_loop()
    shutdown_event = threading.Event()
    wait_values: list[float] = []
    mock_watcher = MagicMock()
    call_count = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            raise ConnectionResetError("connection reset by peer")
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with (
        patch("preview_controller.src.watcher.watch.Watch", return_value=mock_watcher),
        patch("preview_controller.src.watcher.threading.Event.wait", side_effect=_fake_wait(wait_values)),
        patch("preview_controller.src.watcher.random.random", return_value=0.5),
    ):
        loop.run_forever(shutdown_event=shutdown_event)

    assert wait_values == [pytest.approx(1.0)]


def test_run_forever_raises_when_startup_budget_exhausted() -> None:
    loop = _make_loop(max_consecutive_failures=3)
    wait_values: list[float] = []
    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = ApiException(status=500, reason="down")

    with (
        patch("preview_controller.src.watcher.watch.Watch", return_value=mock_watcher),
        patch("preview_controller.src.watcher.threading.Event.wait", side_effect=_fake_wait(wait_values)),
        patch("preview_controller.src.watcher.random.random", return_value=0.5),
        pytest.raises(SubscriptionError, match="3 consecutive"),
    ):
        loop.run_forever(shutdown_event=threading.Event())

    assert mock_watcher.stream.call_count == 3
    assert len(wait_values) == 2
    assert not loop.ready.is_set()


def test_run_forever_budget_does_not_apply_after_first_stream() -> None:
    loop = _make_loop(max_consecutive_failures=1)
    shutdown_event = threading.Event()
    mock_watcher = MagicMock()
    call_count = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            return iter([])
        if call_count <= 3:
            raise ApiException(status=500, reason="down")
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with (
        patch("preview_controller.src.watcher.watch.Watch", return_value=mock_watcher),
        patch("preview_controller.src.watcher.threading.Event.wait", side_effect=_fake_wait([])),
    ):
        loop.run_forever(shutdown_event=shutdown_event)

    assert call_count == 4


def test_run_forever_sets_ready_while_streaming() -> None:
    loop = _make_loop()
    shutdown_event = threading.Event()
    mock_watcher = MagicMock()
    observed: list[tuple[bool, ConnectionState]] = []

    def observing_stream() -> Any:
        yield make_raw("ADDED", "pr42", "1")
        observed.append((loop.ready.is_set(), loop.state))
        shutdown_event.set()

    mock_watcher.stream.side_effect = lambda *args, **kwargs: observing_stream()

    with patch("preview_controller.src.watcher.watch.Watch", return_value=mock_watcher):
        loop.run_forever(shutdown_event=shutdown_event)

    assert observed == [(True, ConnectionState.STREAMING)]
    assert not loop.ready.is_set()


def test_request_stop_interrupts_active_watcher() -> None:
    loop = _make_loop()
    mock_watcher = MagicMock()

    def blocking_stream(*args: Any, **kwargs: Any) -> Any:
        loop.request_stop()
        return iter([make_raw("ADDED", "pr42", "1")])

    mock_watcher.stream.side_effect = blocking_stream

    with patch("preview_controller.src.watcher.watch.Watch", return_value=mock_watcher):
        loop.run_forever(shutdown_event=threading.Event())

    assert mock_watcher.stop.call_count >= 2
    assert mock_watcher.stream.call_count == 1


def test_run_forever_shutdown_event_stops_loop() -> None:
    loop = _make_loop()
    shutdown_event = threading.Event()
    shutdown_event.set()
    watch_factory = MagicMock()

    with patch("preview_controller.src.watcher.watch.Watch", watch_factory):
        loop.run_forever(shutdown_event=shutdown_event)

    watch_factory.assert_not_called()
