"""Unit tests for the dispatch_loop module."""

import json
import time
import threading
from typing import Any, List, Iterator
from unittest.mock import MagicMock

import pytest
import requests

from head_pose_relay.state import Pose, LinkStatus, SharedState
from head_pose_relay.dispatch_loop import DispatchLoop
from head_pose_relay.control_client import ControlClient


@pytest.fixture
def client(mock_session: MagicMock) -> ControlClient:
    """Control client posting through the mocked session."""
    return ControlClient("http://synth/jsonrpc", session=mock_session)


@pytest.fixture
def dispatch(client: ControlClient, shared_state: SharedState) -> Iterator[DispatchLoop]:
    """Dispatch loop whose executor is shut down after the test."""
    loop = DispatchLoop(client, shared_state)
    yield loop
    loop.stop()


def _sent_bodies(session: MagicMock) -> List[dict]:
    return [json.loads(call.kwargs["data"].decode("utf-8")) for call in session.post.call_args_list]


class TestDispatchTick:
    """Tests for one dispatch cycle."""

    def test_no_send_while_disconnected(self, dispatch: DispatchLoop, mock_session: MagicMock) -> None:
        """No request leaves while the connected flag is false."""
        for _ in range(50):
            assert dispatch.tick() is None

        mock_session.post.assert_not_called()
        assert dispatch.staged_payload is None

    def test_connected_tick_sends_current_pose(
        self, dispatch: DispatchLoop, shared_state: SharedState, mock_session: MagicMock,
    ) -> None:
        """A connected tick posts setParameters with the latest pose."""
        shared_state.calibration.apply_calibration(0.18)
        shared_state.pose.set(Pose(x=0.7, y=1.3, z=-0.36, angle=5.0))

        future = dispatch.tick()

        assert future is not None
        assert future.result(timeout=5) is True
        body = _sent_bodies(mock_session)[0]
        assert body["method"] == "setParameters"
        assert body["params"]["list"][0] == {"id": "Head.X", "name": "Head X position", "text": "0.7"}
        assert shared_state.link.status is LinkStatus.OK

    def test_staged_payload_is_what_was_sent(
        self, dispatch: DispatchLoop, shared_state: SharedState, mock_session: MagicMock,
    ) -> None:
        """The staged payload is the exact pretty-printed body posted."""
        shared_state.calibration.apply_calibration(0.18)

        dispatch.tick().result(timeout=5)

        staged = dispatch.staged_payload
        assert staged is not None
        assert staged.startswith("{\n  ")
        assert mock_session.post.call_args.kwargs["data"] == staged.encode("utf-8")

    def test_each_tick_gets_fresh_id(self, dispatch: DispatchLoop, shared_state: SharedState, mock_session: MagicMock) -> None:
        """Every update is a new JSON-RPC request."""
        shared_state.calibration.apply_calibration(0.18)

        dispatch.tick().result(timeout=5)
        dispatch.tick().result(timeout=5)

        ids = [body["id"] for body in _sent_bodies(mock_session)]
        assert len(set(ids)) == 2

    def test_failure_marks_link_only(
        self, dispatch: DispatchLoop, shared_state: SharedState, mock_session: MagicMock,
    ) -> None:
        """A failed send reports the link as failed but stays connected."""
        shared_state.calibration.apply_calibration(0.18)
        mock_session.post.side_effect = requests.ConnectionError("refused")

        assert dispatch.tick().result(timeout=5) is False

        assert shared_state.link.status is LinkStatus.FAIL
        assert shared_state.calibration.connected is True

    def test_link_recovers(self, dispatch: DispatchLoop, shared_state: SharedState, mock_session: MagicMock) -> None:
        """A later successful send brings the link back to OK."""
        shared_state.calibration.apply_calibration(0.18)
        mock_session.post.side_effect = [requests.Timeout("slow"), mock_session.post.return_value]

        dispatch.tick().result(timeout=5)
        dispatch.tick().result(timeout=5)

        assert shared_state.link.status is LinkStatus.OK

    def test_2d_variant(self, client: ControlClient, shared_state: SharedState, mock_session: MagicMock) -> None:
        """The 2D variant sends normalized Head.X / Head.Y values."""
        dispatch = DispatchLoop(client, shared_state, variant="2d")
        shared_state.calibration.apply_calibration(0.18)
        shared_state.pose.set(Pose(x=0.25, y=0.5))

        dispatch.tick().result(timeout=5)
        dispatch.stop()

        params = _sent_bodies(mock_session)[0]["params"]["list"]
        assert [p["id"] for p in params] == ["Head.X", "Head.Y"]
        assert params[0]["normalized_value"] == 0.25

    def test_tick_after_stop(self, dispatch: DispatchLoop, shared_state: SharedState, mock_session: MagicMock) -> None:
        """Once stopped, ticks drop their update instead of raising."""
        shared_state.calibration.apply_calibration(0.18)
        dispatch.stop()

        assert dispatch.tick() is None
        mock_session.post.assert_not_called()


class TestManualSend:
    """Tests for the one-shot send."""

    def test_send_once_while_disconnected(
        self, dispatch: DispatchLoop, shared_state: SharedState, mock_session: MagicMock,
    ) -> None:
        """A manual send goes out even when not connected."""
        future = dispatch.send_once()

        assert future is not None
        assert future.result(timeout=5) is True
        assert dispatch.staged_payload is not None
        assert shared_state.calibration.connected is False

    def test_send_once_reuses_staged_payload(
        self, dispatch: DispatchLoop, shared_state: SharedState, mock_session: MagicMock,
    ) -> None:
        """The staged payload is resent as is."""
        shared_state.calibration.apply_calibration(0.18)
        dispatch.tick().result(timeout=5)
        staged = dispatch.staged_payload

        dispatch.send_once().result(timeout=5)

        bodies = [call.kwargs["data"] for call in mock_session.post.call_args_list]
        assert bodies == [staged.encode("utf-8"), staged.encode("utf-8")]


class TestDispatchTimer:
    """Tests for the timer loop."""

    def test_interval_is_reread_each_cycle(self, dispatch: DispatchLoop, shared_state: SharedState) -> None:
        """A rate change takes effect on the next wait."""
        timeouts: List[float] = []

        def fake_wait(timeout: float) -> bool:
            timeouts.append(timeout)
            return len(timeouts) >= 3

        def fake_tick() -> None:
            shared_state.dispatch.interval_ms = 50

        dispatch._stop_event = MagicMock()
        dispatch._stop_event.wait.side_effect = fake_wait
        dispatch.tick = MagicMock(side_effect=fake_tick)  # type: ignore[method-assign]

        dispatch.working_loop()

        assert timeouts == [pytest.approx(0.1), pytest.approx(0.05), pytest.approx(0.05)]
        assert dispatch.tick.call_count == 2

    def test_tick_errors_do_not_stop_loop(self, dispatch: DispatchLoop) -> None:
        """Unexpected errors in a tick are logged and the timer continues."""
        waits = iter([False, False, True])
        dispatch._stop_event = MagicMock()
        dispatch._stop_event.wait.side_effect = lambda timeout: next(waits)
        dispatch.tick = MagicMock(side_effect=RuntimeError("boom"))  # type: ignore[method-assign]

        dispatch.working_loop()

        assert dispatch.tick.call_count == 2

    def test_thread_sends_while_connected(
        self, client: ControlClient, shared_state: SharedState, mock_session: MagicMock,
    ) -> None:
        """The running thread keeps sending at the configured interval."""
        shared_state.dispatch.interval_ms = 5
        shared_state.calibration.apply_calibration(0.18)
        dispatch = DispatchLoop(client, shared_state)

        dispatch.start()
        deadline = time.monotonic() + 5.0
        while mock_session.post.call_count < 3 and time.monotonic() < deadline:
            time.sleep(0.005)
        dispatch.stop()

        assert mock_session.post.call_count >= 3


class TestSendSlots:
    """Tests for dropping updates instead of queueing them."""

    @pytest.fixture
    def release(self) -> threading.Event:
        """Event holding every POST until it is set."""
        return threading.Event()

    @pytest.fixture
    def blocking_session(self, mock_session: MagicMock, release: threading.Event) -> MagicMock:
        """Session whose POSTs block until ``release`` is set."""
        response = mock_session.post.return_value

        def slow_post(*args: Any, **kwargs: Any) -> MagicMock:
            release.wait(5)
            return response

        mock_session.post.side_effect = slow_post
        return mock_session

    def _wait_for_posts(self, session: MagicMock, count: int) -> None:
        deadline = time.monotonic() + 5.0
        while session.post.call_count < count and time.monotonic() < deadline:
            time.sleep(0.002)

    def test_update_dropped_while_all_slots_busy(
        self, blocking_session: MagicMock, release: threading.Event, shared_state: SharedState,
    ) -> None:
        """A tick with every send in flight sends nothing and queues nothing."""
        dispatch = DispatchLoop(ControlClient("http://synth/jsonrpc", session=blocking_session), shared_state, max_in_flight=1)
        shared_state.calibration.apply_calibration(0.18)
        try:
            first = dispatch.tick()
            self._wait_for_posts(blocking_session, 1)

            assert dispatch.tick() is None
            assert dispatch.send_once() is None

            release.set()
            assert first is not None and first.result(timeout=5) is True
            assert blocking_session.post.call_count == 1
            assert dispatch.tick() is not None
        finally:
            release.set()
            dispatch.stop()

    def test_no_post_starts_after_disconnect(
        self, blocking_session: MagicMock, release: threading.Event, shared_state: SharedState,
    ) -> None:
        """With a slow endpoint, nothing is posted once the link is disconnected."""
        shared_state.dispatch.interval_ms = 5
        shared_state.calibration.apply_calibration(0.18)
        dispatch = DispatchLoop(ControlClient("http://synth/jsonrpc", session=blocking_session), shared_state, max_in_flight=2)
        try:
            dispatch.start()
            self._wait_for_posts(blocking_session, 2)
            shared_state.calibration.mark_disconnected()
            posted_before_disconnect = blocking_session.post.call_count

            release.set()
            time.sleep(0.1)

            assert posted_before_disconnect == 2
            assert blocking_session.post.call_count == posted_before_disconnect
        finally:
            release.set()
            dispatch.stop()

    def test_periodic_payload_dropped_after_disconnect(
        self, dispatch: DispatchLoop, shared_state: SharedState, mock_session: MagicMock,
    ) -> None:
        """A periodic update reaching the sender after a disconnect is not posted."""
        assert dispatch.deliver("{}", require_connected=True) is False

        mock_session.post.assert_not_called()
        assert shared_state.link.status is LinkStatus.UNKNOWN

    def test_manual_payload_ignores_connection(self, dispatch: DispatchLoop, mock_session: MagicMock) -> None:
        """A manual send is posted even while disconnected."""
        assert dispatch.deliver("{}") is True

        mock_session.post.assert_called_once()
