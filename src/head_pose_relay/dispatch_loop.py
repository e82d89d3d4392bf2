"""Dispatch loop: relays the latest head pose to the synthesizer at a fixed rate.

Sends are fire-and-forget: each tick hands its payload to a small thread pool
and schedules the next tick without waiting. There is no queue and no retry:
when every send slot is busy the tick's update is dropped, and a periodic
update whose turn comes after a disconnect is never posted.
"""

import logging
import threading
from typing import Optional
from concurrent.futures import Future, ThreadPoolExecutor

import requests

from head_pose_relay.state import LinkStatus, SharedState
from head_pose_relay.errors import DeliveryFailed
from head_pose_relay.protocol import SET_PARAMETERS, serialize, build_update_params
from head_pose_relay.control_client import ControlClient


logger = logging.getLogger(__name__)


class DispatchLoop:
    """Timer thread sending ``setParameters`` updates while connected."""

    def __init__(
        self,
        client: ControlClient,
        state: SharedState,
        variant: str = "3d",
        max_in_flight: int = 4,
    ) -> None:
        """Initialize.

        Args:
            client: Control client for the synthesizer endpoint
            state: Shared state (pose, calibration, dispatch interval, link)
            variant: Update message shape, "3d" or "2d"
            max_in_flight: Sends allowed to overlap; further updates are dropped
        """
        self.client = client
        self.state = state
        self.variant = variant
        self._executor = ThreadPoolExecutor(max_workers=max_in_flight, thread_name_prefix="dispatch-send")
        # One slot per worker, so a submitted send never waits in the pool queue.
        self._send_slots = threading.BoundedSemaphore(max_in_flight)

        self._staged_lock = threading.Lock()
        self._staged_payload: Optional[str] = None

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def staged_payload(self) -> Optional[str]:
        """Last payload built by a tick, as sent (pretty-printed JSON)."""
        with self._staged_lock:
            return self._staged_payload

    def build_payload(self) -> str:
        """Serialize a ``setParameters`` call for the current pose."""
        pose = self.state.pose.get()
        message = self.client.build(SET_PARAMETERS, {"list": build_update_params(pose, self.variant)})
        return serialize(message)

    def _stage(self, payload: str) -> None:
        with self._staged_lock:
            self._staged_payload = payload

    def deliver(self, payload: str, require_connected: bool = False) -> bool:
        """Send one payload and update the link status. Never raises on network errors.

        Args:
            payload: Serialized JSON-RPC request
            require_connected: Drop the payload if the link was disconnected
                since it was built (periodic updates only)
        """
        if require_connected and not self.state.calibration.connected:
            logger.debug("Disconnected before send; dropping update")
            return False
        try:
            self.client.post_json(payload)
        except requests.RequestException as e:
            error = DeliveryFailed(f"Update to {self.client.endpoint_url} failed: {e}")
            logger.warning(str(error))
            self.state.link.mark(LinkStatus.FAIL)
            return False
        self.state.link.mark(LinkStatus.OK)
        return True

    def _deliver_in_slot(self, payload: str, require_connected: bool) -> bool:
        try:
            return self.deliver(payload, require_connected)
        finally:
            self._send_slots.release()

    def _submit(self, payload: str, require_connected: bool) -> Optional[Future[bool]]:
        if not self._send_slots.acquire(blocking=False):
            logger.debug("All sends in flight; dropping update")
            return None
        try:
            return self._executor.submit(self._deliver_in_slot, payload, require_connected)
        except RuntimeError:
            # Executor already shut down during stop().
            self._send_slots.release()
            logger.debug("Dispatch executor closed; dropping update")
            return None

    def tick(self) -> Optional[Future[bool]]:
        """Run one dispatch cycle. Returns the in-flight send, or None if nothing was sent."""
        if not self.state.calibration.connected:
            return None
        payload = self.build_payload()
        self._stage(payload)
        return self._submit(payload, require_connected=True)

    def send_once(self) -> Optional[Future[bool]]:
        """Send the staged payload right away, whatever the connected state.

        Returns None if every send slot is busy.
        """
        payload = self.staged_payload
        if payload is None:
            payload = self.build_payload()
            self._stage(payload)
        logger.info("Manual send requested")
        return self._submit(payload, require_connected=False)

    def start(self) -> None:
        """Start the dispatch loop in a thread."""
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.working_loop, daemon=True, name="dispatch-loop")
        self._thread.start()
        logger.debug("Dispatch loop started")

    def stop(self) -> None:
        """Stop the timer; in-flight sends are not awaited."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        self._executor.shutdown(wait=False, cancel_futures=True)
        logger.debug("Dispatch loop stopped")

    def working_loop(self) -> None:
        """Wait one interval, tick, repeat. The interval is re-read every cycle."""
        while not self._stop_event.wait(self.state.dispatch.interval_ms / 1000.0):
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Dispatch loop error: {e}")

        logger.debug("Dispatch loop thread exited")
