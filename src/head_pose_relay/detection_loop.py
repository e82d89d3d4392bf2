"""Detection loop: runs the landmark detector and feeds the pose estimator.

The loop owns exactly one detector at a time and can swap it while running:
- swap requests from other threads collapse into one pending request
  (latest value wins per field)
- the old detector is closed before the new one is built
- a result produced while a swap is pending is discarded
- construction or inference failures leave the loop running camera-only
"""

import time
import logging
import threading
from enum import Enum
from typing import Any, Dict, List, Callable, Optional, Protocol, Sequence
from dataclasses import field, dataclass

import numpy as np
from numpy.typing import NDArray

from head_pose_relay.state import Pose, SharedState
from head_pose_relay.errors import (
    MissingLandmark,
    InferenceFailed,
    EstimationError,
    HeadPoseRelayError,
    DetectorConstructionFailed,
)
from head_pose_relay.keypoints import Face
from head_pose_relay.pose_estimator import IRIS_PROFILE, AnchorProfile, estimate


logger = logging.getLogger(__name__)

REPORT_INTERVAL_MS = 1000.0


class Detector(Protocol):
    """Landmark detector handle, owned by the detection loop."""

    def estimate_faces(self, frame: NDArray[np.uint8], flip_horizontal: bool = False) -> Sequence[Face]:
        """Return the faces found in ``frame``."""
        ...

    def close(self) -> None:
        """Release the detector's resources."""
        ...


class FrameSource(Protocol):
    """Anything that hands out the latest camera frame."""

    def get_frame(self) -> Optional[NDArray[np.uint8]]:
        """Return the latest frame, or None if none is available yet."""
        ...


DetectorFactory = Callable[[str, str, Dict[str, Any]], Detector]
ProfileResolver = Callable[[str], Optional[AnchorProfile]]
RuntimeConfigurator = Callable[[str, Dict[str, Any]], None]
Renderer = Callable[[NDArray[np.uint8], Optional[Sequence[Face]]], None]


class DetectorState(Enum):
    """Lifecycle of the detector owned by the loop."""

    IDLE = "idle"
    DETECTING = "detecting"
    SWAPPING = "swapping"
    FAILED = "failed"


@dataclass
class SwapRequest:
    """Pending model/backend/flag change."""

    model: str
    backend: str
    flags: Dict[str, Any] = field(default_factory=dict)
    backend_changed: bool = False
    flags_changed: bool = False

    @property
    def needs_runtime_reset(self) -> bool:
        """True if the runtime must be reconfigured before building."""
        return self.backend_changed or self.flags_changed


class DetectorSlot:
    """Holds at most one detector and closes each handle exactly once.

    The only way to install a detector is :meth:`replace`, which empties and
    closes the slot before calling the builder.
    """

    def __init__(self) -> None:
        """Initialize an empty slot."""
        self._handle: Optional[Detector] = None

    @property
    def handle(self) -> Optional[Detector]:
        """Current detector, or None."""
        return self._handle

    def dispose(self) -> None:
        """Close and drop the current detector, if any."""
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            handle.close()
        except Exception as e:
            logger.warning(f"Detector close failed: {e}")

    def replace(self, build: Callable[[], Detector]) -> Detector:
        """Dispose the current detector, then build and install a new one.

        If ``build`` raises, the slot stays empty.
        """
        self.dispose()
        self._handle = build()
        return self._handle

    def __enter__(self) -> "DetectorSlot":
        """Use the slot as a scope owning its detector."""
        return self

    def __exit__(self, *exc: Any) -> None:
        """Dispose the detector when leaving the scope."""
        self.dispose()


class LatencyStats:
    """Averages inference latency and reports an FPS figure about once a second."""

    def __init__(
        self,
        on_report: Optional[Callable[[float], None]] = None,
        report_interval_ms: float = REPORT_INTERVAL_MS,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        """Initialize.

        Args:
            on_report: Called with the averaged FPS at each report
            report_interval_ms: Minimum wall-clock time between two reports
            clock: Monotonic clock in seconds
        """
        self.on_report = on_report
        self.report_interval_ms = report_interval_ms
        self._clock = clock
        self._sum_ms = 0.0
        self._count = 0
        self._start_ms: Optional[float] = None
        self._last_report_ms = self._now_ms()
        self.last_fps: Optional[float] = None

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def begin(self) -> None:
        """Mark the start of an inference call."""
        self._start_ms = self._now_ms()

    def end(self) -> Optional[float]:
        """Mark the end of an inference call; return the FPS if a report is due."""
        if self._start_ms is None:
            return None
        end_ms = self._now_ms()
        return self.record(end_ms - self._start_ms, end_ms)

    def record(self, latency_ms: float, now_ms: float) -> Optional[float]:
        """Accumulate one latency sample taken at ``now_ms``."""
        self._start_ms = None
        self._sum_ms += latency_ms
        self._count += 1
        if now_ms - self._last_report_ms < self.report_interval_ms:
            return None

        average_ms = self._sum_ms / self._count
        self._sum_ms = 0.0
        self._count = 0
        self._last_report_ms = now_ms
        fps = 1000.0 / average_ms if average_ms > 0 else float("inf")
        self.last_fps = fps
        logger.debug(f"Inference: {fps:.1f} FPS (avg {average_ms:.2f} ms)")
        if self.on_report is not None:
            self.on_report(fps)
        return fps


class DetectionLoop:
    """Thread running detector inference and writing the shared pose."""

    def __init__(
        self,
        frame_source: FrameSource,
        detector_factory: DetectorFactory,
        state: SharedState,
        profile: AnchorProfile = IRIS_PROFILE,
        model: str = "mediapipe_face_mesh",
        backend: str = "cpu",
        flags: Optional[Dict[str, Any]] = None,
        runtime_configurator: Optional[RuntimeConfigurator] = None,
        renderer: Optional[Renderer] = None,
        on_alert: Optional[Callable[[HeadPoseRelayError], None]] = None,
        on_fps: Optional[Callable[[float], None]] = None,
        profile_for_model: Optional[ProfileResolver] = None,
        on_profile_change: Optional[Callable[[AnchorProfile], None]] = None,
        idle_sleep_s: float = 0.005,
    ) -> None:
        """Initialize.

        Args:
            frame_source: Source of camera frames
            detector_factory: Builds a detector from (model, backend, flags)
            state: Shared state; the loop writes ``state.pose``
            profile: Anchor profile for the pose estimator
            model: Initial detector model name
            backend: Initial runtime backend name
            flags: Initial runtime flags
            runtime_configurator: Applies backend/flags before a detector is built
            renderer: Draws the frame and the usable faces (None when no result)
            on_alert: Receives user-visible detector failures
            on_fps: Receives averaged inference FPS samples
            profile_for_model: Default anchor profile of a model, installed when a
                swap changes the model
            on_profile_change: Called with the new profile whenever it changes
            idle_sleep_s: Pause between two ticks of the worker thread
        """
        self.frame_source = frame_source
        self.detector_factory = detector_factory
        self.state = state
        self.profile = profile
        self.model = model
        self.backend = backend
        self.flags: Dict[str, Any] = dict(flags or {})
        self.runtime_configurator = runtime_configurator
        self.renderer = renderer
        self.on_alert = on_alert
        self.profile_for_model = profile_for_model
        self.on_profile_change = on_profile_change
        self.idle_sleep_s = idle_sleep_s

        self.stats = LatencyStats(on_report=on_fps)
        self.last_error: Optional[HeadPoseRelayError] = None
        self._landmark_warning_sent = False

        self._slot = DetectorSlot()
        self._detector_state = DetectorState.IDLE
        self._pending: Optional[SwapRequest] = None
        self._swap_lock = threading.Lock()

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def detector_state(self) -> DetectorState:
        """Current lifecycle state."""
        return self._detector_state

    @property
    def has_detector(self) -> bool:
        """True if a detector is installed."""
        return self._slot.handle is not None

    @property
    def swap_pending(self) -> bool:
        """True while a swap is requested or being applied."""
        with self._swap_lock:
            return self._pending is not None or self._detector_state is DetectorState.SWAPPING

    def _alert(self, error: HeadPoseRelayError) -> None:
        self.last_error = error
        logger.error(str(error))
        if self.on_alert is not None:
            try:
                self.on_alert(error)
            except Exception as e:
                logger.warning(f"Alert handler failed: {e}")

    def _build_detector(self, request: SwapRequest) -> bool:
        """Configure the runtime if needed, then build into the slot.

        On failure the loop moves to FAILED and an alert is raised.
        """

        def build() -> Detector:
            if request.needs_runtime_reset and self.runtime_configurator is not None:
                self.runtime_configurator(request.backend, request.flags)
            return self.detector_factory(request.model, request.backend, request.flags)

        try:
            self._slot.replace(build)
        except Exception as e:
            self._detector_state = DetectorState.FAILED
            error = e if isinstance(e, DetectorConstructionFailed) else DetectorConstructionFailed(
                f"Could not create detector {request.model!r} on {request.backend!r}: {e}"
            )
            self._alert(error)
            return False
        logger.info(f"Detector ready: {request.model} ({request.backend})")
        return True

    def start_detector(self) -> bool:
        """Build the initial detector: IDLE -> DETECTING, or FAILED."""
        request = SwapRequest(
            model=self.model, backend=self.backend, flags=dict(self.flags), backend_changed=True,
        )
        if self._build_detector(request):
            self._detector_state = DetectorState.DETECTING
        return self.has_detector

    def request_swap(
        self,
        model: Optional[str] = None,
        backend: Optional[str] = None,
        flags: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Ask for a new detector. Thread-safe; collapses with any pending request."""
        with self._swap_lock:
            pending = self._pending
            if pending is None:
                pending = SwapRequest(model=self.model, backend=self.backend, flags=dict(self.flags))
            if model is not None:
                pending.model = model
            if backend is not None:
                pending.backend = backend
                pending.backend_changed = True
            if flags:
                pending.flags.update(flags)
                pending.flags_changed = True
            self._pending = pending
        logger.debug(f"Swap requested: model={pending.model} backend={pending.backend}")

    def _take_pending(self) -> Optional[SwapRequest]:
        with self._swap_lock:
            request, self._pending = self._pending, None
            if request is not None:
                self._detector_state = DetectorState.SWAPPING
            return request

    def apply_pending_swap(self) -> bool:
        """Apply any pending swap. Returns True if a swap happened.

        Requests that arrive while a detector is being built are folded into
        the same swap. Construction is synchronous and cannot be abandoned, so
        the superseded model is still built (and closed right away) before the
        latest one; only the latest request ends up installed and the state
        stays SWAPPING across both builds.

        When the model changes and ``profile_for_model`` knows its default
        anchor profile, that profile is installed too.
        """
        request = self._take_pending()
        if request is None:
            return False

        previous_model = self.model

        while request is not None:
            self._slot.dispose()
            with self._swap_lock:
                self.model = request.model
                self.backend = request.backend
                self.flags = dict(request.flags)
            built = self._build_detector(request)
            with self._swap_lock:
                newer, self._pending = self._pending, None
                if newer is not None:
                    newer.backend_changed |= request.backend_changed
                    newer.flags_changed |= request.flags_changed
                    self._detector_state = DetectorState.SWAPPING
                elif built:
                    self._detector_state = DetectorState.DETECTING
            request = newer

        self._landmark_warning_sent = False
        if self.model != previous_model and self.profile_for_model is not None:
            profile = self.profile_for_model(self.model)
            if profile is not None:
                self.set_profile(profile)
        return True

    def set_profile(self, profile: AnchorProfile) -> None:
        """Use another anchor profile from the next frame on."""
        changed = profile != self.profile
        self.profile = profile
        self._landmark_warning_sent = False
        if not changed:
            return
        logger.info(f"Anchor profile: {profile.name} ({profile.variant})")
        if self.on_profile_change is not None:
            self.on_profile_change(profile)

    def _infer(self, frame: NDArray[np.uint8]) -> Optional[Sequence[Face]]:
        handle = self._slot.handle
        if handle is None:
            return None

        # FPS only counts the time spent in estimate_faces.
        self.stats.begin()
        try:
            faces = handle.estimate_faces(frame, flip_horizontal=False)
        except Exception as e:
            self._slot.dispose()
            self._detector_state = DetectorState.FAILED
            self._alert(InferenceFailed(f"Detector {self.model!r} failed: {e}"))
            faces = None
        self.stats.end()
        return faces

    def _update_pose(self, face: Face, frame: NDArray[np.uint8]) -> Optional[Pose]:
        height, width = frame.shape[:2]
        try:
            pose = estimate(
                face.keypoints,
                scale=self.state.calibration.scale,
                frame_size=(width, height),
                profile=self.profile,
                user_gain=self.state.gain.value,
            )
        except MissingLandmark as e:
            # Usually a model/profile mismatch: every frame fails the same way.
            if not self._landmark_warning_sent:
                self._landmark_warning_sent = True
                logger.warning(f"Detector {self.model!r} gives no landmarks for profile {self.profile.name!r}: {e}")
            return None
        except EstimationError as e:
            logger.debug(f"Skipping pose update: {e}")
            return None
        self.state.pose.set(pose)
        return pose

    def tick(self) -> Optional[Pose]:
        """Run one frame. Returns the new pose, or None if it was not updated."""
        self.apply_pending_swap()

        frame = self.frame_source.get_frame()
        if frame is None:
            return None

        faces = self._infer(frame)

        # A result obtained while a swap is pending may come from the old
        # detector and must not be used.
        usable = bool(faces) and not self.swap_pending
        pose = self._update_pose(faces[0], frame) if faces and usable else None

        if self.renderer is not None:
            self.renderer(frame, faces if usable else None)
        return pose

    def start(self) -> None:
        """Start the detection loop in a thread."""
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.working_loop, daemon=True, name="detection-loop")
        self._thread.start()
        logger.debug("Detection loop started")

    def stop(self) -> None:
        """Stop the loop and release the detector."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        self._slot.dispose()
        self._detector_state = DetectorState.IDLE
        logger.debug("Detection loop stopped")

    def working_loop(self) -> None:
        """Build the detector if needed, then tick until stopped."""
        if self._detector_state is DetectorState.IDLE:
            self.start_detector()

        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Detection loop error: {e}")
                self._stop_event.wait(0.1)
                continue
            self._stop_event.wait(self.idle_sleep_s)

        logger.debug("Detection loop thread exited")

    def status_lines(self) -> List[str]:
        """Short status lines for the control surface."""
        lines = [f"detector: {self.model} on {self.backend} ({self._detector_state.value})"]
        lines.append(f"profile: {self.profile.name} ({self.profile.variant})")
        if self.stats.last_fps is not None:
            lines.append(f"inference: {self.stats.last_fps:.1f} FPS")
        if self.last_error is not None:
            lines.append(f"last error: {self.last_error}")
        return lines
