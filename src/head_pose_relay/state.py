"""Shared state exchanged between the detection loop and the dispatch loop.

The two loops run on independent threads and only meet here. Each cell is
guarded by its own lock; the detection loop is the single writer of the pose,
the dispatch loop only reads it.
"""

import math
import logging
import threading
from enum import Enum
from typing import Callable, Optional
from dataclasses import replace, dataclass


logger = logging.getLogger(__name__)

# Assumed physical head diameter used until the synthesizer reports one.
DEFAULT_HEAD_DIAMETER_M = 0.18
DEFAULT_INTERVAL_MS = 1000.0 / 10  # 10 Hz


@dataclass
class Pose:
    """Head position (scaled, synthesizer units) and yaw-like angle in degrees."""

    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    angle: float = 0.0


class PoseCell:
    """Latest-value cell for the head pose (single writer, many readers)."""

    def __init__(self, initial: Pose | None = None) -> None:
        """Initialize with an optional starting pose."""
        self._pose = initial if initial is not None else Pose()
        self._lock = threading.Lock()
        self._sequence = 0

    def get(self) -> Pose:
        """Return a copy of the current pose."""
        with self._lock:
            return replace(self._pose)

    def set(self, pose: Pose) -> None:
        """Overwrite the current pose in place."""
        with self._lock:
            self._pose.x = pose.x
            self._pose.y = pose.y
            self._pose.z = pose.z
            self._pose.angle = pose.angle
            self._sequence += 1

    @property
    def sequence(self) -> int:
        """Number of successful overwrites since creation."""
        with self._lock:
            return self._sequence


class CalibrationState:
    """Calibration scale (meters) and the connected flag gating dispatch."""

    def __init__(self, default_scale: float = DEFAULT_HEAD_DIAMETER_M) -> None:
        """Initialize with a static fallback scale, disconnected."""
        if not (math.isfinite(default_scale) and default_scale > 0):
            raise ValueError(f"Calibration scale must be > 0, got {default_scale}")
        self._scale = default_scale
        self._connected = False
        self._lock = threading.Lock()

    @property
    def scale(self) -> float:
        """Current scale factor in meters."""
        with self._lock:
            return self._scale

    @property
    def connected(self) -> bool:
        """True only if the last calibration round-trip succeeded."""
        with self._lock:
            return self._connected

    def snapshot(self) -> tuple[float, bool]:
        """Return ``(scale, connected)`` read under a single lock."""
        with self._lock:
            return self._scale, self._connected

    def apply_calibration(self, scale: float) -> None:
        """Store a freshly measured scale and mark the link connected."""
        if not (math.isfinite(scale) and scale > 0):
            raise ValueError(f"Calibration scale must be > 0, got {scale}")
        with self._lock:
            self._scale = scale
            self._connected = True

    def mark_disconnected(self) -> None:
        """Clear the connected flag; the scale is left untouched."""
        with self._lock:
            self._connected = False


class DispatchConfig:
    """Runtime-adjustable dispatch interval."""

    def __init__(self, interval_ms: float = DEFAULT_INTERVAL_MS) -> None:
        """Initialize with the interval between two dispatch ticks."""
        self._lock = threading.Lock()
        self._interval_ms = self._validate(interval_ms)

    @staticmethod
    def _validate(interval_ms: float) -> float:
        interval_ms = float(interval_ms)
        if not (math.isfinite(interval_ms) and interval_ms > 0):
            raise ValueError(f"Dispatch interval must be > 0 ms, got {interval_ms}")
        return interval_ms

    @property
    def interval_ms(self) -> float:
        """Current interval in milliseconds."""
        with self._lock:
            return self._interval_ms

    @interval_ms.setter
    def interval_ms(self, value: float) -> None:
        value = self._validate(value)
        with self._lock:
            self._interval_ms = value
        logger.info(f"Dispatch interval set to {value:.1f} ms")

    def set_rate_hz(self, rate_hz: float) -> None:
        """Set the interval from a rate in Hz."""
        if not (math.isfinite(rate_hz) and rate_hz > 0):
            raise ValueError(f"Dispatch rate must be > 0 Hz, got {rate_hz}")
        self.interval_ms = 1000.0 / rate_hz


class LinkStatus(Enum):
    """Outcome of the last exchange with the synthesizer."""

    UNKNOWN = "unknown"
    OK = "ok"
    FAIL = "fail"


class LinkState:
    """Link status indicator with an optional change listener."""

    def __init__(self, on_change: Optional[Callable[[LinkStatus], None]] = None) -> None:
        """Initialize in the UNKNOWN status."""
        self._status = LinkStatus.UNKNOWN
        self._lock = threading.Lock()
        self.on_change = on_change

    @property
    def status(self) -> LinkStatus:
        """Current link status."""
        with self._lock:
            return self._status

    def mark(self, status: LinkStatus) -> None:
        """Set the link status, notifying the listener when it changes."""
        with self._lock:
            changed = status is not self._status
            self._status = status
        if changed:
            logger.debug(f"Link status -> {status.value}")
            if self.on_change is not None:
                self.on_change(status)


class UserGain:
    """User scale multiplier applied on top of the calibration scale."""

    def __init__(self, value: float = 1.0) -> None:
        """Initialize with the starting gain."""
        self._lock = threading.Lock()
        self._value = self._validate(value)

    @staticmethod
    def _validate(value: float) -> float:
        value = float(value)
        if not (math.isfinite(value) and value > 0):
            raise ValueError(f"User gain must be > 0, got {value}")
        return value

    @property
    def value(self) -> float:
        """Current gain."""
        with self._lock:
            return self._value

    @value.setter
    def value(self, value: float) -> None:
        value = self._validate(value)
        with self._lock:
            self._value = value


@dataclass
class SharedState:
    """Everything the two loops share, passed explicitly to both."""

    pose: PoseCell
    calibration: CalibrationState
    dispatch: DispatchConfig
    link: LinkState
    gain: UserGain

    @classmethod
    def create(
        cls,
        interval_ms: float = DEFAULT_INTERVAL_MS,
        default_scale: float = DEFAULT_HEAD_DIAMETER_M,
        user_gain: float = 1.0,
    ) -> "SharedState":
        """Build a fresh state bundle with default values."""
        return cls(
            pose=PoseCell(),
            calibration=CalibrationState(default_scale),
            dispatch=DispatchConfig(interval_ms),
            link=LinkState(),
            gain=UserGain(user_gain),
        )
