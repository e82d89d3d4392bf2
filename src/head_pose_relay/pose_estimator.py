"""Head pose geometry: named landmarks to a scaled position and yaw-like angle.

The estimator is a pure function of its inputs. Which landmarks act as the two
anchors, the angle sign/offset and the device origin offsets are carried by an
:class:`AnchorProfile`, since the supported detectors disagree on all of them:

- ``iris``: face mesh iris clusters, 3D update, angle from the x/z deltas
  mapped so that a frontal face reads 0 degrees.
- ``ear_tragion``: face detector ear tragions, 2D update with positions
  normalized to the frame.
- ``mesh_cheeks``: fixed face mesh indices 234 / 454 (cheek contour), 3D update.
"""

import math
import logging
from typing import Dict, Sequence
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from head_pose_relay.state import Pose
from head_pose_relay.errors import MissingLandmark, DegenerateInput
from head_pose_relay.keypoints import Keypoint, Selector, select_keypoints


logger = logging.getLogger(__name__)

_AXES = {"x": 0, "y": 1, "z": 2}

# PianoTeq default head position, in meters, for its x / y / z parameters.
PIANOTEQ_HEAD_OFFSET = (0.620, 1.300, -0.36)


@dataclass(frozen=True)
class AnchorProfile:
    """Anchor selection and sign conventions for one detector flavour."""

    name: str
    low_anchor: tuple[Selector, ...]
    high_anchor: tuple[Selector, ...]
    angle_axes: tuple[str, str] = ("x", "z")
    angle_sign: float = -1.0
    angle_offset_deg: float = 90.0
    center_fraction: float = 0.5
    axis_signs: tuple[float, float, float] = (1.0, 1.0, 1.0)
    offset: tuple[float, float, float] = (0.0, 0.0, 0.0)
    normalize_to_frame: bool = False
    variant: str = "3d"

    def __post_init__(self) -> None:
        """Reject profiles that cannot produce a pose."""
        if not self.low_anchor or not self.high_anchor:
            raise ValueError(f"Profile {self.name!r} needs selectors for both anchors")
        for axis in self.angle_axes:
            if axis not in _AXES:
                raise ValueError(f"Unknown angle axis {axis!r} in profile {self.name!r}")
        if self.variant not in ("2d", "3d"):
            raise ValueError(f"Unknown update variant {self.variant!r} in profile {self.name!r}")

    def swapped(self) -> "AnchorProfile":
        """Return the same profile with low and high anchors exchanged."""
        return AnchorProfile(
            name=f"{self.name}_swapped",
            low_anchor=self.high_anchor,
            high_anchor=self.low_anchor,
            angle_axes=self.angle_axes,
            angle_sign=self.angle_sign,
            angle_offset_deg=self.angle_offset_deg,
            center_fraction=self.center_fraction,
            axis_signs=self.axis_signs,
            offset=self.offset,
            normalize_to_frame=self.normalize_to_frame,
            variant=self.variant,
        )


IRIS_PROFILE = AnchorProfile(
    name="iris",
    low_anchor=("leftIris",),
    high_anchor=("rightIris",),
    offset=PIANOTEQ_HEAD_OFFSET,
)

EAR_TRAGION_PROFILE = AnchorProfile(
    name="ear_tragion",
    low_anchor=("leftEarTragion",),
    high_anchor=("rightEarTragion",),
    center_fraction=1.0,
    normalize_to_frame=True,
    variant="2d",
)

MESH_CHEEKS_PROFILE = AnchorProfile(
    name="mesh_cheeks",
    low_anchor=(454,),
    high_anchor=(234,),
    offset=PIANOTEQ_HEAD_OFFSET,
)

PROFILES: Dict[str, AnchorProfile] = {
    p.name: p for p in (IRIS_PROFILE, EAR_TRAGION_PROFILE, MESH_CHEEKS_PROFILE)
}


def get_profile(name: str) -> AnchorProfile:
    """Look up a built-in anchor profile by name."""
    try:
        return PROFILES[name]
    except KeyError:
        raise ValueError(f"Unknown anchor profile {name!r}. Available: {sorted(PROFILES)}") from None


def aggregate_anchor(
    keypoints: Sequence[Keypoint], selectors: Sequence[Selector], role: str,
) -> NDArray[np.float64]:
    """Mean position of every keypoint addressed by ``selectors``.

    Raises:
        MissingLandmark: no keypoint matches the selectors.
        DegenerateInput: keypoints matched but none has finite coordinates.
    """
    matched = select_keypoints(keypoints, selectors)
    if not matched:
        raise MissingLandmark(role, tuple(selectors))

    points = np.array([[kp.x, kp.y, kp.z] for kp in matched], dtype=np.float64)
    points = points[np.isfinite(points).all(axis=1)]
    if len(points) == 0:
        raise DegenerateInput(f"{role} anchor has no keypoint with finite coordinates")
    return points.mean(axis=0)


def midpoint_complement(
    frame_center: NDArray[np.float64], low: NDArray[np.float64], high: NDArray[np.float64],
) -> NDArray[np.float64]:
    """Per-axis ``center - (low - |low - high| / 2)``, before any scaling."""
    return frame_center - (low - np.abs(low - high) / 2)


def anchor_angle(low: NDArray[np.float64], high: NDArray[np.float64], profile: AnchorProfile) -> float:
    """Angle in degrees between the two anchors, with the profile's convention."""
    axis_a, axis_b = (_AXES[a] for a in profile.angle_axes)
    delta = low - high
    raw = math.degrees(math.atan2(delta[axis_a], delta[axis_b]))
    return profile.angle_sign * raw + profile.angle_offset_deg


def estimate(
    keypoints: Sequence[Keypoint],
    scale: float,
    frame_size: tuple[int, int],
    profile: AnchorProfile = IRIS_PROFILE,
    user_gain: float = 1.0,
) -> Pose:
    """Estimate the head pose from one face's keypoints.

    Args:
        keypoints: Keypoints of a single face, in pixel units.
        scale: Calibration scale (physical head diameter, meters).
        frame_size: ``(width, height)`` of the analysed frame in pixels.
        profile: Anchor selection and conventions.
        user_gain: User scale multiplier.

    Returns:
        A new Pose. Never contains NaN or infinite values.

    Raises:
        MissingLandmark: an anchor landmark is absent.
        DegenerateInput: anchors coincide or the geometry is not finite.
    """
    if not (scale > 0 and user_gain > 0):
        raise ValueError(f"scale and user_gain must be > 0 (got {scale}, {user_gain})")

    low = aggregate_anchor(keypoints, profile.low_anchor, "low")
    high = aggregate_anchor(keypoints, profile.high_anchor, "high")

    distance = float(np.linalg.norm(low - high))
    if not math.isfinite(distance) or distance == 0.0:
        raise DegenerateInput(f"Anchor distance is {distance}; cannot normalize scale")

    width, height = frame_size
    if profile.normalize_to_frame and (width <= 0 or height <= 0):
        raise DegenerateInput(f"Cannot normalize to a {width}x{height} frame")

    effective_scale = user_gain * scale / distance
    frame_center = np.array(
        [width * profile.center_fraction, height * profile.center_fraction, 0.0], dtype=np.float64,
    )

    position = midpoint_complement(frame_center, low, high) * effective_scale
    position = position * np.asarray(profile.axis_signs, dtype=np.float64)
    if profile.normalize_to_frame:
        position[0] /= width
        position[1] /= height
    position = position + np.asarray(profile.offset, dtype=np.float64)

    angle = anchor_angle(low, high, profile)

    if not (np.isfinite(position).all() and math.isfinite(angle)):
        raise DegenerateInput("Pose is not finite")

    return Pose(x=float(position[0]), y=float(position[1]), z=float(position[2]), angle=float(angle))
