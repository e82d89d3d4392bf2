"""Detector output types shared by detectors and the pose estimator."""

from typing import List, Optional, Sequence
from dataclasses import field, dataclass


Selector = str | int


@dataclass(frozen=True)
class Keypoint:
    """One landmark produced by a detector, in pixel units.

    A keypoint can be addressed either by its semantic ``name`` (for example
    ``"leftIris"`` or ``"leftEarTragion"``) or by its fixed mesh ``index``.
    Several keypoints may share a name (iris clusters).
    """

    x: float
    y: float
    z: float = 0.0
    name: Optional[str] = None
    index: Optional[int] = None

    def matches(self, selector: Selector) -> bool:
        """Return True if this keypoint is addressed by ``selector``."""
        if isinstance(selector, int):
            return self.index == selector
        return self.name == selector


@dataclass
class Face:
    """One face result: its keypoints and an optional detection score."""

    keypoints: List[Keypoint] = field(default_factory=list)
    score: Optional[float] = None


def select_keypoints(keypoints: Sequence[Keypoint], selectors: Sequence[Selector]) -> List[Keypoint]:
    """Return every keypoint addressed by any of ``selectors``, in input order."""
    return [kp for kp in keypoints if any(kp.matches(sel) for sel in selectors)]
