"""Pytest configuration and shared fixtures for all tests."""

import sys
from typing import Any, Dict, List, Optional, Sequence
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import numpy as np
from numpy.typing import NDArray


# Ensure src is in path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from head_pose_relay.state import SharedState  # noqa: E402
from head_pose_relay.keypoints import Face, Keypoint  # noqa: E402


FRAME_WIDTH = 200
FRAME_HEIGHT = 100


# ---------------------------------------------------------------------------
# Detector Fakes
# ---------------------------------------------------------------------------


class FakeDetector:
    """Detector double counting inference and close calls."""

    def __init__(self, model: str, faces: Optional[List[Face]] = None) -> None:
        """Initialize with the faces returned by every inference."""
        self.model = model
        self.faces: List[Face] = faces if faces is not None else []
        self.error: Optional[Exception] = None
        self.calls = 0
        self.close_calls = 0
        self.flip_args: List[bool] = []
        self.on_estimate: Any = None

    def estimate_faces(self, frame: NDArray[np.uint8], flip_horizontal: bool = False) -> Sequence[Face]:
        """Return the configured faces, or raise the configured error."""
        self.calls += 1
        self.flip_args.append(flip_horizontal)
        if self.on_estimate is not None:
            self.on_estimate()
        if self.error is not None:
            raise self.error
        return self.faces

    def close(self) -> None:
        """Count closes."""
        self.close_calls += 1


class FakeDetectorFactory:
    """Builds FakeDetectors and remembers every construction."""

    def __init__(self, faces: Optional[List[Face]] = None) -> None:
        """Initialize with the faces every built detector returns."""
        self.faces = faces
        self.calls: List[tuple[str, str, Dict[str, Any]]] = []
        self.built: List[FakeDetector] = []
        self.fail_models: set[str] = set()
        self.on_build: Any = None

    def __call__(self, model: str, backend: str, flags: Dict[str, Any]) -> FakeDetector:
        """Build a detector, or raise for models listed in ``fail_models``."""
        self.calls.append((model, backend, dict(flags)))
        if self.on_build is not None:
            self.on_build(model)
        if model in self.fail_models:
            raise RuntimeError(f"cannot load {model}")
        detector = FakeDetector(model, self.faces)
        self.built.append(detector)
        return detector

    @property
    def models(self) -> List[str]:
        """Model names in construction order."""
        return [call[0] for call in self.calls]


# ---------------------------------------------------------------------------
# Keypoint Fixtures
# ---------------------------------------------------------------------------


def iris_cluster(name: str, cx: float, cy: float, cz: float = 0.0) -> List[Keypoint]:
    """Four keypoints around (cx, cy, cz) whose mean is exactly the centre."""
    return [
        Keypoint(cx - 2, cy, cz, name=name),
        Keypoint(cx + 2, cy, cz, name=name),
        Keypoint(cx, cy - 2, cz, name=name),
        Keypoint(cx, cy + 2, cz, name=name),
    ]


@pytest.fixture
def iris_keypoints() -> List[Keypoint]:
    """Frontal face: left iris at (100, 50), right iris at (40, 50), plus noise."""
    return (
        iris_cluster("leftIris", 100, 50)
        + iris_cluster("rightIris", 40, 50)
        + [Keypoint(70, 80, 0, name=None, index=1)]
    )


@pytest.fixture
def iris_face(iris_keypoints: List[Keypoint]) -> Face:
    """A face result built from the frontal iris keypoints."""
    return Face(keypoints=iris_keypoints)


# ---------------------------------------------------------------------------
# Loop Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def shared_state() -> SharedState:
    """Fresh shared state with default values."""
    return SharedState.create()


@pytest.fixture
def frame() -> NDArray[np.uint8]:
    """A black BGR frame matching the iris fixtures."""
    return np.zeros((FRAME_HEIGHT, FRAME_WIDTH, 3), dtype=np.uint8)


@pytest.fixture
def frame_source(frame: NDArray[np.uint8]) -> MagicMock:
    """Frame source always returning the same frame."""
    mock = MagicMock()
    mock.get_frame = MagicMock(return_value=frame)
    return mock


@pytest.fixture
def factory(iris_face: Face) -> FakeDetectorFactory:
    """Detector factory whose detectors always see the frontal face."""
    return FakeDetectorFactory(faces=[iris_face])


@pytest.fixture
def mock_session() -> MagicMock:
    """requests.Session double whose POSTs succeed with an empty result."""
    session = MagicMock()
    response = MagicMock()
    response.raise_for_status = MagicMock()
    response.json = MagicMock(return_value={"id": 1, "jsonrpc": "2.0", "result": []})
    session.post = MagicMock(return_value=response)
    return session
