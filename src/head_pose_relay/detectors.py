"""MediaPipe landmark detectors behind the detection loop's detector interface.

mediapipe is imported lazily so the rest of the package works without the
``vision`` extra installed.
"""

import logging
from typing import Any, Dict, List, Callable, Optional, Sequence

import numpy as np
from numpy.typing import NDArray

from head_pose_relay.errors import DetectorConstructionFailed
from head_pose_relay.keypoints import Face, Keypoint
from head_pose_relay.pose_estimator import AnchorProfile, get_profile


logger = logging.getLogger(__name__)

SUPPORTED_BACKENDS = ("cpu",)

# Refined face mesh iris landmarks (478-point mesh).
MESH_CONTOURS: Dict[str, tuple[int, ...]] = {
    "leftIris": (474, 475, 476, 477),
    "rightIris": (469, 470, 471, 472),
}
MESH_NAMES: Dict[int, str] = {index: name for name, indices in MESH_CONTOURS.items() for index in indices}

# Order of MediaPipe face detection relative keypoints.
FACE_DETECTOR_KEYPOINTS = (
    "rightEye",
    "leftEye",
    "noseTip",
    "mouthCenter",
    "rightEarTragion",
    "leftEarTragion",
)


def _to_rgb(frame: NDArray[np.uint8], flip_horizontal: bool) -> NDArray[np.uint8]:
    """BGR camera frame to a contiguous RGB array, optionally mirrored."""
    rgb = frame[:, :, ::-1]
    if flip_horizontal:
        rgb = rgb[:, ::-1]
    return np.ascontiguousarray(rgb)


class MediaPipeFaceMeshDetector:
    """Face mesh with refined iris landmarks; keypoints carry index and contour name."""

    def __init__(
        self,
        max_num_faces: int = 1,
        refine_landmarks: bool = True,
        min_detection_confidence: float = 0.5,
        min_tracking_confidence: float = 0.5,
        static_image_mode: bool = False,
    ) -> None:
        """Initialize the MediaPipe face mesh solution."""
        import mediapipe as mp

        self._mesh = mp.solutions.face_mesh.FaceMesh(
            static_image_mode=static_image_mode,
            max_num_faces=max_num_faces,
            refine_landmarks=refine_landmarks,
            min_detection_confidence=min_detection_confidence,
            min_tracking_confidence=min_tracking_confidence,
        )

    def estimate_faces(self, frame: NDArray[np.uint8], flip_horizontal: bool = False) -> List[Face]:
        """Run the mesh on a BGR frame; coordinates are returned in pixels."""
        height, width = frame.shape[:2]
        results = self._mesh.process(_to_rgb(frame, flip_horizontal))
        if not results.multi_face_landmarks:
            return []

        faces = []
        for face_landmarks in results.multi_face_landmarks:
            keypoints = [
                Keypoint(
                    x=lm.x * width,
                    y=lm.y * height,
                    # MediaPipe z uses roughly the same scale as x
                    z=lm.z * width,
                    name=MESH_NAMES.get(i),
                    index=i,
                )
                for i, lm in enumerate(face_landmarks.landmark)
            ]
            faces.append(Face(keypoints=keypoints))
        return faces

    def close(self) -> None:
        """Release the MediaPipe graph."""
        self._mesh.close()


class MediaPipeFaceDetector:
    """Short-range face detector with six named keypoints (eyes, nose, mouth, ear tragions)."""

    def __init__(self, model_selection: int = 0, min_detection_confidence: float = 0.5) -> None:
        """Initialize the MediaPipe face detection solution."""
        import mediapipe as mp

        self._detector = mp.solutions.face_detection.FaceDetection(
            model_selection=model_selection,
            min_detection_confidence=min_detection_confidence,
        )

    def estimate_faces(self, frame: NDArray[np.uint8], flip_horizontal: bool = False) -> List[Face]:
        """Run face detection on a BGR frame; keypoints in pixels, z = 0."""
        height, width = frame.shape[:2]
        results = self._detector.process(_to_rgb(frame, flip_horizontal))
        if not results.detections:
            return []

        faces = []
        for detection in results.detections:
            relative = detection.location_data.relative_keypoints
            keypoints = [
                Keypoint(x=kp.x * width, y=kp.y * height, z=0.0, name=name, index=i)
                for i, (name, kp) in enumerate(zip(FACE_DETECTOR_KEYPOINTS, relative))
            ]
            score = float(detection.score[0]) if detection.score else None
            faces.append(Face(keypoints=keypoints, score=score))
        return faces

    def close(self) -> None:
        """Release the MediaPipe graph."""
        self._detector.close()


DETECTOR_MODELS: Dict[str, Callable[..., Any]] = {
    "mediapipe_face_mesh": MediaPipeFaceMeshDetector,
    "mediapipe_face_detector": MediaPipeFaceDetector,
}

# Anchor profile matching the landmarks each model produces.
MODEL_PROFILES: Dict[str, str] = {
    "mediapipe_face_mesh": "iris",
    "mediapipe_face_detector": "ear_tragion",
}


def configure_runtime(backend: str, flags: Dict[str, Any]) -> None:
    """Validate the requested runtime before a detector is built."""
    if backend not in SUPPORTED_BACKENDS:
        raise DetectorConstructionFailed(
            f"Backend {backend!r} is not supported (available: {', '.join(SUPPORTED_BACKENDS)})"
        )
    logger.info(f"Detector runtime: backend={backend} flags={flags}")


def create_detector(model: str, backend: str, flags: Dict[str, Any]) -> Any:
    """Build a detector by model name; ``flags`` are passed as detector options.

    Raises:
        DetectorConstructionFailed: unknown model, bad option or load error.
    """
    try:
        constructor = DETECTOR_MODELS[model]
    except KeyError:
        raise DetectorConstructionFailed(
            f"Unknown detector model {model!r}. Available: {sorted(DETECTOR_MODELS)}"
        ) from None

    try:
        return constructor(**flags)
    except Exception as e:
        raise DetectorConstructionFailed(f"Could not create {model!r} on {backend!r}: {e}") from e


def default_profile(model: str) -> Optional[AnchorProfile]:
    """Anchor profile to use with ``model``, or None if the model has no default."""
    name = MODEL_PROFILES.get(model)
    return get_profile(name) if name is not None else None


def available_models() -> Sequence[str]:
    """Names accepted by :func:`create_detector`."""
    return sorted(DETECTOR_MODELS)
