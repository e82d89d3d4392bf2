"""OpenCV camera frame source."""

import logging
import threading
from typing import Any, Optional

import numpy as np
from numpy.typing import NDArray


logger = logging.getLogger(__name__)


class OpenCVFrameSource:
    """Reads BGR frames from an OpenCV capture device."""

    def __init__(self, index: int = 0, width: Optional[int] = None, height: Optional[int] = None) -> None:
        """Open the capture device.

        Args:
            index: OpenCV camera index
            width: Requested frame width, if any
            height: Requested frame height, if any

        Raises:
            RuntimeError: if the camera cannot be opened
        """
        import cv2

        self.index = index
        self._capture: Any = cv2.VideoCapture(index)
        if not self._capture.isOpened():
            raise RuntimeError(f"Camera {index} could not be opened")
        if width is not None:
            self._capture.set(cv2.CAP_PROP_FRAME_WIDTH, width)
        if height is not None:
            self._capture.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
        self._lock = threading.Lock()
        logger.info(f"Camera {index} opened")

    def get_frame(self) -> Optional[NDArray[np.uint8]]:
        """Grab the next frame, or None if the read failed."""
        with self._lock:
            ok, frame = self._capture.read()
        if not ok:
            logger.debug("Camera read failed")
            return None
        return frame  # type: ignore[no-any-return]

    def release(self) -> None:
        """Release the capture device."""
        with self._lock:
            self._capture.release()
        logger.info(f"Camera {self.index} released")
