import os
import logging
from typing import Iterable

from dotenv import find_dotenv, load_dotenv

from head_pose_relay.pose_estimator import PROFILES


logger = logging.getLogger(__name__)

# Locate .env file (search upward from current working directory)
dotenv_path = find_dotenv(usecwd=True)

if dotenv_path:
    # Load .env and override environment variables
    load_dotenv(dotenv_path=dotenv_path, override=True)
    logger.info(f"Configuration loaded from {dotenv_path}")
else:
    logger.warning("No .env file found, using environment variables")


def _positive_float(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        value = float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise RuntimeError(f"{name} must be > 0, got {value}")
    return value


def _non_negative_int(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from None
    if value < 0:
        raise RuntimeError(f"{name} must be >= 0, got {value}")
    return value


def _choice(name: str, default: str, choices: Iterable[str]) -> str:
    value = os.getenv(name, default)
    allowed = sorted(choices)
    if value not in allowed:
        raise RuntimeError(f"{name} must be one of {allowed}, got {value!r}")
    return value


class Config:
    """Configuration class for the head pose relay."""

    ENDPOINT_URL = os.getenv("HEAD_POSE_ENDPOINT", "http://localhost:8081/jsonrpc")
    INTERVAL_MS = _positive_float("HEAD_POSE_INTERVAL_MS", "100")
    REQUEST_TIMEOUT_S = _positive_float("HEAD_POSE_REQUEST_TIMEOUT_S", "1.0")
    USER_GAIN = _positive_float("HEAD_POSE_USER_GAIN", "1.0")

    PROFILE = _choice("HEAD_POSE_PROFILE", "iris", PROFILES)
    MODEL = os.getenv("HEAD_POSE_MODEL", "mediapipe_face_mesh")
    BACKEND = os.getenv("HEAD_POSE_BACKEND", "cpu")

    CAMERA_INDEX = _non_negative_int("HEAD_POSE_CAMERA_INDEX", "0")

    logger.debug(f"Endpoint: {ENDPOINT_URL}, interval: {INTERVAL_MS} ms")
    logger.debug(f"Profile: {PROFILE}, model: {MODEL} ({BACKEND})")


config = Config()
