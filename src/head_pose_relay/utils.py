import logging
import argparse
from typing import Any, Dict, Tuple, Sequence, Optional

from head_pose_relay.config import config
from head_pose_relay.pose_estimator import PROFILES


def parse_args(argv: Optional[Sequence[str]] = None) -> Tuple[argparse.Namespace, list[str]]:
    """Parse command line arguments; defaults come from the environment config."""
    parser = argparse.ArgumentParser("Head pose relay")
    parser.add_argument("--endpoint", default=config.ENDPOINT_URL, help="Synthesizer JSON-RPC endpoint URL")
    parser.add_argument(
        "--interval-ms",
        type=float,
        default=config.INTERVAL_MS,
        help="Milliseconds between two parameter updates (default: 100, i.e. 10 Hz)",
    )
    parser.add_argument("--timeout", type=float, default=config.REQUEST_TIMEOUT_S, help="HTTP timeout in seconds")
    parser.add_argument(
        "--profile",
        choices=sorted(PROFILES),
        default=config.PROFILE,
        help="Anchor landmarks and conventions used for the pose",
    )
    parser.add_argument("--model", default=config.MODEL, help="Landmark detector model")
    parser.add_argument("--backend", default=config.BACKEND, help="Detector runtime backend")
    parser.add_argument(
        "--flag",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Detector runtime flag (repeatable)",
    )
    parser.add_argument("--gain", type=float, default=config.USER_GAIN, help="User scale multiplier")
    parser.add_argument("--camera", type=int, default=config.CAMERA_INDEX, help="OpenCV camera index")
    parser.add_argument("--width", type=int, default=None, help="Requested camera width")
    parser.add_argument("--height", type=int, default=None, help="Requested camera height")
    parser.add_argument("--connect", default=False, action="store_true", help="Connect at startup")
    parser.add_argument("--debug", default=False, action="store_true", help="Enable debug logging")
    return parser.parse_known_args(argv)


def parse_flag(text: str) -> Tuple[str, Any]:
    """Parse ``key=value`` into a flag, converting booleans and numbers."""
    key, sep, raw = text.partition("=")
    key = key.strip()
    if not sep or not key:
        raise ValueError(f"Expected KEY=VALUE, got {text!r}")
    raw = raw.strip()
    lowered = raw.lower()
    if lowered in ("true", "false"):
        return key, lowered == "true"
    for cast in (int, float):
        try:
            return key, cast(raw)
        except ValueError:
            pass
    return key, raw


def parse_flags(items: Sequence[str]) -> Dict[str, Any]:
    """Parse a list of ``key=value`` items."""
    return dict(parse_flag(item) for item in items)


def setup_logger(debug: bool) -> logging.Logger:
    """Setups the logger."""
    log_level = "DEBUG" if debug else "INFO"
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s:%(lineno)d | %(message)s",
    )
    logger = logging.getLogger(__name__)

    # Tame third-party noise (looser in DEBUG)
    if log_level == "DEBUG":
        logging.getLogger("urllib3").setLevel(logging.INFO)
        logging.getLogger("absl").setLevel(logging.INFO)
    else:
        logging.getLogger("urllib3").setLevel(logging.WARNING)
        logging.getLogger("absl").setLevel(logging.ERROR)
        logging.getLogger("mediapipe").setLevel(logging.ERROR)

    logging.getLogger("head_pose_relay").setLevel(log_level)
    return logger
