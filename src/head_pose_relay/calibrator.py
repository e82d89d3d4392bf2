"""Scale calibration against the synthesizer's head diameter parameter."""

import math
import logging
from typing import Any, Dict

import requests

from head_pose_relay.state import LinkStatus, SharedState
from head_pose_relay.errors import ProtocolError, CalibrationFailed
from head_pose_relay.protocol import HEAD_DIAMETER, find_parameter
from head_pose_relay.control_client import ControlClient


logger = logging.getLogger(__name__)

CENTIMETERS_PER_METER = 100.0


def head_diameter_meters(entry: Dict[str, Any]) -> float:
    """Convert a ``Head Diameter`` result entry (centimeters) to meters.

    Raises:
        CalibrationFailed: the entry has no usable positive numeric value.
    """
    raw = entry.get("text", entry.get("value"))
    try:
        centimeters = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise CalibrationFailed(f"{HEAD_DIAMETER} value is not numeric: {raw!r}") from None
    meters = centimeters / CENTIMETERS_PER_METER
    if not (math.isfinite(meters) and meters > 0):
        raise CalibrationFailed(f"{HEAD_DIAMETER} must be > 0, got {raw!r}")
    return meters


class Calibrator:
    """Owns the connect/disconnect handshake and the calibration scale."""

    def __init__(self, client: ControlClient, state: SharedState) -> None:
        """Initialize.

        Args:
            client: Control client for the synthesizer endpoint
            state: Shared state holding the calibration cell and link status
        """
        self.client = client
        self.state = state

    def calibrate(self) -> float:
        """Query the head diameter once and store it as the new scale.

        On any failure the connected flag is cleared and the previous scale
        is kept unchanged.

        Returns:
            The new scale in meters.

        Raises:
            CalibrationFailed: request, response or value was unusable.
        """
        try:
            results = self.client.get_parameters()
            entry = find_parameter(results, HEAD_DIAMETER)
            if entry is None:
                raise CalibrationFailed(f"{HEAD_DIAMETER} not found in parameter list")
            scale = head_diameter_meters(entry)
        except CalibrationFailed:
            self.state.calibration.mark_disconnected()
            raise
        except (requests.RequestException, ProtocolError, ValueError) as e:
            self.state.calibration.mark_disconnected()
            raise CalibrationFailed(f"Calibration request failed: {e}") from e

        self.state.calibration.apply_calibration(scale)
        logger.info(f"Calibrated head diameter: {scale:.3f} m")
        return scale

    def connect(self) -> bool:
        """Run the calibration handshake; report failure on the link status."""
        try:
            self.calibrate()
        except CalibrationFailed as e:
            logger.warning(f"Connect failed: {e}")
            self.state.link.mark(LinkStatus.FAIL)
            return False
        self.state.link.mark(LinkStatus.OK)
        return True

    def disconnect(self) -> None:
        """Stop future sends. Local only, the endpoint is not contacted."""
        self.state.calibration.mark_disconnected()
        logger.info("Disconnected from synthesizer")
