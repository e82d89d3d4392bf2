"""Error taxonomy for the head pose relay.

Every condition below is recovered at loop level: a failing frame, detector,
calibration or delivery never terminates the process.
"""


class HeadPoseRelayError(Exception):
    """Base class for all relay errors."""


class EstimationError(HeadPoseRelayError):
    """The pose could not be estimated for this frame."""


class MissingLandmark(EstimationError):
    """A required anchor landmark is absent from the detector output."""

    def __init__(self, role: str, selectors: tuple[str | int, ...]) -> None:
        """Initialize with the anchor role and the selectors that matched nothing."""
        super().__init__(f"No keypoint found for {role} anchor (selectors: {list(selectors)})")
        self.role = role
        self.selectors = selectors


class DegenerateInput(EstimationError):
    """Anchor geometry does not allow a pose (empty cluster, zero distance, NaN)."""


class DetectorConstructionFailed(HeadPoseRelayError):
    """The landmark detector could not be built."""


class InferenceFailed(HeadPoseRelayError):
    """The landmark detector raised while estimating faces."""


class CalibrationFailed(HeadPoseRelayError):
    """The head diameter round-trip to the synthesizer did not succeed."""


class DeliveryFailed(HeadPoseRelayError):
    """A parameter update could not be delivered to the synthesizer."""


class ProtocolError(HeadPoseRelayError):
    """The synthesizer answered with something that is not a valid JSON-RPC result."""
