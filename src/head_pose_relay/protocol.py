"""Parameter identifiers and message bodies of the synthesizer control protocol."""

import json
from typing import Any, Dict, List, Iterable, Optional

from head_pose_relay.state import Pose
from head_pose_relay.errors import ProtocolError


JSONRPC_VERSION = "2.0"
GET_PARAMETERS = "getParameters"
SET_PARAMETERS = "setParameters"

HEAD_X = "Head.X"
HEAD_Y = "Head.Y"
HEAD_Z = "Head.Z"
HEAD_ANGLE = "Head Angle"
HEAD_DIAMETER = "Head Diameter"

PARAMETER_LABELS = {
    HEAD_X: "Head X position",
    HEAD_Y: "Head Y position",
    HEAD_Z: "Head Z position",
    HEAD_ANGLE: "Head Angle",
}


def build_update_params(pose: Pose, variant: str = "3d") -> List[Dict[str, Any]]:
    """Build the ``list`` of a ``setParameters`` call for one pose.

    The 3D variant sends text values and follows the synthesizer's axes: the
    camera depth goes to ``Head.Y`` and the camera height to ``Head.Z``. The 2D
    variant sends ``normalized_value`` for ``Head.X`` / ``Head.Y`` only.
    """
    if variant == "3d":
        values = ((HEAD_X, pose.x), (HEAD_Y, pose.z), (HEAD_Z, pose.y), (HEAD_ANGLE, pose.angle))
        return [{"id": pid, "name": PARAMETER_LABELS[pid], "text": str(value)} for pid, value in values]
    if variant == "2d":
        values = ((HEAD_X, pose.x), (HEAD_Y, pose.y))
        return [
            {"id": pid, "name": PARAMETER_LABELS[pid], "normalized_value": value} for pid, value in values
        ]
    raise ValueError(f"Unknown update variant: {variant!r}")


def build_request(request_id: int, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build a JSON-RPC 2.0 request object."""
    return {
        "id": request_id,
        "jsonrpc": JSONRPC_VERSION,
        "method": method,
        "params": params if params is not None else {},
    }


def serialize(message: Dict[str, Any]) -> str:
    """Serialize a message the way it is previewed and sent (2-space indent)."""
    return json.dumps(message, indent=2)


def extract_result(response: Any) -> List[Dict[str, Any]]:
    """Return the ``result`` list of a JSON-RPC response.

    Raises:
        ProtocolError: the response carries an error or no result list.
    """
    if not isinstance(response, dict):
        raise ProtocolError(f"Expected a JSON object, got {type(response).__name__}")
    if "error" in response and response["error"] is not None:
        raise ProtocolError(f"Remote error: {response['error']}")
    result = response.get("result")
    if not isinstance(result, list):
        raise ProtocolError("Response has no result list")
    return result


def find_parameter(results: Iterable[Any], parameter_id: str) -> Optional[Dict[str, Any]]:
    """Return the first result entry whose ``id`` equals ``parameter_id``."""
    for entry in results:
        if isinstance(entry, dict) and entry.get("id") == parameter_id:
            return entry
    return None
