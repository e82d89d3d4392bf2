"""JSON-RPC client for the synthesizer's remote control endpoint.

Requests are plain HTTP POSTs of a JSON-RPC 2.0 body. The client does not
retry; callers decide whether a failure matters.
"""

import logging
import itertools
import threading
from typing import Any, Dict, List, Optional

import requests

from head_pose_relay.protocol import (
    GET_PARAMETERS,
    SET_PARAMETERS,
    serialize,
    build_request,
    extract_result,
)


logger = logging.getLogger(__name__)

JSON_HEADERS = {"Content-Type": "application/json"}


class ControlClient:
    """Client for the synthesizer's JSON-RPC endpoint."""

    def __init__(self, endpoint_url: str, timeout: float = 1.0, session: Optional[requests.Session] = None):
        """Initialize control client.

        Args:
            endpoint_url: Full URL of the JSON-RPC endpoint
            timeout: Per-request timeout in seconds
            session: Optional pre-built requests session
        """
        self.endpoint_url = endpoint_url
        self.timeout = timeout
        self._session = session if session is not None else requests.Session()
        self._ids = itertools.count(1)
        self._ids_lock = threading.Lock()

    def next_id(self) -> int:
        """Return a fresh request id."""
        with self._ids_lock:
            return next(self._ids)

    def build(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Build a request object with a fresh id."""
        return build_request(self.next_id(), method, params)

    def post_json(self, body: str) -> requests.Response:
        """POST an already serialized JSON body.

        Raises:
            requests.RequestException: on network errors or HTTP error status
        """
        try:
            response = self._session.post(
                self.endpoint_url,
                data=body.encode("utf-8"),
                headers=JSON_HEADERS,
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response
        except requests.RequestException as e:
            logger.debug(f"POST to {self.endpoint_url} failed: {e}")
            raise

    def call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Send a request and return the decoded JSON response.

        Raises:
            requests.RequestException: on network errors or HTTP error status
            ValueError: if the response body is not JSON
        """
        response = self.post_json(serialize(self.build(method, params)))
        return response.json()

    def get_parameters(self) -> List[Dict[str, Any]]:
        """Fetch the synthesizer's parameter list.

        Raises:
            requests.RequestException: on network errors
            ProtocolError: if the response has no result list
            ValueError: if the response body is not JSON
        """
        try:
            return extract_result(self.call(GET_PARAMETERS))
        except requests.RequestException as e:
            logger.error(f"Failed to get parameters from {self.endpoint_url}: {e}")
            raise

    def set_parameters(self, parameters: List[Dict[str, Any]]) -> None:
        """Send a ``setParameters`` request and wait for the HTTP response."""
        try:
            self.post_json(serialize(self.build(SET_PARAMETERS, {"list": parameters})))
        except requests.RequestException as e:
            logger.error(f"Failed to set parameters on {self.endpoint_url}: {e}")
            raise

    def close(self) -> None:
        """Close the underlying HTTP session."""
        self._session.close()
