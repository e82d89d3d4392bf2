"""Line-based control surface.

Reads commands from a text stream and turns them into intents on the
calibrator and the two loops:

    connect | disconnect        calibrate and start / stop sending
    rate <hz> | interval <ms>   change the dispatch rate (next tick)
    gain <x>                    user scale multiplier
    model <name>                swap the detector model and its default profile
    backend <name>              swap the runtime backend
    flag <key>=<value>          set a detector flag (swaps the detector)
    profile <name>              use another anchor profile
    send                        send the staged payload once
    payload                     print the staged payload
    status                      print link, pose and detector status
    help | quit
"""

import sys
import logging
from typing import Any, Callable, Iterable, Optional

from head_pose_relay.state import SharedState
from head_pose_relay.utils import parse_flag
from head_pose_relay.calibrator import Calibrator
from head_pose_relay.pose_estimator import get_profile
from head_pose_relay.dispatch_loop import DispatchLoop
from head_pose_relay.detection_loop import DetectionLoop


logger = logging.getLogger(__name__)

HELP = (__doc__ or "").split("\n\n", 1)[-1].rstrip()


class ConsoleControlSurface:
    """Translates console commands into control intents."""

    def __init__(
        self,
        state: SharedState,
        calibrator: Calibrator,
        detection_loop: DetectionLoop,
        dispatch_loop: DispatchLoop,
        output: Callable[[str], Any] = print,
    ) -> None:
        """Initialize with the components the commands act on."""
        self.state = state
        self.calibrator = calibrator
        self.detection_loop = detection_loop
        self.dispatch_loop = dispatch_loop
        self.output = output

    def handle(self, line: str) -> bool:
        """Execute one command line. Returns False when the user asked to quit."""
        parts = line.strip().split(maxsplit=1)
        if not parts:
            return True
        command, argument = parts[0].lower(), (parts[1].strip() if len(parts) > 1 else "")

        if command in ("quit", "exit", "q"):
            return False

        handler = getattr(self, f"_cmd_{command}", None)
        if handler is None:
            self.output(f"Unknown command: {command!r} (try 'help')")
            return True
        try:
            handler(argument)
        except ValueError as e:
            self.output(f"Invalid argument for {command!r}: {e}")
        return True

    def run(self, lines: Optional[Iterable[str]] = None) -> None:
        """Process commands until ``quit`` or end of input."""
        source = lines if lines is not None else sys.stdin
        for line in source:
            if not self.handle(line):
                break

    def _cmd_help(self, _: str) -> None:
        self.output(HELP)

    def _cmd_connect(self, _: str) -> None:
        if self.calibrator.connect():
            self.output(f"Connected, head diameter {self.state.calibration.scale:.3f} m")
        else:
            self.output("Connection failed (link: fail)")

    def _cmd_disconnect(self, _: str) -> None:
        self.calibrator.disconnect()
        self.output("Disconnected")

    def _cmd_rate(self, argument: str) -> None:
        self.state.dispatch.set_rate_hz(float(argument))
        self.output(f"Dispatch interval: {self.state.dispatch.interval_ms:.1f} ms")

    def _cmd_interval(self, argument: str) -> None:
        self.state.dispatch.interval_ms = float(argument)
        self.output(f"Dispatch interval: {self.state.dispatch.interval_ms:.1f} ms")

    def _cmd_gain(self, argument: str) -> None:
        self.state.gain.value = float(argument)
        self.output(f"User gain: {self.state.gain.value:g}")

    def _cmd_model(self, argument: str) -> None:
        if not argument:
            raise ValueError("model name required")
        self.detection_loop.request_swap(model=argument)
        self.output(f"Switching detector to {argument}")

    def _cmd_backend(self, argument: str) -> None:
        if not argument:
            raise ValueError("backend name required")
        self.detection_loop.request_swap(backend=argument)
        self.output(f"Switching backend to {argument}")

    def _cmd_flag(self, argument: str) -> None:
        key, value = parse_flag(argument)
        self.detection_loop.request_swap(flags={key: value})
        self.output(f"Detector flag {key}={value!r}")

    def _cmd_profile(self, argument: str) -> None:
        profile = get_profile(argument)
        self.detection_loop.set_profile(profile)
        self.output(f"Anchor profile: {profile.name} ({profile.variant})")

    def _cmd_send(self, _: str) -> None:
        if self.dispatch_loop.send_once() is None:
            self.output("All sends busy, update dropped")
        else:
            self.output("Sent")

    def _cmd_payload(self, _: str) -> None:
        self.output(self.dispatch_loop.staged_payload or "(nothing staged yet)")

    def _cmd_status(self, _: str) -> None:
        scale, connected = self.state.calibration.snapshot()
        pose = self.state.pose.get()
        self.output(f"link: {self.state.link.status.value}, connected: {connected}, scale: {scale:.3f} m")
        self.output(f"interval: {self.state.dispatch.interval_ms:.1f} ms, gain: {self.state.gain.value:g}")
        self.output(f"pose: x={pose.x:.3f} y={pose.y:.3f} z={pose.z:.3f} angle={pose.angle:.1f}")
        for line in self.detection_loop.status_lines():
            self.output(line)
