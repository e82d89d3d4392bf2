"""Entrypoint for the head pose relay."""

import argparse
from typing import Optional, Sequence

from head_pose_relay.utils import parse_args, parse_flags, setup_logger


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Entrypoint for the head pose relay."""
    args, _ = parse_args(argv)
    run(args)


def run(args: argparse.Namespace) -> None:
    """Wire the shared state, both loops and the console, then run until quit."""
    # Camera and detector imports pull in optional vision dependencies
    from head_pose_relay.state import SharedState
    from head_pose_relay.camera import OpenCVFrameSource
    from head_pose_relay.console import ConsoleControlSurface
    from head_pose_relay.detectors import create_detector, default_profile, configure_runtime
    from head_pose_relay.calibrator import Calibrator
    from head_pose_relay.dispatch_loop import DispatchLoop
    from head_pose_relay.control_client import ControlClient
    from head_pose_relay.detection_loop import DetectionLoop
    from head_pose_relay.pose_estimator import AnchorProfile, get_profile

    logger = setup_logger(args.debug)
    logger.info("Starting head pose relay")

    profile = get_profile(args.profile)
    state = SharedState.create(interval_ms=args.interval_ms, user_gain=args.gain)
    state.link.on_change = lambda status: logger.info(f"Link: {status.value}")

    client = ControlClient(args.endpoint, timeout=args.timeout)
    calibrator = Calibrator(client, state)

    camera = OpenCVFrameSource(args.camera, width=args.width, height=args.height)

    dispatch_loop = DispatchLoop(client, state, variant=profile.variant)

    def on_profile_change(new_profile: AnchorProfile) -> None:
        dispatch_loop.variant = new_profile.variant

    detection_loop = DetectionLoop(
        frame_source=camera,
        detector_factory=create_detector,
        state=state,
        profile=profile,
        model=args.model,
        backend=args.backend,
        flags=parse_flags(args.flag),
        runtime_configurator=configure_runtime,
        on_alert=lambda error: print(f"[detector] {error}", flush=True),
        profile_for_model=default_profile,
        on_profile_change=on_profile_change,
    )
    console = ConsoleControlSurface(state, calibrator, detection_loop, dispatch_loop)

    if args.connect:
        calibrator.connect()

    detection_loop.start()
    dispatch_loop.start()
    try:
        console.run()
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        dispatch_loop.stop()
        detection_loop.stop()
        camera.release()
        client.close()
        logger.info("Head pose relay stopped")


if __name__ == "__main__":
    main()
