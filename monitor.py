#!/usr/bin/env python3
"""
Chime monitor - listen for the appliance chime and send notifications.

Wires the pieces together: config -> reference fingerprint -> scorer ->
match engine -> detection session on the capture device, with detections
logged to CSV and handed to the configured notifiers.
"""
import argparse
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import config_loader
from logger import get_logger, log_system_info, setup_logging_from_config
from chimedetect import (
    ArecordCapture,
    DetectionRepository,
    DetectionSession,
    DetectionSettings,
    MatchEngine,
    ReferenceLoadError,
    create_notifiers,
    create_scorer,
    load_reference,
)
from chimedetect.reporting import filter_recent_detections, generate_detection_report, load_detections

log = get_logger("monitor")


def build_session(config: Dict[str, Any], source=None) -> DetectionSession:
    """
    Assemble a detection session from configuration.

    Args:
        config: Loaded configuration
        source: Capture source (defaults to arecord on audio.device)

    Raises:
        ReferenceLoadError: If no reference fingerprint can be produced
    """
    reference = load_reference(config)
    scorer = create_scorer(config, reference)
    engine = MatchEngine(scorer, DetectionSettings.from_config(config))

    repository = DetectionRepository.from_config(config)
    listeners = [repository.save]
    listeners.extend(n.notify for n in create_notifiers(config))

    return DetectionSession.from_config(
        config,
        source or ArecordCapture(config),
        engine,
        listeners=listeners,
        on_health_change=_on_health_change,
    )


def _on_health_change(healthy: bool) -> None:
    if healthy:
        print("[INFO] Audio capture recovered")
    else:
        print("[ERROR] Audio capture is failing repeatedly - check the microphone and 'arecord -l'")


def run_monitor(config_path: Optional[Path] = None, debug: bool = False) -> None:
    """
    Run the chime monitor until interrupted.

    Args:
        config_path: Optional path to config.json (defaults to ./config.json)
        debug: If True, log every block decision
    """
    try:
        config = config_loader.load_config(config_path)
    except Exception as e:
        print(f"[ERROR] Failed to load configuration: {e}")
        print("  Check that config.json exists and is valid JSON")
        raise

    setup_logging_from_config(config, debug)
    if debug:
        log_system_info(log)

    try:
        session = build_session(config)
    except ReferenceLoadError as e:
        print(f"[ERROR] No usable reference chime: {e}")
        print("  Record the chime into training/chime/ and run: python3 train_chime_fingerprint.py")
        raise

    _print_startup_info(config, session)

    try:
        session.start()
    except Exception as e:
        print(f"[ERROR] Failed to start audio capture: {e}")
        print("\nTroubleshooting:")
        print("  1. Check audio device: arecord -l")
        print("  2. Verify device in config.json matches hardware")
        print("  3. Check permissions: groups (should include 'audio')")
        print("  4. Stop other processes using audio: pkill arecord")
        raise

    try:
        while session.is_running():
            event = session.wait_for_event(timeout=1.0)
            if event is not None:
                print(
                    f"[DETECTED] Chime at {event.timestamp_ms} "
                    f"(similarity {event.similarity:.3f}, threshold {event.threshold:.3f})"
                )
    except KeyboardInterrupt:
        print("\n[INFO] Stopping monitor (Ctrl+C received)...")
    finally:
        session.stop()
        snap = session.snapshot()
        print(f"[INFO] Processed {snap.blocks_processed} blocks, {snap.detections} detection(s)")
        print("[INFO] Monitor stopped and cleaned up.")


def _print_startup_info(config: dict, session: DetectionSession) -> None:
    """Print startup information."""
    audio = config["audio"]
    detection = config["detection"]
    notification = config["notification"]

    print("=" * 60)
    print("CHIME DETECTOR - Starting Monitor")
    print("=" * 60)
    print(f"Audio Device: {audio['device']}")
    print(f"Sample Rate: {audio['sample_rate']} Hz")
    print(f"Block Size: {audio['block_size']} samples")
    print(f"Fingerprint Mode: {config['fingerprint']['mode']}")
    print(f"Scorer: {session.engine.scorer.name}")
    adaptive = "adaptive" if detection["adaptive_threshold_enabled"] else "static"
    print(f"Match Threshold: {detection['fingerprint_match_threshold']:.2f} ({adaptive})")
    print(f"Amplitude Gate: {detection['amplitude_threshold']:.0f}")
    print(f"Consecutive Matches: {detection['required_consecutive_matches']}")
    print(f"Cooldown: {detection['cooldown_duration_ms'] / 1000:.1f}s")
    print(f"Detections Log: {Path(notification['detections_file']).resolve()}")
    if notification.get("server_url"):
        print(f"Notification Server: {notification['server_url']}")
    else:
        print("Notification Server: DISABLED (notification.server_url not set)")
    print("=" * 60)
    print("Press Ctrl+C to stop.\n")


def print_report(config_path: Optional[Path], hours: int) -> None:
    """Print a summary of recent detections."""
    config = config_loader.load_config(config_path)
    df = load_detections(Path(config["notification"]["detections_file"]))
    print(generate_detection_report(filter_recent_detections(df, hours), hours))


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Listen for the appliance chime")
    parser.add_argument("--config", type=Path, help="Path to config.json")
    parser.add_argument("--debug", action="store_true", help="Log every block decision")
    parser.add_argument("--report", type=int, metavar="HOURS", help="Print detections from the last N hours and exit")
    args = parser.parse_args()

    if args.report is not None:
        print_report(args.config, args.report)
        sys.exit(0)

    try:
        run_monitor(args.config, args.debug)
    except Exception:
        sys.exit(1)
