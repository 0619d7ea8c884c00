#!/usr/bin/env python3
"""
Chime detector health check.

Diagnoses the usual reasons the monitor won't start or never fires: missing
packages, a bad config.json, no capture device, no trained reference chime,
an unwritable detections log or an unreachable notification server.
"""
import importlib.util
import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import config_loader


def check_log_writable(detections_file: Path) -> Tuple[bool, str]:
    """The detections CSV (or, before the first detection, its directory) must be writable."""
    target = detections_file if detections_file.exists() else detections_file.resolve().parent
    if not target.exists():
        return False, f"Directory for {detections_file} does not exist"
    if not os.access(target, os.W_OK):
        return False, f"Cannot write to {target}"
    return True, f"{detections_file} writable"


def check_disk_space(path: Path, min_mb: float = 100.0) -> Tuple[bool, str]:
    """The detections log only grows by one row per chime, so a little headroom is enough."""
    free_mb = shutil.disk_usage(path).free / (1024 ** 2)
    if free_mb < min_mb:
        return False, f"Only {free_mb:.0f} MB free on {path} (want {min_mb:.0f} MB)"
    return True, f"{free_mb:.0f} MB free"


def check_audio_device() -> Tuple[bool, str]:
    """Check if the ALSA capture tools and a capture device are available."""
    try:
        result = subprocess.run(
            ["arecord", "-l"],
            capture_output=True,
            text=True,
            timeout=5
        )
    except FileNotFoundError:
        return False, "arecord not found - install alsa-utils"
    except subprocess.TimeoutExpired:
        return False, "arecord command timed out"

    if result.returncode != 0:
        return False, f"arecord -l failed: {result.stderr.strip()}"
    if "card" not in result.stdout:
        return False, "No capture devices found"
    return True, "Audio capture devices available"


REQUIRED_PACKAGES = ("numpy", "scipy", "pandas", "requests")


def check_dependencies() -> Tuple[bool, str]:
    """Every third-party package the monitor imports must be importable."""
    missing = [name for name in REQUIRED_PACKAGES if importlib.util.find_spec(name) is None]
    if missing:
        return False, f"Missing: {', '.join(missing)} (pip3 install -e .)"
    return True, f"{len(REQUIRED_PACKAGES)} packages importable"


def check_config(config_path: Path) -> Tuple[bool, str, Optional[Dict[str, Any]]]:
    """Check if configuration is valid."""
    try:
        config = config_loader.load_config(config_path)
    except ValueError as e:
        return False, f"Config error: {e}", None

    if not config["audio"].get("device"):
        return False, "audio.device not set", config
    return True, "Configuration valid", config


def check_reference(config: Dict[str, Any]) -> Tuple[bool, str]:
    """Check that a reference fingerprint can be loaded."""
    from chimedetect.fingerprint import ReferenceLoadError, load_reference

    try:
        reference = load_reference(config)
    except ReferenceLoadError as e:
        return False, f"{e} - run 'python3 train_chime_fingerprint.py'"

    source = "reference clips" if reference.sources else config["fingerprint"]["fingerprint_file"]
    return True, f"{len(reference.fingerprint)} frame(s) from {source} ({reference.mode.value})"


def check_notification(config: Dict[str, Any]) -> Tuple[bool, str]:
    """Check that the notification server (if configured) answers its health endpoint."""
    import requests

    n = config["notification"]
    if not n.get("server_url"):
        return True, "No server configured (detections are only logged)"

    url = n["server_url"].rstrip("/") + n["health_endpoint"]
    try:
        response = requests.get(url, timeout=float(n["timeout_sec"]))
    except requests.RequestException as e:
        return False, f"Server unreachable at {url}: {e}"
    if not response.ok:
        return False, f"Server health check returned HTTP {response.status_code}"
    return True, f"Server reachable at {n['server_url']}"


def run_health_check(config_path: Optional[Path] = None) -> bool:
    """
    Run every check and print a pass/fail line for each.

    Checks that need the configuration are skipped when it fails to load.

    Returns:
        True if nothing failed
    """
    print("=" * 60)
    print("CHIME DETECTOR HEALTH CHECK")
    print("=" * 60)
    print()

    checks: List[Tuple[str, bool, str]] = [("Dependencies", *check_dependencies())]

    config_ok, config_msg, config = check_config(config_path or Path("config.json"))
    checks.append(("Configuration", config_ok, config_msg))
    checks.append(("Audio System", *check_audio_device()))
    checks.append(("Disk Space", *check_disk_space(Path.cwd())))

    if config is not None:
        checks.append(("Reference Fingerprint", *check_reference(config)))
        checks.append(("Detections Log", *check_log_writable(Path(config["notification"]["detections_file"]))))
        checks.append(("Notification Server", *check_notification(config)))

    failed = [name for name, ok, _ in checks if not ok]
    for name, ok, msg in checks:
        print(f"{'✓' if ok else '✗'} {name}: {msg}")

    print()
    print("=" * 60)
    if not failed:
        print("✓ Ready - start the monitor with: python3 monitor.py")
    else:
        print(f"✗ {len(failed)} check(s) failed: {', '.join(failed)}")
        print()
        print("Common fixes:")
        print("  - Missing dependencies: pip3 install -e .")
        print("  - No reference: record the chime into training/chime/ and run train_chime_fingerprint.py")
        print("  - No capture device: plug in the USB microphone and check 'arecord -l'")
        print("  - Server unreachable: check notification.server_url in config.json")
    print("=" * 60)

    return not failed


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Check that the chime detector is ready to run")
    parser.add_argument("--config", type=Path, help="Path to config.json")
    args = parser.parse_args()

    sys.exit(0 if run_health_check(args.config) else 1)
