#!/usr/bin/env python3
"""Configuration loader for the chime detector."""
import json
from pathlib import Path
from typing import Dict, Any, Optional, Tuple

from logger import get_logger

log = get_logger(__name__)

FINGERPRINT_MODES = ("standard", "enhanced", "high_quality")
SCORERS = ("fingerprint", "frequency", "correlation", "hybrid")

# Safe bounds applied instead of rejecting the config
MATCH_THRESHOLD_BOUNDS = (0.5, 0.99)
# The adaptive threshold may move only inside this band, whatever config.json says
ADAPTIVE_THRESHOLD_BOUNDS = (0.70, 0.95)


def get_default_config() -> Dict[str, Any]:
    """Return default configuration values."""
    return {
        "audio": {
            "device": "plughw:CARD=Device,DEV=0",
            "sample_rate": 44100,
            "channels": 1,
            "sample_format": "S16_LE",
            "block_size": 4096
        },
        "fingerprint": {
            "mode": "enhanced",
            "fingerprint_file": "chime_fingerprint.json",
            "reference_files": [],
            "window_size": 2048,
            "hop_size": 512,
            "max_frames": 30,
            "energy_bands": 32,
            "mel_filters": 26,
            "cepstral_coefficients": 13,
            "max_band_freq_hz": 8000.0,
            "highpass_cutoff_hz": 50.0,
            "normalize_peak": 0.8
        },
        "detection": {
            "detector_id": "chime_detector",
            "amplitude_threshold": 140.0,
            "fingerprint_match_threshold": 0.85,
            "required_consecutive_matches": 3,
            "cooldown_duration_ms": 10000,
            "adaptive_threshold_enabled": True,
            "adaptive_window": 50,
            "adaptive_min_history": 10,
            "adaptive_iqr_multiplier": 1.2,
            "adaptive_min": 0.70,
            "adaptive_max": 0.95,
            "loop_interval_sec": 0.1,
            "stop_timeout_sec": 0.5,
            "max_read_failures": 10
        },
        "scoring": {
            "scorer": "fingerprint",
            "energy_weight": 0.4,
            "cepstral_weight": 0.3,
            "spectral_weight": 0.3,
            "energy_range_db": 50.0,
            "standard_range_db": 100.0,
            "cepstral_range": 10.0,
            "peak_threshold_ratio": 0.1,
            "frequency_tolerance_hz": 100.0,
            "min_frequency_matches": 3,
            "correlation_threshold": 0.6,
            "hybrid_min_votes": 2
        },
        "notification": {
            "server_url": "",
            "endpoint": "/api/notifications/washing-machine-done",
            "health_endpoint": "/api/health",
            "timeout_sec": 5.0,
            "message": "Washing machine cycle completed",
            "detections_file": "detections.csv",
            "email_enabled": False,
            "email": {
                "smtp_server": "",
                "smtp_port": 587,
                "smtp_username": "",
                "smtp_password": "",
                "from_address": "",
                "to_address": "",
                "use_tls": True
            }
        },
        "logging": {
            "level": "INFO",
            "log_file": None
        }
    }


def _is_power_of_two(value: Any) -> bool:
    return isinstance(value, int) and value > 0 and (value & (value - 1)) == 0


def validate_config(config: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """Validate configuration structure and values that cannot be clamped."""
    defaults = get_default_config()

    for key in defaults.keys():
        if key not in config:
            return False, f"Missing required config section: {key}"

    audio = config.get("audio", {})
    if not isinstance(audio.get("sample_rate"), int) or audio.get("sample_rate") <= 0:
        return False, "audio.sample_rate must be a positive integer"
    if not isinstance(audio.get("block_size"), int) or audio.get("block_size") <= 0:
        return False, "audio.block_size must be a positive integer"

    fp = config.get("fingerprint", {})
    if fp.get("mode") not in FINGERPRINT_MODES:
        return False, f"fingerprint.mode must be one of {', '.join(FINGERPRINT_MODES)}"
    if not _is_power_of_two(fp.get("window_size")):
        return False, "fingerprint.window_size must be a power of two"
    hop = fp.get("hop_size")
    if not isinstance(hop, int) or hop <= 0 or hop > fp["window_size"]:
        return False, "fingerprint.hop_size must be a positive integer no larger than window_size"
    if not isinstance(fp.get("max_frames"), int) or fp.get("max_frames") <= 0:
        return False, "fingerprint.max_frames must be a positive integer"
    if not isinstance(fp.get("reference_files"), list):
        return False, "fingerprint.reference_files must be a list of paths"

    scoring = config.get("scoring", {})
    if scoring.get("scorer") not in SCORERS:
        return False, f"scoring.scorer must be one of {', '.join(SCORERS)}"
    weights = [scoring.get("energy_weight", 0), scoring.get("cepstral_weight", 0), scoring.get("spectral_weight", 0)]
    if abs(sum(weights) - 1.0) > 0.01:
        return False, "scoring weights must sum to approximately 1.0"

    return True, None


def _clamp(value: float, low: float, high: float, name: str) -> float:
    clamped = max(low, min(high, value))
    if clamped != value:
        log.warning("%s=%s out of range, clamped to %s", name, value, clamped)
    return clamped


def clamp_detection_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Clamp out-of-range detection tunables to safe bounds.

    A bad tunable must never disable detection, so values are pulled back
    into range (with a warning) rather than rejected.

    Args:
        config: Merged configuration dictionary (modified in place)

    Returns:
        The same configuration dictionary
    """
    det = config["detection"]

    det["fingerprint_match_threshold"] = _clamp(
        float(det["fingerprint_match_threshold"]),
        *MATCH_THRESHOLD_BOUNDS,
        "detection.fingerprint_match_threshold",
    )
    low, high = ADAPTIVE_THRESHOLD_BOUNDS
    det["adaptive_min"] = _clamp(float(det["adaptive_min"]), low, high, "detection.adaptive_min")
    det["adaptive_max"] = _clamp(
        float(det["adaptive_max"]), det["adaptive_min"], high, "detection.adaptive_max"
    )
    det["amplitude_threshold"] = _clamp(
        float(det["amplitude_threshold"]), 0.0, float("inf"), "detection.amplitude_threshold"
    )
    det["required_consecutive_matches"] = int(_clamp(
        int(det["required_consecutive_matches"]), 1, 1000, "detection.required_consecutive_matches"
    ))
    det["cooldown_duration_ms"] = int(_clamp(
        int(det["cooldown_duration_ms"]), 0, float("inf"), "detection.cooldown_duration_ms"
    ))
    det["adaptive_min_history"] = int(_clamp(
        int(det["adaptive_min_history"]), 1, 10000, "detection.adaptive_min_history"
    ))
    det["adaptive_window"] = int(_clamp(
        int(det["adaptive_window"]), det["adaptive_min_history"], 10000, "detection.adaptive_window"
    ))
    det["max_read_failures"] = int(_clamp(
        int(det["max_read_failures"]), 1, 10000, "detection.max_read_failures"
    ))
    return config


def load_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load configuration from JSON file, merging with defaults.

    Args:
        config_path: Path to config file. If None, looks for config.json in current directory.

    Returns:
        Merged, validated and clamped configuration dictionary.

    Raises:
        ValueError: If config is invalid JSON or structurally invalid.
    """
    defaults = get_default_config()

    if config_path is None:
        config_path = Path("config.json")

    if not config_path.exists():
        log.info("Config file %s not found, using defaults", config_path)
        return clamp_detection_config(defaults)

    try:
        with config_path.open() as f:
            config = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in config file {config_path}: {e}")

    merged = _deep_merge(defaults, config)

    is_valid, error_msg = validate_config(merged)
    if not is_valid:
        raise ValueError(f"Invalid configuration: {error_msg}")

    log.info("Loaded configuration from %s", config_path)
    return clamp_detection_config(merged)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries, with override taking precedence."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def get_config_value(config: Dict[str, Any], path: str, default: Any = None) -> Any:
    """
    Get nested config value using dot notation.

    Example: get_config_value(config, "detection.cooldown_duration_ms")
    """
    keys = path.split(".")
    value = config
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value
