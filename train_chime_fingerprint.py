#!/usr/bin/env python3
"""
Train the reference chime fingerprint from example recordings.

Chime examples go in training/chime/*.wav (16-bit PCM, same sample rate as
the capture device). In high_quality mode every clip contributes to one
composite fingerprint; in the other modes the first valid clip is used.

The fingerprint is written to fingerprint.fingerprint_file (default
chime_fingerprint.json) and loaded by monitor.py at startup.
"""
import argparse
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np

import config_loader
from logger import setup_logging_from_config
from chimedetect.audio import load_mono_wav
from chimedetect.fingerprint import (
    EmptySourceError,
    FingerprintMode,
    FingerprintParams,
    ReferenceLoadError,
    build_composite,
    build_fingerprint,
    check_reference_pcm,
    save_fingerprint,
)

CHIME_TRAIN_DIR = Path("training/chime")


def load_training_clips(train_dir: Path, pattern: str = "*.wav") -> Tuple[List[np.ndarray], Optional[int]]:
    """
    Decode every training clip that shares the first clip's sample rate.

    Args:
        train_dir: Directory containing training files
        pattern: Glob pattern for files

    Returns:
        Tuple of (list of PCM arrays, sample rate or None if nothing loaded)
    """
    wavs = sorted(train_dir.glob(pattern))
    if not wavs:
        print(f"No {pattern} files found in {train_dir}")
        return [], None

    clips: List[np.ndarray] = []
    sr_used = None

    print(f"Processing {len(wavs)} training files...")
    for wav_path in wavs:
        try:
            samples, sr = load_mono_wav(wav_path)
            if sr_used is None:
                sr_used = sr
            elif sr != sr_used:
                print(f"Warning: sample rate mismatch in {wav_path.name} ({sr} Hz vs {sr_used} Hz), skipping.")
                continue
            clips.append(check_reference_pcm(samples, wav_path.name))
        except (OSError, ValueError, EOFError, ReferenceLoadError) as e:
            print(f"Warning: Failed to process {wav_path.name}: {e}")
            continue

    return clips, sr_used


def train_fingerprint(
    clips: List[np.ndarray],
    sample_rate: int,
    params: FingerprintParams,
    mode: FingerprintMode
):
    """Build the reference fingerprint for the given mode."""
    if mode is FingerprintMode.HIGH_QUALITY:
        return build_composite(clips, sample_rate, params, mode)
    return build_fingerprint(clips[0], sample_rate, params, mode)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Train chime fingerprint from example clips")
    parser.add_argument("--config", type=Path, help="Path to config.json")
    parser.add_argument("--train-dir", type=Path, default=CHIME_TRAIN_DIR, help="Directory of chime WAV clips")
    parser.add_argument("--output", type=Path, help="Output fingerprint file (default: from config)")
    parser.add_argument(
        "--mode",
        choices=[m.value for m in FingerprintMode],
        help="Fingerprint mode (default: from config)"
    )
    args = parser.parse_args(argv)

    config = config_loader.load_config(args.config)
    setup_logging_from_config(config)

    mode = FingerprintMode(args.mode or config["fingerprint"]["mode"])
    output = args.output or Path(config["fingerprint"]["fingerprint_file"])
    params = FingerprintParams.from_config(config)

    print("=" * 60)
    print("CHIME FINGERPRINT TRAINING")
    print("=" * 60)
    print(f"Mode: {mode.value}")
    print()

    clips, sr_used = load_training_clips(args.train_dir)
    if not clips:
        print("ERROR: No usable chime training files found. At least one chime example is required.")
        return 1

    capture_sr = config["audio"]["sample_rate"]
    if sr_used != capture_sr:
        print(f"WARNING: Training sample rate ({sr_used} Hz) doesn't match capture rate ({capture_sr} Hz)")

    try:
        fingerprint = train_fingerprint(clips, sr_used, params, mode)
    except EmptySourceError as e:
        print(f"ERROR: {e}")
        return 1

    if fingerprint.is_empty:
        print(f"ERROR: Clips are shorter than one analysis window ({params.window_size} samples)")
        return 1

    save_fingerprint(fingerprint, output, mode)

    print()
    print(f"✓ Created fingerprint from {len(clips)} clip(s), {len(fingerprint)} frame(s)")
    print(f"Saved fingerprint to {output}")
    print("=" * 60)
    return 0


if __name__ == "__main__":
    sys.exit(main())
