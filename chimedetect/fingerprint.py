"""
Fingerprint construction.

A fingerprint is a short time series of FeatureFrames computed from
overlapping analysis windows. The reference fingerprint is built once per
session (from reference clips or a saved JSON file); live fingerprints are
built for every non-silent block.

Single Responsibility: PCM -> Fingerprint.
"""
import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy.signal import lfilter

from logger import get_logger
from .audio import INT16_MAX, load_mono_wav
from .spectrum import (
    cepstral_coefficients,
    compute_spectrum,
    energy_bands,
    linear_energy_bands,
    spectral_centroid,
    spectral_flux,
    spectral_rolloff,
)

log = get_logger(__name__)

LOW_AMPLITUDE_WARNING = 100.0


class EmptySourceError(ValueError):
    """Raised when a composite fingerprint has no frames to average."""


class ReferenceLoadError(RuntimeError):
    """Raised when no usable reference fingerprint can be produced."""


class FingerprintMode(Enum):
    """How fingerprints are built and compared for a session."""
    STANDARD = "standard"
    ENHANCED = "enhanced"
    HIGH_QUALITY = "high_quality"

    @property
    def preprocesses(self) -> bool:
        return self is not FingerprintMode.STANDARD


@dataclass(frozen=True)
class FingerprintParams:
    """Analysis parameters shared by reference and live fingerprints."""
    window_size: int = 2048
    hop_size: int = 512
    max_frames: int = 30
    n_bands: int = 32
    n_filters: int = 26
    n_coeffs: int = 13
    max_band_freq: float = 8000.0
    highpass_cutoff_hz: float = 50.0
    normalize_peak: float = 0.8

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "FingerprintParams":
        fp = config["fingerprint"]
        return cls(
            window_size=fp["window_size"],
            hop_size=fp["hop_size"],
            max_frames=fp["max_frames"],
            n_bands=fp["energy_bands"],
            n_filters=fp["mel_filters"],
            n_coeffs=fp["cepstral_coefficients"],
            max_band_freq=float(fp["max_band_freq_hz"]),
            highpass_cutoff_hz=float(fp["highpass_cutoff_hz"]),
            normalize_peak=float(fp["normalize_peak"]),
        )


@dataclass(frozen=True)
class FeatureFrame:
    """Spectral descriptors of one analysis window."""
    energy_bands: np.ndarray
    cepstrum: np.ndarray
    spectral_centroid: float
    spectral_rolloff: float
    spectral_flux: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "energy_bands": [float(v) for v in self.energy_bands],
            "cepstrum": [float(v) for v in self.cepstrum],
            "spectral_centroid": self.spectral_centroid,
            "spectral_rolloff": self.spectral_rolloff,
            "spectral_flux": self.spectral_flux,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeatureFrame":
        return cls(
            energy_bands=np.asarray(data["energy_bands"], dtype=np.float64),
            cepstrum=np.asarray(data["cepstrum"], dtype=np.float64),
            spectral_centroid=float(data["spectral_centroid"]),
            spectral_rolloff=float(data["spectral_rolloff"]),
            spectral_flux=float(data["spectral_flux"]),
        )


@dataclass(frozen=True)
class Fingerprint:
    """Ordered FeatureFrames of one recording."""
    frames: Tuple[FeatureFrame, ...]
    sample_rate: int

    def __len__(self) -> int:
        return len(self.frames)

    @property
    def is_empty(self) -> bool:
        return len(self.frames) == 0


def highpass(pcm: np.ndarray, sample_rate: int, cutoff_hz: float = 50.0) -> np.ndarray:
    """First-order RC high-pass filter starting from rest."""
    samples = np.asarray(pcm, dtype=np.float64)
    if samples.size == 0:
        return samples.copy()
    rc = 1.0 / (2.0 * np.pi * cutoff_hz)
    dt = 1.0 / sample_rate
    alpha = rc / (rc + dt)
    # y[n] = alpha * (y[n-1] + x[n] - x[n-1])
    return lfilter([alpha, -alpha], [1.0, -alpha], samples)


def preprocess(
    pcm: np.ndarray,
    sample_rate: int,
    cutoff_hz: float = 50.0,
    normalize_peak: float = 0.8
) -> np.ndarray:
    """
    Condition PCM before fingerprinting.

    1. First-order RC high-pass at cutoff_hz (removes DC offset and rumble)
    2. Peak normalisation to normalize_peak of int16 full scale
    3. Hann window over the whole buffer

    The input array is never modified.
    """
    filtered = highpass(pcm, sample_rate, cutoff_hz)
    if filtered.size == 0:
        return filtered

    peak = float(np.max(np.abs(filtered)))
    if peak > 0.0:
        filtered = filtered * (normalize_peak * INT16_MAX / peak)

    return filtered * np.hanning(filtered.shape[0])


def extract_frame(
    spectrum: np.ndarray,
    sample_rate: int,
    params: FingerprintParams,
    mode: FingerprintMode = FingerprintMode.ENHANCED
) -> FeatureFrame:
    """Build one FeatureFrame from a magnitude spectrum."""
    if mode is FingerprintMode.STANDARD:
        bands = linear_energy_bands(spectrum, params.n_bands)
    else:
        bands = energy_bands(spectrum, sample_rate, params.n_bands, params.max_band_freq)
    return FeatureFrame(
        energy_bands=bands,
        cepstrum=cepstral_coefficients(
            spectrum, sample_rate, params.n_coeffs, params.n_filters, params.max_band_freq
        ),
        spectral_centroid=spectral_centroid(spectrum, sample_rate),
        spectral_rolloff=spectral_rolloff(spectrum, sample_rate),
        spectral_flux=spectral_flux(spectrum),
    )


def build_fingerprint(
    pcm: np.ndarray,
    sample_rate: int,
    params: Optional[FingerprintParams] = None,
    mode: FingerprintMode = FingerprintMode.ENHANCED
) -> Fingerprint:
    """
    Slide a window over pcm and collect one FeatureFrame per window.

    Stops when the buffer is exhausted or params.max_frames frames exist.
    A buffer shorter than one window yields an empty fingerprint.

    Args:
        pcm: Samples in the int16 amplitude domain
        sample_rate: Sample rate in Hz
        params: Window/hop/feature sizes (defaults if None)
        mode: Selects preprocessing and the energy-band layout

    Returns:
        Fingerprint
    """
    params = params or FingerprintParams()
    samples = np.asarray(pcm, dtype=np.float64)
    if mode.preprocesses:
        samples = preprocess(samples, sample_rate, params.highpass_cutoff_hz, params.normalize_peak)

    frames: List[FeatureFrame] = []
    offset = 0
    while offset + params.window_size <= samples.shape[0] and len(frames) < params.max_frames:
        window = samples[offset:offset + params.window_size]
        spectrum = compute_spectrum(window, params.window_size)
        frames.append(extract_frame(spectrum, sample_rate, params, mode))
        offset += params.hop_size

    return Fingerprint(frames=tuple(frames), sample_rate=sample_rate)


def average_frames(frames: Sequence[FeatureFrame]) -> FeatureFrame:
    """Element-wise mean of every field across frames."""
    if not frames:
        raise EmptySourceError("No valid fingerprint frames to average")
    return FeatureFrame(
        energy_bands=np.mean([f.energy_bands for f in frames], axis=0),
        cepstrum=np.mean([f.cepstrum for f in frames], axis=0),
        spectral_centroid=float(np.mean([f.spectral_centroid for f in frames])),
        spectral_rolloff=float(np.mean([f.spectral_rolloff for f in frames])),
        spectral_flux=float(np.mean([f.spectral_flux for f in frames])),
    )


def build_composite(
    sources: Sequence[np.ndarray],
    sample_rate: int,
    params: Optional[FingerprintParams] = None,
    mode: FingerprintMode = FingerprintMode.HIGH_QUALITY
) -> Fingerprint:
    """
    Average the frames of several reference recordings into one frame.

    Sources that fail to fingerprint are logged and skipped.

    Raises:
        EmptySourceError: If no source produced any frame
    """
    pool: List[FeatureFrame] = []
    for i, pcm in enumerate(sources):
        try:
            pool.extend(build_fingerprint(pcm, sample_rate, params, mode).frames)
        except Exception as e:
            log.error("Failed to fingerprint reference source %d: %s", i, e)

    if not pool:
        raise EmptySourceError("No valid fingerprints to create composite")

    log.info("Composite fingerprint from %d frames across %d sources", len(pool), len(sources))
    return Fingerprint(frames=(average_frames(pool),), sample_rate=sample_rate)


def check_reference_pcm(pcm: np.ndarray, name: str = "reference") -> np.ndarray:
    """
    Reject empty or all-silent reference PCM; warn on suspiciously quiet clips.

    Raises:
        ReferenceLoadError: If pcm is empty or contains only zeros
    """
    samples = np.asarray(pcm, dtype=np.float64)
    if samples.size == 0:
        raise ReferenceLoadError(f"{name}: reference audio is empty")
    if not np.any(samples):
        raise ReferenceLoadError(f"{name}: reference audio is silent")

    avg = float(np.mean(np.abs(samples)))
    log.info(
        "%s: %d samples, max=%.0f, min=%.0f, avg=%.1f",
        name, samples.size, float(np.max(samples)), float(np.min(samples)), avg
    )
    if avg < LOW_AMPLITUDE_WARNING:
        log.warning("%s has very low amplitude (avg %.1f) - may be silent or corrupted", name, avg)
    return samples


def save_fingerprint(fingerprint: Fingerprint, path: Path, mode: FingerprintMode) -> None:
    """Write a fingerprint as JSON."""
    data = {
        "sample_rate": fingerprint.sample_rate,
        "mode": mode.value,
        "frames": [frame.to_dict() for frame in fingerprint.frames],
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w") as f:
        json.dump(data, f, indent=2)


def load_fingerprint(path: Path) -> Tuple[Fingerprint, FingerprintMode]:
    """
    Read a fingerprint written by save_fingerprint().

    Raises:
        ReferenceLoadError: If the file is unreadable or holds no frames
    """
    try:
        with path.open() as f:
            data = json.load(f)
        frames = tuple(FeatureFrame.from_dict(d) for d in data["frames"])
        mode = FingerprintMode(data.get("mode", FingerprintMode.ENHANCED.value))
        fingerprint = Fingerprint(frames=frames, sample_rate=int(data["sample_rate"]))
    except (OSError, ValueError, KeyError, TypeError) as e:
        raise ReferenceLoadError(f"Failed to load fingerprint {path}: {e}") from e

    if fingerprint.is_empty:
        raise ReferenceLoadError(f"Fingerprint {path} has no frames")
    return fingerprint, mode


@dataclass(frozen=True)
class Reference:
    """Everything a session needs to know about the target chime."""
    fingerprint: Fingerprint
    mode: FingerprintMode
    sources: Tuple[np.ndarray, ...] = ()


def load_reference(config: Dict[str, Any]) -> Reference:
    """
    Produce the session's reference fingerprint.

    Reference clips listed in fingerprint.reference_files are decoded and
    fingerprinted (composite in HIGH_QUALITY mode, first clip otherwise).
    Without clips, the saved fingerprint_file is used.

    Raises:
        ReferenceLoadError: If neither source yields a non-empty fingerprint
    """
    fp_cfg = config["fingerprint"]
    mode = FingerprintMode(fp_cfg["mode"])
    params = FingerprintParams.from_config(config)
    expected_sr = config["audio"]["sample_rate"]

    sources: List[np.ndarray] = []
    for ref in fp_cfg["reference_files"]:
        path = Path(ref)
        try:
            pcm, sr = load_mono_wav(path)
        except (OSError, ValueError, EOFError) as e:
            log.error("Failed to decode reference clip %s: %s", path, e)
            continue
        if sr != expected_sr:
            log.warning("Skipping %s: sample rate %d Hz does not match capture rate %d Hz", path, sr, expected_sr)
            continue
        try:
            sources.append(check_reference_pcm(pcm, path.name))
        except ReferenceLoadError as e:
            log.error("%s", e)

    if sources:
        if mode is FingerprintMode.HIGH_QUALITY:
            try:
                fingerprint = build_composite(sources, expected_sr, params, mode)
            except EmptySourceError as e:
                raise ReferenceLoadError(str(e)) from e
        else:
            fingerprint = build_fingerprint(sources[0], expected_sr, params, mode)
        if fingerprint.is_empty:
            raise ReferenceLoadError("Reference clip is shorter than one analysis window")
        return Reference(fingerprint=fingerprint, mode=mode, sources=tuple(sources))

    fingerprint_file = Path(fp_cfg["fingerprint_file"])
    if not fingerprint_file.exists():
        raise ReferenceLoadError(
            f"No usable reference clips and no fingerprint file at {fingerprint_file}"
        )
    fingerprint, saved_mode = load_fingerprint(fingerprint_file)
    if fingerprint.sample_rate != expected_sr:
        log.warning(
            "Fingerprint sample rate (%d Hz) doesn't match capture rate (%d Hz); matching may be inaccurate",
            fingerprint.sample_rate, expected_sr
        )
    if saved_mode is not mode:
        log.warning("Fingerprint was built in %s mode, session runs in %s mode", saved_mode.value, mode.value)
    log.info("Loaded reference fingerprint from %s (%d frames)", fingerprint_file, len(fingerprint))
    return Reference(fingerprint=fingerprint, mode=mode)
