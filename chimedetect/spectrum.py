"""
Spectral transform and per-spectrum descriptors.

A spectrum here is the Hann-windowed magnitude spectrum of one analysis
window of N samples, folded at Nyquist to N/2 bins; bin i is the frequency
i * sample_rate / N.

Single Responsibility: Frequency-domain feature extraction.
"""
from functools import lru_cache
from typing import List, Tuple

import numpy as np
import scipy.fft

from logger import get_logger

log = get_logger(__name__)

DEFAULT_WINDOW_SIZE = 2048
DB_FLOOR = -100.0
LOG_MEL_FLOOR = -10.0
ROLLOFF_FRACTION = 0.85


class SpectrumError(ValueError):
    """Raised when a block cannot be turned into a valid spectrum."""


def _is_power_of_two(n: int) -> bool:
    return n > 0 and (n & (n - 1)) == 0


def _dft_magnitudes(frame: np.ndarray) -> np.ndarray:
    """Direct DFT of the first N/2 bins, used when the FFT routine faults."""
    n = frame.shape[0]
    k = np.arange(n // 2).reshape(-1, 1)
    t = np.arange(n).reshape(1, -1)
    angle = 2.0 * np.pi * k * t / n
    real = np.cos(angle) @ frame
    imag = -np.sin(angle) @ frame
    return np.sqrt(real * real + imag * imag)


def compute_spectrum(samples: np.ndarray, window_size: int = DEFAULT_WINDOW_SIZE) -> np.ndarray:
    """
    Compute the magnitude spectrum of one analysis window.

    Blocks shorter than window_size are zero-padded; longer blocks must
    themselves have a power-of-two length.

    Args:
        samples: Audio samples (int16 amplitude domain)
        window_size: FFT size used when the block is shorter

    Returns:
        Magnitude spectrum with len(frame) / 2 bins

    Raises:
        SpectrumError: If the block length is unsupported or the spectrum is not finite
    """
    frame = np.asarray(samples, dtype=np.float64)
    if frame.ndim != 1 or frame.size == 0:
        raise SpectrumError("Spectrum input must be a non-empty 1-D block")
    if frame.shape[0] < window_size:
        frame = np.pad(frame, (0, window_size - frame.shape[0]))
    n = frame.shape[0]
    if not _is_power_of_two(n):
        raise SpectrumError(f"Block length {n} is not a power of two")

    frame = frame * np.hanning(n)

    try:
        spectrum = np.abs(np.fft.rfft(frame))[: n // 2]
    except (FloatingPointError, ValueError, MemoryError) as e:
        log.warning("FFT failed (%s), falling back to direct DFT", e)
        spectrum = _dft_magnitudes(frame)

    if not np.all(np.isfinite(spectrum)):
        raise SpectrumError("Spectrum contains non-finite values")
    return spectrum


def bin_frequencies(n_bins: int, sample_rate: int) -> np.ndarray:
    """Frequency in Hz of each bin of an n_bins spectrum (window of 2 * n_bins)."""
    return np.arange(n_bins) * sample_rate / (2.0 * n_bins)


def dominant_frequencies(
    spectrum: np.ndarray,
    sample_rate: int,
    top_n: int = 5,
    threshold_ratio: float = 0.1
) -> List[float]:
    """
    Return the strongest spectral peaks in Hz.

    Local maxima above threshold_ratio * max magnitude are ranked by
    magnitude (ties go to the lower bin), the top_n are converted to Hz and
    anything at or below 50 Hz or at or above sample_rate / 2.2 is dropped.
    """
    mags = np.abs(np.asarray(spectrum, dtype=np.float64))
    if mags.size == 0:
        return []
    max_mag = float(np.max(mags))
    if max_mag <= 0.0:
        return []

    left = np.concatenate(([-np.inf], mags[:-1]))
    right = np.concatenate((mags[1:], [-np.inf]))
    is_peak = (mags > left) & (mags >= right) & (mags > max_mag * threshold_ratio)
    peaks = np.flatnonzero(is_peak)

    order = np.argsort(-mags[peaks], kind="stable")
    freqs = bin_frequencies(mags.size, sample_rate)
    selected = [float(freqs[i]) for i in peaks[order][:top_n]]
    return [f for f in selected if 50.0 < f < sample_rate / 2.2]


@lru_cache(maxsize=32)
def mel_band_edges(
    n_bins: int,
    sample_rate: int,
    n_bands: int,
    max_freq: float = 8000.0
) -> Tuple[Tuple[int, int], ...]:
    """
    Contiguous (start_bin, end_bin) ranges spaced evenly on the mel scale.

    Bands cover 0 Hz up to min(max_freq, Nyquist); every band spans at
    least one bin unless the spectrum has run out of bins.
    """
    top = min(max_freq, sample_rate / 2.0)
    mel_max = 2595.0 * np.log10(1.0 + top / 700.0)
    mel_points = np.linspace(0.0, mel_max, n_bands + 1)
    hz_points = 700.0 * (10.0 ** (mel_points / 2595.0) - 1.0)
    bin_points = np.floor(hz_points * 2 * n_bins / sample_rate).astype(int)

    edges = []
    start = 0
    for i in range(n_bands):
        end = min(max(int(bin_points[i + 1]), start + 1), n_bins)
        edges.append((start, end))
        start = end
    return tuple(edges)


def linear_energy_bands(spectrum: np.ndarray, n_bands: int = 32) -> np.ndarray:
    """Energy in dB of n_bands equal-width bin groups (floor -100 dB)."""
    mags = np.asarray(spectrum, dtype=np.float64)
    band_size = max(1, mags.size // n_bands)
    bands = np.full(n_bands, DB_FLOOR)
    for i in range(n_bands):
        segment = mags[i * band_size:(i + 1) * band_size]
        energy = float(np.sum(segment * segment))
        if energy > 0.0:
            bands[i] = max(DB_FLOOR, 10.0 * np.log10(energy))
    return bands


def energy_bands(
    spectrum: np.ndarray,
    sample_rate: int,
    n_bands: int = 32,
    max_freq: float = 8000.0
) -> np.ndarray:
    """
    Mel-spaced band energies in dB.

    Within a band, bins are weighted linearly from 1 at the lower edge
    towards 0 at the upper edge and the weighted power is averaged.
    Empty or silent bands sit at the -100 dB floor.
    """
    mags = np.asarray(spectrum, dtype=np.float64)
    bands = np.full(n_bands, DB_FLOOR)
    for i, (start, end) in enumerate(mel_band_edges(mags.size, sample_rate, n_bands, max_freq)):
        if end <= start:
            continue
        weights = 1.0 - np.arange(end - start) / (end - start)
        segment = mags[start:end]
        weight_sum = float(np.sum(weights))
        energy = float(np.sum(segment * segment * weights))
        if energy > 0.0 and weight_sum > 0.0:
            bands[i] = max(DB_FLOOR, 10.0 * np.log10(energy / weight_sum))
    return bands


def mel_energies(
    spectrum: np.ndarray,
    sample_rate: int,
    n_filters: int = 26,
    max_freq: float = 8000.0
) -> np.ndarray:
    """Unweighted power in each of n_filters mel bands."""
    mags = np.asarray(spectrum, dtype=np.float64)
    power = mags * mags
    return np.array([
        float(np.sum(power[start:end]))
        for start, end in mel_band_edges(mags.size, sample_rate, n_filters, max_freq)
    ])


def dct(x: np.ndarray, n_coeffs: int) -> np.ndarray:
    """
    First n_coeffs coefficients of the unscaled type-II DCT.

    X[k] = sum(x[n] * cos(pi * k * (2n + 1) / (2N))). The cepstral range in
    the scoring config is tuned for this scale, not the orthonormal one.
    """
    # scipy's unnormalised DCT-II carries a factor of 2
    return 0.5 * scipy.fft.dct(np.asarray(x, dtype=np.float64), type=2)[:n_coeffs]


def cepstral_coefficients(
    spectrum: np.ndarray,
    sample_rate: int,
    n_coeffs: int = 13,
    n_filters: int = 26,
    max_freq: float = 8000.0
) -> np.ndarray:
    """MFCC-like coefficients: DCT of log10 mel energies (silent filters floor at -10)."""
    energies = mel_energies(spectrum, sample_rate, n_filters, max_freq)
    log_mel = np.full(energies.shape, LOG_MEL_FLOOR)
    positive = energies > 0.0
    log_mel[positive] = np.maximum(np.log10(energies[positive]), LOG_MEL_FLOOR)
    return dct(log_mel, n_coeffs)


def spectral_centroid(spectrum: np.ndarray, sample_rate: int) -> float:
    """Magnitude-weighted mean frequency in Hz (0 for a silent spectrum)."""
    mags = np.abs(np.asarray(spectrum, dtype=np.float64))
    total = float(np.sum(mags))
    if total <= 0.0:
        return 0.0
    return float(np.sum(bin_frequencies(mags.size, sample_rate) * mags) / total)


def spectral_rolloff(spectrum: np.ndarray, sample_rate: int, fraction: float = ROLLOFF_FRACTION) -> float:
    """Frequency in Hz below which `fraction` of the spectral magnitude lies."""
    mags = np.abs(np.asarray(spectrum, dtype=np.float64))
    total = float(np.sum(mags))
    if total <= 0.0:
        return 0.0
    idx = int(np.searchsorted(np.cumsum(mags), total * fraction))
    idx = min(idx, mags.size - 1)
    return float(bin_frequencies(mags.size, sample_rate)[idx])


def spectral_flux(spectrum: np.ndarray) -> float:
    """Sum of squared differences between successive bins."""
    mags = np.abs(np.asarray(spectrum, dtype=np.float64))
    if mags.size < 2:
        return 0.0
    return float(np.sum(np.diff(mags) ** 2))
