"""
Fingerprint similarity and scorer strategies.

compare() / compare_with_quality() score two fingerprints frame by frame.
The Scorer classes wrap a scoring technique behind one interface so the
match engine does not care whether a block is judged by fingerprint
similarity, dominant-frequency agreement, waveform correlation, or a vote
across several of them.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy.signal import correlate

from logger import get_logger
from .fingerprint import (
    FeatureFrame,
    Fingerprint,
    FingerprintMode,
    FingerprintParams,
    Reference,
    ReferenceLoadError,
    build_fingerprint,
    highpass,
)
from .spectrum import compute_spectrum, dominant_frequencies

log = get_logger(__name__)


@dataclass(frozen=True)
class SimilarityResult:
    """
    Outcome of one comparison.

    quality is only set by the quality-aware path; votes counts agreeing
    items for count-based scorers; components holds per-strategy results
    of a vote.
    """
    similarity: float
    quality: Optional[float] = None
    votes: Optional[int] = None
    components: Tuple["SimilarityResult", ...] = ()


@dataclass(frozen=True)
class ScoringWeights:
    """Empirically tuned weights and normalisation ranges."""
    energy_weight: float = 0.4
    cepstral_weight: float = 0.3
    spectral_weight: float = 0.3
    energy_range_db: float = 50.0
    standard_range_db: float = 100.0
    cepstral_range: float = 10.0

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ScoringWeights":
        s = config["scoring"]
        return cls(
            energy_weight=float(s["energy_weight"]),
            cepstral_weight=float(s["cepstral_weight"]),
            spectral_weight=float(s["spectral_weight"]),
            energy_range_db=float(s["energy_range_db"]),
            standard_range_db=float(s["standard_range_db"]),
            cepstral_range=float(s["cepstral_range"]),
        )


DEFAULT_WEIGHTS = ScoringWeights()


def _rms_difference(a: np.ndarray, b: np.ndarray) -> Optional[float]:
    if a.shape != b.shape or a.size == 0:
        return None
    diff = np.abs(a - b)
    return float(np.sqrt(np.mean(diff * diff)))


def _distance_similarity(a: np.ndarray, b: np.ndarray, value_range: float) -> float:
    """max(0, 1 - rms(|a - b|) / value_range); mismatched shapes score 0."""
    rms = _rms_difference(a, b)
    if rms is None:
        return 0.0
    return max(0.0, 1.0 - rms / value_range)


def _relative_difference(x: float, y: float) -> float:
    """|x - y| relative to the larger value (floored at 1.0), capped at 1."""
    return min(1.0, abs(x - y) / max(x, y, 1.0))


def spectral_similarity(a: FeatureFrame, b: FeatureFrame) -> float:
    """Mean agreement of centroid, rolloff and flux."""
    diff = (
        _relative_difference(a.spectral_centroid, b.spectral_centroid)
        + _relative_difference(a.spectral_rolloff, b.spectral_rolloff)
        + _relative_difference(a.spectral_flux, b.spectral_flux)
    ) / 3.0
    return 1.0 - diff


def frame_similarity(
    a: FeatureFrame,
    b: FeatureFrame,
    weights: ScoringWeights = DEFAULT_WEIGHTS,
    mode: FingerprintMode = FingerprintMode.ENHANCED
) -> float:
    """Weighted per-frame similarity in [0, 1]."""
    if mode is FingerprintMode.STANDARD:
        return _distance_similarity(a.energy_bands, b.energy_bands, weights.standard_range_db)

    energy = _distance_similarity(a.energy_bands, b.energy_bands, weights.energy_range_db)
    cepstral = _distance_similarity(a.cepstrum, b.cepstrum, weights.cepstral_range)
    spectral = spectral_similarity(a, b)
    # Expressed as 1 - weighted dissimilarity so identical frames score exactly 1.0
    dissimilarity = (
        weights.energy_weight * (1.0 - energy)
        + weights.cepstral_weight * (1.0 - cepstral)
        + weights.spectral_weight * (1.0 - spectral)
    )
    return float(np.clip(1.0 - dissimilarity, 0.0, 1.0))


def compare(
    a: Fingerprint,
    b: Fingerprint,
    weights: ScoringWeights = DEFAULT_WEIGHTS,
    mode: FingerprintMode = FingerprintMode.ENHANCED
) -> SimilarityResult:
    """
    Mean frame similarity over the first min(len(a), len(b)) frames.

    An empty fingerprint on either side scores 0.0.
    """
    count = min(len(a), len(b))
    if count == 0:
        return SimilarityResult(similarity=0.0)
    scores = [frame_similarity(a.frames[i], b.frames[i], weights, mode) for i in range(count)]
    return SimilarityResult(similarity=float(np.mean(scores)))


def energy_distribution_similarity(bands_a: np.ndarray, bands_b: np.ndarray) -> float:
    """Agreement of the L1-normalised band-energy distributions."""
    total_a = float(np.sum(np.abs(bands_a)))
    total_b = float(np.sum(np.abs(bands_b)))
    if total_a == 0.0 or total_b == 0.0 or bands_a.shape != bands_b.shape:
        return 0.0
    dist_a = bands_a / total_a
    dist_b = bands_b / total_b
    return float(np.clip(np.mean(1.0 - np.abs(dist_a - dist_b)), 0.0, 1.0))


def assess_quality(a: Fingerprint, b: Fingerprint) -> float:
    """Confidence in a comparison, judged on the leading frames."""
    if a.is_empty or b.is_empty:
        return 0.0
    fa, fb = a.frames[0], b.frames[0]
    centroid = 1.0 - _relative_difference(fa.spectral_centroid, fb.spectral_centroid)
    rolloff = 1.0 - _relative_difference(fa.spectral_rolloff, fb.spectral_rolloff)
    distribution = energy_distribution_similarity(fa.energy_bands, fb.energy_bands)
    return (centroid + rolloff + distribution) / 3.0


def compare_with_quality(
    a: Fingerprint,
    b: Fingerprint,
    weights: ScoringWeights = DEFAULT_WEIGHTS,
    mode: FingerprintMode = FingerprintMode.HIGH_QUALITY
) -> SimilarityResult:
    """compare() plus a quality score used as a confidence signal."""
    result = compare(a, b, weights, mode)
    return SimilarityResult(similarity=result.similarity, quality=assess_quality(a, b))


# ============================================================================
# Scorer strategies
# ============================================================================

class Scorer(ABC):
    """
    Scores one live block against the reference.

    threshold, when set, is the scorer's own pass mark and overrides the
    session threshold in is_match().
    """

    name = "scorer"
    threshold: Optional[float] = None

    @abstractmethod
    def score(self, samples: np.ndarray, sample_rate: int) -> SimilarityResult:
        """Compare a live block with the reference."""

    def is_match(self, result: SimilarityResult, threshold: float) -> bool:
        pass_mark = self.threshold if self.threshold is not None else threshold
        return result.similarity >= pass_mark


class FingerprintScorer(Scorer):
    """Multi-feature fingerprint similarity."""

    name = "fingerprint"

    def __init__(
        self,
        reference: Fingerprint,
        mode: FingerprintMode = FingerprintMode.ENHANCED,
        params: Optional[FingerprintParams] = None,
        weights: ScoringWeights = DEFAULT_WEIGHTS
    ):
        self.reference = reference
        self.mode = mode
        self.params = params or FingerprintParams()
        self.weights = weights

    def score(self, samples: np.ndarray, sample_rate: int) -> SimilarityResult:
        live = build_fingerprint(samples, sample_rate, self.params, self.mode)
        if self.mode is FingerprintMode.HIGH_QUALITY:
            return compare_with_quality(self.reference, live, self.weights, self.mode)
        return compare(self.reference, live, self.weights, self.mode)


class FrequencyScorer(Scorer):
    """
    Dominant-frequency agreement.

    Counts reference peak frequencies that have a live peak within
    tolerance_hz; a block matches when at least min_matches agree.
    """

    name = "frequency"

    def __init__(
        self,
        reference_frequencies: Sequence[float],
        tolerance_hz: float = 100.0,
        min_matches: int = 3,
        window_size: int = 2048,
        peak_threshold_ratio: float = 0.1
    ):
        self.reference_frequencies = list(reference_frequencies)
        self.tolerance_hz = tolerance_hz
        self.min_matches = min_matches
        self.window_size = window_size
        self.peak_threshold_ratio = peak_threshold_ratio

    @classmethod
    def from_pcm(cls, pcm: np.ndarray, sample_rate: int, **kwargs) -> "FrequencyScorer":
        """Take the reference signature from the loudest window of the clip."""
        window_size = kwargs.get("window_size", 2048)
        ratio = kwargs.get("peak_threshold_ratio", 0.1)
        samples = np.asarray(pcm, dtype=np.float64)
        best: List[float] = []
        best_energy = -1.0
        for start in range(0, max(1, samples.shape[0] - window_size + 1), window_size // 2):
            window = samples[start:start + window_size]
            energy = float(np.sum(window * window))
            if energy > best_energy:
                best_energy = energy
                best = dominant_frequencies(compute_spectrum(window, window_size), sample_rate,
                                            threshold_ratio=ratio)
        if not best:
            raise ReferenceLoadError("Reference clip has no dominant frequencies")
        log.info("Reference dominant frequencies: %s", ", ".join(f"{f:.0f} Hz" for f in best))
        return cls(best, **kwargs)

    def signature(self, samples: np.ndarray, sample_rate: int) -> List[float]:
        window = np.asarray(samples, dtype=np.float64)[: self.window_size]
        spectrum = compute_spectrum(window, self.window_size)
        return dominant_frequencies(spectrum, sample_rate, threshold_ratio=self.peak_threshold_ratio)

    def score(self, samples: np.ndarray, sample_rate: int) -> SimilarityResult:
        live = self.signature(samples, sample_rate)
        if not self.reference_frequencies:
            return SimilarityResult(similarity=0.0, votes=0)
        matches = sum(
            1 for ref in self.reference_frequencies
            if any(abs(f - ref) < self.tolerance_hz for f in live)
        )
        return SimilarityResult(similarity=matches / len(self.reference_frequencies), votes=matches)

    def is_match(self, result: SimilarityResult, threshold: float) -> bool:
        return (result.votes or 0) >= self.min_matches


class CorrelationScorer(Scorer):
    """Peak normalised cross-correlation against the reference waveform."""

    name = "correlation"

    def __init__(
        self,
        reference_pcm: np.ndarray,
        sample_rate: int,
        threshold: float = 0.6,
        cutoff_hz: float = 50.0
    ):
        self.threshold = threshold
        self.cutoff_hz = cutoff_hz
        self.reference = highpass(reference_pcm, sample_rate, cutoff_hz)

    def score(self, samples: np.ndarray, sample_rate: int) -> SimilarityResult:
        live = highpass(samples, sample_rate, self.cutoff_hz)
        long_sig, short_sig = (self.reference, live)
        if long_sig.shape[0] < short_sig.shape[0]:
            long_sig, short_sig = short_sig, long_sig

        short_norm = float(np.linalg.norm(short_sig))
        if short_sig.size == 0 or short_norm == 0.0:
            return SimilarityResult(similarity=0.0)

        raw = correlate(long_sig, short_sig, mode="valid", method="fft")
        # Energy of every long_sig segment the short signal slides over
        energy = np.concatenate(([0.0], np.cumsum(long_sig * long_sig)))
        n = short_sig.shape[0]
        segment_norm = np.sqrt(np.maximum(energy[n:] - energy[:-n], 0.0))
        with np.errstate(divide="ignore", invalid="ignore"):
            ncc = np.where(segment_norm > 0.0, raw / (segment_norm * short_norm), 0.0)
        peak = float(np.max(ncc)) if ncc.size else 0.0
        return SimilarityResult(similarity=float(np.clip(peak, 0.0, 1.0)))


class VotingScorer(Scorer):
    """Hybrid policy: a block matches when at least min_votes strategies agree."""

    name = "hybrid"

    def __init__(self, strategies: Sequence[Scorer], min_votes: int = 2):
        if len(strategies) < min_votes:
            raise ValueError(f"Voting needs at least {min_votes} strategies, got {len(strategies)}")
        self.strategies = list(strategies)
        self.min_votes = min_votes

    def score(self, samples: np.ndarray, sample_rate: int) -> SimilarityResult:
        results = tuple(s.score(samples, sample_rate) for s in self.strategies)
        return SimilarityResult(
            similarity=float(np.mean([r.similarity for r in results])),
            components=results,
        )

    def count_votes(self, result: SimilarityResult, threshold: float) -> int:
        return sum(
            1 for strategy, component in zip(self.strategies, result.components)
            if strategy.is_match(component, threshold)
        )

    def is_match(self, result: SimilarityResult, threshold: float) -> bool:
        return self.count_votes(result, threshold) >= self.min_votes


def create_scorer(config: Dict[str, Any], reference: Reference) -> Scorer:
    """
    Factory for the configured scoring strategy.

    Frequency and correlation scoring need the reference PCM, so they are
    only available when the reference came from clips rather than a saved
    fingerprint file.

    Raises:
        ReferenceLoadError: If the chosen strategy cannot be built from the reference
    """
    scoring = config["scoring"]
    kind = scoring["scorer"]
    sample_rate = reference.fingerprint.sample_rate
    params = FingerprintParams.from_config(config)

    def fingerprint_scorer() -> Scorer:
        return FingerprintScorer(
            reference.fingerprint, reference.mode, params, ScoringWeights.from_config(config)
        )

    def frequency_scorer() -> Scorer:
        return FrequencyScorer.from_pcm(
            reference.sources[0],
            sample_rate,
            tolerance_hz=float(scoring["frequency_tolerance_hz"]),
            min_matches=int(scoring["min_frequency_matches"]),
            window_size=params.window_size,
            peak_threshold_ratio=float(scoring["peak_threshold_ratio"]),
        )

    def correlation_scorer() -> Scorer:
        return CorrelationScorer(
            reference.sources[0],
            sample_rate,
            threshold=float(scoring["correlation_threshold"]),
            cutoff_hz=params.highpass_cutoff_hz,
        )

    if kind == "fingerprint":
        return fingerprint_scorer()

    if kind in ("frequency", "correlation") and not reference.sources:
        raise ReferenceLoadError(f"The {kind} scorer needs reference clips (fingerprint.reference_files)")
    if kind == "frequency":
        return frequency_scorer()
    if kind == "correlation":
        return correlation_scorer()

    if kind == "hybrid":
        strategies = [fingerprint_scorer()]
        if reference.sources:
            strategies.extend([frequency_scorer(), correlation_scorer()])
        min_votes = int(scoring["hybrid_min_votes"])
        if len(strategies) < min_votes:
            raise ReferenceLoadError(
                f"Hybrid scoring needs {min_votes} strategies; add reference clips to enable more"
            )
        return VotingScorer(strategies, min_votes)

    raise ValueError(f"Unknown scorer: {kind}")
