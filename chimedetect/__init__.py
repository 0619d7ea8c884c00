"""
Chime detection core.

Pipeline: audio block -> spectrum -> fingerprint -> similarity ->
adaptive threshold -> debounce/cooldown -> DetectionFired.

Each module has one responsibility; scorers and notifiers are pluggable
behind small abstract interfaces.
"""

from .audio import AudioBlock, AudioSource, ArecordCapture, load_mono_wav, INT16_MAX
from .spectrum import (
    SpectrumError,
    compute_spectrum,
    dominant_frequencies,
    energy_bands,
    cepstral_coefficients,
    spectral_centroid,
    spectral_rolloff,
    spectral_flux,
)
from .fingerprint import (
    EmptySourceError,
    ReferenceLoadError,
    FingerprintMode,
    FingerprintParams,
    FeatureFrame,
    Fingerprint,
    Reference,
    preprocess,
    build_fingerprint,
    build_composite,
    save_fingerprint,
    load_fingerprint,
    load_reference,
)
from .similarity import (
    SimilarityResult,
    ScoringWeights,
    compare,
    compare_with_quality,
    Scorer,
    FingerprintScorer,
    FrequencyScorer,
    CorrelationScorer,
    VotingScorer,
    create_scorer,
)
from .threshold import RingBuffer, AdaptiveThreshold, update_and_get_threshold
from .detector import (
    EngineState,
    DetectionSettings,
    DetectionFired,
    DetectionSnapshot,
    DetectionState,
    MatchEngine,
)
from .session import DetectionSession
from .notifier import Notifier, HttpNotifier, EmailNotifier, create_notifiers
from .repository import DetectionRepository

__all__ = [
    # Audio
    'AudioBlock',
    'AudioSource',
    'ArecordCapture',
    'load_mono_wav',
    'INT16_MAX',
    # Spectrum
    'SpectrumError',
    'compute_spectrum',
    'dominant_frequencies',
    'energy_bands',
    'cepstral_coefficients',
    'spectral_centroid',
    'spectral_rolloff',
    'spectral_flux',
    # Fingerprint
    'EmptySourceError',
    'ReferenceLoadError',
    'FingerprintMode',
    'FingerprintParams',
    'FeatureFrame',
    'Fingerprint',
    'Reference',
    'preprocess',
    'build_fingerprint',
    'build_composite',
    'save_fingerprint',
    'load_fingerprint',
    'load_reference',
    # Similarity
    'SimilarityResult',
    'ScoringWeights',
    'compare',
    'compare_with_quality',
    'Scorer',
    'FingerprintScorer',
    'FrequencyScorer',
    'CorrelationScorer',
    'VotingScorer',
    'create_scorer',
    # Threshold
    'RingBuffer',
    'AdaptiveThreshold',
    'update_and_get_threshold',
    # Detector
    'EngineState',
    'DetectionSettings',
    'DetectionFired',
    'DetectionSnapshot',
    'DetectionState',
    'MatchEngine',
    # Session
    'DetectionSession',
    # Notification
    'Notifier',
    'HttpNotifier',
    'EmailNotifier',
    'create_notifiers',
    'DetectionRepository',
]
