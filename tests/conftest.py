"""
Pytest configuration and shared fixtures.

This module provides:
- Common fixtures for test configuration
- Helper functions for synthetic audio and WAV files
- Stub collaborators (scorer, capture source) for engine/session tests
"""
import sys
import tempfile
import wave
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple, Union

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import config_loader
import pytest
import numpy as np

from chimedetect.audio import AudioBlock, AudioSource
from chimedetect.similarity import Scorer, SimilarityResult

# Test constants
TEST_SAMPLE_RATE = 44100
TEST_FREQUENCY = 880  # Hz
TEST_DURATION = 1.0  # seconds
INT16_MAX = 32767
# Frequencies that fall exactly on FFT bins 40/80/120 of a 2048-point window at 44.1 kHz
CHIME_FREQUENCIES = (40 * 44100 / 2048, 80 * 44100 / 2048, 120 * 44100 / 2048)


@pytest.fixture
def project_root_path():
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def config():
    """Default configuration (independent of any local config.json)."""
    return config_loader.clamp_detection_config(config_loader.get_default_config())


# Helper functions for test data creation

def create_test_audio_samples(
    sample_rate: int = TEST_SAMPLE_RATE,
    duration: float = TEST_DURATION,
    frequency: float = TEST_FREQUENCY,
    amplitude: float = 0.5
) -> np.ndarray:
    """
    Create test audio samples (sine wave).

    Args:
        sample_rate: Sample rate in Hz
        duration: Duration in seconds
        frequency: Frequency in Hz
        amplitude: Amplitude (0.0 to 1.0)

    Returns:
        int16 array of audio samples
    """
    t = np.arange(int(sample_rate * duration)) / sample_rate
    return (np.sin(2 * np.pi * frequency * t) * amplitude * INT16_MAX).astype(np.int16)


def create_chime_samples(
    sample_rate: int = TEST_SAMPLE_RATE,
    duration: float = TEST_DURATION,
    frequencies: Sequence[float] = CHIME_FREQUENCIES,
    amplitude: float = 0.5
) -> np.ndarray:
    """
    Create a decaying multi-tone chime.

    Partials get quieter with frequency (1.0, 0.8, 0.6, ...).

    Returns:
        int16 array of audio samples
    """
    t = np.arange(int(sample_rate * duration)) / sample_rate
    signal = np.zeros_like(t)
    for i, freq in enumerate(frequencies):
        signal += (1.0 - 0.2 * i) * np.sin(2 * np.pi * freq * t)
    signal *= np.exp(-1.5 * t)
    signal /= np.max(np.abs(signal))
    return (signal * amplitude * INT16_MAX).astype(np.int16)


def create_noise_samples(
    n_samples: int,
    amplitude: float = 0.3,
    seed: int = 0
) -> np.ndarray:
    """White noise in the int16 domain (deterministic for a given seed)."""
    rng = np.random.default_rng(seed)
    noise = rng.uniform(-1.0, 1.0, n_samples)
    return (noise * amplitude * INT16_MAX).astype(np.int16)


def create_test_wav_file(
    sample_rate: int = TEST_SAMPLE_RATE,
    duration: float = TEST_DURATION,
    frequency: float = TEST_FREQUENCY,
    amplitude: float = 0.5,
    samples: Optional[np.ndarray] = None,
    channels: int = 1,
    directory: Optional[Path] = None
) -> Tuple[Path, int]:
    """
    Create a temporary 16-bit WAV file with test audio.

    Args:
        sample_rate: Sample rate in Hz
        duration: Duration in seconds
        frequency: Frequency in Hz
        amplitude: Amplitude (0.0 to 1.0)
        samples: Explicit int16 samples (overrides the sine parameters)
        channels: Number of channels; mono samples are duplicated
        directory: Where to create the file (system temp dir if None)

    Returns:
        Tuple of (file_path, sample_rate)
    """
    with tempfile.NamedTemporaryFile(suffix=".wav", delete=False, dir=directory) as tmp:
        tmp_path = Path(tmp.name)

    if samples is None:
        samples = create_test_audio_samples(sample_rate, duration, frequency, amplitude)
    samples = np.asarray(samples, dtype=np.int16)
    if channels > 1:
        samples = np.repeat(samples, channels)

    with wave.open(str(tmp_path), "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(samples.astype("<i2").tobytes())

    return tmp_path, sample_rate


def make_block(value: float = 500.0, n_samples: int = 2048, sample_rate: int = TEST_SAMPLE_RATE) -> AudioBlock:
    """Block whose amplitude (mean absolute value) is exactly `value`."""
    samples = np.full(n_samples, float(value))
    samples[1::2] *= -1
    return AudioBlock(samples, sample_rate)


# Stub collaborators

class StubScorer(Scorer):
    """
    Scorer that replays a scripted sequence of similarities.

    An Exception instance in the script is raised instead of scored. Once
    the script is exhausted the last value repeats.
    """

    name = "stub"

    def __init__(
        self,
        similarities: Union[float, Iterable[Union[float, Exception]]],
        threshold: Optional[float] = None
    ):
        if isinstance(similarities, (int, float)):
            similarities = [similarities]
        self.script: List[Union[float, Exception]] = list(similarities)
        self.threshold = threshold
        self.calls = 0

    def score(self, samples, sample_rate):
        index = min(self.calls, len(self.script) - 1)
        self.calls += 1
        value = self.script[index]
        if isinstance(value, Exception):
            raise value
        return SimilarityResult(similarity=float(value))


class FakeSource(AudioSource):
    """
    Capture source that replays scripted reads.

    Each script item is an array of samples or an Exception to raise.
    After the script runs out, `default` is returned on every read.
    """

    def __init__(
        self,
        script: Optional[Iterable[Union[np.ndarray, Exception]]] = None,
        default: Optional[np.ndarray] = None,
        sample_rate: int = TEST_SAMPLE_RATE
    ):
        self.sample_rate = sample_rate
        self.script = list(script or [])
        self.default = default if default is not None else np.zeros(2048)
        self.started = False
        self.stopped = False
        self.reads = 0

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def read_block(self, max_samples):
        self.reads += 1
        item = self.script.pop(0) if self.script else self.default
        if isinstance(item, Exception):
            raise item
        samples = np.asarray(item, dtype=np.float64)[:max_samples]
        return samples, int(samples.shape[0])
