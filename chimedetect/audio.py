"""
Audio capture abstraction.

Single Responsibility: Get 16-bit PCM samples in, either from a WAV clip
(reference recordings) or from a live capture source.
"""
import subprocess
import time
import wave
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

import numpy as np

from logger import get_logger

log = get_logger(__name__)

INT16_MAX = 32767
BYTES_PER_SAMPLE = 2


@dataclass(frozen=True)
class AudioBlock:
    """One captured slice of mono audio in the int16 amplitude domain."""
    samples: np.ndarray
    sample_rate: int
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self):
        # Own copy: freezing must not touch the caller's buffer
        samples = np.array(self.samples, dtype=np.float64, copy=True)
        samples.setflags(write=False)
        object.__setattr__(self, "samples", samples)

    def __len__(self) -> int:
        return int(self.samples.shape[0])

    @property
    def amplitude(self) -> float:
        """Mean absolute sample value (the silence gate metric)."""
        if self.samples.size == 0:
            return 0.0
        return float(np.mean(np.abs(self.samples)))

    @property
    def peak(self) -> float:
        if self.samples.size == 0:
            return 0.0
        return float(np.max(np.abs(self.samples)))

    @property
    def duration_sec(self) -> float:
        return len(self) / self.sample_rate


def load_mono_wav(path: Path) -> Tuple[np.ndarray, int]:
    """
    Load a 16-bit PCM WAV file as mono int16-domain samples.

    Args:
        path: Path to WAV file

    Returns:
        Tuple of (samples, sample_rate)
        - samples: float64 array in range [-32768, 32767]
        - sample_rate: Sample rate in Hz

    Raises:
        ValueError: If the file is not 16-bit PCM
    """
    with wave.open(str(path), "rb") as wf:
        nch = wf.getnchannels()
        sr = wf.getframerate()
        width = wf.getsampwidth()
        frames = wf.readframes(wf.getnframes())

    if width != BYTES_PER_SAMPLE:
        raise ValueError(f"{path}: only 16-bit PCM WAV is supported (sample width {width * 8} bits)")

    samples = np.frombuffer(frames, dtype="<i2").astype(np.float64)

    if nch > 1:
        samples = samples[: len(samples) - len(samples) % nch]
        samples = samples.reshape(-1, nch).mean(axis=1)

    return samples, sr


class AudioSource(ABC):
    """Blocking source of mono int16-domain samples at a fixed rate."""

    sample_rate: int

    @abstractmethod
    def read_block(self, max_samples: int) -> Tuple[np.ndarray, int]:
        """
        Read up to max_samples samples, blocking until data is available.

        Returns:
            Tuple of (samples, count); count may be smaller than max_samples
        """

    def start(self) -> None:
        """Acquire the underlying device."""

    def stop(self) -> None:
        """Release the underlying device."""

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()


class ArecordCapture(AudioSource):
    """
    Captures audio through an ALSA ``arecord`` subprocess.

    Single Responsibility: Audio I/O operations.
    """

    def __init__(self, config: dict):
        """
        Initialize audio capture.

        Args:
            config: Configuration dictionary with an ``audio`` section
        """
        self.audio_config = config["audio"]
        self.device = self.audio_config["device"]
        self.sample_rate = self.audio_config["sample_rate"]
        self.channels = self.audio_config["channels"]
        self._process: Optional[subprocess.Popen] = None

    def start(self) -> None:
        """Start the arecord process."""
        if self._process is not None:
            raise RuntimeError("Audio capture already started")

        if not self.device or not isinstance(self.device, str):
            raise ValueError(
                f"Invalid audio device configuration: {self.device}. "
                f"Expected string like 'plughw:CARD=Device,DEV=0'"
            )

        cmd = [
            "arecord",
            "-D", self.device,
            "-f", self.audio_config["sample_format"],
            "-r", str(self.sample_rate),
            "-c", str(self.channels),
            "-q",
            "-t", "raw"
        ]

        try:
            self._process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE
            )
        except FileNotFoundError:
            raise FileNotFoundError(
                "arecord command not found. Install alsa-utils: "
                "sudo apt-get install alsa-utils"
            )

        time.sleep(0.1)

        if self._process.poll() is not None:
            stderr_msg = ""
            if self._process.stderr:
                stderr_msg = self._process.stderr.read().decode(errors="ignore").strip()
            self._process = None

            error_hints = {
                "Device or resource busy": "Audio device is in use by another process",
                "No such file or directory": f"Audio device '{self.device}' not found. Check with 'arecord -l'",
                "Permission denied": "No permission to access audio device. Add user to audio group: 'sudo usermod -a -G audio $USER'",
            }
            hint = next((f" Hint: {msg}" for key, msg in error_hints.items() if key in stderr_msg), "")
            raise RuntimeError(
                f"arecord failed to start. Device: {self.device}. Error: {stderr_msg}.{hint}"
            )
        log.info("Started arecord on %s (%d Hz)", self.device, self.sample_rate)

    def read_block(self, max_samples: int) -> Tuple[np.ndarray, int]:
        if self._process is None or self._process.stdout is None:
            raise RuntimeError("Audio capture not started")

        frame_bytes = BYTES_PER_SAMPLE * self.channels
        data = self._process.stdout.read(max_samples * frame_bytes)
        if not data:
            raise EOFError("Audio stream ended")

        data = data[: len(data) - len(data) % frame_bytes]
        samples = np.frombuffer(data, dtype="<i2").astype(np.float64)
        if self.channels > 1:
            samples = samples.reshape(-1, self.channels).mean(axis=1)
        return samples, int(samples.shape[0])

    def is_running(self) -> bool:
        """Check if capture process is still running."""
        if self._process is None:
            return False
        return self._process.poll() is None

    def stop(self) -> None:
        """Stop audio capture process."""
        if self._process is None:
            return

        if self._process.poll() is None:
            self._process.terminate()
            time.sleep(0.1)
            if self._process.poll() is None:
                self._process.kill()

        self._process = None
        log.info("Stopped arecord")
