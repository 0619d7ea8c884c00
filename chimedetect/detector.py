"""
Streaming match engine.

Single Responsibility: Turn a stream of scored audio blocks into at most
one detection per cooldown window.

States: IDLE -> ACCUMULATING(n) -> FIRED -> IDLE. A block that is silent
or does not match resets the streak; a streak that reaches the required
length inside the cooldown window keeps accumulating until the cooldown
has elapsed and then fires.
"""
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from logger import get_logger
from .audio import AudioBlock
from .similarity import Scorer, SimilarityResult
from .threshold import AdaptiveThreshold

log = get_logger(__name__)


class EngineState(Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FIRED = "fired"


@dataclass(frozen=True)
class DetectionSettings:
    """Read-only snapshot of the detection tunables for one session."""
    detector_id: str = "chime-detector"
    amplitude_threshold: float = 140.0
    match_threshold: float = 0.85
    required_consecutive_matches: int = 3
    cooldown_sec: float = 10.0
    adaptive_enabled: bool = True
    adaptive_window: int = 50
    adaptive_min_history: int = 10
    adaptive_iqr_multiplier: float = 1.2
    adaptive_bounds: Tuple[float, float] = (0.70, 0.95)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "DetectionSettings":
        d = config["detection"]
        return cls(
            detector_id=str(d["detector_id"]),
            amplitude_threshold=float(d["amplitude_threshold"]),
            match_threshold=float(d["fingerprint_match_threshold"]),
            required_consecutive_matches=int(d["required_consecutive_matches"]),
            cooldown_sec=float(d["cooldown_duration_ms"]) / 1000.0,
            adaptive_enabled=bool(d["adaptive_threshold_enabled"]),
            adaptive_window=int(d["adaptive_window"]),
            adaptive_min_history=int(d["adaptive_min_history"]),
            adaptive_iqr_multiplier=float(d["adaptive_iqr_multiplier"]),
            adaptive_bounds=(float(d["adaptive_min"]), float(d["adaptive_max"])),
        )


@dataclass(frozen=True)
class DetectionFired:
    """Emitted once per detection."""
    timestamp: float  # wall clock, seconds since epoch
    detector_id: str
    similarity: float
    threshold: float
    quality: Optional[float] = None
    consecutive_matches: int = 0

    @property
    def timestamp_ms(self) -> int:
        return int(self.timestamp * 1000)


@dataclass(frozen=True)
class DetectionSnapshot:
    """Immutable view of the engine for observers on other threads."""
    state: EngineState
    consecutive_matches: int
    last_similarity: Optional[float]
    threshold: float
    last_detection_time: Optional[float]
    blocks_processed: int
    detections: int
    healthy: bool = True


@dataclass
class DetectionState:
    """Mutable per-session state, owned by the worker that drives the engine."""
    consecutive_matches: int = 0
    last_detection: Optional[float] = None  # monotonic clock
    last_detection_time: Optional[float] = None  # wall clock
    last_similarity: Optional[float] = None
    fired_last_block: bool = False
    blocks_processed: int = 0
    detections: int = 0

    def reset_streak(self) -> None:
        self.consecutive_matches = 0


class MatchEngine:
    """
    Applies the amplitude gate, scorer, threshold and debounce to live blocks.

    Not thread-safe: one worker owns the engine; other threads read
    snapshot() results.
    """

    def __init__(
        self,
        scorer: Scorer,
        settings: DetectionSettings,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize match engine.

        Args:
            scorer: Strategy that scores a block against the reference
            settings: Detection tunables
            clock: Monotonic time source used for the cooldown
        """
        self.scorer = scorer
        self.settings = settings
        self.clock = clock
        self.threshold = AdaptiveThreshold(
            baseline=settings.match_threshold,
            enabled=settings.adaptive_enabled,
            capacity=settings.adaptive_window,
            min_history=settings.adaptive_min_history,
            multiplier=settings.adaptive_iqr_multiplier,
            bounds=settings.adaptive_bounds,
        )
        self.state = DetectionState()

    @property
    def engine_state(self) -> EngineState:
        if self.state.fired_last_block:
            return EngineState.FIRED
        if self.state.consecutive_matches > 0:
            return EngineState.ACCUMULATING
        return EngineState.IDLE

    @property
    def consecutive_matches(self) -> int:
        return self.state.consecutive_matches

    def cooldown_elapsed(self, now: float) -> bool:
        last = self.state.last_detection
        return last is None or (now - last) > self.settings.cooldown_sec

    def process_block(self, block: AudioBlock, now: Optional[float] = None) -> Optional[DetectionFired]:
        """
        Process one captured block.

        Args:
            block: Live audio block
            now: Monotonic time of the block (defaults to the engine clock)

        Returns:
            DetectionFired if this block completed a detection, None otherwise
        """
        if now is None:
            now = self.clock()
        self.state.blocks_processed += 1
        self.state.fired_last_block = False

        amplitude = block.amplitude
        if amplitude <= self.settings.amplitude_threshold:
            self.state.reset_streak()
            return None

        try:
            result = self.scorer.score(block.samples, block.sample_rate)
            threshold = self.threshold.update(result.similarity)
            is_match = self.scorer.is_match(result, threshold)
        except Exception as e:
            log.warning("Block scoring failed, treating as non-match: %s", e)
            log.debug("Scoring failure details", exc_info=True)
            self.state.reset_streak()
            return None

        self.state.last_similarity = result.similarity
        log.debug(
            "amp=%.1f similarity=%.3f threshold=%.3f match=%s",
            amplitude, result.similarity, threshold, is_match
        )

        if not is_match:
            self.state.reset_streak()
            return None

        self.state.consecutive_matches += 1
        if self.state.consecutive_matches < self.settings.required_consecutive_matches:
            return None

        if not self.cooldown_elapsed(now):
            if self.state.consecutive_matches == self.settings.required_consecutive_matches:
                remaining = self.settings.cooldown_sec - (now - self.state.last_detection)
                log.warning("Detection suppressed by cooldown (%.1fs remaining)", remaining)
            return None

        return self._fire(block, result, threshold, now)

    def process_silence(self) -> None:
        """Account for a block that could not be read (treated as silence)."""
        self.state.blocks_processed += 1
        self.state.fired_last_block = False
        self.state.reset_streak()

    def _fire(
        self,
        block: AudioBlock,
        result: SimilarityResult,
        threshold: float,
        now: float
    ) -> DetectionFired:
        event = DetectionFired(
            timestamp=block.timestamp,
            detector_id=self.settings.detector_id,
            similarity=result.similarity,
            threshold=threshold,
            quality=result.quality,
            consecutive_matches=self.state.consecutive_matches,
        )
        self.state.reset_streak()
        self.state.last_detection = now
        self.state.last_detection_time = block.timestamp
        self.state.fired_last_block = True
        self.state.detections += 1
        log.info(
            "Chime detected (similarity %.3f, threshold %.3f, %d consecutive matches)",
            event.similarity, event.threshold, event.consecutive_matches
        )
        return event

    def snapshot(self, healthy: bool = True) -> DetectionSnapshot:
        return DetectionSnapshot(
            state=self.engine_state,
            consecutive_matches=self.state.consecutive_matches,
            last_similarity=self.state.last_similarity,
            threshold=self.threshold.threshold(),
            last_detection_time=self.state.last_detection_time,
            blocks_processed=self.state.blocks_processed,
            detections=self.state.detections,
            healthy=healthy,
        )

    def reset(self) -> None:
        """Return to a cold state (new session)."""
        self.state = DetectionState()
        self.threshold.reset()
