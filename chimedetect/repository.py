"""
Detection log persistence.

Single Responsibility: Append fired detections to a CSV file.
"""
import csv
import datetime
import threading
from pathlib import Path

from logger import get_logger
from .detector import DetectionFired

log = get_logger(__name__)

COLUMNS = [
    "timestamp",
    "detector_id",
    "similarity",
    "threshold",
    "quality",
    "consecutive_matches",
]


class DetectionRepository:
    """
    Repository for detection records.

    Single Responsibility: Detection CSV file operations.
    """

    def __init__(self, detections_file: Path):
        """
        Initialize detection repository.

        Args:
            detections_file: CSV file to append to (created with a header if missing)
        """
        self.detections_file = Path(detections_file)
        self._lock = threading.Lock()
        self._ensure_header()

    @classmethod
    def from_config(cls, config: dict) -> "DetectionRepository":
        return cls(Path(config["notification"]["detections_file"]))

    def _ensure_header(self) -> None:
        """Ensure CSV file has header row."""
        if not self.detections_file.exists():
            self.detections_file.parent.mkdir(parents=True, exist_ok=True)
            with self.detections_file.open("w", newline="") as f:
                csv.writer(f).writerow(COLUMNS)

    def save(self, event: DetectionFired) -> None:
        """
        Append one detection.

        Write failures are logged; the detection itself has already fired.
        """
        when = datetime.datetime.fromtimestamp(event.timestamp).isoformat(timespec="seconds")
        row = [
            when,
            event.detector_id,
            f"{event.similarity:.4f}",
            f"{event.threshold:.4f}",
            f"{event.quality:.4f}" if event.quality is not None else "",
            event.consecutive_matches,
        ]
        try:
            with self._lock, self.detections_file.open("a", newline="") as f:
                csv.writer(f).writerow(row)
        except OSError as e:
            log.error("Failed to write detections file %s: %s", self.detections_file, e)
            return
        log.info("Logged detection at %s (similarity %.3f)", when, event.similarity)
