"""
Detection log reporting.

Single Responsibility: Load the detection CSV and summarise it.
"""
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import pandas as pd

from logger import get_logger

log = get_logger(__name__)


def load_detections(detections_file: Path) -> pd.DataFrame:
    """
    Load detections CSV file.

    Args:
        detections_file: Path to detections.csv

    Returns:
        DataFrame with a parsed 'timestamp' column, or an empty DataFrame
        if the file doesn't exist
    """
    detections_file = Path(detections_file)
    if not detections_file.exists():
        return pd.DataFrame()

    df = pd.read_csv(detections_file)
    df.columns = [c.strip() for c in df.columns]
    if "timestamp" in df.columns:
        df["timestamp"] = pd.to_datetime(df["timestamp"], errors="coerce")
    return df


def filter_recent_detections(
    df: pd.DataFrame,
    hours: int = 24,
    now: Optional[datetime] = None
) -> pd.DataFrame:
    """
    Keep detections from the last N hours.

    Args:
        df: Detections DataFrame
        hours: Number of hours to look back
        now: Reference time (defaults to the current time)
    """
    if df.empty or "timestamp" not in df.columns:
        return df
    cutoff = (now or datetime.now()) - timedelta(hours=hours)
    return df[df["timestamp"] >= cutoff].copy()


def generate_detection_report(df: pd.DataFrame, hours: int = 24, now: Optional[datetime] = None) -> str:
    """
    Generate a plain-text summary of detections.

    Args:
        df: Detections DataFrame (already filtered to the period)
        hours: Number of hours covered by the report (for the header)
        now: End of the reporting period

    Returns:
        Formatted report text
    """
    now = now or datetime.now()
    period_start = now - timedelta(hours=hours)

    lines = []
    lines.append(f"Chime Detector Report - Last {hours} Hours")
    lines.append("=" * 60)
    lines.append(f"Period: {period_start.strftime('%Y-%m-%d %H:%M:%S')} to {now.strftime('%Y-%m-%d %H:%M:%S')}")
    lines.append("")

    if df.empty:
        lines.append("No detections recorded in this period.")
        return "\n".join(lines)

    similarity = pd.to_numeric(df["similarity"], errors="coerce")
    lines.append(f"Detections: {len(df)}")
    lines.append(f"Similarity: mean {similarity.mean():.3f}, min {similarity.min():.3f}, max {similarity.max():.3f}")
    if "quality" in df.columns:
        quality = pd.to_numeric(df["quality"], errors="coerce").dropna()
        if not quality.empty:
            lines.append(f"Quality:    mean {quality.mean():.3f}")
    lines.append("")

    if "detector_id" in df.columns and df["detector_id"].nunique() > 1:
        lines.append("By detector:")
        for detector, count in df["detector_id"].value_counts().items():
            lines.append(f"  {detector:<24} {count}")
        lines.append("")

    per_day = df.groupby(df["timestamp"].dt.strftime("%Y-%m-%d")).size()
    lines.append("Per day:")
    for day, count in per_day.items():
        lines.append(f"  {day}  {count}")
    lines.append("")

    lines.append(f"{'Timestamp':<20} {'Similarity':<12} {'Threshold':<12} {'Quality'}")
    lines.append("-" * 60)
    for _, row in df.sort_values("timestamp", ascending=False).iterrows():
        stamp = row["timestamp"].strftime("%Y-%m-%d %H:%M:%S") if pd.notna(row["timestamp"]) else "N/A"
        quality = row.get("quality")
        quality_str = f"{float(quality):.3f}" if pd.notna(quality) else "N/A"
        lines.append(
            f"{stamp:<20} {float(row['similarity']):<12.3f} {float(row['threshold']):<12.3f} {quality_str}"
        )

    lines.append("")
    lines.append("=" * 60)
    return "\n".join(lines)
