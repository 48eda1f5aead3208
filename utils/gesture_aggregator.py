"""
Gesture Aggregator Module

Accumulates per-frame FacialMetrics into running session statistics and turns
them into averages once, at the end of the session.

Lifecycle: reset() at session start -> accumulate() once per analyzed frame ->
finalize() at session end. After finalize() the aggregator is frozen: further
accumulate() calls are ignored and finalize() returns the same summary.
An empty session finalizes to None, never to NaN averages.
"""

import logging
from dataclasses import dataclass, replace
from typing import Optional

from utils.facial_scorer import FacialMetrics, VerticalGaze

log = logging.getLogger(__name__)


@dataclass
class SessionGestureStats:
    """Running sums and counts for one session."""
    total_samples: int = 0
    smiling_samples: int = 0
    smile_intensity_sum: float = 0.0
    smile_intensity_max: float = 0.0
    gaze_score_sum: float = 0.0
    looking_samples: int = 0
    gaze_up_samples: int = 0
    gaze_down_samples: int = 0


@dataclass(frozen=True)
class GestureSummary:
    """Finalized session statistics (averages plus raw counts)."""
    total_samples: int
    smiling_samples: int
    smile_intensity_avg: float
    smile_intensity_max: float
    gaze_score_avg: float
    looking_samples: int
    gaze_up_samples: int
    gaze_down_samples: int

    @property
    def smiling_rate(self) -> float:
        return self.smiling_samples / self.total_samples

    @property
    def looking_rate(self) -> float:
        return self.looking_samples / self.total_samples

    def to_payload(self) -> dict:
        """Flat numeric payload for the session / feedback API."""
        return {
            "totalSamples": self.total_samples,
            "smilingSamples": self.smiling_samples,
            "smileIntensityAvg": self.smile_intensity_avg,
            "smileIntensityMax": self.smile_intensity_max,
            "gazeScoreAvg": self.gaze_score_avg,
            "lookingSamples": self.looking_samples,
            "gazeUpSamples": self.gaze_up_samples,
            "gazeDownSamples": self.gaze_down_samples,
            "smilingRate": self.smiling_rate,
            "lookingRate": self.looking_rate,
        }


class SessionGestureAggregator:
    """
    Owns SessionGestureStats for one session.

    Usage:
        aggregator = SessionGestureAggregator()
        aggregator.reset()
        aggregator.accumulate(metrics)   # once per analyzed frame
        summary = aggregator.finalize()  # GestureSummary or None
    """

    def __init__(self):
        self._stats = SessionGestureStats()
        self._finalized = False
        self._summary: Optional[GestureSummary] = None

    @property
    def total_samples(self) -> int:
        return self._stats.total_samples

    @property
    def is_finalized(self) -> bool:
        return self._finalized

    def snapshot(self) -> SessionGestureStats:
        """Copy of the running stats (safe to hand out)."""
        return replace(self._stats)

    def reset(self) -> None:
        self._stats = SessionGestureStats()
        self._finalized = False
        self._summary = None

    def accumulate(self, metrics: FacialMetrics) -> bool:
        """Add one frame; returns False (and changes nothing) once finalized."""
        if self._finalized:
            log.warning("Ignoring facial metrics received after the session was finalized")
            return False
        stats = self._stats
        stats.total_samples += 1
        stats.smile_intensity_sum += metrics.smile_intensity
        stats.smile_intensity_max = max(stats.smile_intensity_max, metrics.smile_intensity)
        stats.gaze_score_sum += metrics.gaze_score
        if metrics.is_smiling:
            stats.smiling_samples += 1
        if metrics.is_looking_at_target:
            stats.looking_samples += 1
        if metrics.vertical_gaze is VerticalGaze.UP:
            stats.gaze_up_samples += 1
        elif metrics.vertical_gaze is VerticalGaze.DOWN:
            stats.gaze_down_samples += 1
        return True

    def finalize(self) -> Optional[GestureSummary]:
        """Freeze the stats; returns None when no frame was accumulated."""
        if self._finalized:
            return self._summary
        self._finalized = True
        stats = self._stats
        if stats.total_samples == 0:
            self._summary = None
            return None
        self._summary = GestureSummary(
            total_samples=stats.total_samples,
            smiling_samples=stats.smiling_samples,
            smile_intensity_avg=stats.smile_intensity_sum / stats.total_samples,
            smile_intensity_max=stats.smile_intensity_max,
            gaze_score_avg=stats.gaze_score_sum / stats.total_samples,
            looking_samples=stats.looking_samples,
            gaze_up_samples=stats.gaze_up_samples,
            gaze_down_samples=stats.gaze_down_samples,
        )
        log.info(
            "Session gestures finalized: %d samples, smile avg %.2f, gaze avg %.2f",
            self._summary.total_samples,
            self._summary.smile_intensity_avg,
            self._summary.gaze_score_avg,
        )
        return self._summary
