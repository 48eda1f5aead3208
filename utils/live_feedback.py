"""
Live feedback message shown next to the camera preview while analysis runs.
"""

from dataclasses import dataclass
from typing import Optional

from utils.facial_scorer import FacialMetrics

GOOD = "good"
WARNING = "warning"
INFO = "info"


@dataclass(frozen=True)
class LiveFeedback:
    message: str
    type: str
    smile_percent: int
    gaze_percent: int

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "type": self.type,
            "smilePercent": self.smile_percent,
            "gazePercent": self.gaze_percent,
        }


def build_live_feedback(metrics: Optional[FacialMetrics], is_analyzing: bool) -> Optional[LiveFeedback]:
    """Pick the coaching message for the latest metrics; None while analysis is off."""
    if not is_analyzing or metrics is None:
        return None
    if not metrics.is_looking_at_target and not metrics.is_smiling:
        message, kind = "Look at your partner and smile", WARNING
    elif not metrics.is_looking_at_target:
        message, kind = "Make eye contact while you talk", WARNING
    elif not metrics.is_smiling:
        message, kind = "Try smiling a little more", INFO
    else:
        message, kind = "Great expression!", GOOD
    return LiveFeedback(
        message=message,
        type=kind,
        smile_percent=round(metrics.smile_intensity * 100),
        gaze_percent=round(metrics.gaze_score * 100),
    )
