"""
Feedback report generator.

Builds the end-of-session coaching report from the conversation transcript and
the finalized gesture statistics. The narrative is written by Azure AI Foundry;
when it is not configured or the call fails, a stock report derived from the
gesture statistics alone is returned instead.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import config
from utils.gesture_aggregator import GestureSummary

log = logging.getLogger(__name__)

STOCK_SOURCE = "stock"
AI_SOURCE = "ai"

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


@dataclass
class FeedbackReport:
    good_points: List[str] = field(default_factory=list)
    improvement_points: List[str] = field(default_factory=list)
    overall_score: int = 50
    source: str = STOCK_SOURCE

    def to_dict(self) -> dict:
        return {
            "goodPoints": self.good_points,
            "improvementPoints": self.improvement_points,
            "overallScore": self.overall_score,
            "source": self.source,
        }


def format_transcript(messages: List[Dict[str, Any]]) -> str:
    lines = []
    for msg in messages:
        speaker = "User" if msg.get("role") == "user" else "AI"
        lines.append(f"{speaker}: {msg.get('content', '')}")
    return "\n".join(lines)


def format_gesture_stats(summary: Optional[GestureSummary]) -> str:
    if summary is None:
        return "No facial data was captured in this session."
    return "\n".join([
        f"- Analyzed frames: {summary.total_samples}",
        f"- Smiling in {summary.smiling_rate:.0%} of frames (average intensity {summary.smile_intensity_avg:.2f}, peak {summary.smile_intensity_max:.2f})",
        f"- Looking at the partner in {summary.looking_rate:.0%} of frames (average gaze score {summary.gaze_score_avg:.2f})",
        f"- Looking up in {summary.gaze_up_samples} frames, down in {summary.gaze_down_samples} frames",
    ])


def build_feedback_prompt(messages: List[Dict[str, Any]], summary: Optional[GestureSummary]) -> str:
    return (
        "Conversation:\n"
        f"{format_transcript(messages)}\n\n"
        "Non-verbal statistics:\n"
        f"{format_gesture_stats(summary)}"
    )


def _as_points(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [line.strip(" -•\t") for line in value.splitlines() if line.strip(" -•\t")]
    return [str(v) for v in value]


def parse_feedback(text: str) -> FeedbackReport:
    """
    Extract the JSON report from a model reply.

    Raises:
        ValueError: no JSON object could be parsed
    """
    match = _JSON_OBJECT.search(text or "")
    if not match:
        raise ValueError("Failed to parse feedback response")
    data = json.loads(match.group(0))
    score = int(round(float(data.get("overallScore", 50))))
    return FeedbackReport(
        good_points=_as_points(data.get("goodPoints")),
        improvement_points=_as_points(data.get("improvementPoints")),
        overall_score=max(1, min(100, score)),
        source=AI_SOURCE,
    )


def stock_feedback(summary: Optional[GestureSummary]) -> FeedbackReport:
    """Report derived from the gesture statistics only."""
    if summary is None:
        return FeedbackReport(
            good_points=["You completed a practice session."],
            improvement_points=["Keep your face visible to the camera so smile and eye contact can be measured."],
            overall_score=50,
        )
    good, improve = [], []
    if summary.smiling_rate >= 0.5:
        good.append("You smiled through much of the conversation.")
    else:
        improve.append("Try to smile more often while you talk.")
    if summary.looking_rate >= 0.6:
        good.append("You kept good eye contact with your partner.")
    else:
        improve.append("Look at your partner more while talking.")
    if summary.gaze_down_samples > summary.total_samples * 0.3:
        improve.append("You often looked down; keep your head up.")
    if not good:
        good.append("You completed a practice session.")
    score = round(100 * (summary.smiling_rate + summary.looking_rate) / 2)
    return FeedbackReport(good_points=good, improvement_points=improve, overall_score=max(1, min(100, score)))


def generate_feedback(
    messages: List[Dict[str, Any]],
    summary: Optional[GestureSummary],
    service=None,
) -> FeedbackReport:
    """
    Generate the session report; never raises.

    Args:
        messages: Conversation transcript ({"role", "content"} dicts)
        summary: Finalized gesture statistics (None for an empty session)
        service: Chat service with chat_completion(); defaults to Azure AI Foundry
    """
    if service is None:
        if not config.is_foundry_enabled():
            return stock_feedback(summary)
        from services.azure_foundry import get_foundry_service
        service = get_foundry_service()
    try:
        reply = service.chat_completion(
            [{"role": "user", "content": build_feedback_prompt(messages, summary)}],
            system_prompt=config.FEEDBACK_SYSTEM_PROMPT,
            temperature=0.4,
            json_response=True,
        )
        return parse_feedback(reply)
    except Exception as e:
        log.warning("Feedback generation failed, using stock report: %s", e)
        return stock_feedback(summary)
