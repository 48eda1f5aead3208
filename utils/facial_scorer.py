"""
Facial Landmark Scorer Module

Derives smile and gaze signals from one frame of MediaPipe face-mesh landmarks
(normalized image coordinates, y grows downward).

Smile: how far the two mouth corners sit above the vertical centre of the lips.
Gaze:  how well the face direction (nose tip relative to the eye centre) matches
       the direction from the face to the on-screen gaze target. The x axis of
       the target direction is mirrored because the front camera image is
       flipped horizontally.

The multipliers (10, 3, 4) and thresholds (0.3, 0.6) are calibration constants
taken from observed behaviour; keep them as they are.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Union

import numpy as np

# MediaPipe face mesh indices
LEFT_MOUTH_CORNER = 61
RIGHT_MOUTH_CORNER = 291
UPPER_LIP_CENTER = 13
LOWER_LIP_CENTER = 14
NOSE_TIP = 1
LEFT_EYE = 33
RIGHT_EYE = 263
REQUIRED_LANDMARKS = max(
    LEFT_MOUTH_CORNER, RIGHT_MOUTH_CORNER, UPPER_LIP_CENTER, LOWER_LIP_CENTER, NOSE_TIP, LEFT_EYE, RIGHT_EYE
) + 1

SMILE_SENSITIVITY = 10.0
SMILE_THRESHOLD = 0.3
GAZE_HORIZONTAL_SENSITIVITY = 3.0
GAZE_VERTICAL_SENSITIVITY = 4.0
GAZE_THRESHOLD = 0.6
# |vertical deviation| beyond this puts the frame in the up/down bucket
GAZE_VERTICAL_BUCKET_THRESHOLD = 0.1

Landmarks = Union[np.ndarray, Sequence[Sequence[float]]]


def clamp01(value: float) -> float:
    """Clamp to [0, 1]; NaN and infinities map to 0."""
    if not math.isfinite(value):
        return 0.0
    return max(0.0, min(1.0, value))


class VerticalGaze(Enum):
    UP = "up"
    CENTER = "center"
    DOWN = "down"


@dataclass
class GazeTarget:
    """Where the user should look, in normalized screen space. Mutable: read fresh every frame."""
    x: float = 0.25
    y: float = 0.5

    def update(self, x: float, y: float) -> None:
        if not (0.0 <= x <= 1.0 and 0.0 <= y <= 1.0):
            raise ValueError(f"Gaze target must be within [0, 1] x [0, 1], got ({x}, {y})")
        self.x = float(x)
        self.y = float(y)

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y}


@dataclass(frozen=True)
class FacialMetrics:
    """Per-frame smile and gaze result."""
    is_smiling: bool = False
    smile_intensity: float = 0.0
    is_looking_at_target: bool = False
    gaze_score: float = 0.0
    mouth_corner_left: float = 0.0
    mouth_corner_right: float = 0.0
    vertical_gaze: VerticalGaze = VerticalGaze.CENTER
    face_detected: bool = False

    @classmethod
    def neutral(cls) -> "FacialMetrics":
        return cls()

    def to_dict(self) -> dict:
        return {
            "isSmiling": self.is_smiling,
            "smileIntensity": self.smile_intensity,
            "isLookingAtTarget": self.is_looking_at_target,
            "gazeScore": self.gaze_score,
            "mouthCornerLeft": self.mouth_corner_left,
            "mouthCornerRight": self.mouth_corner_right,
            "verticalGaze": self.vertical_gaze.value,
            "faceDetected": self.face_detected,
        }


def calculate_smile(landmarks: np.ndarray):
    """
    Returns:
        (is_smiling, intensity)
    """
    left_corner = landmarks[LEFT_MOUTH_CORNER]
    right_corner = landmarks[RIGHT_MOUTH_CORNER]
    mouth_center_y = (landmarks[UPPER_LIP_CENTER][1] + landmarks[LOWER_LIP_CENTER][1]) / 2
    left_lift = mouth_center_y - left_corner[1]
    right_lift = mouth_center_y - right_corner[1]
    intensity = clamp01(float(left_lift + right_lift) * SMILE_SENSITIVITY)
    return intensity > SMILE_THRESHOLD, intensity


def calculate_gaze(landmarks: np.ndarray, target: GazeTarget):
    """
    Returns:
        (is_looking_at_target, gaze_score, vertical_gaze)
    """
    nose_tip = landmarks[NOSE_TIP]
    left_eye = landmarks[LEFT_EYE]
    right_eye = landmarks[RIGHT_EYE]
    eye_center_x = (left_eye[0] + right_eye[0]) / 2
    eye_center_y = (left_eye[1] + right_eye[1]) / 2

    face_direction_x = nose_tip[0] - eye_center_x
    face_direction_y = nose_tip[1] - eye_center_y
    target_direction_x = eye_center_x - target.x
    target_direction_y = target.y - eye_center_y

    horizontal_match = 1 - abs(face_direction_x - target_direction_x) * GAZE_HORIZONTAL_SENSITIVITY
    vertical_match = 1 - abs(face_direction_y - target_direction_y) * GAZE_VERTICAL_SENSITIVITY
    gaze_score = clamp01(float(horizontal_match + vertical_match) / 2)

    vertical_deviation = float(face_direction_y - target_direction_y)
    if vertical_deviation < -GAZE_VERTICAL_BUCKET_THRESHOLD:
        vertical = VerticalGaze.UP
    elif vertical_deviation > GAZE_VERTICAL_BUCKET_THRESHOLD:
        vertical = VerticalGaze.DOWN
    else:
        vertical = VerticalGaze.CENTER
    return gaze_score > GAZE_THRESHOLD, gaze_score, vertical


class FacialLandmarkScorer:
    """
    Scores one landmark frame against a shared, mutable GazeTarget.

    Usage:
        target = GazeTarget(0.25, 0.5)
        scorer = FacialLandmarkScorer(target)
        metrics = scorer.score(landmarks)   # None / empty -> FacialMetrics.neutral()
    """

    def __init__(self, gaze_target: Optional[GazeTarget] = None):
        self.gaze_target = gaze_target if gaze_target is not None else GazeTarget()

    def score(self, landmarks: Optional[Landmarks]) -> FacialMetrics:
        if landmarks is None:
            return FacialMetrics.neutral()
        points = np.asarray(landmarks, dtype=np.float64)
        if points.ndim != 2 or points.shape[0] < REQUIRED_LANDMARKS or points.shape[1] < 2:
            return FacialMetrics.neutral()

        is_smiling, intensity = calculate_smile(points)
        is_looking, gaze_score, vertical = calculate_gaze(points, self.gaze_target)
        return FacialMetrics(
            is_smiling=is_smiling,
            smile_intensity=intensity,
            is_looking_at_target=is_looking,
            gaze_score=gaze_score,
            mouth_corner_left=float(points[LEFT_MOUTH_CORNER][1]),
            mouth_corner_right=float(points[RIGHT_MOUTH_CORNER][1]),
            vertical_gaze=vertical,
            face_detected=True,
        )
