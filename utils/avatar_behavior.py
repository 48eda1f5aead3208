"""
Avatar Behaviour Module

Discrete gesture and emotion labels for the conversation avatar, derived from
the session state on every animation frame. The avatar renderer is external;
this module only decides which labels to hand it.

Priority: recording -> NODDING, processing -> THINKING, mouth open -> TALKING,
otherwise a weighted idle variant that is held for idle_hold_ms before a new
one is drawn.
"""

import random
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, TypeVar

T = TypeVar("T")


class AvatarGesture(Enum):
    IDLE = "idle"
    THINKING = "thinking"
    TALKING = "talking"
    ARMS_CROSSED = "arms_crossed"
    EXPLAINING = "explaining"
    NODDING = "nodding"


class AvatarEmotion(Enum):
    NEUTRAL = "neutral"
    HAPPY = "happy"
    RELAXED = "relaxed"
    SURPRISED = "surprised"


IDLE_GESTURE_WEIGHTS: Dict[AvatarGesture, float] = {
    AvatarGesture.IDLE: 0.6,
    AvatarGesture.EXPLAINING: 0.25,
    AvatarGesture.ARMS_CROSSED: 0.15,
}

EMOTION_WEIGHTS: Dict[AvatarEmotion, float] = {
    AvatarEmotion.NEUTRAL: 0.5,
    AvatarEmotion.HAPPY: 0.35,
    AvatarEmotion.RELAXED: 0.1,
    AvatarEmotion.SURPRISED: 0.05,
}


def weighted_choice(rng: random.Random, weights: Dict[T, float]) -> T:
    options = list(weights.keys())
    return rng.choices(options, weights=[weights[o] for o in options], k=1)[0]


@dataclass
class AvatarState:
    """What the avatar renderer should show this frame."""
    mouth_openness: float = 0.0
    gesture: AvatarGesture = AvatarGesture.IDLE
    emotion: AvatarEmotion = AvatarEmotion.NEUTRAL

    def to_dict(self) -> dict:
        return {
            "mouthOpenness": self.mouth_openness,
            "gesture": self.gesture.value,
            "emotion": self.emotion.value,
        }


class AvatarBehaviorSelector:
    """
    Picks gesture/emotion labels. Randomness comes from the injected rng so a
    seeded selector is reproducible.
    """

    def __init__(
        self,
        rng: Optional[random.Random] = None,
        talking_threshold: float = 0.1,
        idle_hold_ms: float = 4000.0,
    ):
        self.rng = rng or random.Random()
        self.talking_threshold = talking_threshold
        self.idle_hold_ms = idle_hold_ms
        self._mode: Optional[AvatarGesture] = None
        self._gesture = AvatarGesture.IDLE
        self._emotion = AvatarEmotion.NEUTRAL
        self._idle_until = 0.0

    def select(self, now_ms: float, is_recording: bool, is_processing: bool, mouth_openness: float):
        """
        Returns:
            (AvatarGesture, AvatarEmotion)
        """
        if is_recording:
            self._enter(AvatarGesture.NODDING, AvatarGesture.NODDING, AvatarEmotion.NEUTRAL)
        elif is_processing:
            self._enter(AvatarGesture.THINKING, AvatarGesture.THINKING, AvatarEmotion.NEUTRAL)
        elif mouth_openness > self.talking_threshold:
            if self._mode is not AvatarGesture.TALKING:
                self._enter(AvatarGesture.TALKING, AvatarGesture.TALKING, weighted_choice(self.rng, EMOTION_WEIGHTS))
        elif self._mode is not AvatarGesture.IDLE or now_ms >= self._idle_until:
            self._enter(
                AvatarGesture.IDLE,
                weighted_choice(self.rng, IDLE_GESTURE_WEIGHTS),
                weighted_choice(self.rng, EMOTION_WEIGHTS),
            )
            self._idle_until = now_ms + self.idle_hold_ms
        return self._gesture, self._emotion

    def _enter(self, mode: AvatarGesture, gesture: AvatarGesture, emotion: AvatarEmotion) -> None:
        self._mode = mode
        self._gesture = gesture
        self._emotion = emotion
