"""
Lip-Sync Module

LipSyncAnimator smooths the raw envelope into natural mouth motion with
separate attack (opening) and release (closing) times. LipSyncDriver wires an
audio source, the envelope extractor and the animator into the animation-frame
loop and hands every new value to the avatar consumers.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from utils.audio_envelope import AudioAnalysisUnavailableError, AudioEnvelopeExtractor
from utils.audio_playback import ENDED, PAUSE, PLAY, AudioSignalSource
from utils.frame_scheduler import FrameScheduler

log = logging.getLogger(__name__)


@dataclass
class LipSyncState:
    current_value: float = 0.0
    last_update_timestamp: Optional[float] = None


class LipSyncAnimator:
    """
    Attack/release integrator.

    Moving up, the value closes deltaMs / attack_time_ms of the remaining gap
    per tick; moving down it uses release_time_ms. The result is clamped so it
    never passes the target.
    """

    def __init__(self, attack_time_ms: float = 50.0, release_time_ms: float = 100.0):
        if attack_time_ms <= 0 or release_time_ms <= 0:
            raise ValueError("attack_time_ms and release_time_ms must be positive")
        self.attack_time_ms = float(attack_time_ms)
        self.release_time_ms = float(release_time_ms)
        self.state = LipSyncState()

    @property
    def value(self) -> float:
        return self.state.current_value

    def reset(self, timestamp_ms: Optional[float] = None) -> None:
        self.state = LipSyncState(0.0, timestamp_ms)

    def step(self, target: float, delta_ms: float) -> float:
        current = self.state.current_value
        delta_ms = max(0.0, float(delta_ms))
        if target > current:
            rate = delta_ms / self.attack_time_ms
            new_value = min(current + (target - current) * rate, target)
        else:
            rate = delta_ms / self.release_time_ms
            new_value = max(current - (current - target) * rate, target)
        self.state.current_value = new_value
        return new_value

    def update(self, target: float, timestamp_ms: float) -> float:
        """Advance to timestamp_ms; the first update after a reset without a timestamp has delta 0."""
        last = self.state.last_update_timestamp
        delta_ms = 0.0 if last is None else timestamp_ms - last
        self.state.last_update_timestamp = timestamp_ms
        return self.step(target, delta_ms)


class LipSyncDriver:
    """
    Runs envelope extraction + animation on the animation-frame scheduler
    while its source is playing.

    Usage:
        driver = LipSyncDriver(extractor, animator, loop.animation_frames, loop.now_ms)
        driver.add_consumer(avatar.set_mouth_open)
        driver.arm(player)   # follows play / pause / ended from here on
        driver.disarm()
    """

    def __init__(
        self,
        extractor: AudioEnvelopeExtractor,
        animator: LipSyncAnimator,
        scheduler: FrameScheduler,
        clock_ms: Callable[[], float],
        name: str = "lip-sync",
    ):
        self.extractor = extractor
        self.animator = animator
        self.scheduler = scheduler
        self._clock_ms = clock_ms
        self.name = name
        self._consumers: List[Callable[[float], None]] = []
        self._source: Optional[AudioSignalSource] = None
        self._frame_handle: Optional[int] = None
        self._active = False

    @property
    def value(self) -> float:
        return self.animator.value

    @property
    def is_armed(self) -> bool:
        return self._source is not None

    @property
    def is_available(self) -> bool:
        return self.extractor.is_available

    def add_consumer(self, consumer: Callable[[float], None]) -> None:
        self._consumers.append(consumer)

    def arm(self, source: AudioSignalSource) -> bool:
        """Follow `source`; returns False when lip-sync analysis is unavailable."""
        if self._source is source:
            return True
        self.disarm()
        try:
            if not self.extractor.attach(source):
                return False
        except AudioAnalysisUnavailableError as e:
            log.warning("%s disabled: %s", self.name, e)
            return False
        source.add_listener(PLAY, self._on_play)
        source.add_listener(PAUSE, self._on_stop)
        source.add_listener(ENDED, self._on_stop)
        self._source = source
        if source.is_active():
            self._on_play()
        return True

    def disarm(self) -> None:
        if self._source is None:
            return
        self._source.remove_listener(PLAY, self._on_play)
        self._source.remove_listener(PAUSE, self._on_stop)
        self._source.remove_listener(ENDED, self._on_stop)
        self._source = None
        self._on_stop()
        self.extractor.detach()

    def _on_play(self) -> None:
        self.extractor.resume()
        self.animator.reset(self._clock_ms())
        self._active = True
        if self._frame_handle is None:
            self._frame_handle = self.scheduler.request_frame(self._on_frame)

    def _on_stop(self) -> None:
        self._active = False
        self.extractor.suspend()
        self.scheduler.cancel_frame(self._frame_handle)
        self._frame_handle = None
        self.animator.reset()
        self._emit(0.0)

    def _on_frame(self, timestamp_ms: float) -> None:
        self._frame_handle = None
        if not self._active:
            return
        sample = self.extractor.sample(timestamp_ms)
        target = sample.value if sample is not None else 0.0
        self._emit(self.animator.update(target, timestamp_ms))
        self._frame_handle = self.scheduler.request_frame(self._on_frame)

    def _emit(self, value: float) -> None:
        for consumer in self._consumers:
            try:
                consumer(value)
            except Exception:
                log.exception("Error in %s consumer", self.name)
