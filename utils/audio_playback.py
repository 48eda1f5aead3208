"""
Audio Playback Module

Playable audio sources for lip-sync analysis. An AudioSignalSource behaves like
an HTML media element as far as the envelope extractor is concerned: it reports
whether it is playing, hands out the newest window of samples, and fires
"play" / "pause" / "ended" events.

AudioClipPlayer plays a decoded clip (e.g. the synthesized reply) either on the
wall clock only (headless, the browser plays the audio itself) or through the
local speakers with a sounddevice OutputStream.
"""

import io
import logging
import time
import wave
from typing import Callable, Dict, List, Optional

import numpy as np

log = logging.getLogger(__name__)

PLAY = "play"
PAUSE = "pause"
ENDED = "ended"
_EVENTS = (PLAY, PAUSE, ENDED)


class AudioSignalSource:
    """Base class: event listeners plus the analysis-facing audio interface."""

    def __init__(self, sample_rate: float):
        self.sample_rate = float(sample_rate)
        self._listeners: Dict[str, List[Callable[[], None]]] = {e: [] for e in _EVENTS}

    def add_listener(self, event: str, callback: Callable[[], None]) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown audio event: {event}")
        self._listeners[event].append(callback)

    def remove_listener(self, event: str, callback: Callable[[], None]) -> None:
        try:
            self._listeners[event].remove(callback)
        except (KeyError, ValueError):
            pass

    def _emit(self, event: str) -> None:
        for callback in list(self._listeners[event]):
            callback()

    def is_active(self) -> bool:
        raise NotImplementedError

    def latest_window(self, size: int) -> np.ndarray:
        """Return up to `size` of the most recent samples as float32 in [-1, 1]."""
        raise NotImplementedError


def pcm16_to_float(pcm: np.ndarray) -> np.ndarray:
    """Convert int16 PCM to float32 in [-1, 1]; float input is passed through."""
    arr = np.asarray(pcm)
    if arr.dtype == np.int16:
        return arr.astype(np.float32) / 32768.0
    return arr.astype(np.float32)


def decode_wav(data: bytes):
    """
    Decode 16-bit PCM WAV bytes to a mono float32 array.

    Returns:
        (samples, sample_rate)

    Raises:
        ValueError: not a 16-bit PCM WAV file
    """
    try:
        with wave.open(io.BytesIO(data), "rb") as wf:
            if wf.getsampwidth() != 2:
                raise ValueError(f"Only 16-bit PCM WAV is supported (got {wf.getsampwidth() * 8}-bit)")
            channels = wf.getnchannels()
            sample_rate = wf.getframerate()
            frames = wf.readframes(wf.getnframes())
    except (wave.Error, EOFError) as e:
        raise ValueError(f"Invalid WAV data: {e}") from e
    if sample_rate <= 0:
        raise ValueError(f"Invalid WAV sample rate: {sample_rate}")
    pcm = np.frombuffer(frames, dtype="<i2")
    if channels > 1:
        pcm = pcm.reshape(-1, channels).mean(axis=1).astype(np.int16)
    return pcm16_to_float(pcm), sample_rate


class AudioClipPlayer(AudioSignalSource):
    """
    Plays a mono clip and exposes its current position for analysis.

    Usage:
        player = AudioClipPlayer.from_wav_bytes(wav_bytes)
        player.add_listener("ended", on_end)
        player.play()
        ...
        player.poll()   # once per loop iteration; fires "ended" at the end
    """

    def __init__(
        self,
        samples: np.ndarray,
        sample_rate: float,
        clock: Callable[[], float] = time.monotonic,
        output_device: bool = False,
        device: Optional[int] = None,
    ):
        super().__init__(sample_rate)
        self._samples = pcm16_to_float(samples).ravel()
        self._clock = clock
        self._use_output = bool(output_device)
        self._device = device
        self._stream = None
        self._playing = False
        self._ended = False
        self._offset = 0
        self._started_at = 0.0
        self._written = 0

    @classmethod
    def from_wav_bytes(cls, data: bytes, **kwargs) -> "AudioClipPlayer":
        samples, sample_rate = decode_wav(data)
        return cls(samples, sample_rate, **kwargs)

    @property
    def duration_ms(self) -> float:
        return 1000.0 * len(self._samples) / self.sample_rate

    @property
    def ended(self) -> bool:
        return self._ended

    def position(self) -> int:
        """Current playback position in samples."""
        if not self._playing:
            return self._offset
        if self._use_output:
            return min(self._written, len(self._samples))
        elapsed = self._clock() - self._started_at
        return min(self._offset + int(elapsed * self.sample_rate), len(self._samples))

    def play(self) -> None:
        if self._playing:
            return
        if self._ended or self._offset >= len(self._samples):
            self._offset = 0
        self._ended = False
        if self._use_output:
            self._start_output()
        self._started_at = self._clock()
        self._playing = True
        self._emit(PLAY)

    def pause(self) -> None:
        if not self._playing:
            return
        self._offset = self.position()
        self._playing = False
        self._stop_output()
        self._emit(PAUSE)

    def stop(self) -> None:
        """Pause and rewind to the start."""
        self.pause()
        self._offset = 0

    def poll(self) -> None:
        """Detect the end of the clip; fires "ended" exactly once per playthrough."""
        if self._playing and self.position() >= len(self._samples):
            self._offset = len(self._samples)
            self._playing = False
            self._ended = True
            self._stop_output()
            self._emit(ENDED)

    def is_active(self) -> bool:
        return self._playing and not self._ended

    def latest_window(self, size: int) -> np.ndarray:
        end = self.position()
        return self._samples[max(0, end - int(size)):end]

    def _start_output(self) -> None:
        import sounddevice as sd

        self._written = self._offset

        def _callback(outdata, frames, time_info, status):
            if status:
                log.warning("Reply playback status: %s", status)
            start = self._written
            chunk = self._samples[start:start + frames]
            outdata[:len(chunk), 0] = chunk
            outdata[len(chunk):, 0] = 0.0
            self._written = start + frames
            if start + frames >= len(self._samples):
                raise sd.CallbackStop()

        self._stream = sd.OutputStream(
            samplerate=self.sample_rate,
            channels=1,
            dtype="float32",
            device=self._device,
            callback=_callback,
        )
        self._stream.start()

    def _stop_output(self) -> None:
        if self._stream is None:
            return
        try:
            self._stream.stop()
            self._stream.close()
        except Exception as e:
            log.warning("Failed to close reply playback stream: %s", e)
        self._stream = None
