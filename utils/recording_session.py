"""
Recording Session Module

State machine for one recording turn:

    IDLE --start()--> RECORDING --pause()--> PAUSED --resume()--> RECORDING
    RECORDING / PAUSED --stop()--> STOPPED --start()--> RECORDING (new take)

start() arms lip-sync on the microphone track and, once the video track has its
first frame, the facial analysis loop. stop() encodes the captured audio and
disarms both. A capture failure raises MediaDeviceError and leaves the state
unchanged, so a failed start never reaches RECORDING.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

import numpy as np

from utils.facial_analysis import FacialAnalysisLoop
from utils.lip_sync import LipSyncDriver
from utils.media_devices import (
    RECORDER_ENCODERS,
    DeviceErrorKind,
    MediaDeviceError,
    MediaStream,
    MediaStreamConstraints,
    classify_device_error,
    open_media_stream,
)

log = logging.getLogger(__name__)


class RecordingState(Enum):
    IDLE = "idle"
    RECORDING = "recording"
    PAUSED = "paused"
    STOPPED = "stopped"


@dataclass(frozen=True)
class RecordedAudio:
    """One finished take, encoded for upload."""
    data: bytes
    mime_type: str
    sample_rate: int
    sample_count: int

    @property
    def duration_ms(self) -> float:
        return 1000.0 * self.sample_count / self.sample_rate if self.sample_rate else 0.0


class RecordingSession:
    """
    Coordinates capture, lip-sync and facial analysis for one recording turn.

    Usage:
        recording = RecordingSession(lip_sync=driver, facial_analysis=analysis)
        recording.start()             # raises MediaDeviceError on device failure
        recording.pause(); recording.resume()
        take = recording.stop()       # RecordedAudio
    """

    def __init__(
        self,
        stream_opener: Callable[[Optional[MediaStreamConstraints]], MediaStream] = open_media_stream,
        lip_sync: Optional[LipSyncDriver] = None,
        facial_analysis: Optional[FacialAnalysisLoop] = None,
        mime_type: str = "audio/wav",
    ):
        self._stream_opener = stream_opener
        self.lip_sync = lip_sync
        self.facial_analysis = facial_analysis
        self.mime_type = mime_type
        self.state = RecordingState.IDLE
        self.stream: Optional[MediaStream] = None
        self.last_recording: Optional[RecordedAudio] = None
        self.error: Optional[MediaDeviceError] = None
        self._owns_stream = False
        self._chunks: List[np.ndarray] = []
        self._chunks_lock = threading.Lock()

    @property
    def is_recording(self) -> bool:
        return self.state in (RecordingState.RECORDING, RecordingState.PAUSED)

    @property
    def is_paused(self) -> bool:
        return self.state is RecordingState.PAUSED

    def start(self, stream: Optional[MediaStream] = None, constraints: Optional[MediaStreamConstraints] = None) -> bool:
        """
        Begin a take, opening the devices when no stream is given.

        Returns:
            True when recording started, False if already recording

        Raises:
            MediaDeviceError: the devices could not be opened (state unchanged)
        """
        if self.is_recording:
            return False
        encoder = RECORDER_ENCODERS.get(self.mime_type)
        if encoder is None:
            raise self._fail(MediaDeviceError(
                DeviceErrorKind.UNSUPPORTED_ENVIRONMENT,
                detail=f"Recorder format {self.mime_type} is not supported",
            ))

        owns_stream = stream is None
        if owns_stream:
            try:
                stream = self._stream_opener(constraints)
            except Exception as e:
                raise self._fail(classify_device_error(e)) from e
        if stream.audio_track is None or not stream.audio_track.live:
            if owns_stream:
                stream.stop()
            raise self._fail(MediaDeviceError(DeviceErrorKind.DEVICE_NOT_FOUND, detail="Stream has no live audio track"))

        self.error = None
        self.stream = stream
        self._owns_stream = owns_stream
        with self._chunks_lock:
            self._chunks = []
        self.last_recording = None
        stream.audio_track.enabled = True
        stream.audio_track.add_chunk_listener(self._on_chunk)
        self.state = RecordingState.RECORDING

        if self.lip_sync is not None:
            self.lip_sync.arm(stream.audio_track)
        if self.facial_analysis is not None and stream.video_track is not None:
            stream.video_track.when_ready(self._arm_facial_analysis)
        log.info("Recording started (%s stream)", stream.source)
        return True

    def pause(self) -> bool:
        if self.state is not RecordingState.RECORDING:
            return False
        self.state = RecordingState.PAUSED
        self.stream.audio_track.enabled = False
        log.info("Recording paused")
        return True

    def resume(self) -> bool:
        if self.state is not RecordingState.PAUSED:
            return False
        self.state = RecordingState.RECORDING
        self.stream.audio_track.enabled = True
        log.info("Recording resumed")
        return True

    def stop(self) -> Optional[RecordedAudio]:
        """Finish the take; returns None when nothing was being recorded."""
        if not self.is_recording:
            return None
        stream = self.stream
        stream.audio_track.remove_chunk_listener(self._on_chunk)
        self.state = RecordingState.STOPPED
        if self.lip_sync is not None:
            self.lip_sync.disarm()
        if self.facial_analysis is not None:
            self.facial_analysis.disarm()
        if self._owns_stream:
            stream.stop()
        self.stream = None

        with self._chunks_lock:
            chunks, self._chunks = self._chunks, []
        pcm = np.concatenate(chunks) if chunks else np.zeros(0, dtype=np.int16)
        sample_rate = int(stream.audio_track.sample_rate)
        self.last_recording = RecordedAudio(
            data=RECORDER_ENCODERS[self.mime_type](pcm, sample_rate, 1),
            mime_type=self.mime_type,
            sample_rate=sample_rate,
            sample_count=int(pcm.size),
        )
        log.info("Recording stopped: %.1f s captured", self.last_recording.duration_ms / 1000.0)
        return self.last_recording

    def clear(self) -> bool:
        """Drop the last take; not allowed while recording."""
        if self.is_recording:
            return False
        self.last_recording = None
        self.error = None
        self.state = RecordingState.IDLE
        return True

    def close(self) -> None:
        self.stop()

    def _fail(self, error: MediaDeviceError) -> MediaDeviceError:
        self.error = error
        log.error("Recording could not start (%s): %s", error.kind.value, error.detail or error.message)
        return error

    def _arm_facial_analysis(self) -> None:
        if self.is_recording and self.facial_analysis is not None:
            self.facial_analysis.arm()

    def _on_chunk(self, chunk: np.ndarray) -> None:
        if self.state is not RecordingState.RECORDING:
            return
        with self._chunks_lock:
            self._chunks.append(chunk)
