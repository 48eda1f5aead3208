"""
Media Devices Module

Microphone and camera access for a practice session, plus the classification of
capture failures into a small set of user-facing error kinds.

Two kinds of MediaStream:
- open_media_stream(): local devices (sounddevice microphone, OpenCV camera)
- BrowserMediaStream: tracks fed by a web client (PCM16 chunks and JPEG frames)

Both expose the same tracks to the rest of the pipeline:
- AudioTrack: ring buffer of the newest samples for lip-sync analysis and
  chunk listeners for the recorder
- VideoTrack: poll_frame() once per loop iteration, when_ready() for the first frame;
  local cameras are read on a CameraReader thread so poll_frame() never blocks
"""

import io
import logging
import threading
import wave
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import numpy as np

import config
from utils.audio_playback import ENDED, PAUSE, PLAY, AudioSignalSource, pcm16_to_float

log = logging.getLogger(__name__)


# ============================================================================
# ERRORS
# ============================================================================

class DeviceErrorKind(Enum):
    PERMISSION_DENIED = "permission_denied"
    DEVICE_NOT_FOUND = "device_not_found"
    DEVICE_BUSY = "device_busy"
    UNSUPPORTED_ENVIRONMENT = "unsupported_environment"
    OTHER = "other"


DEVICE_ERROR_MESSAGES = {
    DeviceErrorKind.PERMISSION_DENIED: "Access to the camera and microphone was denied. Allow access in your browser settings.",
    DeviceErrorKind.DEVICE_NOT_FOUND: "No camera or microphone was found. Check that the device is connected.",
    DeviceErrorKind.DEVICE_BUSY: "The camera or microphone may be in use by another application.",
    DeviceErrorKind.UNSUPPORTED_ENVIRONMENT: "Camera and microphone access is not supported in this environment (HTTPS is required in browsers).",
    DeviceErrorKind.OTHER: "Failed to access the media devices.",
}

OVERCONSTRAINED_MESSAGE = "The camera or microphone cannot start with the requested settings."

# DOMException names reported by getUserMedia()
BROWSER_ERROR_KINDS = {
    "NotAllowedError": DeviceErrorKind.PERMISSION_DENIED,
    "PermissionDeniedError": DeviceErrorKind.PERMISSION_DENIED,
    "NotFoundError": DeviceErrorKind.DEVICE_NOT_FOUND,
    "DevicesNotFoundError": DeviceErrorKind.DEVICE_NOT_FOUND,
    "NotReadableError": DeviceErrorKind.DEVICE_BUSY,
    "TrackStartError": DeviceErrorKind.DEVICE_BUSY,
    "SecurityError": DeviceErrorKind.UNSUPPORTED_ENVIRONMENT,
    "NotSupportedError": DeviceErrorKind.UNSUPPORTED_ENVIRONMENT,
    "OverconstrainedError": DeviceErrorKind.OTHER,
}


class MediaDeviceError(Exception):
    """Capture failure with a classified kind."""

    def __init__(self, kind: DeviceErrorKind, message: Optional[str] = None, detail: Optional[str] = None):
        self.kind = kind
        self.message = message or DEVICE_ERROR_MESSAGES[kind]
        self.detail = detail
        super().__init__(self.message)

    def to_dict(self) -> dict:
        data = {"error": self.message, "kind": self.kind.value}
        if self.detail:
            data["detail"] = self.detail
        return data


def classify_browser_error(name: Optional[str], message: Optional[str] = None) -> MediaDeviceError:
    """
    Classify an error reported by a web client's getUserMedia().

    A missing name means getUserMedia itself was unavailable.
    """
    if not name:
        return MediaDeviceError(DeviceErrorKind.UNSUPPORTED_ENVIRONMENT, detail=message)
    kind = BROWSER_ERROR_KINDS.get(name)
    if kind is None:
        return MediaDeviceError(DeviceErrorKind.OTHER, message=message or None, detail=name)
    if name == "OverconstrainedError":
        return MediaDeviceError(kind, message=OVERCONSTRAINED_MESSAGE, detail=message or name)
    return MediaDeviceError(kind, detail=message or name)


_BUSY_MARKERS = ("unavailable", "busy", "in use", "-9985")
_NOT_FOUND_MARKERS = ("invalid device", "no default", "no device", "not found", "-9996", "-9998")
_UNSUPPORTED_MARKERS = ("portaudio library not found", "no module named")


def classify_device_error(error: BaseException) -> MediaDeviceError:
    """Map a local capture exception (sounddevice / OpenCV / OS) to a MediaDeviceError."""
    if isinstance(error, MediaDeviceError):
        return error
    detail = str(error)
    lowered = detail.lower()
    if isinstance(error, PermissionError) or "permission" in lowered or "not authorized" in lowered:
        kind = DeviceErrorKind.PERMISSION_DENIED
    elif isinstance(error, ImportError) or any(m in lowered for m in _UNSUPPORTED_MARKERS):
        kind = DeviceErrorKind.UNSUPPORTED_ENVIRONMENT
    elif isinstance(error, FileNotFoundError) or any(m in lowered for m in _NOT_FOUND_MARKERS):
        kind = DeviceErrorKind.DEVICE_NOT_FOUND
    elif any(m in lowered for m in _BUSY_MARKERS):
        kind = DeviceErrorKind.DEVICE_BUSY
    else:
        kind = DeviceErrorKind.OTHER
    return MediaDeviceError(kind, detail=detail)


# ============================================================================
# RECORDER SUPPORT
# ============================================================================

RECORDER_CANDIDATE_TYPES = [
    "audio/webm;codecs=opus",
    "audio/webm",
    "audio/ogg;codecs=opus",
    "audio/ogg",
    "audio/mp4",
    "audio/mpeg",
    "audio/wav",
]


def encode_wav(pcm: np.ndarray, sample_rate: int, channels: int = 1) -> bytes:
    """Encode int16 PCM as a WAV file."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate))
        wf.writeframes(np.asarray(pcm, dtype="<i2").tobytes())
    return buf.getvalue()


RECORDER_ENCODERS: Dict[str, Callable[[np.ndarray, int, int], bytes]] = {
    "audio/wav": encode_wav,
}


@dataclass
class RecorderSupportInfo:
    is_supported: bool
    supported_formats: List[str] = field(default_factory=list)
    recommended_format: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "isSupported": self.is_supported,
            "supportedFormats": self.supported_formats,
            "recommendedFormat": self.recommended_format,
        }


def check_recorder_support() -> RecorderSupportInfo:
    supported = [mime for mime in RECORDER_CANDIDATE_TYPES if mime in RECORDER_ENCODERS]
    return RecorderSupportInfo(
        is_supported=bool(supported),
        supported_formats=supported,
        recommended_format=supported[0] if supported else None,
    )


def log_recorder_support() -> None:
    support = check_recorder_support()
    log.info("Recorder support: %s", "supported" if support.is_supported else "not supported")
    if support.is_supported:
        log.info("Recorder recommended format: %s", support.recommended_format or "none")
        log.info("Recorder supported formats: %s", ", ".join(support.supported_formats))


# ============================================================================
# TRACKS AND STREAMS
# ============================================================================

@dataclass
class MediaStreamConstraints:
    audio: bool = True
    video: bool = True
    sample_rate: int = 16000
    channels: int = 1
    audio_device: Optional[int] = None
    video_source: str = "webcam"
    video_source_path: Optional[str] = None
    width: int = 1280
    height: int = 720
    fps: float = 30

    @classmethod
    def from_config(cls, **overrides) -> "MediaStreamConstraints":
        values = dict(
            sample_rate=config.AUDIO_SAMPLE_RATE,
            channels=config.AUDIO_CHANNELS,
            audio_device=config.AUDIO_DEVICE,
            video_source=config.VIDEO_SOURCE,
            video_source_path=config.VIDEO_SOURCE_PATH or None,
            width=config.VIDEO_WIDTH,
            height=config.VIDEO_HEIGHT,
            fps=config.TARGET_VIDEO_FPS,
        )
        values.update(overrides)
        return cls(**values)


class AudioTrack(AudioSignalSource):
    """
    Live audio track.

    push() may be called from the capture thread; the ring buffer is guarded by
    a lock. Disabling the track fires "pause", enabling fires "play", stop()
    fires "ended", so lip-sync follows the microphone like a media element.
    """

    def __init__(self, sample_rate: float, channels: int = 1, buffer_size: int = 32768, on_stop: Optional[Callable[[], None]] = None):
        super().__init__(sample_rate)
        self.channels = channels
        self._ring = np.zeros(buffer_size, dtype=np.float32)
        self._filled = 0
        self._lock = threading.Lock()
        self._chunk_listeners: List[Callable[[np.ndarray], None]] = []
        self._on_stop = on_stop
        self._enabled = True
        self._live = True

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        value = bool(value)
        if value == self._enabled or not self._live:
            self._enabled = value
            return
        self._enabled = value
        self._emit(PLAY if value else PAUSE)

    @property
    def live(self) -> bool:
        return self._live

    def add_chunk_listener(self, callback: Callable[[np.ndarray], None]) -> None:
        self._chunk_listeners.append(callback)

    def remove_chunk_listener(self, callback: Callable[[np.ndarray], None]) -> None:
        if callback in self._chunk_listeners:
            self._chunk_listeners.remove(callback)

    def push(self, pcm: np.ndarray) -> None:
        """Append one captured chunk (int16, mono)."""
        if not self._live:
            return
        chunk = np.asarray(pcm, dtype=np.int16).ravel()
        if chunk.size == 0:
            return
        samples = pcm16_to_float(chunk)
        with self._lock:
            size = self._ring.size
            if samples.size >= size:
                self._ring[:] = samples[-size:]
            else:
                self._ring = np.roll(self._ring, -samples.size)
                self._ring[-samples.size:] = samples
            self._filled = min(size, self._filled + samples.size)
        for callback in list(self._chunk_listeners):
            callback(chunk)

    def is_active(self) -> bool:
        return self._live and self._enabled

    def latest_window(self, size: int) -> np.ndarray:
        with self._lock:
            count = min(int(size), self._filled)
            return self._ring[self._ring.size - count:].copy()

    def stop(self) -> None:
        if not self._live:
            return
        self._live = False
        if self._on_stop is not None:
            try:
                self._on_stop()
            except Exception as e:
                log.warning("Failed to stop audio capture: %s", e)
        self._emit(ENDED)


class VideoTrack:
    """
    Live video track backed by a frame reader.

    Args:
        read_frame: Callable returning the next frame or None
        on_stop: Optional release hook for the underlying device
    """

    def __init__(self, read_frame: Callable[[], Optional[np.ndarray]], on_stop: Optional[Callable[[], None]] = None):
        self._read_frame = read_frame
        self._on_stop = on_stop
        self._ready_callbacks: List[Callable[[], None]] = []
        self.ready = False
        self.live = True
        self.width = 0
        self.height = 0

    def when_ready(self, callback: Callable[[], None]) -> None:
        """Run callback once the first frame is known (immediately if it already is)."""
        if self.ready:
            callback()
        else:
            self._ready_callbacks.append(callback)

    def poll_frame(self) -> Optional[np.ndarray]:
        if not self.live:
            return None
        frame = self._read_frame()
        if frame is None:
            return None
        if not self.ready:
            self.height, self.width = frame.shape[:2]
            self.ready = True
            callbacks, self._ready_callbacks = self._ready_callbacks, []
            for callback in callbacks:
                callback()
        return frame

    def stop(self) -> None:
        if not self.live:
            return
        self.live = False
        self._ready_callbacks = []
        if self._on_stop is not None:
            self._on_stop()


class MediaStream:
    """Audio and/or video track pair."""

    source = "local"

    def __init__(self, audio_track: Optional[AudioTrack] = None, video_track: Optional[VideoTrack] = None):
        self.audio_track = audio_track
        self.video_track = video_track

    def get_tracks(self) -> List[Any]:
        return [t for t in (self.audio_track, self.video_track) if t is not None]

    @property
    def active(self) -> bool:
        audio_live = self.audio_track is not None and self.audio_track.live
        video_live = self.video_track is not None and self.video_track.live
        return audio_live or video_live

    def stop(self) -> None:
        for track in self.get_tracks():
            track.stop()


class LatestFrameBuffer:
    """Newest frame from a producer thread or the web client. Each frame is handed out once."""

    def __init__(self):
        self._frame: Optional[np.ndarray] = None
        self._lock = threading.Lock()

    def put(self, frame_bgr: Optional[np.ndarray]) -> None:
        with self._lock:
            self._frame = frame_bgr

    def take(self) -> Optional[np.ndarray]:
        with self._lock:
            frame, self._frame = self._frame, None
            return frame


class CameraReader:
    """
    Reads a local video source on its own thread.

    cv2.VideoCapture.read() blocks until the device delivers a frame, so the
    frame loop only ever takes the newest frame from the buffer.

    Args:
        read_frame: Blocking reader returning a frame or None
        release: Frees the device once the thread has exited
        min_interval: Seconds between reads (paces file sources); 0 for live devices
    """

    def __init__(self, read_frame: Callable[[], Optional[np.ndarray]], release: Optional[Callable[[], None]] = None, min_interval: float = 0.0):
        self._read_frame = read_frame
        self._release = release
        self._min_interval = max(0.0, float(min_interval))
        self._buffer = LatestFrameBuffer()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="camera-reader", daemon=True)
        self._thread.start()

    def take(self) -> Optional[np.ndarray]:
        return self._buffer.take()

    def stop(self) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)
        self._buffer.put(None)
        if self._release is not None:
            release, self._release = self._release, None
            release()

    def _run(self) -> None:
        misses = 0
        while not self._stop.is_set():
            try:
                frame = self._read_frame()
            except Exception as e:
                log.warning("Camera read failed: %s", e)
                frame = None
            if frame is None:
                misses += 1
                if misses == 60:
                    log.warning("Video source not providing frames")
                self._stop.wait(0.01)
                continue
            misses = 0
            self._buffer.put(frame)
            if self._min_interval:
                self._stop.wait(self._min_interval)


class BrowserMediaStream(MediaStream):
    """
    Stream whose tracks are fed over HTTP by the web client.

    Usage:
        stream = BrowserMediaStream(sample_rate=16000)
        stream.push_pcm(request.data)      # little-endian int16 mono
        stream.push_jpeg(jpeg_bytes)
    """

    source = "browser"

    def __init__(self, sample_rate: int = 16000, audio: bool = True, video: bool = True):
        self._frames = LatestFrameBuffer()
        super().__init__(
            AudioTrack(sample_rate) if audio else None,
            VideoTrack(self._frames.take, on_stop=lambda: self._frames.put(None)) if video else None,
        )

    def push_pcm(self, data: bytes) -> int:
        """Returns the number of samples accepted."""
        if self.audio_track is None or not data:
            return 0
        usable = len(data) - (len(data) % 2)
        pcm = np.frombuffer(data[:usable], dtype="<i2")
        self.audio_track.push(pcm)
        return int(pcm.size)

    def push_frame(self, frame_bgr: np.ndarray) -> bool:
        if self.video_track is None or not self.video_track.live:
            return False
        self._frames.put(frame_bgr)
        return True

    def push_jpeg(self, image_bytes: bytes) -> bool:
        """Decode and buffer one JPEG frame; False if it cannot be decoded."""
        from utils.video_source_handler import decode_jpeg

        frame = decode_jpeg(image_bytes)
        if frame is None:
            return False
        return self.push_frame(frame)


def _open_microphone(constraints: MediaStreamConstraints) -> AudioTrack:
    import sounddevice as sd

    holder: Dict[str, Any] = {}

    def _close():
        stream = holder.get("stream")
        if stream is not None:
            stream.stop()
            stream.close()

    track = AudioTrack(constraints.sample_rate, constraints.channels, on_stop=_close)

    def _callback(indata, frames, time_info, status):
        if status:
            log.warning("Microphone status: %s", status)
        track.push(indata[:, 0].copy())

    stream = sd.InputStream(
        samplerate=constraints.sample_rate,
        channels=constraints.channels,
        dtype="int16",
        device=constraints.audio_device,
        callback=_callback,
    )
    try:
        stream.start()
    except Exception:
        stream.close()
        raise
    holder["stream"] = stream
    return track


def _open_camera(constraints: MediaStreamConstraints) -> VideoTrack:
    from utils.video_source_handler import BUSY, INVALID, NOT_FOUND, VideoSourceHandler, VideoSourceType

    handler = VideoSourceHandler()
    try:
        source_type = VideoSourceType(constraints.video_source)
    except ValueError:
        raise MediaDeviceError(DeviceErrorKind.OTHER, detail=f"Unknown video source: {constraints.video_source}")
    if not handler.initialize_source(
        source_type,
        constraints.video_source_path,
        width=constraints.width,
        height=constraints.height,
        fps=constraints.fps,
    ):
        kind = {
            NOT_FOUND: DeviceErrorKind.DEVICE_NOT_FOUND,
            BUSY: DeviceErrorKind.DEVICE_BUSY,
            INVALID: DeviceErrorKind.OTHER,
        }.get(handler.last_error, DeviceErrorKind.OTHER)
        raise MediaDeviceError(kind, detail=f"Could not open {source_type.value} video source")

    def _read():
        ok, frame = handler.read_frame()
        return frame if ok else None

    pace = 1.0 / constraints.fps if source_type == VideoSourceType.FILE and constraints.fps > 0 else 0.0
    reader = CameraReader(_read, release=handler.release, min_interval=pace)
    reader.start()
    return VideoTrack(reader.take, on_stop=reader.stop)


def open_media_stream(constraints: Optional[MediaStreamConstraints] = None) -> MediaStream:
    """
    Open the local microphone and/or camera.

    Raises:
        MediaDeviceError: classified capture failure; nothing is left open
    """
    constraints = constraints or MediaStreamConstraints.from_config()
    if not constraints.audio and not constraints.video:
        raise MediaDeviceError(DeviceErrorKind.OTHER, detail="At least one of audio or video must be requested")
    stream = MediaStream()
    try:
        if constraints.audio:
            stream.audio_track = _open_microphone(constraints)
        if constraints.video:
            stream.video_track = _open_camera(constraints)
    except Exception as e:
        stream.stop()
        error = classify_device_error(e)
        log.error("Media device access failed (%s): %s", error.kind.value, error.detail or error.message)
        raise error from e
    log.info(
        "Media stream opened (audio=%s, video=%s)",
        stream.audio_track is not None,
        stream.video_track is not None,
    )
    return stream
