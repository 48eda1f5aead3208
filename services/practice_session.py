"""
Practice session service.

A PracticeSession owns everything one conversation practice needs: the frame
loop, the gaze target, the facial scorer and aggregator, the recording state
machine, lip-sync for the microphone and for the partner's spoken replies, and
the avatar state handed to the renderer.

All public methods take the loop lock, so HTTP handlers and the frame loop
thread never run pipeline code at the same time. report_summary() takes its
own lock instead. The loop thread stops itself once the session is finished
and no reply is playing.
"""

import logging
import random
import threading
import time
import uuid
from typing import Any, Callable, Dict, Optional

import config
from utils.audio_envelope import AudioEnvelopeExtractor, EnvelopeConfig
from utils.audio_playback import AudioClipPlayer
from utils.avatar_behavior import AvatarBehaviorSelector, AvatarState
from utils.facial_analysis import FacialAnalysisLoop
from utils.facial_scorer import FacialLandmarkScorer, GazeTarget
from utils.frame_scheduler import CooperativeLoop
from utils.gesture_aggregator import GestureSummary, SessionGestureAggregator
from utils.lip_sync import LipSyncAnimator, LipSyncDriver
from utils.live_feedback import build_live_feedback
from utils.media_devices import BrowserMediaStream, MediaStreamConstraints, open_media_stream
from utils.mediapipe_detector import create_landmark_detector
from utils.recording_session import RecordedAudio, RecordingSession
from services.session_api import SessionApiClient, SessionApiError

log = logging.getLogger(__name__)

LOCAL_SOURCE = "local"
BROWSER_SOURCE = "browser"


class PracticeSession:
    """
    One practice conversation.

    Usage:
        session = PracticeSession()
        session.begin()
        session.start_recording()          # raises MediaDeviceError on device failure
        ...
        take = session.stop_recording()
        session.play_reply(tts_wav_bytes)
        summary = session.finish()         # GestureSummary or None
        session.close()

    Args:
        session_id: Identifier (uuid4 hex by default)
        stream_opener: Opens local devices (open_media_stream)
        detector_factory: Builds the face landmark detector on first analysis
        clock: Monotonic clock in seconds
        rng: Random source for avatar idle behaviour
        context_factory: Audio context factory for both lip-sync extractors
        run_loop: Start the frame-loop thread in begin(); tests drive run_once() instead
    """

    def __init__(
        self,
        session_id: Optional[str] = None,
        stream_opener: Callable[..., Any] = open_media_stream,
        detector_factory: Callable[[], Any] = create_landmark_detector,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
        context_factory: Optional[Callable[[float], Any]] = None,
        run_loop: bool = True,
    ):
        self.session_id = session_id or uuid.uuid4().hex
        self._clock = clock
        self._run_loop = run_loop
        self.loop = CooperativeLoop(
            frame_source=self._poll_video,
            display_fps=config.DISPLAY_FPS,
            clock=clock,
            on_iteration=self._on_iteration,
        )

        self.gaze_target = GazeTarget(config.GAZE_TARGET_X, config.GAZE_TARGET_Y)
        self.aggregator = SessionGestureAggregator()
        self.analysis = FacialAnalysisLoop(
            self.loop.video_frames,
            FacialLandmarkScorer(self.gaze_target),
            self.aggregator,
            detector_factory,
            accumulate_no_face=config.ACCUMULATE_NO_FACE_FRAMES,
        )

        self.mic_lip_sync = LipSyncDriver(
            AudioEnvelopeExtractor(EnvelopeConfig.from_config(), context_factory=context_factory),
            LipSyncAnimator(config.LIPSYNC_ATTACK_MS, config.LIPSYNC_RELEASE_MS),
            self.loop.animation_frames,
            self.loop.now_ms,
            name="microphone lip-sync",
        )
        self.reply_lip_sync = LipSyncDriver(
            AudioEnvelopeExtractor(
                EnvelopeConfig.from_config(
                    smoothing=config.REPLY_LIPSYNC_SMOOTHING,
                    threshold=config.REPLY_LIPSYNC_THRESHOLD,
                ),
                context_factory=context_factory,
                require_output=config.REPLY_AUDIO_OUTPUT,
            ),
            LipSyncAnimator(config.LIPSYNC_ATTACK_MS, config.LIPSYNC_RELEASE_MS),
            self.loop.animation_frames,
            self.loop.now_ms,
            name="reply lip-sync",
        )
        self.mic_lip_sync.add_consumer(self._set_mouth_openness)
        self.reply_lip_sync.add_consumer(self._set_mouth_openness)

        self.recording = RecordingSession(
            stream_opener=stream_opener,
            lip_sync=self.mic_lip_sync,
            facial_analysis=self.analysis,
            mime_type=config.RECORDER_MIME_TYPE,
        )
        self.behavior = AvatarBehaviorSelector(
            rng or random.Random(config.AVATAR_RANDOM_SEED),
            talking_threshold=config.AVATAR_TALKING_THRESHOLD,
            idle_hold_ms=config.AVATAR_IDLE_HOLD_MS,
        )
        self.avatar = AvatarState()
        self.processing = False
        self.browser_stream: Optional[BrowserMediaStream] = None
        self.reply_player: Optional[AudioClipPlayer] = None
        self.summary: Optional[GestureSummary] = None
        self.summary_reported = False
        # Held across the session API call; separate from the loop lock so frames keep running
        self._report_lock = threading.Lock()
        self.began = False
        self.finished = False

    # ------------------------------------------------------------------
    # Frame loop hooks (run under the loop lock)
    # ------------------------------------------------------------------

    def _poll_video(self):
        stream = self.recording.stream
        if stream is None or stream.video_track is None:
            return None
        return stream.video_track.poll_frame()

    def _on_iteration(self, now_ms: float) -> None:
        if self.reply_player is not None:
            self.reply_player.poll()
        if self.finished and not self._reply_playing():
            # nothing left to animate once the session is over
            self.loop.stop()
            return
        gesture, emotion = self.behavior.select(
            now_ms,
            is_recording=self.recording.is_recording,
            is_processing=self.processing,
            mouth_openness=self.avatar.mouth_openness,
        )
        self.avatar.gesture = gesture
        self.avatar.emotion = emotion

    def _set_mouth_openness(self, value: float) -> None:
        self.avatar.mouth_openness = value

    def _reply_playing(self) -> bool:
        return bool(self.reply_player and self.reply_player.is_active())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def begin(self) -> None:
        """Reset the session statistics (once) and start the frame loop."""
        with self.loop.lock:
            if self.began:
                return
            self.aggregator.reset()
            self.began = True
        if self._run_loop:
            self.loop.start()
        log.info("Practice session %s started", self.session_id)

    def start_recording(
        self,
        source: str = LOCAL_SOURCE,
        constraints: Optional[MediaStreamConstraints] = None,
    ) -> bool:
        """
        Start a recording turn from local devices or from a browser client.

        Raises:
            MediaDeviceError: the devices could not be opened
            ValueError: unknown source
        """
        if source not in (LOCAL_SOURCE, BROWSER_SOURCE):
            raise ValueError(f"Unknown recording source: {source}")
        if not self.began:
            self.begin()
        with self.loop.lock:
            if self.finished or self.recording.is_recording:
                return False
            if source == BROWSER_SOURCE:
                stream = BrowserMediaStream(sample_rate=config.AUDIO_SAMPLE_RATE)
                self.recording.start(stream=stream)
                self.browser_stream = stream
            else:
                self.recording.start(constraints=constraints)
            return True

    def stop_recording(self) -> Optional[RecordedAudio]:
        with self.loop.lock:
            take = self.recording.stop()
            if self.browser_stream is not None:
                self.browser_stream.stop()
                self.browser_stream = None
            return take

    def pause_recording(self) -> bool:
        with self.loop.lock:
            return self.recording.pause()

    def resume_recording(self) -> bool:
        with self.loop.lock:
            return self.recording.resume()

    def push_audio(self, data: bytes) -> int:
        """Feed PCM16 audio from a browser client; returns samples accepted."""
        stream = self.browser_stream
        if stream is None:
            return 0
        return stream.push_pcm(data)

    def push_frame(self, image_bytes: bytes) -> bool:
        """Feed one JPEG frame from a browser client."""
        stream = self.browser_stream
        if stream is None:
            return False
        return stream.push_jpeg(image_bytes)

    def set_gaze_target(self, x: float, y: float) -> None:
        """Raises ValueError outside [0, 1]."""
        with self.loop.lock:
            self.analysis.set_gaze_target(x, y)

    def set_processing(self, processing: bool) -> None:
        with self.loop.lock:
            self.processing = bool(processing)

    def play_reply(self, wav_bytes: bytes) -> float:
        """
        Play the partner's reply with lip-sync.

        Returns:
            Clip duration in milliseconds

        Raises:
            ValueError: the WAV data cannot be decoded
        """
        player = AudioClipPlayer.from_wav_bytes(
            wav_bytes,
            clock=self._clock,
            output_device=config.REPLY_AUDIO_OUTPUT,
            device=config.AUDIO_DEVICE,
        )
        with self.loop.lock:
            self._stop_reply()
            self.reply_player = player
            self.processing = False
            self.reply_lip_sync.arm(player)
            player.play()
        if self._run_loop and self.began and not self.loop.is_running:
            # the loop stops after finish(); a closing reply still needs lip-sync
            self.loop.start()
        log.info("Playing reply (%.1f s)", player.duration_ms / 1000.0)
        return player.duration_ms

    def _stop_reply(self) -> None:
        if self.reply_player is not None:
            self.reply_player.pause()
            self.reply_lip_sync.disarm()
            self.reply_player = None

    def get_state(self) -> Dict[str, Any]:
        with self.loop.lock:
            metrics = self.analysis.latest_metrics
            take = self.recording.last_recording
            return {
                "sessionId": self.session_id,
                "avatar": self.avatar.to_dict(),
                "processing": self.processing,
                "recording": {
                    "state": self.recording.state.value,
                    "source": self.recording.stream.source if self.recording.stream else None,
                    "hasAudio": take is not None,
                    "durationMs": take.duration_ms if take else 0.0,
                    "error": self.recording.error.to_dict() if self.recording.error else None,
                },
                "analysis": {
                    "active": self.analysis.is_active,
                    "available": self.analysis.is_available,
                    "error": self.analysis.error,
                    "framesAnalyzed": self.analysis.frames_analyzed,
                    "totalSamples": self.aggregator.total_samples,
                    "gazeTarget": self.gaze_target.to_dict(),
                    "latestMetrics": metrics.to_dict() if metrics else None,
                },
                "liveFeedback": _feedback_dict(build_live_feedback(metrics, self.analysis.is_active)),
                "lipSync": {
                    "microphoneAvailable": self.mic_lip_sync.is_available,
                    "replyAvailable": self.reply_lip_sync.is_available,
                    "replyPlaying": self._reply_playing(),
                },
                "finished": self.finished,
            }

    def finish(self) -> Optional[GestureSummary]:
        """
        Stop recording and analysis, then finalize the statistics exactly once.

        Returns:
            GestureSummary, or None when no frame was analyzed
        """
        with self.loop.lock:
            if self.finished:
                return self.summary
            self.stop_recording()
            self.analysis.disarm()
            self._stop_reply()
            self.summary = self.aggregator.finalize()
            self.finished = True
        log.info("Practice session %s finished", self.session_id)
        return self.summary

    def report_summary(self, client: SessionApiClient) -> Optional[str]:
        """
        Forward the finalized summary to the session API, at most once.

        Returns:
            The error message when forwarding failed, otherwise None
        """
        with self._report_lock:
            if self.summary_reported or self.summary is None or not client.enabled:
                return None
            try:
                client.save_gesture_metrics(self.session_id, self.summary.to_payload())
            except SessionApiError as e:
                log.warning("Could not forward gesture summary for %s: %s", self.session_id, e)
                return str(e)
            self.summary_reported = True
            return None

    def close(self) -> None:
        self.finish()
        self.loop.stop()
        with self.loop.lock:
            self.analysis.close()
            self.mic_lip_sync.disarm()


def _feedback_dict(feedback) -> Optional[dict]:
    return feedback.to_dict() if feedback else None


class SessionRegistry:
    """Practice sessions by id."""

    def __init__(self, session_factory: Callable[..., PracticeSession] = PracticeSession):
        self._factory = session_factory
        self._sessions: Dict[str, PracticeSession] = {}
        self._lock = threading.Lock()

    def create(self, **kwargs) -> PracticeSession:
        session = self._factory(**kwargs)
        with self._lock:
            self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str) -> Optional[PracticeSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def remove(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.close()
        return True

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


# Lazy singleton used by the HTTP routes
_registry: Optional[SessionRegistry] = None


def get_session_registry() -> SessionRegistry:
    global _registry
    if _registry is None:
        _registry = SessionRegistry()
    return _registry
