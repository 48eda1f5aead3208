"""
Capture and recording tests.

Tests media device error classification, recorder support, the audio/video
tracks, browser-fed streams and the recording state machine. Streams are
browser-fed or scripted; no microphone or camera is required.
"""

import io
import sys
import os
import time
import wave

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import unittest
from unittest.mock import MagicMock, patch

import numpy as np

from utils.audio_playback import ENDED, PAUSE, PLAY
from utils.media_devices import (
    AudioTrack,
    BrowserMediaStream,
    CameraReader,
    DeviceErrorKind,
    MediaDeviceError,
    MediaStream,
    MediaStreamConstraints,
    VideoTrack,
    check_recorder_support,
    classify_browser_error,
    classify_device_error,
    open_media_stream,
)
from utils.recording_session import RecordingSession, RecordingState

RATE = 16000
FRAME = np.zeros((48, 64, 3), dtype=np.uint8)


def pcm_bytes(count, value=1000):
    return np.full(count, value, dtype="<i2").tobytes()


class TestDeviceErrorClassification(unittest.TestCase):
    """Test mapping of capture failures to error kinds."""

    def test_browser_error_names(self):
        cases = {
            "NotAllowedError": DeviceErrorKind.PERMISSION_DENIED,
            "PermissionDeniedError": DeviceErrorKind.PERMISSION_DENIED,
            "NotFoundError": DeviceErrorKind.DEVICE_NOT_FOUND,
            "DevicesNotFoundError": DeviceErrorKind.DEVICE_NOT_FOUND,
            "NotReadableError": DeviceErrorKind.DEVICE_BUSY,
            "TrackStartError": DeviceErrorKind.DEVICE_BUSY,
            "SecurityError": DeviceErrorKind.UNSUPPORTED_ENVIRONMENT,
        }
        for name, kind in cases.items():
            self.assertEqual(classify_browser_error(name, "x").kind, kind, name)

    def test_missing_get_user_media(self):
        error = classify_browser_error(None)
        self.assertEqual(error.kind, DeviceErrorKind.UNSUPPORTED_ENVIRONMENT)
        self.assertIn("HTTPS", error.message)

    def test_unknown_browser_error_keeps_message(self):
        error = classify_browser_error("AbortError", "Timeout starting video source")
        self.assertEqual(error.kind, DeviceErrorKind.OTHER)
        self.assertEqual(error.message, "Timeout starting video source")

    def test_overconstrained(self):
        error = classify_browser_error("OverconstrainedError", "width")
        self.assertEqual(error.kind, DeviceErrorKind.OTHER)
        self.assertIn("requested settings", error.message)

    def test_local_errors(self):
        self.assertEqual(classify_device_error(PermissionError("denied")).kind, DeviceErrorKind.PERMISSION_DENIED)
        self.assertEqual(
            classify_device_error(OSError("PortAudio library not found")).kind,
            DeviceErrorKind.UNSUPPORTED_ENVIRONMENT,
        )
        self.assertEqual(classify_device_error(ImportError("sounddevice")).kind, DeviceErrorKind.UNSUPPORTED_ENVIRONMENT)
        self.assertEqual(
            classify_device_error(ValueError("Error querying device -1: Invalid device [PaErrorCode -9996]")).kind,
            DeviceErrorKind.DEVICE_NOT_FOUND,
        )
        self.assertEqual(
            classify_device_error(RuntimeError("Device unavailable [PaErrorCode -9985]")).kind,
            DeviceErrorKind.DEVICE_BUSY,
        )
        self.assertEqual(classify_device_error(RuntimeError("boom")).kind, DeviceErrorKind.OTHER)

    def test_already_classified_passes_through(self):
        error = MediaDeviceError(DeviceErrorKind.DEVICE_BUSY)
        self.assertIs(classify_device_error(error), error)

    def test_to_dict(self):
        data = MediaDeviceError(DeviceErrorKind.DEVICE_BUSY, detail="camera 0").to_dict()
        self.assertEqual(data["kind"], "device_busy")
        self.assertIn("in use", data["error"])
        self.assertEqual(data["detail"], "camera 0")

    def test_open_media_stream_requires_a_track(self):
        with self.assertRaises(MediaDeviceError) as ctx:
            open_media_stream(MediaStreamConstraints(audio=False, video=False))
        self.assertEqual(ctx.exception.kind, DeviceErrorKind.OTHER)

    def test_failed_microphone_start_closes_stream(self):
        sd = MagicMock()
        sd.InputStream.return_value.start.side_effect = RuntimeError("Device unavailable [PaErrorCode -9985]")
        with patch.dict(sys.modules, {"sounddevice": sd}):
            with self.assertRaises(MediaDeviceError) as ctx:
                open_media_stream(MediaStreamConstraints(audio=True, video=False))
        self.assertEqual(ctx.exception.kind, DeviceErrorKind.DEVICE_BUSY)
        sd.InputStream.return_value.close.assert_called_once()

    def test_microphone_stream_closed_on_track_stop(self):
        sd = MagicMock()
        with patch.dict(sys.modules, {"sounddevice": sd}):
            stream = open_media_stream(MediaStreamConstraints(audio=True, video=False))
        stream.stop()
        sd.InputStream.return_value.stop.assert_called_once()
        sd.InputStream.return_value.close.assert_called_once()


class TestRecorderSupport(unittest.TestCase):

    def test_wav_is_supported(self):
        support = check_recorder_support()
        self.assertTrue(support.is_supported)
        self.assertEqual(support.recommended_format, "audio/wav")
        self.assertEqual(support.to_dict()["supportedFormats"], ["audio/wav"])


class TestTracks(unittest.TestCase):
    """Test AudioTrack / VideoTrack behaviour."""

    def test_audio_track_window_and_listeners(self):
        track = AudioTrack(RATE, buffer_size=8)
        chunks = []
        track.add_chunk_listener(chunks.append)
        track.push(np.array([16384] * 5, dtype=np.int16))
        track.push(np.array([-16384] * 5, dtype=np.int16))
        window = track.latest_window(4)
        np.testing.assert_allclose(window, [-0.5] * 4)
        self.assertEqual(track.latest_window(100).size, 8)
        self.assertEqual(len(chunks), 2)

    def test_audio_track_events(self):
        track = AudioTrack(RATE)
        events = []
        for name in (PLAY, PAUSE, ENDED):
            track.add_listener(name, lambda n=name: events.append(n))
        track.enabled = False
        track.enabled = False
        track.enabled = True
        track.stop()
        track.stop()
        self.assertEqual(events, [PAUSE, PLAY, ENDED])
        self.assertFalse(track.is_active())

    def test_stopped_audio_track_ignores_pushes(self):
        track = AudioTrack(RATE)
        track.stop()
        track.push(np.ones(10, dtype=np.int16))
        self.assertEqual(track.latest_window(10).size, 0)

    def test_video_track_ready_once(self):
        frames = [None, FRAME, FRAME]
        track = VideoTrack(lambda: frames.pop(0) if frames else None)
        ready = []
        track.when_ready(lambda: ready.append(1))
        self.assertIsNone(track.poll_frame())
        self.assertIs(track.poll_frame(), FRAME)
        track.poll_frame()
        self.assertEqual(ready, [1])
        self.assertEqual((track.width, track.height), (64, 48))
        track.when_ready(lambda: ready.append(2))
        self.assertEqual(ready, [1, 2])

    def test_video_track_stop(self):
        released = []
        track = VideoTrack(lambda: FRAME, on_stop=lambda: released.append(1))
        track.stop()
        track.stop()
        self.assertIsNone(track.poll_frame())
        self.assertEqual(released, [1])

    def test_camera_reader_survives_read_errors(self):
        reads = [RuntimeError("grab failed"), None, FRAME]

        def read():
            item = reads.pop(0) if reads else None
            if isinstance(item, Exception):
                raise item
            return item

        reader = CameraReader(read)
        reader.start()
        deadline = time.monotonic() + 2.0
        frame = None
        while frame is None and time.monotonic() < deadline:
            frame = reader.take()
            time.sleep(0.005)
        reader.stop()
        self.assertIs(frame, FRAME)

    def test_browser_stream(self):
        stream = BrowserMediaStream(sample_rate=RATE)
        self.assertEqual(stream.source, "browser")
        self.assertEqual(stream.push_pcm(pcm_bytes(10) + b"\x01"), 10)
        self.assertTrue(stream.push_frame(FRAME))
        self.assertIs(stream.video_track.poll_frame(), FRAME)
        self.assertIsNone(stream.video_track.poll_frame())
        stream.stop()
        self.assertFalse(stream.active)
        self.assertFalse(stream.push_frame(FRAME))

    def test_audio_only_browser_stream(self):
        stream = BrowserMediaStream(sample_rate=RATE, video=False)
        self.assertIsNone(stream.video_track)
        self.assertEqual(len(stream.get_tracks()), 1)


class TestRecordingSession(unittest.TestCase):
    """Test the recording state machine."""

    def test_start_pause_resume_stop(self):
        stream = BrowserMediaStream(sample_rate=RATE)
        rec = RecordingSession()
        self.assertTrue(rec.start(stream=stream))
        self.assertEqual(rec.state, RecordingState.RECORDING)
        self.assertFalse(rec.start(stream=stream))

        stream.push_pcm(pcm_bytes(1600))
        self.assertTrue(rec.pause())
        self.assertFalse(rec.pause())
        stream.push_pcm(pcm_bytes(1600))  # dropped while paused
        self.assertTrue(rec.resume())
        stream.push_pcm(pcm_bytes(1600))

        take = rec.stop()
        self.assertEqual(rec.state, RecordingState.STOPPED)
        self.assertEqual(take.sample_count, 3200)
        self.assertAlmostEqual(take.duration_ms, 200.0)
        self.assertEqual(take.mime_type, "audio/wav")
        with wave.open(io.BytesIO(take.data), "rb") as wf:
            self.assertEqual(wf.getnframes(), 3200)
            self.assertEqual(wf.getframerate(), RATE)
        # a caller-provided stream is left running
        self.assertTrue(stream.active)

    def test_stop_when_idle(self):
        rec = RecordingSession()
        self.assertIsNone(rec.stop())
        self.assertFalse(rec.resume())

    def test_opener_failure_stays_idle(self):
        def opener(constraints):
            raise PermissionError("Permission denied by system")

        rec = RecordingSession(stream_opener=opener)
        with self.assertRaises(MediaDeviceError) as ctx:
            rec.start()
        self.assertEqual(ctx.exception.kind, DeviceErrorKind.PERMISSION_DENIED)
        self.assertEqual(rec.state, RecordingState.IDLE)
        self.assertIs(rec.error, ctx.exception)
        self.assertFalse(rec.is_recording)

    def test_unsupported_format(self):
        rec = RecordingSession(mime_type="audio/webm")
        with self.assertRaises(MediaDeviceError) as ctx:
            rec.start(stream=BrowserMediaStream(sample_rate=RATE))
        self.assertEqual(ctx.exception.kind, DeviceErrorKind.UNSUPPORTED_ENVIRONMENT)
        self.assertEqual(rec.state, RecordingState.IDLE)

    def test_stream_without_audio(self):
        video_only = MediaStream(video_track=VideoTrack(lambda: FRAME))
        rec = RecordingSession(stream_opener=lambda constraints: video_only)
        with self.assertRaises(MediaDeviceError) as ctx:
            rec.start()
        self.assertEqual(ctx.exception.kind, DeviceErrorKind.DEVICE_NOT_FOUND)
        self.assertFalse(video_only.active)

    def test_owned_stream_is_stopped(self):
        stream = BrowserMediaStream(sample_rate=RATE)
        rec = RecordingSession(stream_opener=lambda constraints: stream)
        rec.start()
        rec.stop()
        self.assertFalse(stream.active)

    def test_lip_sync_and_analysis_wiring(self):
        lip_sync = MagicMock()
        analysis = MagicMock()
        stream = BrowserMediaStream(sample_rate=RATE)
        rec = RecordingSession(lip_sync=lip_sync, facial_analysis=analysis)
        rec.start(stream=stream)
        lip_sync.arm.assert_called_once_with(stream.audio_track)
        # analysis waits for the first video frame
        analysis.arm.assert_not_called()
        stream.push_frame(FRAME)
        stream.video_track.poll_frame()
        analysis.arm.assert_called_once()
        rec.stop()
        lip_sync.disarm.assert_called_once()
        analysis.disarm.assert_called_once()

    def test_clear(self):
        stream = BrowserMediaStream(sample_rate=RATE)
        rec = RecordingSession()
        rec.start(stream=stream)
        self.assertFalse(rec.clear())
        rec.stop()
        self.assertTrue(rec.clear())
        self.assertIsNone(rec.last_recording)
        self.assertEqual(rec.state, RecordingState.IDLE)

    def test_new_take_after_stop(self):
        stream = BrowserMediaStream(sample_rate=RATE)
        rec = RecordingSession()
        rec.start(stream=stream)
        stream.push_pcm(pcm_bytes(100))
        rec.stop()
        self.assertTrue(rec.start(stream=stream))
        self.assertIsNone(rec.last_recording)
        stream.push_pcm(pcm_bytes(50))
        self.assertEqual(rec.stop().sample_count, 50)


if __name__ == "__main__":
    unittest.main()
