"""
API endpoint tests.

Uses Flask test client. Does not require a running server, a camera or a
microphone: sessions come from a registry whose sessions use a scripted face
detector and browser-fed media. The session API and Azure AI Foundry are mocked.
"""

import io
import sys
import os

# Ensure project root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import unittest
from unittest.mock import patch, MagicMock

import numpy as np

from tests.fixtures.practice_sessions import make_session, reply_wav


def get_app_client():
    """Create Flask app and test client. Lazy to avoid import-time side effects."""
    from app import app
    app.config["TESTING"] = True
    return app.test_client()


def jpeg_bytes():
    import cv2
    ok, buf = cv2.imencode(".jpg", np.full((48, 64, 3), 128, dtype=np.uint8))
    return buf.tobytes()


class ApiTestCase(unittest.TestCase):
    """Base: fresh registry and a disabled session API client for every test."""

    stream_opener = None

    def setUp(self):
        from services.practice_session import SessionRegistry
        opener = type(self).stream_opener
        self.registry = SessionRegistry(
            session_factory=lambda **kw: make_session(stream_opener=opener, **kw)
        )
        self.api_client = MagicMock()
        self.api_client.enabled = False
        patches = [
            patch("routes.get_session_registry", return_value=self.registry),
            patch("routes.get_session_api_client", return_value=self.api_client),
        ]
        for p in patches:
            p.start()
            self.addCleanup(p.stop)
        self.addCleanup(self.registry.close_all)
        self.client = get_app_client()

    def create_session(self):
        r = self.client.post("/sessions")
        self.assertEqual(r.status_code, 201)
        return r.get_json()["sessionId"]

    def start_browser_recording(self, sid):
        r = self.client.post(f"/sessions/{sid}/recording/start", json={"source": "browser"})
        self.assertEqual(r.status_code, 200)
        return r


class TestHealthAndConfig(ApiTestCase):

    def test_health(self):
        r = self.client.get("/health")
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.get_json()["status"], "ok")

    def test_config_all(self):
        """GET /config/all should return every section and no secrets."""
        r = self.client.get("/config/all")
        self.assertEqual(r.status_code, 200)
        data = r.get_json()
        for key in ("lipSync", "facialAnalysis", "capture", "loops", "avatar", "foundry", "sessionApi"):
            self.assertIn(key, data)
        self.assertTrue(data["capture"]["recorderSupport"]["isSupported"])
        self.assertEqual(data["lipSync"]["frequencyRange"]["min"], 300)
        self.assertEqual(set(data["foundry"]), {"enabled", "endpoint", "deploymentName", "apiVersion"})


class TestSessionLifecycle(ApiTestCase):

    def test_create_and_state(self):
        sid = self.create_session()
        r = self.client.get(f"/sessions/{sid}/state")
        self.assertEqual(r.status_code, 200)
        data = r.get_json()
        self.assertEqual(data["sessionId"], sid)
        self.assertEqual(data["recording"]["state"], "idle")
        self.assertIsNone(data["liveFeedback"])

    def test_unknown_session(self):
        for method, url in [
            ("get", "/sessions/nope/state"),
            ("post", "/sessions/nope/recording/start"),
            ("post", "/sessions/nope/finish"),
            ("delete", "/sessions/nope"),
        ]:
            r = getattr(self.client, method)(url)
            self.assertEqual(r.status_code, 404, url)

    def test_delete(self):
        sid = self.create_session()
        self.assertEqual(self.client.delete(f"/sessions/{sid}").status_code, 204)
        self.assertEqual(self.client.get(f"/sessions/{sid}/state").status_code, 404)


class TestRecordingRoutes(ApiTestCase):

    def test_browser_recording_lifecycle(self):
        sid = self.create_session()
        self.assertEqual(self.client.get(f"/sessions/{sid}/recording/audio").status_code, 404)
        self.start_browser_recording(sid)
        self.assertEqual(
            self.client.post(f"/sessions/{sid}/recording/start", json={"source": "browser"}).status_code, 409
        )

        r = self.client.post(f"/sessions/{sid}/audio", data=np.zeros(1600, dtype="<i2").tobytes())
        self.assertEqual(r.get_json()["samples"], 1600)

        r = self.client.post(f"/sessions/{sid}/recording/pause")
        self.assertEqual(r.get_json()["state"], "paused")
        self.assertEqual(self.client.post(f"/sessions/{sid}/recording/pause").status_code, 409)
        r = self.client.post(f"/sessions/{sid}/recording/resume")
        self.assertEqual(r.get_json()["state"], "recording")
        self.assertEqual(self.client.post(f"/sessions/{sid}/recording/resume").status_code, 409)

        r = self.client.post(f"/sessions/{sid}/recording/stop")
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.get_json()["recording"]["durationMs"], 100.0)
        self.assertEqual(self.client.post(f"/sessions/{sid}/recording/stop").status_code, 409)

        r = self.client.get(f"/sessions/{sid}/recording/audio")
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.mimetype, "audio/wav")
        self.assertEqual(r.data[:4], b"RIFF")

    def test_unknown_source(self):
        sid = self.create_session()
        r = self.client.post(f"/sessions/{sid}/recording/start", json={"source": "fax"})
        self.assertEqual(r.status_code, 400)

    def test_browser_reported_errors(self):
        """getUserMedia failures reported by the client map to status codes by kind."""
        cases = {
            "NotAllowedError": (403, "permission_denied"),
            "NotFoundError": (404, "device_not_found"),
            "NotReadableError": (409, "device_busy"),
            "SecurityError": (501, "unsupported_environment"),
            "AbortError": (500, "other"),
        }
        sid = self.create_session()
        for name, (status, kind) in cases.items():
            r = self.client.post(
                f"/sessions/{sid}/recording/start",
                json={"source": "browser", "error": {"name": name, "message": "failed"}},
            )
            self.assertEqual(r.status_code, status, name)
            self.assertEqual(r.get_json()["kind"], kind)
        state = self.client.get(f"/sessions/{sid}/state").get_json()
        self.assertEqual(state["recording"]["state"], "idle")
        self.assertEqual(state["recording"]["error"]["kind"], "other")

    def test_media_push_requires_browser_recording(self):
        sid = self.create_session()
        self.assertEqual(self.client.post(f"/sessions/{sid}/audio", data=b"\x00\x00").status_code, 409)
        self.assertEqual(self.client.post(f"/sessions/{sid}/frames", data=b"jpeg").status_code, 409)

    def test_empty_media_push(self):
        sid = self.create_session()
        self.start_browser_recording(sid)
        self.assertEqual(self.client.post(f"/sessions/{sid}/audio", data=b"").status_code, 400)
        self.assertEqual(self.client.post(f"/sessions/{sid}/frames", data=b"").status_code, 400)

    def test_invalid_frame(self):
        sid = self.create_session()
        self.start_browser_recording(sid)
        r = self.client.post(f"/sessions/{sid}/frames", data=b"definitely not a jpeg")
        self.assertEqual(r.status_code, 400)

    def test_frame_upload_is_analyzed(self):
        sid = self.create_session()
        self.start_browser_recording(sid)
        r = self.client.post(f"/sessions/{sid}/frames", data=jpeg_bytes(), content_type="image/jpeg")
        self.assertEqual(r.status_code, 204)
        self.registry.get(sid).loop.run_once()
        data = self.client.get(f"/sessions/{sid}/state").get_json()
        self.assertEqual(data["analysis"]["totalSamples"], 1)
        self.assertEqual(data["liveFeedback"]["type"], "good")

    def test_frame_upload_multipart(self):
        sid = self.create_session()
        self.start_browser_recording(sid)
        r = self.client.post(
            f"/sessions/{sid}/frames",
            data={"frame": (io.BytesIO(jpeg_bytes()), "frame.jpg")},
            content_type="multipart/form-data",
        )
        self.assertEqual(r.status_code, 204)


class TestLocalDeviceErrors(ApiTestCase):

    @staticmethod
    def stream_opener(constraints):
        raise PermissionError("Permission denied")

    def test_local_permission_denied(self):
        sid = self.create_session()
        r = self.client.post(f"/sessions/{sid}/recording/start", json={"source": "local"})
        self.assertEqual(r.status_code, 403)
        data = r.get_json()
        self.assertEqual(data["kind"], "permission_denied")
        self.assertIn("error", data)


class TestAvatarRoutes(ApiTestCase):

    def test_gaze_target(self):
        sid = self.create_session()
        r = self.client.put(f"/sessions/{sid}/gaze-target", json={"x": 0.6, "y": 0.4})
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.get_json()["gazeTarget"], {"x": 0.6, "y": 0.4})

    def test_gaze_target_validation(self):
        sid = self.create_session()
        url = f"/sessions/{sid}/gaze-target"
        self.assertEqual(self.client.put(url, json={"x": 1.5, "y": 0.4}).status_code, 400)
        self.assertEqual(self.client.put(url, json={"x": 0.5}).status_code, 400)
        self.assertEqual(self.client.put(url, json={"x": "left", "y": 0.4}).status_code, 400)
        self.assertEqual(self.client.put(url, data="x=1").status_code, 400)

    def test_processing(self):
        sid = self.create_session()
        r = self.client.post(f"/sessions/{sid}/processing", json={"processing": True})
        self.assertTrue(r.get_json()["processing"])
        self.assertTrue(self.client.get(f"/sessions/{sid}/state").get_json()["processing"])
        self.assertEqual(self.client.post(f"/sessions/{sid}/processing", json={}).status_code, 400)

    def test_reply_audio(self):
        sid = self.create_session()
        self.client.post(f"/sessions/{sid}/processing", json={"processing": True})
        r = self.client.post(f"/sessions/{sid}/reply-audio", data=reply_wav(0.5), content_type="audio/wav")
        self.assertEqual(r.status_code, 200)
        self.assertAlmostEqual(r.get_json()["durationMs"], 500.0)
        self.assertTrue(r.get_json()["lipSyncAvailable"])
        state = self.client.get(f"/sessions/{sid}/state").get_json()
        self.assertFalse(state["processing"])
        self.assertTrue(state["lipSync"]["replyPlaying"])

    def test_reply_audio_multipart(self):
        sid = self.create_session()
        r = self.client.post(
            f"/sessions/{sid}/reply-audio",
            data={"audio": (io.BytesIO(reply_wav(0.2)), "reply.wav")},
            content_type="multipart/form-data",
        )
        self.assertEqual(r.status_code, 200)

    def test_reply_audio_invalid(self):
        sid = self.create_session()
        self.assertEqual(self.client.post(f"/sessions/{sid}/reply-audio", data=b"").status_code, 400)
        r = self.client.post(f"/sessions/{sid}/reply-audio", data=b"not a wav")
        self.assertEqual(r.status_code, 400)
        self.assertIn("error", r.get_json())


class TestFinishRoute(ApiTestCase):

    def _session_with_one_frame(self):
        sid = self.create_session()
        self.start_browser_recording(sid)
        self.client.post(f"/sessions/{sid}/frames", data=jpeg_bytes(), content_type="image/jpeg")
        self.registry.get(sid).loop.run_once()
        return sid

    def test_finish_empty_session(self):
        sid = self.create_session()
        r = self.client.post(f"/sessions/{sid}/finish")
        self.assertEqual(r.status_code, 200)
        data = r.get_json()
        self.assertIsNone(data["summary"])
        self.assertFalse(data["forwarded"])
        self.api_client.save_gesture_metrics.assert_not_called()

    def test_finish_returns_summary(self):
        sid = self._session_with_one_frame()
        data = self.client.post(f"/sessions/{sid}/finish").get_json()
        self.assertEqual(data["summary"]["totalSamples"], 1)
        self.assertEqual(data["summary"]["smilingRate"], 1.0)
        # idempotent
        again = self.client.post(f"/sessions/{sid}/finish").get_json()
        self.assertEqual(again["summary"], data["summary"])

    def test_finish_forwards_once(self):
        self.api_client.enabled = True
        sid = self._session_with_one_frame()
        first = self.client.post(f"/sessions/{sid}/finish").get_json()
        second = self.client.post(f"/sessions/{sid}/finish").get_json()
        self.assertTrue(first["forwarded"])
        self.assertTrue(second["forwarded"])
        self.api_client.save_gesture_metrics.assert_called_once()
        args = self.api_client.save_gesture_metrics.call_args.args
        self.assertEqual(args[0], sid)
        self.assertEqual(args[1]["totalSamples"], 1)

    def test_finish_forward_error(self):
        from services.session_api import SessionApiError
        self.api_client.enabled = True
        self.api_client.save_gesture_metrics.side_effect = SessionApiError("Session API returned status 503", 503)
        sid = self._session_with_one_frame()
        data = self.client.post(f"/sessions/{sid}/finish").get_json()
        self.assertFalse(data["forwarded"])
        self.assertIn("503", data["forwardError"])
        self.assertEqual(data["summary"]["totalSamples"], 1)

    @patch("services.feedback_generator.config.is_foundry_enabled", return_value=False)
    def test_finish_with_narrative(self, _):
        sid = self._session_with_one_frame()
        r = self.client.post(
            f"/sessions/{sid}/finish",
            json={"narrative": True, "messages": [{"role": "user", "content": "Hello"}]},
        )
        self.assertEqual(r.status_code, 200)
        feedback = r.get_json()["feedback"]
        self.assertEqual(feedback["source"], "stock")
        self.assertIn("overallScore", feedback)

    def test_finish_narrative_rejects_bad_messages(self):
        sid = self.create_session()
        r = self.client.post(f"/sessions/{sid}/finish", json={"narrative": True, "messages": "hi"})
        self.assertEqual(r.status_code, 400)

    def test_non_object_json_bodies(self):
        sid = self.create_session()
        for path, method in (
            ("finish", self.client.post),
            ("recording/start", self.client.post),
            ("processing", self.client.post),
            ("gaze-target", self.client.put),
        ):
            for body in ([1, 2], "browser", 3):
                r = method(f"/sessions/{sid}/{path}", json=body)
                self.assertEqual(r.status_code, 400, f"{path} with {body!r}")
                self.assertIn("error", r.get_json())
        self.assertFalse(self.client.get(f"/sessions/{sid}/state").get_json()["finished"])


if __name__ == "__main__":
    unittest.main()
