"""
Flask routes for the conversation practice service.

Handles health and config, practice-session lifecycle, recording control,
browser-fed audio/video, gaze target, reply playback with lip-sync, live avatar
state, and the end-of-session gesture summary / feedback report.
"""

import logging
from typing import Optional, Tuple

from flask import Blueprint, Response, jsonify, request

from services.feedback_generator import generate_feedback
from services.practice_session import BROWSER_SOURCE, LOCAL_SOURCE, PracticeSession, get_session_registry
from services.session_api import get_session_api_client
from utils.helpers import build_config_response
from utils.media_devices import DeviceErrorKind, MediaDeviceError, classify_browser_error

log = logging.getLogger(__name__)

# Create a blueprint for better organization
api = Blueprint('api', __name__)

DEVICE_ERROR_STATUS = {
    DeviceErrorKind.PERMISSION_DENIED: 403,
    DeviceErrorKind.DEVICE_NOT_FOUND: 404,
    DeviceErrorKind.DEVICE_BUSY: 409,
    DeviceErrorKind.UNSUPPORTED_ENVIRONMENT: 501,
    DeviceErrorKind.OTHER: 500,
}


def _session_or_404(session_id: str) -> Tuple[Optional[PracticeSession], Optional[Tuple[Response, int]]]:
    session = get_session_registry().get(session_id)
    if session is None:
        return None, (jsonify({"error": "Session not found"}), 404)
    return session, None


def _device_error_response(error: MediaDeviceError):
    return jsonify(error.to_dict()), DEVICE_ERROR_STATUS[error.kind]


def _json_object() -> Tuple[Optional[dict], Optional[Tuple[Response, int]]]:
    """JSON body as a dict (empty when absent); 400 for any other JSON value."""
    data = request.get_json(silent=True)
    if data is None:
        return {}, None
    if not isinstance(data, dict):
        return None, (jsonify({"error": "JSON body must be an object"}), 400)
    return data, None


def _request_body_bytes(*field_names: str) -> bytes:
    """First uploaded file among field_names (multipart), otherwise the raw body."""
    if request.files:
        f = next((request.files[n] for n in field_names if n in request.files), None)
        f = f or next(iter(request.files.values()), None)
        return f.read() if f else b""
    return request.get_data()


# ============================================================================
# Health and Configuration Routes
# ============================================================================

@api.route("/health", methods=["GET"])
def health():
    return jsonify({"status": "ok", "sessions": len(get_session_registry())})


@api.route("/config/all", methods=["GET"])
def get_all_config():
    """
    Get all configuration in one endpoint.

    Returns:
        JSON: Lip-sync, facial analysis, capture, avatar and integration settings
    """
    return jsonify(build_config_response())


# ============================================================================
# Session Lifecycle Routes
# ============================================================================

@api.route("/sessions", methods=["POST"])
def create_session():
    """
    Create and begin a practice session.

    Returns:
        JSON: {"sessionId": "..."} (201)
    """
    session = get_session_registry().create()
    session.begin()
    return jsonify({"sessionId": session.session_id}), 201


@api.route("/sessions/<session_id>", methods=["DELETE"])
def delete_session(session_id):
    if not get_session_registry().remove(session_id):
        return jsonify({"error": "Session not found"}), 404
    return "", 204


@api.route("/sessions/<session_id>/state", methods=["GET"])
def get_session_state(session_id):
    """
    Live avatar and analysis state, polled by the web client.

    Returns:
        JSON: avatar (mouth openness, gesture, emotion), recording state,
        latest facial metrics, live feedback and analysis availability
    """
    session, error = _session_or_404(session_id)
    if error:
        return error
    return jsonify(session.get_state())


@api.route("/sessions/<session_id>/finish", methods=["POST"])
def finish_session(session_id):
    """
    Finish the session and return the gesture summary.

    Body (optional JSON):
        {"narrative": true, "messages": [{"role": "user"|"assistant", "content": "..."}]}

    Returns:
        JSON: {"summary": {...} | null, "forwarded": bool, "feedback"?: {...}}
    """
    session, error = _session_or_404(session_id)
    if error:
        return error
    data, error = _json_object()
    if error:
        return error
    messages = data.get("messages") or []
    if not isinstance(messages, list):
        return jsonify({"error": "'messages' must be a list"}), 400
    summary = session.finish()
    payload = summary.to_payload() if summary else None
    forward_error = session.report_summary(get_session_api_client())
    result = {"sessionId": session.session_id, "summary": payload, "forwarded": session.summary_reported}
    if forward_error:
        result["forwardError"] = forward_error

    if data.get("narrative"):
        result["feedback"] = generate_feedback(messages, summary).to_dict()
    return jsonify(result)


# ============================================================================
# Recording Routes
# ============================================================================

@api.route("/sessions/<session_id>/recording/start", methods=["POST"])
def start_recording(session_id):
    """
    Start recording from local devices or from the browser.

    Body (JSON):
        {"source": "local" | "browser",
         "error": {"name": "NotAllowedError", "message": "..."}}   # browser getUserMedia failure

    Returns:
        JSON: {"state": "recording", "source": "..."} or a classified device error
        (403 permission, 404 not found, 409 busy, 501 unsupported, 500 other)
    """
    session, error = _session_or_404(session_id)
    if error:
        return error
    data, error = _json_object()
    if error:
        return error
    source = data.get("source", LOCAL_SOURCE)
    if source not in (LOCAL_SOURCE, BROWSER_SOURCE):
        return jsonify({"error": f"Unknown source: {source}"}), 400

    reported = data.get("error")
    if reported is not None:
        if not isinstance(reported, dict):
            return jsonify({"error": "'error' must be an object"}), 400
        device_error = classify_browser_error(reported.get("name"), reported.get("message"))
        session.recording.error = device_error
        log.warning("Browser reported media error %s: %s", reported.get("name"), reported.get("message"))
        return _device_error_response(device_error)

    try:
        started = session.start_recording(source=source)
    except MediaDeviceError as e:
        return _device_error_response(e)
    if not started:
        return jsonify({"error": "Recording already in progress or session finished"}), 409
    return jsonify({"state": session.recording.state.value, "source": source})


@api.route("/sessions/<session_id>/recording/stop", methods=["POST"])
def stop_recording(session_id):
    session, error = _session_or_404(session_id)
    if error:
        return error
    take = session.stop_recording()
    if take is None:
        return jsonify({"error": "Not recording"}), 409
    return jsonify({
        "state": session.recording.state.value,
        "recording": {
            "mimeType": take.mime_type,
            "sampleRate": take.sample_rate,
            "durationMs": take.duration_ms,
            "sizeBytes": len(take.data),
        },
    })


@api.route("/sessions/<session_id>/recording/pause", methods=["POST"])
def pause_recording(session_id):
    session, error = _session_or_404(session_id)
    if error:
        return error
    if not session.pause_recording():
        return jsonify({"error": "Not recording"}), 409
    return jsonify({"state": session.recording.state.value})


@api.route("/sessions/<session_id>/recording/resume", methods=["POST"])
def resume_recording(session_id):
    session, error = _session_or_404(session_id)
    if error:
        return error
    if not session.resume_recording():
        return jsonify({"error": "Recording is not paused"}), 409
    return jsonify({"state": session.recording.state.value})


@api.route("/sessions/<session_id>/recording/audio", methods=["GET"])
def get_recording_audio(session_id):
    """Download the last finished take."""
    session, error = _session_or_404(session_id)
    if error:
        return error
    take = session.recording.last_recording
    if take is None:
        return jsonify({"error": "No recording available"}), 404
    return Response(take.data, mimetype=take.mime_type)


# ============================================================================
# Browser Media Routes
# ============================================================================

@api.route("/sessions/<session_id>/audio", methods=["POST"])
def push_audio(session_id):
    """
    Receive a chunk of microphone audio from the browser.
    Expects raw little-endian PCM16 mono at the configured sample rate.
    """
    session, error = _session_or_404(session_id)
    if error:
        return error
    if session.browser_stream is None:
        return jsonify({"error": "No browser recording in progress"}), 409
    data = request.get_data()
    if not data:
        return jsonify({"error": "No audio data"}), 400
    return jsonify({"samples": session.push_audio(data)})


@api.route("/sessions/<session_id>/frames", methods=["POST"])
def push_frame(session_id):
    """
    Receive a single camera frame from the browser.
    Expects raw JPEG body or multipart/form-data with an image file.
    """
    session, error = _session_or_404(session_id)
    if error:
        return error
    if session.browser_stream is None:
        return jsonify({"error": "No browser recording in progress"}), 409
    data = _request_body_bytes("frame", "image")
    if not data:
        return jsonify({"error": "No image data"}), 400
    if not session.push_frame(data):
        return jsonify({"error": "Invalid or unsupported image"}), 400
    return "", 204


# ============================================================================
# Avatar and Analysis Routes
# ============================================================================

@api.route("/sessions/<session_id>/gaze-target", methods=["PUT"])
def set_gaze_target(session_id):
    """
    Move the gaze target (where the avatar is drawn).

    Body: {"x": 0.25, "y": 0.5}, normalized screen coordinates.
    """
    session, error = _session_or_404(session_id)
    if error:
        return error
    if not request.is_json:
        return jsonify({"error": "Request must be JSON"}), 400
    data, error = _json_object()
    if error:
        return error
    try:
        x = float(data["x"])
        y = float(data["y"])
        session.set_gaze_target(x, y)
    except KeyError:
        return jsonify({"error": "Missing 'x' or 'y'"}), 400
    except (TypeError, ValueError) as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"gazeTarget": session.gaze_target.to_dict()})


@api.route("/sessions/<session_id>/processing", methods=["POST"])
def set_processing(session_id):
    """Body: {"processing": true} while the partner's reply is being generated."""
    session, error = _session_or_404(session_id)
    if error:
        return error
    data, error = _json_object()
    if error:
        return error
    if "processing" not in data:
        return jsonify({"error": "Missing 'processing'"}), 400
    session.set_processing(bool(data["processing"]))
    return jsonify({"processing": session.processing})


@api.route("/sessions/<session_id>/reply-audio", methods=["POST"])
def play_reply_audio(session_id):
    """
    Play the partner's synthesized reply and lip-sync the avatar to it.
    Expects a 16-bit PCM WAV body or multipart/form-data with an "audio" file.
    """
    session, error = _session_or_404(session_id)
    if error:
        return error
    data = _request_body_bytes("audio")
    if not data:
        return jsonify({"error": "No audio data"}), 400
    try:
        duration_ms = session.play_reply(data)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({
        "durationMs": duration_ms,
        "lipSyncAvailable": session.reply_lip_sync.is_available,
    })


def register_routes(app):
    """Attach the API blueprint to the Flask app."""
    app.register_blueprint(api)
