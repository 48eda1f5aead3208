"""
=============================================================================
CONFIGURATION FOR CONVERSATION PRACTICE COACH (config.py)
=============================================================================

WHAT THIS FILE DOES (in plain language):
----------------------------------------
This file holds ALL configurable settings for the project in one place. Other
modules read from here instead of hard-coding numbers. Values come from the
environment (your .env file or system variables), so you can tune lip-sync or
the gaze target without touching code.

MAIN GROUPS OF SETTINGS:
------------------------
  1. Lip-sync         : How speech audio becomes avatar mouth movement
                         (FFT size, voice band, threshold, attack/release).
  2. Facial analysis  : Where the user should look (gaze target) and how
                         face detection is configured.
  3. Frame loops      : Display and video frame rates of the analysis loop.
  4. Capture          : Microphone sample rate and recorder format.
  5. Avatar           : Talking threshold, idle-gesture hold and random seed.
  6. External services: Session API (gesture metrics) and Azure AI Foundry
                         (narrative feedback report).
  7. Server           : Host, port, debug mode and log level.

HOW VALUES ARE CHOSEN:
---------------------
  - Environment variables (e.g. LIPSYNC_THRESHOLD) override everything.
  - If an env var is not set, we use a default that matches observed behaviour.
  - We never put real API keys or secrets as defaults in code.
=============================================================================
"""

import os
import sys
from typing import Optional


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() == "true"


def _env_optional_int(name: str) -> Optional[int]:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return None
    return int(raw)


# ============================================================================
# LIP-SYNC (speech audio -> mouth openness)
# ============================================================================
# The envelope extractor looks at the voice band of the playing audio once per
# animation frame. The normalization ceiling and threshold are calibration
# constants: keep them unless the avatar is re-tuned against real speech.
# ----------------------------------------------------------------------------
LIPSYNC_FFT_SIZE: int = int(os.getenv("LIPSYNC_FFT_SIZE", "2048"))
LIPSYNC_SMOOTHING: float = float(os.getenv("LIPSYNC_SMOOTHING", "0.8"))
LIPSYNC_THRESHOLD: float = float(os.getenv("LIPSYNC_THRESHOLD", "0.01"))
LIPSYNC_FREQ_MIN_HZ: float = float(os.getenv("LIPSYNC_FREQ_MIN_HZ", "300"))
LIPSYNC_FREQ_MAX_HZ: float = float(os.getenv("LIPSYNC_FREQ_MAX_HZ", "3400"))
LIPSYNC_NORMALIZATION_CEILING: float = float(os.getenv("LIPSYNC_NORMALIZATION_CEILING", "180"))

# Attack = how fast the mouth opens, release = how fast it closes (milliseconds)
LIPSYNC_ATTACK_MS: float = float(os.getenv("LIPSYNC_ATTACK_MS", "50"))
LIPSYNC_RELEASE_MS: float = float(os.getenv("LIPSYNC_RELEASE_MS", "100"))

# Preset used when the avatar speaks a reply (a bit less smoothing, higher gate)
REPLY_LIPSYNC_SMOOTHING: float = float(os.getenv("REPLY_LIPSYNC_SMOOTHING", "0.7"))
REPLY_LIPSYNC_THRESHOLD: float = float(os.getenv("REPLY_LIPSYNC_THRESHOLD", "0.02"))

# Play reply audio through the local speakers (needs PortAudio). When false the
# reply is analysed on the wall clock only, for a browser that plays it itself.
REPLY_AUDIO_OUTPUT: bool = _env_bool("REPLY_AUDIO_OUTPUT", "false")

# ============================================================================
# FACIAL ANALYSIS (smile + gaze scoring)
# ============================================================================
# The gaze target is where the avatar is drawn, in normalised screen space
# (0,0 = top-left, 1,1 = bottom-right). Default: left half, vertically centred.
# ----------------------------------------------------------------------------
GAZE_TARGET_X: float = float(os.getenv("GAZE_TARGET_X", "0.25"))
GAZE_TARGET_Y: float = float(os.getenv("GAZE_TARGET_Y", "0.5"))

# Minimum confidence for MediaPipe face detection (0.01-0.99).
MIN_FACE_CONFIDENCE: float = float(os.getenv("MIN_FACE_CONFIDENCE", "0.5"))

# Optional path to a MediaPipe Tasks face_landmarker.task bundle. When unset the
# bundled face-mesh solution is used (refined, 478 landmarks).
FACE_LANDMARKER_MODEL_PATH: str = os.getenv("FACE_LANDMARKER_MODEL_PATH", "")

# When true, frames without a detected face are counted as neutral samples in
# the session statistics. Default false: only frames with a face are counted.
ACCUMULATE_NO_FACE_FRAMES: bool = _env_bool("ACCUMULATE_NO_FACE_FRAMES", "false")

# ============================================================================
# FRAME LOOPS
# ============================================================================
# The animation loop drives lip-sync; the video loop runs once per new frame.
# ----------------------------------------------------------------------------
DISPLAY_FPS: float = float(os.getenv("DISPLAY_FPS", "60"))
TARGET_VIDEO_FPS: float = float(os.getenv("TARGET_VIDEO_FPS", "30"))

# ============================================================================
# CAPTURE (microphone, camera, recorder)
# ============================================================================
AUDIO_SAMPLE_RATE: int = int(os.getenv("AUDIO_SAMPLE_RATE", "16000"))
AUDIO_CHANNELS: int = int(os.getenv("AUDIO_CHANNELS", "1"))
AUDIO_DEVICE: Optional[int] = _env_optional_int("AUDIO_DEVICE")
RECORDER_MIME_TYPE: str = os.getenv("RECORDER_MIME_TYPE", "audio/wav")
VIDEO_WIDTH: int = int(os.getenv("VIDEO_WIDTH", "1280"))
VIDEO_HEIGHT: int = int(os.getenv("VIDEO_HEIGHT", "720"))
# Local video source: webcam, file or stream (file/stream need VIDEO_SOURCE_PATH).
VIDEO_SOURCE: str = os.getenv("VIDEO_SOURCE", "webcam")
VIDEO_SOURCE_PATH: str = os.getenv("VIDEO_SOURCE_PATH", "")

# ============================================================================
# AVATAR BEHAVIOUR
# ============================================================================
# Mouth openness above this value switches the avatar to its talking gesture.
AVATAR_TALKING_THRESHOLD: float = float(os.getenv("AVATAR_TALKING_THRESHOLD", "0.1"))
# How long an idle gesture is held before a new one is drawn (milliseconds).
AVATAR_IDLE_HOLD_MS: float = float(os.getenv("AVATAR_IDLE_HOLD_MS", "4000"))
# Optional seed so idle gestures repeat across runs (demos, tests).
AVATAR_RANDOM_SEED: Optional[int] = _env_optional_int("AVATAR_RANDOM_SEED")

# ============================================================================
# EXTERNAL SERVICES
# ============================================================================
# Session API: receives the finalized gesture statistics once per session.
# Leave SESSION_API_URL empty to keep everything local.
# ----------------------------------------------------------------------------
SESSION_API_URL: str = (os.getenv("SESSION_API_URL") or "").strip().rstrip("/")
SESSION_API_TIMEOUT_SEC: float = float(os.getenv("SESSION_API_TIMEOUT_SEC", "10"))

# Azure AI Foundry (OpenAI-compatible chat) writes the narrative feedback report.
AZURE_FOUNDRY_KEY: str = (os.getenv("AZURE_FOUNDRY_KEY") or os.getenv("AZURE_OPENAI_KEY") or "").strip()
AZURE_FOUNDRY_ENDPOINT: str = (os.getenv("AZURE_FOUNDRY_ENDPOINT") or os.getenv("AZURE_OPENAI_ENDPOINT") or "").strip().rstrip("/")
FOUNDRY_DEPLOYMENT_NAME: str = (os.getenv("FOUNDRY_DEPLOYMENT_NAME") or "gpt-4o").strip()
AZURE_FOUNDRY_API_VERSION: str = (os.getenv("AZURE_FOUNDRY_API_VERSION") or "2024-10-21").strip()

FEEDBACK_SYSTEM_PROMPT: str = """You are a friendly conversation coach.
You review one practice conversation between a user and an AI partner, together with
non-verbal statistics measured from the user's camera (smile and eye contact).
Reply ONLY with JSON of the form:
{"goodPoints": ["..."], "improvementPoints": ["..."], "overallScore": <1-100>}
Give 2-3 concrete good points and 2-3 concrete improvement points. Weigh how well the
user led the conversation, kept it going, and listened; use the non-verbal statistics
to comment on smiling and eye contact."""

# ============================================================================
# Application Configuration
# ============================================================================
FLASK_PORT: int = int(os.getenv("FLASK_PORT", "5000"))
FLASK_DEBUG: bool = _env_bool("FLASK_DEBUG", "true")
FLASK_HOST: str = os.getenv("FLASK_HOST", "0.0.0.0")
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

# ============================================================================
# Helper Functions
# ============================================================================

def warn_missing_config() -> None:
    """
    Print a warning when optional integrations are not configured.
    Call from app startup (e.g. app.py) to help operators. Does not raise.
    """
    missing = []
    if not AZURE_FOUNDRY_KEY:
        missing.append("AZURE_FOUNDRY_KEY (or AZURE_OPENAI_KEY)")
    if not AZURE_FOUNDRY_ENDPOINT:
        missing.append("AZURE_FOUNDRY_ENDPOINT (or AZURE_OPENAI_ENDPOINT)")
    if not SESSION_API_URL:
        missing.append("SESSION_API_URL")
    if missing:
        print("Config warning: the following env vars are not set. Some features may be disabled:", ", ".join(missing), file=sys.stderr)


def is_foundry_enabled() -> bool:
    """True if the narrative feedback report can call Azure AI Foundry."""
    return bool(AZURE_FOUNDRY_KEY and AZURE_FOUNDRY_ENDPOINT)


def is_session_api_enabled() -> bool:
    """True if finalized gesture statistics should be forwarded to the session API."""
    return bool(SESSION_API_URL)


def get_lip_sync_config() -> dict:
    """
    Get lip-sync configuration dictionary (camelCase, for the web client).

    Returns:
        dict: Envelope and attack/release settings
    """
    return {
        "fftSize": LIPSYNC_FFT_SIZE,
        "smoothingTimeConstant": LIPSYNC_SMOOTHING,
        "threshold": LIPSYNC_THRESHOLD,
        "frequencyRange": {"min": LIPSYNC_FREQ_MIN_HZ, "max": LIPSYNC_FREQ_MAX_HZ},
        "normalizationCeiling": LIPSYNC_NORMALIZATION_CEILING,
        "attackTimeMs": LIPSYNC_ATTACK_MS,
        "releaseTimeMs": LIPSYNC_RELEASE_MS,
    }


def get_facial_analysis_config() -> dict:
    """
    Get facial analysis configuration dictionary.

    Returns:
        dict: Default gaze target and detection settings
    """
    return {
        "gazeTarget": {"x": GAZE_TARGET_X, "y": GAZE_TARGET_Y},
        "minFaceConfidence": MIN_FACE_CONFIDENCE,
        "landmarkerModel": "tasks" if FACE_LANDMARKER_MODEL_PATH else "face_mesh",
        "accumulateNoFaceFrames": ACCUMULATE_NO_FACE_FRAMES,
        "targetVideoFps": TARGET_VIDEO_FPS,
    }
