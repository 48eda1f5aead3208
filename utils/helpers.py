"""
Helper utility functions.

This module contains reusable utility functions used throughout the application.
"""

from typing import Any, Dict

import config
from utils.media_devices import check_recorder_support


def build_config_response() -> Dict[str, Any]:
    """
    Build a complete configuration response dictionary.

    This function aggregates all configuration settings into a single
    dictionary for the /config/all endpoint.

    Returns:
        dict: Complete configuration dictionary (no secrets)
    """
    return {
        "lipSync": config.get_lip_sync_config(),
        "facialAnalysis": config.get_facial_analysis_config(),
        "capture": {
            "sampleRate": config.AUDIO_SAMPLE_RATE,
            "channels": config.AUDIO_CHANNELS,
            "recorderMimeType": config.RECORDER_MIME_TYPE,
            "recorderSupport": check_recorder_support().to_dict(),
            "video": {
                "source": config.VIDEO_SOURCE,
                "width": config.VIDEO_WIDTH,
                "height": config.VIDEO_HEIGHT,
            },
        },
        "loops": {
            "displayFps": config.DISPLAY_FPS,
            "targetVideoFps": config.TARGET_VIDEO_FPS,
        },
        "avatar": {
            "talkingThreshold": config.AVATAR_TALKING_THRESHOLD,
            "idleHoldMs": config.AVATAR_IDLE_HOLD_MS,
        },
        "foundry": {
            "enabled": config.is_foundry_enabled(),
            "endpoint": config.AZURE_FOUNDRY_ENDPOINT,
            "deploymentName": config.FOUNDRY_DEPLOYMENT_NAME,
            "apiVersion": config.AZURE_FOUNDRY_API_VERSION,
        },
        "sessionApi": {
            "enabled": config.is_session_api_enabled(),
            "url": config.SESSION_API_URL,
        },
    }
