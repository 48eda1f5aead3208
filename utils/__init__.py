"""
Utilities package for the conversation practice coach.

This package contains the audio envelope and lip-sync pipeline, the frame
scheduler, facial landmark scoring and session aggregation, media device
capture, recording, and avatar behaviour.
"""

from .facial_scorer import FacialLandmarkScorer, FacialMetrics, GazeTarget, VerticalGaze
from .gesture_aggregator import GestureSummary, SessionGestureAggregator
from .lip_sync import LipSyncAnimator, LipSyncDriver
from .frame_scheduler import CooperativeLoop, FrameScheduler
from .face_detection_interface import FaceLandmarkDetector, FaceLandmarkResult
from .media_devices import MediaDeviceError, DeviceErrorKind
from .recording_session import RecordingSession, RecordingState

__all__ = [
    'FacialLandmarkScorer',
    'FacialMetrics',
    'GazeTarget',
    'VerticalGaze',
    'GestureSummary',
    'SessionGestureAggregator',
    'LipSyncAnimator',
    'LipSyncDriver',
    'CooperativeLoop',
    'FrameScheduler',
    'FaceLandmarkDetector',
    'FaceLandmarkResult',
    'MediaDeviceError',
    'DeviceErrorKind',
    'RecordingSession',
    'RecordingState',
]
