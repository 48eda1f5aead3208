"""
Facial Analysis Loop Module

Runs landmark detection + scoring + aggregation once per decoded video frame
on the video-frame scheduler.

- arm() loads the detector the first time. If the model cannot be loaded the
  loop is marked unavailable and arm() returns False; lip-sync and recording
  carry on without it.
- Every callback checks the active gate first, so nothing is accumulated after
  disarm() even if a frame was already queued.
- A detector exception skips that frame only.
"""

import logging
from typing import Callable, Optional

import numpy as np

from utils.face_detection_interface import DetectorUnavailableError, FaceLandmarkDetector
from utils.facial_scorer import FacialLandmarkScorer, FacialMetrics
from utils.frame_scheduler import FrameScheduler
from utils.gesture_aggregator import SessionGestureAggregator

log = logging.getLogger(__name__)


class FacialAnalysisLoop:
    """
    Per-video-frame facial scoring for one session.

    Usage:
        analysis = FacialAnalysisLoop(loop.video_frames, scorer, aggregator, create_landmark_detector)
        if not analysis.arm():
            print(analysis.error)    # analysis unavailable
        ...
        analysis.disarm()
    """

    def __init__(
        self,
        scheduler: FrameScheduler,
        scorer: FacialLandmarkScorer,
        aggregator: SessionGestureAggregator,
        detector_factory: Callable[[], FaceLandmarkDetector],
        accumulate_no_face: bool = False,
    ):
        self.scheduler = scheduler
        self.scorer = scorer
        self.aggregator = aggregator
        self._detector_factory = detector_factory
        self.accumulate_no_face = accumulate_no_face
        self._detector: Optional[FaceLandmarkDetector] = None
        self._frame_handle: Optional[int] = None
        self._active = False
        self._unavailable = False
        self.error: Optional[str] = None
        self.latest_metrics: Optional[FacialMetrics] = None
        self.frames_analyzed = 0
        self.frames_failed = 0

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def is_available(self) -> bool:
        return not self._unavailable

    def set_gaze_target(self, x: float, y: float) -> None:
        self.scorer.gaze_target.update(x, y)

    def arm(self) -> bool:
        """Start analyzing frames; False when the detector cannot be loaded."""
        if self._active:
            return True
        if self._unavailable:
            return False
        if self._detector is None:
            try:
                self._detector = self._detector_factory()
            except DetectorUnavailableError as e:
                self._unavailable = True
                self.error = str(e)
                log.error("Facial analysis unavailable: %s", e)
                return False
        self._active = True
        self._frame_handle = self.scheduler.request_frame(self._on_frame)
        log.info("Facial analysis armed (%s)", self._detector.get_name())
        return True

    def disarm(self) -> None:
        if not self._active and self._frame_handle is None:
            return
        self._active = False
        self.scheduler.cancel_frame(self._frame_handle)
        self._frame_handle = None
        self.latest_metrics = None
        log.info("Facial analysis disarmed after %d frames", self.frames_analyzed)

    def close(self) -> None:
        self.disarm()
        if self._detector is not None:
            self._detector.close()
            self._detector = None

    def _on_frame(self, timestamp_ms: float, frame: np.ndarray) -> None:
        self._frame_handle = None
        if not self._active:
            return
        try:
            self._analyze(timestamp_ms, frame)
        except Exception as e:
            self.frames_failed += 1
            log.warning("Skipping video frame at %.0f ms: %s", timestamp_ms, e, exc_info=True)
        if self._active:
            self._frame_handle = self.scheduler.request_frame(self._on_frame)

    def _analyze(self, timestamp_ms: float, frame: np.ndarray) -> None:
        faces = self._detector.detect_for_video(frame, timestamp_ms)
        landmarks = faces[0].landmarks if faces else None
        metrics = self.scorer.score(landmarks)
        self.latest_metrics = metrics
        self.frames_analyzed += 1
        if metrics.face_detected or self.accumulate_no_face:
            self.aggregator.accumulate(metrics)
