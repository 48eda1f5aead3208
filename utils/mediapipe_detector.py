"""
MediaPipe Face Landmark Detection Implementation

This module provides the MediaPipe-based FaceLandmarkDetector. Two backends:
1. Tasks FaceLandmarker in VIDEO running mode, when a .task model bundle is configured
2. Face Mesh solution with refined landmarks (478 points), otherwise. Tracking
   mode first; static mode as a fallback for new or lost faces.

Both return landmarks in normalized image coordinates, which is what the
facial scorer expects. mediapipe and OpenCV are imported on construction so the
rest of the pipeline can run (and be tested) without them.
"""

import logging
from typing import List

import numpy as np

import config
from utils.face_detection_interface import DetectorUnavailableError, FaceLandmarkDetector, FaceLandmarkResult

log = logging.getLogger(__name__)


class MediaPipeLandmarkDetector(FaceLandmarkDetector):
    """
    MediaPipe-based face landmark detector (single face).

    Raises:
        DetectorUnavailableError: mediapipe is missing or the model fails to load
    """

    def __init__(self, model_path: str = "", min_detection_confidence: float = 0.5):
        self._conf = max(0.01, min(0.99, float(min_detection_confidence)))
        self._landmarker = None
        self._face_mesh = None
        self._face_mesh_static = None
        self._last_timestamp_ms = -1
        try:
            import cv2
            import mediapipe as mp
        except ImportError as e:
            raise DetectorUnavailableError(f"mediapipe is not installed: {e}") from e
        self._cv2 = cv2
        self._mp = mp
        try:
            if model_path:
                self._landmarker = self._create_task_landmarker(model_path)
            else:
                self._face_mesh = self._create_face_mesh(static_image_mode=False)
        except Exception as e:
            raise DetectorUnavailableError(f"Failed to load face landmark model: {e}") from e
        log.info("MediaPipe landmark detector ready (%s)", "tasks" if model_path else "face_mesh")

    def _create_task_landmarker(self, model_path: str):
        from mediapipe.tasks import python as mp_tasks
        from mediapipe.tasks.python import vision

        options = vision.FaceLandmarkerOptions(
            base_options=mp_tasks.BaseOptions(model_asset_path=model_path),
            running_mode=vision.RunningMode.VIDEO,
            num_faces=1,
            min_face_detection_confidence=self._conf,
            min_tracking_confidence=self._conf,
        )
        return vision.FaceLandmarker.create_from_options(options)

    def _create_face_mesh(self, static_image_mode: bool):
        return self._mp.solutions.face_mesh.FaceMesh(
            static_image_mode=static_image_mode,
            max_num_faces=1,
            refine_landmarks=True,
            min_detection_confidence=self._conf,
            min_tracking_confidence=self._conf,
        )

    def _get_face_mesh_static(self):
        """Lazy init: static FaceMesh is only built once tracking misses a face."""
        if self._face_mesh_static is None:
            self._face_mesh_static = self._create_face_mesh(static_image_mode=True)
        return self._face_mesh_static

    def detect_for_video(self, frame: np.ndarray, timestamp_ms: float) -> List[FaceLandmarkResult]:
        if frame is None or frame.size == 0:
            return []
        rgb = self._cv2.cvtColor(frame, self._cv2.COLOR_BGR2RGB)

        if self._landmarker is not None:
            # VIDEO mode rejects non-increasing timestamps
            ts = max(int(timestamp_ms), self._last_timestamp_ms + 1)
            self._last_timestamp_ms = ts
            image = self._mp.Image(image_format=self._mp.ImageFormat.SRGB, data=rgb)
            result = self._landmarker.detect_for_video(image, ts)
            faces = [face for face in result.face_landmarks[:1]]
        else:
            result = self._face_mesh.process(rgb)
            if not result.multi_face_landmarks:
                result = self._get_face_mesh_static().process(rgb)
            faces = [face.landmark for face in (result.multi_face_landmarks or [])[:1]]

        return [
            FaceLandmarkResult(landmarks=np.array([[p.x, p.y, p.z] for p in points], dtype=np.float32))
            for points in faces
        ]

    def is_available(self) -> bool:
        return self._landmarker is not None or self._face_mesh is not None

    def get_name(self) -> str:
        return "mediapipe"

    def close(self) -> None:
        for model in (self._landmarker, self._face_mesh, self._face_mesh_static):
            if model is not None:
                model.close()
        self._landmarker = None
        self._face_mesh = None
        self._face_mesh_static = None


def create_landmark_detector() -> FaceLandmarkDetector:
    """
    Build the configured detector.

    Raises:
        DetectorUnavailableError: the landmark model cannot be loaded
    """
    return MediaPipeLandmarkDetector(
        model_path=config.FACE_LANDMARKER_MODEL_PATH,
        min_detection_confidence=config.MIN_FACE_CONFIDENCE,
    )
