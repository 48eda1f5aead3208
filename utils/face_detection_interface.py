"""
Face Landmark Detection Interface Module

This module defines an abstract interface for face-landmark detectors, so the
facial analysis loop can run against MediaPipe in production and against
scripted fakes in tests.

A detector is called once per analyzed video frame with a monotonically
increasing timestamp and returns zero or one set of normalized landmarks.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List

import numpy as np


class DetectorUnavailableError(RuntimeError):
    """Raised when the landmark model cannot be loaded in this environment."""


@dataclass
class FaceLandmarkResult:
    """
    One detected face.

    landmarks are (N, 3) points in normalized [0, 1] image space (x right,
    y down, z relative depth), indexed by MediaPipe face-mesh ids.
    """
    landmarks: np.ndarray
    confidence: float = 1.0


class FaceLandmarkDetector(ABC):
    """
    Abstract interface for face-landmark detectors.
    """

    @abstractmethod
    def detect_for_video(self, frame: np.ndarray, timestamp_ms: float) -> List[FaceLandmarkResult]:
        """
        Detect the face in one video frame.

        Args:
            frame: BGR image array (OpenCV format)
            timestamp_ms: Frame timestamp; must increase between calls

        Returns:
            List with zero or one FaceLandmarkResult
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        pass

    @abstractmethod
    def get_name(self) -> str:
        """
        Returns:
            String name (e.g., "mediapipe")
        """
        pass

    def close(self) -> None:
        """
        Release model resources. Default implementation does nothing.
        """
        pass
