"""
Video Source Handler Module

This module provides a unified interface for the video sources a practice
session can analyze:
- Webcam (default camera)
- Local video files
- Video streams (RTSP, HTTP streams, etc.)

Frames posted by the web client are buffered by utils.media_devices and only
decoded here (decode_jpeg).

It abstracts away the differences between source types and provides a consistent
API for reading frames from any supported source. When a source cannot be
opened, last_error says why ("not_found", "busy" or "invalid") so the media
device layer can classify the failure.
"""

import logging
import sys
from enum import Enum
from typing import Optional, Tuple

import cv2
import numpy as np

log = logging.getLogger(__name__)

# Browser frames wider than this are downscaled before analysis
BROWSER_FRAME_MAX_WIDTH = 1280

NOT_FOUND = "not_found"
BUSY = "busy"
INVALID = "invalid"


def decode_jpeg(image_bytes: bytes, max_width: int = BROWSER_FRAME_MAX_WIDTH) -> Optional[np.ndarray]:
    """
    Decode image bytes (e.g. JPEG) to BGR, downscaling frames wider than max_width.

    Returns:
        BGR frame, or None when the bytes cannot be decoded
    """
    if not image_bytes:
        return None
    arr = np.frombuffer(image_bytes, dtype=np.uint8)
    frame = cv2.imdecode(arr, cv2.IMREAD_COLOR)
    if frame is None:
        return None
    h, w = frame.shape[:2]
    if w > max_width:
        scale = max_width / w
        frame = cv2.resize(frame, (max_width, int(round(h * scale))), interpolation=cv2.INTER_AREA)
    return frame


class VideoSourceType(Enum):
    """Enumeration of supported video source types."""
    WEBCAM = "webcam"
    FILE = "file"
    STREAM = "stream"


def _camera_apis():
    return [cv2.CAP_DSHOW, cv2.CAP_MSMF, cv2.CAP_ANY] if sys.platform == "win32" else [cv2.CAP_ANY]


class VideoSourceHandler:
    """
    Handler for managing video sources of different types.

    Usage:
        handler = VideoSourceHandler()
        if not handler.initialize_source(VideoSourceType.WEBCAM):
            print(handler.last_error)

        ret, frame = handler.read_frame()
    """

    def __init__(self):
        self.cap: Optional[cv2.VideoCapture] = None
        self.source_type: Optional[VideoSourceType] = None
        self.source_path: Optional[str] = None
        self.last_error: Optional[str] = None

    def initialize_source(
        self,
        source_type: VideoSourceType,
        source_path: Optional[str] = None,
        width: int = 1280,
        height: int = 720,
        fps: float = 30,
    ) -> bool:
        """
        Initialize a video source.

        Args:
            source_type: Type of video source
            source_path: Path to video file or stream URL (required for FILE/STREAM)
            width, height, fps: Requested webcam capture format
        """
        self.release()
        self.source_type = source_type
        self.source_path = source_path
        self.last_error = None

        if source_type in (VideoSourceType.FILE, VideoSourceType.STREAM) and not source_path:
            self.last_error = INVALID
            log.error("source_path is required for %s sources", source_type.value)
            return False

        try:
            if source_type == VideoSourceType.WEBCAM:
                self.cap = self._open_webcam()
                if self.cap is not None:
                    self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
                    self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
                    self.cap.set(cv2.CAP_PROP_FPS, fps)
                    self.cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
            else:
                self.cap = cv2.VideoCapture(source_path)
                if source_type == VideoSourceType.STREAM:
                    self.cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
                if not self.cap.isOpened():
                    self.last_error = NOT_FOUND
        except cv2.error as e:
            log.error("Error initializing video source: %s", e)
            self.last_error = self.last_error or BUSY
        if self.cap is None or not self.cap.isOpened():
            self.last_error = self.last_error or NOT_FOUND
            self.release(keep_error=True)
            return False
        return True

    def _open_webcam(self) -> Optional[cv2.VideoCapture]:
        """
        Try camera indices 0-2 on each backend.

        A camera that opens but cannot deliver a frame is reported as busy.
        """
        opened_but_silent = False
        for api in _camera_apis():
            for index in (0, 1, 2):
                cap = cv2.VideoCapture(index, api)
                if not cap.isOpened():
                    cap.release()
                    continue
                if cap.read()[0]:
                    return cap
                opened_but_silent = True
                cap.release()
        self.last_error = BUSY if opened_but_silent else NOT_FOUND
        return None

    def read_frame(self) -> Tuple[bool, Optional[np.ndarray]]:
        """
        Read a frame from the video source.

        Returns:
            Tuple of (success, frame):
            - success: True if frame was read successfully, False otherwise
            - frame: BGR image array if successful, None otherwise
        """
        if not self.cap or not self.cap.isOpened():
            return False, None

        ret, frame = self.cap.read()
        if not ret or frame is None:
            return False, None
        return True, frame

    def release(self, keep_error: bool = False) -> None:
        """Release the current video source and free resources."""
        if self.cap:
            self.cap.release()
            self.cap = None
        self.source_type = None
        self.source_path = None
        if not keep_error:
            self.last_error = None

    def __del__(self):
        self.release()
