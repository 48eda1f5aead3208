"""
Frame Scheduler Module

Cooperative, single-threaded frame loops.

FrameScheduler is a requestAnimationFrame-style callback queue: a callback
requested now runs on the next tick, once. Callbacks that want to keep running
request themselves again.

CooperativeLoop runs two schedulers on one thread:
- animation frames: ticked every iteration at the display rate (lip-sync)
- video frames: ticked only when the video source yields a new frame
  (facial scoring + aggregation)

Everything that mutates the pipeline from outside the loop (HTTP handlers)
must hold CooperativeLoop.lock, so the core never sees two callers at once.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

log = logging.getLogger(__name__)


class FrameScheduler:
    """
    One-shot per-frame callback queue.

    Usage:
        scheduler = FrameScheduler("animation")
        handle = scheduler.request_frame(on_frame)
        scheduler.run_pending(now_ms)     # on_frame(now_ms) runs once
        scheduler.cancel_frame(handle)    # no-op if it already ran
    """

    def __init__(self, name: str = "frames"):
        self.name = name
        self._next_handle = 1
        self._pending: Dict[int, Callable[..., Any]] = {}

    def request_frame(self, callback: Callable[..., Any]) -> int:
        handle = self._next_handle
        self._next_handle += 1
        self._pending[handle] = callback
        return handle

    def cancel_frame(self, handle: Optional[int]) -> None:
        if handle is not None:
            self._pending.pop(handle, None)

    def has_pending(self) -> bool:
        return bool(self._pending)

    def run_pending(self, timestamp_ms: float, *args: Any) -> int:
        """
        Run every callback queued before this call; returns how many ran.

        A callback cancelled by an earlier callback in the same tick does not run.
        """
        batch: List[int] = list(self._pending.keys())
        ran = 0
        for handle in batch:
            callback = self._pending.pop(handle, None)
            if callback is None:
                continue
            ran += 1
            try:
                callback(timestamp_ms, *args)
            except Exception:
                log.exception("Error in %s frame callback", self.name)
        return ran


class CooperativeLoop:
    """
    Drives the animation and video schedulers from a single thread.

    Args:
        frame_source: Callable returning the next decoded video frame or None
        display_fps: Animation frame rate
        clock: Monotonic clock in seconds (injectable for tests)
        on_iteration: Optional hook run at the top of every iteration (e.g. audio polling)
    """

    def __init__(
        self,
        frame_source: Optional[Callable[[], Any]] = None,
        display_fps: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        on_iteration: Optional[Callable[[float], None]] = None,
    ):
        self.animation_frames = FrameScheduler("animation")
        self.video_frames = FrameScheduler("video")
        self.frame_source = frame_source
        self.on_iteration = on_iteration
        self._frame_budget = 1.0 / max(1.0, float(display_fps))
        self._clock = clock
        self.lock = threading.RLock()
        self._thread: Optional[threading.Thread] = None
        self._running = False

    def now_ms(self) -> float:
        return self._clock() * 1000.0

    @property
    def is_running(self) -> bool:
        return self._running

    def run_once(self) -> None:
        """One loop iteration: hook, animation frames, then at most one video frame.

        The video source is polled even with no video callback pending so the
        track keeps decoding and can report when its first frame is ready.
        """
        with self.lock:
            now = self.now_ms()
            if self.on_iteration:
                self.on_iteration(now)
            self.animation_frames.run_pending(now)
            if self.frame_source is None:
                return
            frame = self.frame_source()
            if frame is not None:
                self.video_frames.run_pending(now, frame)

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._loop, name="frame-loop", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._running = False
        if self._thread and self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
        self._thread = None

    def _loop(self) -> None:
        me = threading.current_thread()
        # a restart after stop() hands the loop to a new thread
        while self._running and self._thread is me:
            started = self._clock()
            try:
                self.run_once()
            except Exception:
                log.exception("Error in frame loop")
            elapsed = self._clock() - started
            if elapsed < self._frame_budget:
                time.sleep(self._frame_budget - elapsed)
