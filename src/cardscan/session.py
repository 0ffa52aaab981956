"""Scan session: frame pipeline, aggregation worker and lifecycle.

A session owns everything a single scan needs (ROI, frame counter, result
set) so several sessions can run side by side without sharing state.

Threads:
    capture     - pulls frames from the source and runs :meth:`ScanSession.process_frame`
                  (crop, resize, throttle, preprocess, recognize), one frame at a time
    aggregation - receives each frame's tokens as a one-shot message, updates the
                  result set and emits results

Results are delivered through an optional callback and through the pull
iterator :meth:`ScanSession.results`, which keeps only the newest
``settings.result_buffer`` undrained results.  Whether a result is emitted
is decided under the session lock while scanning; the callback itself runs
after the lock is released.  Nothing is accepted once the session has
entered ``TERMINATED``.

States: ``IDLE -> SCANNING -> TERMINATED`` (terminal).
"""

from __future__ import annotations

import logging
import queue
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterator, Optional, Tuple

import numpy as np

from cardscan.aggregation import FieldAggregator, ResultSet, ScanResult
from cardscan.capture import Frame
from cardscan.config import ScanSettings
from cardscan.errors import CapabilityDenied, InvalidRegion, ScanError
from cardscan.geometry import (
    CoordinateSpace,
    Rect,
    crop_to_rect,
    default_roi,
    map_roi_to_capture,
    resize_to_fill,
)
from cardscan.preprocess import PreprocessingChain
from cardscan.recognition import RecognitionAdapter, RecognitionConfig, RecognizedTextToken
from cardscan.throttle import ThrottleScheduler

log = logging.getLogger(__name__)

ResultCallback = Callable[[ScanResult], None]

CAMERA_PERMISSION_MESSAGE = "Camera permission is required."
CAPTURE_FAILED_MESSAGE = "Failed to read from the capture source."

# Queue markers
_STOP = object()
_EXHAUSTED = object()


class SessionState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class _TokenMessage:
    """Hand-off from the capture thread to the aggregation thread."""

    sequence: int
    tokens: Tuple[RecognizedTextToken, ...]


class ScanSession:
    """
    One card scan from start to termination.

    Args:
        source: Capture collaborator (``authorized()``, ``screen_size``, ``frames()``).
        engine: Recognition engine (``recognize(image, config)``).
        classifier: Field classifier; defaults to HeuristicCardClassifier.
        decryptor: Field decryptor; defaults to PlainDecryptor.
        settings: Pipeline settings.
        roi: Region of interest in ``SCREEN`` space; defaults to the
            card-shaped box centered on the source's screen.
    """

    def __init__(
        self,
        source: Any,
        engine: Any,
        classifier: Any = None,
        decryptor: Any = None,
        settings: Optional[ScanSettings] = None,
        roi: Optional[Rect] = None,
    ):
        self.settings = settings or ScanSettings()
        self.source = source
        self.roi = roi or default_roi(
            source.screen_size,
            margin=self.settings.roi_margin,
            card_aspect_ratio=self.settings.card_aspect_ratio,
        )
        self.roi.require_space(CoordinateSpace.SCREEN)

        self.scheduler = ThrottleScheduler(
            period=self.settings.heavy_every,
            modulus=self.settings.counter_modulus,
        )
        self.preprocessor = PreprocessingChain.from_settings(self.settings)
        self.recognizer = RecognitionAdapter(
            engine,
            RecognitionConfig(
                accuracy=self.settings.accuracy,
                languages=tuple(self.settings.languages),
            ),
            min_confidence=self.settings.min_confidence,
        )
        self.aggregator = FieldAggregator(classifier, decryptor)

        self._state = SessionState.IDLE
        self._state_lock = threading.RLock()
        self._frame_lock = threading.Lock()
        self._frame_index = 0

        self._inbox: "queue.Queue[Any]" = queue.Queue()
        # Pull channel; bounded so callback-only consumers do not accumulate results
        self._outbox: Deque[ScanResult] = deque(maxlen=self.settings.result_buffer)
        self._outbox_ready = threading.Condition()
        self._outbox_closed = False
        self._callback: Optional[ResultCallback] = None
        self._aggregation_thread: Optional[threading.Thread] = None
        self._capture_thread: Optional[threading.Thread] = None

        self.final_results = ResultSet()
        self.error: Optional[ScanError] = None
        self._last_analysis_image: Optional[np.ndarray] = None

        self.stats = {
            "frames": 0,
            "heavy": 0,
            "light": 0,
            "recognition_failed": 0,
            "aggregation_failed": 0,
            "discarded": 0,
            "results": 0,
            "dropped_results": 0,
        }

    # -- lifecycle ---------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def frame_index(self) -> int:
        """Throttle counter value for the next frame (0-255)."""
        return self._frame_index

    @property
    def last_analysis_image(self) -> Optional[np.ndarray]:
        """Read-only copy-free view of the last cropped and resized frame, before preprocessing."""
        return self._last_analysis_image

    def start(
        self,
        callback: Optional[ResultCallback] = None,
        capture: bool = True,
        stop_at_end: bool = True,
    ) -> None:
        """
        Begin scanning.

        Args:
            callback: Invoked on the aggregation thread for each emitted result,
                outside the session lock
            capture: Start a thread that feeds ``source.frames()`` into
                :meth:`process_frame`; pass False to feed frames manually
            stop_at_end: Stop the session once the source runs out of frames
        """
        denied: Optional[ScanResult] = None
        with self._state_lock:
            if self._state is not SessionState.IDLE:
                raise RuntimeError(f"Cannot start a session in state {self._state.value}")
            self._callback = callback

            if not self.source.authorized():
                self.error = CapabilityDenied(CAMERA_PERMISSION_MESSAGE)
                log.error("Cannot start scan: %s", self.error)
                denied = ScanResult(error=str(self.error))
                self._publish(denied)
                self._terminate()
            else:
                self._begin(capture, stop_at_end)

        if denied is not None:
            self._notify(denied)

    def _begin(self, capture: bool, stop_at_end: bool) -> None:
        # Caller holds _state_lock
        self._state = SessionState.SCANNING
        log.info("Scan session started (roi=%s)", self.roi.to_tuple())

        self._aggregation_thread = threading.Thread(
            target=self._aggregation_loop, name="cardscan-aggregation", daemon=True
        )
        self._aggregation_thread.start()

        if capture:
            self._capture_thread = threading.Thread(
                target=self._capture_loop,
                args=(stop_at_end,),
                name="cardscan-capture",
                daemon=True,
            )
            self._capture_thread.start()

    def stop(self) -> None:
        """Request termination.  Idempotent; in-flight frames finish but are not applied."""
        with self._state_lock:
            self._terminate()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Join the session threads.  Returns True if they have all finished."""
        for thread in (self._capture_thread, self._aggregation_thread):
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout)
        return not any(
            t is not None and t.is_alive()
            for t in (self._capture_thread, self._aggregation_thread)
        )

    def _terminate(self) -> bool:
        # Caller holds _state_lock
        if self._state is SessionState.TERMINATED:
            return False
        self._state = SessionState.TERMINATED
        self.final_results = self.aggregator.current_results()
        self._inbox.put(_STOP)
        with self._outbox_ready:
            self._outbox_closed = True
            self._outbox_ready.notify_all()
        if self._capture_thread is None:
            # Nothing else will release the source
            self.source.close()
        log.info("Scan session terminated with %d card(s)", len(self.final_results))
        return True

    def _fail(self, error: ScanError, message: str) -> None:
        """Emit a single error result and terminate."""
        result = ScanResult(error=message)
        with self._state_lock:
            if self._state is not SessionState.SCANNING:
                return
            self.error = error
            log.error("%s (%s)", message, error)
            self._publish(result)
            self._terminate()
        self._notify(result)

    # -- capture context ---------------------------------------------------

    def _capture_loop(self, stop_at_end: bool) -> None:
        try:
            for frame in self.source.frames():
                if not self.process_frame(frame):
                    break
            else:
                if stop_at_end:
                    log.debug("Frame source exhausted")
                    self._inbox.put(_EXHAUSTED)
        except Exception as e:
            log.exception("Capture source failed")
            self._fail(ScanError(str(e)), CAPTURE_FAILED_MESSAGE)
        finally:
            self.source.close()

    def process_frame(self, frame: Frame) -> bool:
        """
        Run one frame through crop, resize, throttle, preprocessing and recognition.

        Frames are processed strictly one at a time.  The resulting tokens are
        handed to the aggregation thread; the frame is not used afterwards.

        Returns:
            False if the frame was not processed because the session is not scanning
        """
        if self._state is not SessionState.SCANNING:
            return False

        with self._frame_lock:
            if self._state is not SessionState.SCANNING:
                return False

            index = self._frame_index
            self.stats["frames"] += 1
            try:
                tokens = self._recognize_frame(frame, index)
            except InvalidRegion as e:
                self._fail(e, f"Invalid region of interest: {e}")
                return False
            finally:
                self._frame_index = self.scheduler.advance(index)

            if tokens is not None:
                self._inbox.put(_TokenMessage(frame.sequence, tuple(tokens)))
            return True

    def _recognize_frame(self, frame: Frame, index: int):
        crop_rect = map_roi_to_capture(
            self.roi,
            frame.capture_extent,
            self.source.screen_size,
            card_aspect_ratio=self.settings.card_aspect_ratio,
        )
        image = resize_to_fill(crop_to_rect(frame.pixels, crop_rect), self.settings.analysis_size)
        snapshot = image.view()
        snapshot.setflags(write=False)
        self._last_analysis_image = snapshot

        if self.scheduler.should_run_heavy_preprocessing(index):
            self.stats["heavy"] += 1
            image = self.preprocessor.process(image)
        else:
            self.stats["light"] += 1

        try:
            return self.recognizer.recognize(image)
        except Exception as e:
            # Next frame is an independent retry
            self.stats["recognition_failed"] += 1
            log.warning("Recognition failed for frame %d: %s", frame.sequence, e)
            return None

    # -- aggregation context -----------------------------------------------

    def _aggregation_loop(self) -> None:
        while True:
            message = self._inbox.get()
            if message is _STOP:
                with self._state_lock:
                    self.aggregator.clear()
                break
            if message is _EXHAUSTED:
                self.stop()
                continue
            self._aggregate(message)

    def _aggregate(self, message: _TokenMessage) -> None:
        with self._state_lock:
            if self._state is not SessionState.SCANNING:
                self.stats["discarded"] += 1
                return

            try:
                result = self.aggregator.submit(message.tokens)
            except Exception as e:
                self.stats["aggregation_failed"] += 1
                log.warning("Aggregation failed for frame %d: %s", message.sequence, e)
                return

            if result is None:
                return

            self._publish(result)
            if self.settings.stop_on_complete and result.is_complete:
                log.info("Card number and expiry found; stopping")
                self._terminate()

        self._notify(result)

    def _publish(self, result: ScanResult) -> None:
        # Caller holds _state_lock; a full buffer drops its oldest result
        self.stats["results"] += 1
        with self._outbox_ready:
            if len(self._outbox) == self._outbox.maxlen:
                self.stats["dropped_results"] += 1
            self._outbox.append(result)
            self._outbox_ready.notify_all()

    def _notify(self, result: ScanResult) -> None:
        # Runs without _state_lock so the callback may call stop() or wait()
        if self._callback is None:
            return
        try:
            self._callback(result)
        except Exception:
            log.exception("Result callback raised")

    # -- consumer API ------------------------------------------------------

    def results(self, timeout: Optional[float] = None) -> Iterator[ScanResult]:
        """
        Iterate over emitted results in order.

        Only the newest ``settings.result_buffer`` results that have not been
        taken yet are kept.  Ends once the session has terminated and every
        buffered result has been yielded, or when no result arrives within
        *timeout* seconds.
        """
        while True:
            with self._outbox_ready:
                ready = self._outbox_ready.wait_for(
                    lambda: self._outbox or self._outbox_closed, timeout
                )
                if not ready or not self._outbox:
                    return
                item = self._outbox.popleft()
            yield item

    def current_results(self) -> ResultSet:
        """Read-only snapshot of the live result set (empty after termination)."""
        with self._state_lock:
            if self._state is SessionState.TERMINATED:
                return ResultSet()
            return self.aggregator.current_results()

    def get_stats(self) -> Dict[str, Any]:
        """Get session statistics."""
        with self._state_lock:
            stats: Dict[str, Any] = dict(self.stats)
            stats["state"] = self._state.value
            stats["throttle"] = self.scheduler.get_stats()
            stats["recognition"] = self.recognizer.get_stats()
            stats["aggregation"] = self.aggregator.get_stats()
            return stats
