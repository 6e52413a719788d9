# frame_cycle.py
# ----------------------------------------------------------------------
# Per-frame state machine for live scanning.
#
# The preview loop is decoupled from decoding: every tick grabs a frame,
# runs preprocessing + detection + rectification synchronously and hands
# the candidate images to a background decode worker through a one-slot
# queue. While a cascade is outstanding (`busy`) ticks only re-render the
# last overlay, so a slow backend never piles up work.
#
# Overlay for tick N is drawn from the most recently *completed* cascade,
# not from tick N's own detection.
# ----------------------------------------------------------------------

from __future__ import annotations

import enum
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import cv2
import numpy as np

from dm_backends import DecodeResult
from dm_cascade import Candidate, DecoderCascade
from dm_detect import QuadDetector
from dm_geometry import scale_points
from dm_preprocess import Preprocessor, decode_view
from dm_rectify import warp_with_quiet_zone
from frame_source import Frame
from result_sink import ResultSink
from scan_errors import AcquisitionError

log = logging.getLogger(__name__)


class ScanPhase(enum.Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    DECODING = "decoding"


@dataclass
class ScanState:
    last_corners: Optional[np.ndarray] = None
    last_text: Optional[str] = None
    busy: bool = False


@dataclass
class CycleReport:
    index: int
    dispatched: bool = False
    skipped_busy: bool = False
    quad: Optional[np.ndarray] = None
    error: Optional[str] = None


@dataclass
class FrameAnalysis:
    binary: np.ndarray
    quad: Optional[np.ndarray]
    candidates: List[Candidate] = field(default_factory=list)


@dataclass
class _DecodeJob:
    session: int
    candidates: List[Candidate]
    quad: Optional[np.ndarray]


class FramePipeline:
    """Synchronous half of a cycle: preprocess, detect, rectify, build candidates."""

    def __init__(
        self,
        preprocessor: Optional[Preprocessor] = None,
        detector: Optional[QuadDetector] = None,
        rectified_size: int = 200,
        quiet_zone: int = 16,
        max_process_side: Optional[int] = None,
    ):
        self.preprocessor = preprocessor or Preprocessor()
        self.detector = detector or QuadDetector()
        self.rectified_size = int(rectified_size)
        self.quiet_zone = int(quiet_zone)
        self.max_process_side = max_process_side

    def analyze(self, pixels: np.ndarray) -> FrameAnalysis:
        h, w = pixels.shape[:2]
        scale = 1.0
        work = pixels
        if self.max_process_side and max(h, w) > self.max_process_side:
            scale = self.max_process_side / float(max(h, w))
            size = (max(1, int(round(w * scale))), max(1, int(round(h * scale))))
            work = cv2.resize(pixels, size, interpolation=cv2.INTER_AREA)

        binary = self.preprocessor.preprocess(work)
        quad = self.detector.detect(binary, scale=scale)
        unscale = None
        if scale != 1.0:
            unscale = np.diag([1.0 / scale, 1.0 / scale, 1.0])
            if quad is not None:
                quad = scale_points(quad, 1.0 / scale)

        # priority order: rectified patch, preprocessed frame, raw frame
        candidates: List[Candidate] = []
        if quad is not None:
            patch, to_frame = warp_with_quiet_zone(pixels, quad, self.rectified_size, self.quiet_zone)
            candidates.append(Candidate(patch, to_frame=to_frame, label="rectified"))
        candidates.append(Candidate(decode_view(binary), to_frame=unscale, label="preprocessed"))
        candidates.append(Candidate(pixels, label="raw"))
        return FrameAnalysis(binary, quad, candidates)


class FrameCycleController:
    def __init__(
        self,
        source,
        cascade: DecoderCascade,
        sink: ResultSink,
        *,
        preprocessor: Optional[Preprocessor] = None,
        detector: Optional[QuadDetector] = None,
        rectified_size: int = 200,
        quiet_zone: int = 16,
        max_process_side: Optional[int] = None,
        frame_interval_s: float = 0.0,
        stop_on_first: bool = False,
    ):
        self.source = source
        self.cascade = cascade
        self.sink = sink
        self.pipeline = FramePipeline(preprocessor, detector, rectified_size, quiet_zone, max_process_side)
        self.frame_interval_s = max(0.0, float(frame_interval_s))
        self.stop_on_first = stop_on_first

        self.state = ScanState()
        self._cond = threading.Condition(threading.Lock())
        self._running = False
        self._session = 0
        self._cycles = 0
        self._jobs: "queue.Queue[_DecodeJob]" = queue.Queue(maxsize=1)
        self._stop_event = threading.Event()
        self._worker: Optional[threading.Thread] = None

        self.in_flight = 0
        self.max_in_flight = 0
        self.dispatched = 0
        self.dropped_results = 0
        self.first_result: Optional[DecodeResult] = None
        self.last_result: Optional[DecodeResult] = None

    # ---- lifecycle ----

    @property
    def phase(self) -> ScanPhase:
        with self._cond:
            if not self._running:
                return ScanPhase.IDLE
            return ScanPhase.DECODING if self.state.busy else ScanPhase.CAPTURING

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._cond:
            if self._running:
                return
            self._session += 1
            self._running = True
            # a cascade left running by the previous session still counts as in flight
            self.state = ScanState(busy=self.in_flight > 0)
            self.first_result = None
            self._jobs = queue.Queue(maxsize=1)
            self._stop_event = threading.Event()
            jobs, stop_event = self._jobs, self._stop_event
        self._worker = threading.Thread(
            target=self._decode_worker, args=(jobs, stop_event), name="dm-decode", daemon=True
        )
        self._worker.start()
        log.debug("scan session %d started", self._session)

    def stop(self) -> None:
        """Halt future cycles. An in-flight cascade is left to finish; its result is dropped."""
        with self._cond:
            if not self._running:
                return
            self._running = False
            self._stop_event.set()
            self._cond.notify_all()
        log.debug("scan session %d stopped", self._session)

    def join_worker(self, timeout: Optional[float] = None) -> bool:
        """Wait for the decode worker of a stopped session to exit."""
        worker = self._worker
        if worker is None:
            return True
        worker.join(timeout)
        return not worker.is_alive()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no cascade is outstanding (or the session ended)."""
        with self._cond:
            return self._cond.wait_for(lambda: not self.state.busy or not self._running, timeout)

    # ---- per-frame work ----

    def tick(self) -> Optional[CycleReport]:
        """Run one cycle. Returns None when the controller is idle."""
        if not self._running:
            return None
        self._cycles += 1
        report = CycleReport(index=self._cycles)

        if not self.source.is_ready():
            return report
        try:
            frame: Frame = self.source.current_frame()
        except AcquisitionError as e:
            log.error("frame acquisition failed: %s", e)
            self.sink.status(str(e), fatal=True)
            self.stop()
            report.error = str(e)
            return report

        with self._cond:
            busy = self.state.busy
            previous = self.state.last_corners
        if busy:
            report.skipped_busy = True
            self.sink.render(frame.pixels, previous)
            return report

        analysis = self.pipeline.analyze(frame.pixels)
        report.quad = analysis.quad

        with self._cond:
            if not self._running:
                return report
            self.state.busy = True
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            self.dispatched += 1
            previous = self.state.last_corners
            job = _DecodeJob(self._session, analysis.candidates, analysis.quad)
            jobs = self._jobs
        jobs.put_nowait(job)
        report.dispatched = True

        self.sink.render(frame.pixels, previous)
        return report

    def run(
        self,
        *,
        max_cycles: Optional[int] = None,
        timeout_s: float = 0.0,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> Optional[DecodeResult]:
        """Tick at `frame_interval_s` until stopped, timed out or (optionally) first hit."""
        self.start()
        started = time.monotonic()
        n = 0
        try:
            while self._running:
                if max_cycles is not None and n >= max_cycles:
                    break
                if timeout_s and (time.monotonic() - started) > timeout_s:
                    self.sink.status("Timed out without detecting a DataMatrix code.")
                    break
                t0 = time.monotonic()
                self.tick()
                n += 1
                if self.stop_on_first and self.first_result is not None:
                    break
                if should_stop is not None and should_stop():
                    break
                remaining = self.frame_interval_s - (time.monotonic() - t0)
                if remaining > 0:
                    time.sleep(remaining)
        finally:
            self.stop()
        return self.first_result if self.stop_on_first else self.last_result

    # ---- decode worker ----

    def _decode_worker(self, jobs: "queue.Queue[_DecodeJob]", stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                job = jobs.get(timeout=0.05)
            except queue.Empty:
                continue
            try:
                result = self.cascade.decode(job.candidates, fallback_quad=job.quad)
            except Exception:
                log.exception("decode cascade crashed")
                result = None
            finally:
                jobs.task_done()
            self._complete(job, result)

    def _complete(self, job: _DecodeJob, result: Optional[DecodeResult]) -> None:
        with self._cond:
            self.in_flight -= 1
            if job.session != self._session or not self._running:
                self.dropped_results += 1
                log.debug("dropping result of stopped session %d", job.session)
                if self._running and self.in_flight == 0:
                    # a restarted session was held back by this cascade
                    self.state.busy = False
                self._cond.notify_all()
                return
            publish = True
            if result is not None:
                self.state.last_corners = result.corners
                self.state.last_text = result.text
                self.last_result = result
                if self.first_result is None:
                    self.first_result = result
            elif job.quad is not None:
                # located but not decoded: keep showing the fresh quad
                self.state.last_corners = job.quad
                publish = False
            else:
                self.state.last_corners = None
            # nothing is published once stop() has returned
            if publish:
                self.sink.publish(result)
            self.state.busy = False
            self._cond.notify_all()
