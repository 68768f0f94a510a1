"""Scan loop orchestration: frame -> OCR -> catalog -> ranking -> visual -> match."""

import copy
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from cardscan.card_matcher import rank_candidates
from cardscan.config import DEFAULT_CONFIG
from cardscan.errors import CameraAccessError, EngineLoadError, RetrievalError
from cardscan.fusion import fuse_scores, resolve_price, select_top
from cardscan.models import (
    MatchResult,
    PassOutcome,
    PipelineState,
    RoiConfig,
    ScanStatus,
)
from cardscan.profiler import profiler
from cardscan.text_recognizer import NameDebouncer

logger = logging.getLogger(__name__)

NO_TEXT_MESSAGE = "No text detected. Hold card steady with name near top edge."
SEARCH_FAILED_MESSAGE = "Search failed. Retrying…"
NO_MATCH_MESSAGE = "No match found."

_UNSET = object()


class ScanController:
    """
    Runs one scanning session.

    start() loads the engines, opens the frame source and schedules a pass
    every `interval` seconds on a background thread. A pass that begins
    less than `cooldown` seconds after the previous one returns at once,
    and because passes run on that single thread a slow pass makes the
    scheduler skip ticks instead of queueing them. stop() pauses: the
    schedule is cancelled, the frame source released, and whatever the
    in-flight pass produces is dropped.
    """

    def __init__(
        self,
        frame_source,
        recognizer,
        retriever,
        visual_matcher=None,
        scan_config: Optional[Dict[str, Any]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.frame_source = frame_source
        self.recognizer = recognizer
        self.retriever = retriever
        self.visual_matcher = visual_matcher
        self.config = copy.deepcopy(DEFAULT_CONFIG)
        if scan_config:
            self.config.update(scan_config)
        self.clock = clock

        self.visual_enabled = bool(self.config.get('visual_enabled', True)) and visual_matcher is not None
        self._roi = RoiConfig.from_value(self.config.get('roi'))
        self._condition: Optional[str] = self.config.get('condition')
        self._printing: Optional[str] = self.config.get('printing')

        self._lock = threading.RLock()
        self._state = PipelineState.IDLE
        self._status_message = "Idle"
        self._last_match: Optional[MatchResult] = None
        self._last_confidence: Optional[float] = None
        self._last_outcome: Optional[PassOutcome] = None
        self._error: Optional[str] = None
        self._listeners: List[Callable[[ScanStatus], None]] = []

        # One stop event per session; set means that session is over
        self._session = threading.Event()
        self._session.set()
        self._threads: List[threading.Thread] = []
        self._pass_running = False
        self._last_pass_started: Optional[float] = None
        self._debouncer = NameDebouncer()

    # ----- caller surface -----

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def status(self) -> ScanStatus:
        with self._lock:
            return self._snapshot()

    def subscribe(self, callback: Callable[[ScanStatus], None]) -> Callable[[], None]:
        """Call callback with a ScanStatus after every change. Returns an unsubscribe function."""
        with self._lock:
            self._listeners.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)
        return unsubscribe

    def configure_roi(self, fractions) -> RoiConfig:
        """Set the name region from a RoiConfig, dict or (top, left, width, height)."""
        roi = RoiConfig.from_value(fractions)
        with self._lock:
            self._roi = roi
        logger.info(f"ROI set to top={roi.top:.2f} left={roi.left:.2f} width={roi.width:.2f} height={roi.height:.2f}")
        return roi

    def set_filters(self, condition: Optional[str] = None, printing: Optional[str] = None) -> None:
        with self._lock:
            self._condition = condition or None
            self._printing = printing or None
            # Prices depend on the filters, so the next read searches again
            self._debouncer.reset()

    def start(self, background: bool = True) -> None:
        """
        Load engines, open the frame source and begin scanning.

        Raises:
            EngineLoadError: If OCR (or visual matching, when enabled) cannot start
            CameraAccessError: If the frame source cannot be opened
        """
        with self._lock:
            if self._state == PipelineState.SCANNING:
                return
            self._session.set()
            session = threading.Event()
            self._session = session

        try:
            if not self._engines_ready():
                self._set_state(PipelineState.ENGINES_LOADING, "Loading OCR engine…")
                self.recognizer.load()
                if self.visual_enabled:
                    self.visual_matcher.load()
                if not self._engines_ready():
                    raise EngineLoadError("Engines did not report ready after loading")
                self._set_state(PipelineState.ENGINES_LOADING, "OCR ready")

            self._set_state(self._state, "Requesting camera…")
            self.frame_source.open()
            self._set_state(PipelineState.CAMERA_READY, "Camera ready")
        except (EngineLoadError, CameraAccessError) as e:
            logger.error(f"Could not start scanning: {e}")
            self._set_state(PipelineState.ERROR, str(e), error=str(e))
            raise

        with self._lock:
            self._debouncer.reset()
            self._last_pass_started = None
        self._set_state(PipelineState.SCANNING, "Starting scan…")

        if background:
            thread = threading.Thread(target=self._run_loop, args=(session,), name="cardscan-loop", daemon=True)
            with self._lock:
                self._threads = [t for t in self._threads if t.is_alive()]
                self._threads.append(thread)
            thread.start()

    def stop(self, wait: bool = False, timeout: float = 5.0) -> None:
        """
        Pause scanning and release the frame source.

        An in-flight pass finishes in the background and its result is
        dropped. With wait=True, block until the loop thread has exited.
        """
        with self._lock:
            stopping = self._state in (PipelineState.SCANNING, PipelineState.CAMERA_READY)
            self._session.set()
            if stopping:
                self._state = PipelineState.PAUSED
                self._status_message = "Paused"
        if stopping:
            self.frame_source.release()
            self._notify()
        if wait:
            self._join_threads(timeout)

    def close(self, timeout: float = 5.0) -> None:
        """Stop, wait for the loop thread and free engine resources."""
        self.stop(wait=True, timeout=timeout)
        self.frame_source.release()
        if self.visual_matcher is not None:
            self.visual_matcher.close()
        # Keep the last error so callers can still report why a start failed
        self._set_state(PipelineState.IDLE, "Idle", error=self._error)

    # ----- loop -----

    def _join_threads(self, timeout: float) -> None:
        with self._lock:
            threads = [t for t in self._threads if t is not threading.current_thread()]
        deadline = time.monotonic() + timeout
        for thread in threads:
            thread.join(max(0.0, deadline - time.monotonic()))
        with self._lock:
            self._threads = [t for t in self._threads if t.is_alive()]

    def _run_loop(self, session: threading.Event) -> None:
        interval = float(self.config.get('interval', 0.4))
        while not session.wait(interval):
            self.run_pass()
        logger.debug("Scan loop exited")

    def run_pass(self) -> PassOutcome:
        """Run one pipeline pass now, unless not scanning or still cooling down."""
        with self._lock:
            if self._state != PipelineState.SCANNING or self._pass_running:
                return PassOutcome.SKIPPED
            now = self.clock()
            cooldown = float(self.config.get('cooldown', 1.2))
            if self._last_pass_started is not None and now - self._last_pass_started < cooldown:
                return PassOutcome.SKIPPED
            self._last_pass_started = now
            self._pass_running = True
            session = self._session
            roi = self._roi
            condition = self._condition
            printing = self._printing

        try:
            with profiler.timer("pass_total"):
                return self._execute_pass(session, roi, condition, printing)
        except Exception as e:
            logger.error(f"Scan pass failed: {e}", exc_info=True)
            return self._publish(session, PassOutcome.FAILED, f"Scan error: {e}")
        finally:
            with self._lock:
                self._pass_running = False

    def _execute_pass(self, session: threading.Event, roi: RoiConfig, condition: Optional[str],
                      printing: Optional[str]) -> PassOutcome:
        if self._cancelled(session):
            return PassOutcome.ABORTED
        frame = self.frame_source.read()
        if frame is None:
            return self._publish(session, PassOutcome.NO_FRAME, "Waiting for camera…")

        self._set_message(session, "Reading card text…")
        recognized = self.recognizer.read(frame, roi)
        if self._cancelled(session):
            return PassOutcome.ABORTED

        confidence = round(recognized.confidence) if recognized.confidence is not None else None
        name = recognized.text.strip()
        if len(name) < int(self.config.get('min_name_length', 3)):
            return self._publish(session, PassOutcome.NO_TEXT, NO_TEXT_MESSAGE, confidence=confidence)

        detected = f"Detected: “{name}” ({confidence if confidence is not None else '?'}%)"
        if recognized.collector_number:
            detected += f" #{recognized.collector_number}"
        if self._debouncer.is_duplicate(name):
            return self._publish(session, PassOutcome.DUPLICATE, detected, confidence=confidence)

        self._set_message(session, f"{detected} — searching…")
        try:
            with profiler.timer("retrieve"):
                candidates = self.retriever.retrieve(name, condition=condition, printing=printing)
        except RetrievalError as e:
            logger.warning(f"Catalog search for {name!r} failed: {e}")
            return self._publish(session, PassOutcome.SEARCH_FAILED, SEARCH_FAILED_MESSAGE, confidence=confidence)
        with self._lock:
            if self._cancelled(session):
                return PassOutcome.ABORTED
            self._debouncer.remember(name)

        ranked = rank_candidates(
            name,
            recognized.collector_number,
            candidates,
            weights={
                'name': self.config.get('name_weight', 0.75),
                'set': self.config.get('set_weight', 0.15),
                'number': self.config.get('number_weight', 0.10),
            },
            distance_threshold=self.config.get('distance_threshold', 0.36),
            number_bonus=self.config.get('number_bonus', 0.25),
            max_results=int(self.config.get('max_ranked', 8)),
        )
        if not ranked:
            return self._publish(session, PassOutcome.NO_MATCH, NO_MATCH_MESSAGE, confidence=confidence)

        visual_available = False
        if self._visual_usable(ranked):
            with profiler.timer("visual_match"):
                ranked, visual_available = self.visual_matcher.score_candidates(frame.image, ranked)
            if self._cancelled(session):
                return PassOutcome.ABORTED

        fused = fuse_scores(
            ranked,
            visual_available,
            text_weight=self.config.get('text_weight', 0.75),
            image_weight=self.config.get('image_weight', 0.25),
        )
        top = select_top(fused)
        if top is None:
            return self._publish(session, PassOutcome.NO_MATCH, NO_MATCH_MESSAGE, confidence=confidence)

        record = top.record
        note = ""
        if self.config.get('fetch_details', True):
            try:
                detailed = self.retriever.details(record.card_id, condition=condition)
                if detailed is not None:
                    record = detailed
            except RetrievalError as e:
                logger.warning(f"Detail fetch for {record.card_id} failed: {e}")
                note = " (details unavailable)"
            if self._cancelled(session):
                return PassOutcome.ABORTED

        price = resolve_price(record.variants, condition=condition, printing=printing)
        match = MatchResult(record=record, price=price, captured_at=frame.timestamp, scores=top)
        message = f"Matched: {record.name}"
        if price is not None:
            message += f" — {price.price:.2f}"
        return self._publish(session, PassOutcome.MATCHED, message + note, confidence=confidence, match=match)

    # ----- helpers -----

    def _engines_ready(self) -> bool:
        if not self.recognizer.is_ready:
            return False
        return not self.visual_enabled or self.visual_matcher.is_ready

    def _visual_usable(self, ranked: Sequence) -> bool:
        return (
            self.visual_enabled
            and self.visual_matcher.is_ready
            and any(c.record.image_uri for c in ranked)
        )

    def _cancelled(self, session: threading.Event) -> bool:
        return session.is_set() or session is not self._session or self._state != PipelineState.SCANNING

    def _snapshot(self) -> ScanStatus:
        return ScanStatus(
            state=self._state,
            status_message=self._status_message,
            last_match=self._last_match,
            last_confidence=self._last_confidence,
            last_outcome=self._last_outcome,
            error=self._error,
        )

    def _notify(self) -> None:
        with self._lock:
            snapshot = self._snapshot()
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning(f"Status listener raised: {e}")

    def _set_state(self, state: PipelineState, message: str, error: Optional[str] = None) -> None:
        with self._lock:
            self._state = state
            self._status_message = message
            self._error = error
        self._notify()

    def _set_message(self, session: threading.Event, message: str) -> None:
        with self._lock:
            if self._cancelled(session):
                return
            self._status_message = message
        self._notify()

    def _publish(self, session: threading.Event, outcome: PassOutcome, message: str, confidence=_UNSET,
                 match: Optional[MatchResult] = None) -> PassOutcome:
        """Record a finished pass. Results of a pass that outlived its session are dropped."""
        with self._lock:
            if self._cancelled(session):
                logger.debug(f"Discarding {outcome.value} result: scanning stopped")
                return PassOutcome.ABORTED
            self._last_outcome = outcome
            self._status_message = message
            if confidence is not _UNSET:
                self._last_confidence = confidence
            if match is not None:
                self._last_match = match
        self._notify()
        return outcome
