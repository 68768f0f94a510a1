import threading
import time
from dataclasses import replace

import numpy as np
import pytest

from cardscan.errors import CameraAccessError, EngineLoadError, RetrievalError
from cardscan.frame_source import StaticFrameSource
from cardscan.models import (
    CandidateRecord,
    PassOutcome,
    PipelineState,
    RecognizedText,
    VariantPrice,
)
from cardscan.scan_controller import (
    NO_MATCH_MESSAGE,
    NO_TEXT_MESSAGE,
    SEARCH_FAILED_MESSAGE,
    ScanController,
)

ELSA_SPIRIT = CandidateRecord(
    card_id='elsa-spirit',
    name='Elsa, Spirit of Winter',
    set_name='The First Chapter',
    number='42',
    image_uris=('https://img/elsa-spirit.png',),
    variants=(
        VariantPrice(condition='Near Mint', printing='Normal', price=12.34),
        VariantPrice(condition='Near Mint', printing='Foil', price=30.0),
        VariantPrice(condition='Lightly Played', printing='Normal', price=9.0),
    ),
)
ELSA_QUEEN = CandidateRecord(
    card_id='elsa-queen',
    name='Elsa Snow Queen',
    set_name='The First Chapter',
    number='17',
    image_uris=('https://img/elsa-queen.png',),
)


class FakeRecognizer:
    """Returns queued reads; the last one repeats."""

    def __init__(self, reads, fail_load=False, on_read=None):
        self.reads = list(reads)
        self.fail_load = fail_load
        self.on_read = on_read
        self.is_ready = False
        self.calls = 0

    def load(self):
        if self.fail_load:
            raise EngineLoadError("model download failed")
        self.is_ready = True

    def read(self, frame, roi):
        self.calls += 1
        if self.on_read is not None:
            self.on_read()
        return self.reads.pop(0) if len(self.reads) > 1 else self.reads[0]


class FakeRetriever:
    def __init__(self, candidates=(), error=None, details_error=None, detailed=None):
        self.candidates = list(candidates)
        self.error = error
        self.details_error = details_error
        self.detailed = detailed
        self.queries = []
        self.detail_calls = []
        self.searched = threading.Event()

    def retrieve(self, query, condition=None, printing=None):
        self.queries.append((query, condition, printing))
        self.searched.set()
        if self.error is not None:
            raise self.error
        return list(self.candidates)

    def details(self, card_id, condition=None):
        self.detail_calls.append(card_id)
        if self.details_error is not None:
            raise self.details_error
        return self.detailed


class FakeMatcher:
    def __init__(self, image_scores=None, fail_load=False):
        self.image_scores = image_scores or {}
        self.fail_load = fail_load
        self.is_ready = False
        self.scored = 0
        self.closed = False

    def load(self):
        if self.fail_load:
            raise EngineLoadError("no ORB")
        self.is_ready = True

    def close(self):
        self.closed = True

    def score_candidates(self, frame_image, candidates):
        self.scored += 1
        scored = [replace(c, image_score=self.image_scores.get(c.record.card_id, 0.0)) for c in candidates]
        return scored, bool(self.image_scores)


class FailingSource(StaticFrameSource):
    def _open(self):
        raise CameraAccessError("camera permission denied")


def read(text, confidence=88.0, number=None):
    return RecognizedText(text=text, confidence=confidence, collector_number=number)


def source():
    return StaticFrameSource([np.zeros((120, 90, 3), dtype=np.uint8)])


def make_controller(reads, retriever, matcher=None, frame_source=None, **config):
    config.setdefault('cooldown', 0)
    recognizer = reads if isinstance(reads, FakeRecognizer) else FakeRecognizer(reads)
    controller = ScanController(frame_source or source(), recognizer, retriever, matcher, scan_config=config)
    return controller, recognizer


def test_matched_pass_publishes_match_and_price():
    retriever = FakeRetriever([ELSA_QUEEN, ELSA_SPIRIT])
    controller, _ = make_controller([read("Elsa - Spirit of Winter", number="42")], retriever)
    controller.start(background=False)
    assert controller.state == PipelineState.SCANNING

    assert controller.run_pass() == PassOutcome.MATCHED
    status = controller.status
    assert status.last_match.record.card_id == 'elsa-spirit'
    assert status.last_match.price.price == pytest.approx(12.34)
    assert status.status_message == "Matched: Elsa, Spirit of Winter — 12.34"
    assert status.last_confidence == 88
    assert retriever.queries == [("Elsa - Spirit of Winter", "NM", None)]
    assert retriever.detail_calls == ['elsa-spirit']


def test_empty_text_skips_retrieval_and_keeps_last_match():
    retriever = FakeRetriever([ELSA_SPIRIT])
    controller, _ = make_controller([read("Elsa - Spirit of Winter"), read("", confidence=None)], retriever)
    controller.start(background=False)
    controller.run_pass()
    previous = controller.status.last_match

    assert controller.run_pass() == PassOutcome.NO_TEXT
    status = controller.status
    assert status.status_message == NO_TEXT_MESSAGE
    assert status.last_match is previous
    assert len(retriever.queries) == 1


def test_retrieval_error_reports_and_retries():
    retriever = FakeRetriever(error=RetrievalError("HTTP 500", status_code=500))
    controller, _ = make_controller([read("Stitch")], retriever)
    controller.start(background=False)

    assert controller.run_pass() == PassOutcome.SEARCH_FAILED
    assert controller.status.status_message == SEARCH_FAILED_MESSAGE
    assert controller.state == PipelineState.SCANNING
    assert controller.status.last_match is None

    assert controller.run_pass() == PassOutcome.SEARCH_FAILED
    assert len(retriever.queries) == 2


def test_identical_reads_search_once():
    retriever = FakeRetriever([ELSA_SPIRIT])
    reads = [read("Elsa - Spirit of Winter", number="42"), read("ELSA - spirit of winter!", number="42")]
    controller, _ = make_controller(reads, retriever)
    controller.start(background=False)

    assert controller.run_pass() == PassOutcome.MATCHED
    assert controller.run_pass() == PassOutcome.DUPLICATE
    assert len(retriever.queries) == 1
    assert controller.status.status_message.startswith("Detected: “ELSA - spirit of winter!” (88%) #42")


def test_changing_filters_searches_again():
    retriever = FakeRetriever([ELSA_SPIRIT])
    controller, _ = make_controller([read("Elsa - Spirit of Winter")], retriever)
    controller.start(background=False)
    controller.run_pass()

    controller.set_filters(condition="NM", printing="Foil")
    assert controller.run_pass() == PassOutcome.MATCHED
    assert retriever.queries[-1] == ("Elsa - Spirit of Winter", "NM", "Foil")
    assert controller.status.last_match.price.price == pytest.approx(30.0)


def test_no_match():
    retriever = FakeRetriever([ELSA_QUEEN])
    controller, _ = make_controller([read("Zebra Stripes")], retriever)
    controller.start(background=False)
    assert controller.run_pass() == PassOutcome.NO_MATCH
    assert controller.status.status_message == NO_MATCH_MESSAGE
    assert controller.status.last_match is None


def test_details_failure_keeps_match_with_note():
    retriever = FakeRetriever([ELSA_SPIRIT], details_error=RetrievalError("timeout"))
    controller, _ = make_controller([read("Elsa - Spirit of Winter")], retriever)
    controller.start(background=False)
    assert controller.run_pass() == PassOutcome.MATCHED
    assert controller.status.status_message.endswith("(details unavailable)")
    assert controller.status.last_match.record is ELSA_SPIRIT


def test_details_replace_search_record():
    detailed = replace(ELSA_SPIRIT, rarity='Legendary')
    retriever = FakeRetriever([ELSA_SPIRIT], detailed=detailed)
    controller, _ = make_controller([read("Elsa - Spirit of Winter")], retriever)
    controller.start(background=False)
    controller.run_pass()
    assert controller.status.last_match.record.rarity == 'Legendary'


def test_visual_scores_break_text_tie():
    first = CandidateRecord(card_id='m1', name='Mickey Mouse', number='1', image_uris=('https://img/1.png',))
    second = CandidateRecord(card_id='m2', name='Mickey Mouse', number='2', image_uris=('https://img/2.png',))
    matcher = FakeMatcher(image_scores={'m1': 0.1, 'm2': 0.9})
    controller, _ = make_controller([read("Mickey Mouse")], FakeRetriever([first, second]), matcher)
    controller.start(background=False)

    assert controller.run_pass() == PassOutcome.MATCHED
    scores = controller.status.last_match.scores
    assert controller.status.last_match.record.card_id == 'm2'
    assert scores.final_score == pytest.approx(0.75 * scores.text_score + 0.25 * 0.9)


def test_disabled_visual_matching_uses_text_only():
    matcher = FakeMatcher(image_scores={'elsa-queen': 1.0})
    controller, _ = make_controller(
        [read("Elsa - Spirit of Winter", number="42")],
        FakeRetriever([ELSA_QUEEN, ELSA_SPIRIT]),
        matcher,
        visual_enabled=False,
    )
    controller.start(background=False)
    controller.run_pass()
    scores = controller.status.last_match.scores
    assert matcher.scored == 0
    assert scores.final_score == scores.text_score


def test_engine_load_failure_is_fatal():
    recognizer = FakeRecognizer([read("x")], fail_load=True)
    controller, _ = make_controller(recognizer, FakeRetriever())
    with pytest.raises(EngineLoadError):
        controller.start(background=False)
    assert controller.state == PipelineState.ERROR
    assert "model download failed" in controller.status.error
    assert controller.run_pass() == PassOutcome.SKIPPED


def test_visual_engine_load_failure_is_fatal():
    controller, _ = make_controller([read("x")], FakeRetriever(), FakeMatcher(fail_load=True))
    with pytest.raises(EngineLoadError):
        controller.start(background=False)
    assert controller.state == PipelineState.ERROR


def test_camera_failure_is_fatal():
    frame_source = FailingSource([np.zeros((10, 10, 3), dtype=np.uint8)])
    controller, _ = make_controller([read("x")], FakeRetriever(), frame_source=frame_source)
    with pytest.raises(CameraAccessError):
        controller.start(background=False)
    assert controller.state == PipelineState.ERROR
    assert controller.status.status_message == "camera permission denied"


def test_stop_discards_in_flight_result():
    retriever = FakeRetriever([ELSA_SPIRIT])
    frame_source = source()
    holder = {}
    recognizer = FakeRecognizer([read("Elsa - Spirit of Winter")], on_read=lambda: holder['c'].stop())
    controller, _ = make_controller(recognizer, retriever, frame_source=frame_source)
    holder['c'] = controller
    controller.start(background=False)

    assert controller.run_pass() == PassOutcome.ABORTED
    assert controller.state == PipelineState.PAUSED
    assert controller.status.last_match is None
    assert retriever.queries == []
    assert not frame_source.is_open


def test_restart_after_pause():
    recognizer = FakeRecognizer([read("Elsa - Spirit of Winter")])
    controller, _ = make_controller(recognizer, FakeRetriever([ELSA_SPIRIT]))
    controller.start(background=False)
    controller.stop()
    assert controller.run_pass() == PassOutcome.SKIPPED

    controller.start(background=False)
    assert controller.state == PipelineState.SCANNING
    assert controller.run_pass() == PassOutcome.MATCHED


def test_cooldown_skips_early_passes():
    now = [100.0]
    recognizer = FakeRecognizer([read("")])
    controller = ScanController(source(), recognizer, FakeRetriever(), scan_config={'cooldown': 1.2},
                                clock=lambda: now[0])
    controller.start(background=False)

    assert controller.run_pass() == PassOutcome.NO_TEXT
    now[0] += 0.5
    assert controller.run_pass() == PassOutcome.SKIPPED
    now[0] += 0.8
    assert controller.run_pass() == PassOutcome.NO_TEXT
    assert recognizer.calls == 2


def test_subscribers_receive_status_changes():
    controller, _ = make_controller([read("")], FakeRetriever())
    seen = []
    unsubscribe = controller.subscribe(seen.append)
    controller.start(background=False)
    controller.run_pass()
    unsubscribe()
    controller.stop()

    messages = [s.status_message for s in seen]
    assert messages[:2] == ["Loading OCR engine…", "OCR ready"]
    assert "Camera ready" in messages
    assert messages[-1] == NO_TEXT_MESSAGE
    assert "Paused" not in messages


def test_configure_roi_clamps():
    controller, _ = make_controller([read("")], FakeRetriever())
    roi = controller.configure_roi((0.1, -1.0, 2.0, 0.25))
    assert (roi.top, roi.left, roi.width, roi.height) == (0.1, 0.0, 1.0, 0.25)


def test_background_loop_runs_and_closes():
    retriever = FakeRetriever([ELSA_SPIRIT])
    matcher = FakeMatcher()
    controller, _ = make_controller([read("Elsa - Spirit of Winter")], retriever, matcher, interval=0.01)
    controller.start()
    try:
        assert retriever.searched.wait(5.0)
    finally:
        controller.close()
    assert controller.state == PipelineState.IDLE
    assert matcher.closed


def loop_threads():
    return [t for t in threading.enumerate() if t.name == "cardscan-loop" and t.is_alive()]


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class BlockFirstRead:
    """Holds the first read until released."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()
        self.blocked = False

    def __call__(self):
        if not self.blocked:
            self.blocked = True
            self.entered.set()
            self.release.wait(5.0)


def test_restart_during_in_flight_pass_keeps_one_loop():
    gate = BlockFirstRead()
    recognizer = FakeRecognizer([read("Stale Name"), read("Elsa - Spirit of Winter")], on_read=gate)
    retriever = FakeRetriever([ELSA_SPIRIT])
    controller, _ = make_controller(recognizer, retriever, interval=0.01)
    controller.start()
    try:
        assert gate.entered.wait(5.0)
        controller.stop()
        controller.start()
        gate.release.set()

        assert retriever.searched.wait(5.0)
        assert wait_for(lambda: len(loop_threads()) == 1)
        assert [q[0] for q in retriever.queries][0] == "Elsa - Spirit of Winter"
        assert "Stale Name" not in [q[0] for q in retriever.queries]
        assert wait_for(lambda: controller.status.last_match is not None)
        assert controller.status.last_match.record.card_id == 'elsa-spirit'
    finally:
        gate.release.set()
        controller.close()
    assert loop_threads() == []


def test_stop_with_wait_joins_loop():
    controller, _ = make_controller([read("")], FakeRetriever(), interval=0.01)
    controller.start()
    assert len(loop_threads()) == 1
    controller.stop(wait=True)
    assert controller.state == PipelineState.PAUSED
    assert loop_threads() == []
    controller.close()


def test_close_keeps_start_error():
    recognizer = FakeRecognizer([read("x")], fail_load=True)
    controller, _ = make_controller(recognizer, FakeRetriever())
    with pytest.raises(EngineLoadError):
        controller.start(background=False)
    controller.close()
    assert controller.state == PipelineState.IDLE
    assert controller.status.error == "model download failed"
