import io

import numpy as np
import pytest
import requests
from PIL import Image

from cardscan.models import CandidateRecord, ScoredCandidate
from cardscan.visual_matcher import VisualMatcher


class FakeResponse:
    def __init__(self, content=b'', status_code=200):
        self.content = content
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error")


class FakeSession:
    """Maps URIs to bytes, an HTTP status or an exception."""

    def __init__(self, routes):
        self.routes = routes
        self.requested = []

    def get(self, uri, timeout=None):
        self.requested.append(uri)
        route = self.routes[uri]
        if isinstance(route, Exception):
            raise route
        if isinstance(route, int):
            return FakeResponse(status_code=route)
        return FakeResponse(content=route)


def textured_image(seed=1, size=240):
    rng = np.random.default_rng(seed)
    small = rng.integers(0, 256, (size // 8, size // 8, 3), dtype=np.uint8)
    return np.kron(small, np.ones((8, 8, 1), dtype=np.uint8))


def png_bytes(image_bgr):
    buffer = io.BytesIO()
    Image.fromarray(image_bgr[:, :, ::-1].copy()).save(buffer, format="PNG")
    return buffer.getvalue()


def candidate(card_id, uri=None):
    record = CandidateRecord(card_id=card_id, name=card_id, image_uris=(uri,) if uri else ())
    return ScoredCandidate(record=record, text_score=0.5, final_score=0.5)


@pytest.fixture
def descriptors():
    rng = np.random.default_rng(0)
    return rng.integers(0, 256, (200, 32), dtype=np.uint8)


def test_identical_descriptors_score_full(descriptors):
    matcher = VisualMatcher(good_match_norm=120)
    assert matcher.match_score(descriptors, descriptors) == 1.0
    assert matcher.match_score(descriptors[:60], descriptors) == pytest.approx(0.5)


def test_unrelated_descriptors_score_low(descriptors):
    other = np.random.default_rng(99).integers(0, 256, (200, 32), dtype=np.uint8)
    assert VisualMatcher().match_score(descriptors, other) < 0.25


def test_too_few_descriptors_score_zero(descriptors):
    matcher = VisualMatcher()
    assert matcher.match_score(descriptors, descriptors[:1]) == 0.0
    assert matcher.match_score(None, descriptors) == 0.0
    assert matcher.match_score(descriptors, None) == 0.0


def test_score_candidates_absorbs_fetch_failures():
    image = textured_image()
    session = FakeSession({
        'https://img/good.png': png_bytes(image),
        'https://img/missing.png': 404,
        'https://img/down.png': requests.exceptions.ConnectionError("refused"),
        'https://img/garbage.png': b'not an image',
    })
    matcher = VisualMatcher(session=session)
    matcher.load()
    try:
        scored, available = matcher.score_candidates(image, [
            candidate('good', 'https://img/good.png'),
            candidate('missing', 'https://img/missing.png'),
            candidate('down', 'https://img/down.png'),
            candidate('garbage', 'https://img/garbage.png'),
            candidate('no-image'),
        ])
    finally:
        matcher.close()

    scores = {c.record.card_id: c.image_score for c in scored}
    assert available
    assert scores['good'] > 0.3
    assert scores['missing'] == 0.0
    assert scores['down'] == 0.0
    assert scores['garbage'] == 0.0
    assert scores['no-image'] == 0.0
    assert [c.text_score for c in scored] == [0.5] * 5


def test_score_candidates_without_any_reference_is_unavailable():
    session = FakeSession({'https://img/missing.png': 500})
    matcher = VisualMatcher(session=session)
    matcher.load()
    try:
        scored, available = matcher.score_candidates(
            textured_image(), [candidate('a', 'https://img/missing.png'), candidate('b')]
        )
    finally:
        matcher.close()
    assert not available
    assert all(c.image_score == 0.0 for c in scored)


def test_reference_descriptors_are_cached():
    session = FakeSession({'https://img/a.png': png_bytes(textured_image(seed=3))})
    matcher = VisualMatcher(session=session, cache_size=1)
    matcher.load()
    try:
        first = matcher.reference_descriptors('https://img/a.png')
        second = matcher.reference_descriptors('https://img/a.png')
    finally:
        matcher.close()
    assert first is second
    assert session.requested == ['https://img/a.png']


def test_empty_candidates():
    assert VisualMatcher().score_candidates(textured_image(), []) == ([], False)
