"""Card name and collector number extraction from OCR output."""

import logging
import re
from typing import Iterable, Optional, Sequence, Tuple

from cardscan.models import Frame, OCRResult, RecognizedText, RoiConfig, Token
from cardscan.preprocess import extract_roi, lower_third, preprocess_for_ocr
from cardscan.profiler import profiler

logger = logging.getLogger(__name__)

COLLECTOR_NUMBER_PATTERN = re.compile(r'(?<!\d)(\d{1,3})\s*/\s*(\d{1,3})(?!\d)')
NUMBER_ALLOWLIST = '0123456789/'

_STRIP_PATTERN = re.compile(r"[^\w\s\-'/]|_")


def normalize_text(text: Optional[str]) -> str:
    """Lowercase, drop everything but letters, digits, spaces, - ' /, collapse whitespace."""
    if not text:
        return ''
    text = _STRIP_PATTERN.sub(' ', text.lower())
    return ' '.join(text.split())


def average_confidence(tokens: Iterable[Token]) -> Optional[float]:
    """Mean confidence of non-empty tokens, or None if there are none."""
    values = [t.confidence for t in tokens if t.text.strip()]
    if not values:
        return None
    return sum(values) / len(values)


def find_collector_number(text: Optional[str]) -> Optional[str]:
    """Left-hand side of the first "123/204" style token in text."""
    if not text:
        return None
    match = COLLECTOR_NUMBER_PATTERN.search(text)
    return match.group(1) if match else None


def pick_roi_name(lines: Sequence[Tuple[str, float]], min_length: int = 3) -> str:
    """First line long enough to be a name, else the longest line."""
    texts = [line.strip() for line, _ in lines if line.strip()]
    if not texts:
        return ''
    for text in texts:
        if len(text) >= min_length:
            return text
    return max(texts, key=len)


def pick_name_line(lines: Sequence[Tuple[str, float]], image_height: int, min_length: int = 4) -> str:
    """
    Guess the card name from full-frame OCR lines.

    Prefers the longest line whose center lies in the top third of the
    image; if that line is shorter than min_length, falls back to the
    longest line anywhere.
    """
    texts = [(line.strip(), center) for line, center in lines if line.strip()]
    if not texts:
        return ''
    top_third = image_height / 3.0
    top_lines = [text for text, center in texts if center <= top_third]
    if top_lines:
        best = max(top_lines, key=len)
        if len(best) >= min_length:
            return best
    return max((text for text, _ in texts), key=len)


class NameDebouncer:
    """Remembers the last searched name so identical reads skip the catalog."""

    def __init__(self):
        self.last_name: Optional[str] = None

    def is_duplicate(self, name: str) -> bool:
        normalized = normalize_text(name)
        return bool(normalized) and normalized == self.last_name

    def remember(self, name: str) -> None:
        self.last_name = normalize_text(name) or None

    def reset(self) -> None:
        self.last_name = None


class TextRecognizer:
    """
    Two-tier card text reader.

    The ROI (name bar) is read first; if that yields too little text the
    whole frame is read and the name is picked by position and length.
    """

    def __init__(self, engine, min_name_length: int = 3, min_full_frame_line: int = 4):
        self.engine = engine
        self.min_name_length = min_name_length
        self.min_full_frame_line = min_full_frame_line

    @property
    def is_ready(self) -> bool:
        return self.engine.is_ready

    def load(self) -> None:
        self.engine.load()

    def read(self, frame: Frame, roi: RoiConfig) -> RecognizedText:
        """Recognize the card name (and collector number when visible) in a frame."""
        region = preprocess_for_ocr(extract_roi(frame, roi))
        with profiler.timer("ocr_roi"):
            roi_result = self.engine.recognize(region)
        name = pick_roi_name(roi_result.lines, self.min_name_length)

        if len(name) >= self.min_name_length:
            with profiler.timer("ocr_number"):
                number_result = self.engine.recognize(lower_third(frame), allowlist=NUMBER_ALLOWLIST)
            return RecognizedText(
                text=name,
                confidence=average_confidence(roi_result.tokens),
                collector_number=find_collector_number(number_result.text),
                source="roi",
            )

        logger.debug(f"ROI text too short ({name!r}), reading full frame")
        with profiler.timer("ocr_full_frame"):
            full_result: OCRResult = self.engine.recognize(frame.image)
        name = pick_name_line(full_result.lines, full_result.image_height or frame.height,
                              self.min_full_frame_line)
        return RecognizedText(
            text=name,
            confidence=average_confidence(full_result.tokens),
            collector_number=find_collector_number(full_result.text),
            source="full_frame",
        )
