"""Data types shared by the scanning pipeline stages."""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np


class PipelineState(Enum):
    IDLE = "Idle"
    ENGINES_LOADING = "EnginesLoading"
    CAMERA_READY = "CameraReady"
    SCANNING = "Scanning"
    PAUSED = "Paused"
    ERROR = "Error"


class PassOutcome(Enum):
    """How a single pipeline pass ended."""
    SKIPPED = "skipped"          # cooldown not elapsed or not scanning
    NO_FRAME = "no_frame"
    NO_TEXT = "no_text"
    DUPLICATE = "duplicate"      # same name as last search, catalog not queried
    SEARCH_FAILED = "search_failed"
    NO_MATCH = "no_match"
    MATCHED = "matched"
    ABORTED = "aborted"          # session stopped while the pass was in flight
    FAILED = "failed"            # unexpected error inside the pass


@dataclass(frozen=True)
class Frame:
    """A captured BGR image and its capture time (seconds, monotonic clock)."""
    image: np.ndarray
    timestamp: float

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])

    @classmethod
    def capture(cls, image: np.ndarray, timestamp: Optional[float] = None) -> "Frame":
        """Wrap an image as a read-only frame."""
        image = np.array(image, copy=True, order='C')
        image.setflags(write=False)
        return cls(image=image, timestamp=time.monotonic() if timestamp is None else timestamp)


def _clamp_fraction(value: float) -> float:
    return min(1.0, max(0.0, float(value)))


@dataclass
class RoiConfig:
    """Fractional region of the frame used for name OCR."""
    top: float = 0.0
    left: float = 0.0
    width: float = 1.0
    height: float = 0.18

    def __post_init__(self):
        self.top = _clamp_fraction(self.top)
        self.left = _clamp_fraction(self.left)
        self.width = _clamp_fraction(self.width)
        self.height = _clamp_fraction(self.height)

    @classmethod
    def from_value(cls, value: Any) -> "RoiConfig":
        """Build from a RoiConfig, a dict with top/left/width/height, or a 4-sequence."""
        if isinstance(value, RoiConfig):
            return cls(value.top, value.left, value.width, value.height)
        if isinstance(value, dict):
            return cls(
                top=value.get('top', 0.0),
                left=value.get('left', 0.0),
                width=value.get('width', 1.0),
                height=value.get('height', 0.18),
            )
        top, left, width, height = value
        return cls(top, left, width, height)


@dataclass(frozen=True)
class Token:
    """One OCR word with its confidence (0-100) and pixel box edges."""
    text: str
    confidence: float
    top: float = 0.0
    bottom: float = 0.0
    left: float = 0.0


@dataclass(frozen=True)
class OCRResult:
    """Raw recognizer output: newline-joined lines plus the tokens behind them."""
    text: str
    tokens: Tuple[Token, ...] = ()
    lines: Tuple[Tuple[str, float], ...] = ()  # (line text, vertical center in px)
    image_height: int = 0


@dataclass(frozen=True)
class RecognizedText:
    text: str
    confidence: Optional[float] = None
    collector_number: Optional[str] = None
    source: str = "roi"  # "roi" or "full_frame"


@dataclass(frozen=True)
class VariantPrice:
    condition: Optional[str] = None
    printing: Optional[str] = None
    price: Optional[float] = None
    last_updated: Optional[float] = None
    variant_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict) -> "VariantPrice":
        return cls(
            condition=_optional_str(data.get('condition')),
            printing=_optional_str(data.get('printing')),
            price=_optional_float(data.get('price')),
            last_updated=_optional_float(data.get('lastUpdated', data.get('last_updated'))),
            variant_id=_optional_str(data.get('id')),
        )


@dataclass(frozen=True)
class CandidateRecord:
    card_id: str
    name: str
    set_name: Optional[str] = None
    number: Optional[str] = None
    rarity: Optional[str] = None
    image_uris: Tuple[str, ...] = ()
    variants: Tuple[VariantPrice, ...] = ()

    @property
    def image_uri(self) -> Optional[str]:
        return self.image_uris[0] if self.image_uris else None

    @classmethod
    def from_dict(cls, data: Dict) -> Optional["CandidateRecord"]:
        """
        Parse a loosely-typed catalog row.

        Unknown fields are ignored and missing ones become None. Rows without
        a usable name are rejected (returns None) since nothing can be ranked
        against them.
        """
        if not isinstance(data, dict):
            return None
        name = _optional_str(data.get('name'))
        if not name:
            return None

        set_value = data.get('set', data.get('set_name'))
        if isinstance(set_value, dict):
            set_value = set_value.get('name')

        uris: List[str] = []
        for key in ('image', 'image_url', 'imageUrl'):
            uri = _optional_str(data.get(key))
            if uri and uri not in uris:
                uris.append(uri)
        images = data.get('images')
        if isinstance(images, (list, tuple)):
            for uri in images:
                uri = _optional_str(uri)
                if uri and uri not in uris:
                    uris.append(uri)

        variants = data.get('variants')
        if not isinstance(variants, (list, tuple)):
            variants = []

        return cls(
            card_id=_optional_str(data.get('id')) or name,
            name=name,
            set_name=_optional_str(set_value),
            number=_optional_str(data.get('number', data.get('collector_number'))),
            rarity=_optional_str(data.get('rarity')),
            image_uris=tuple(uris),
            variants=tuple(VariantPrice.from_dict(v) for v in variants if isinstance(v, dict)),
        )


@dataclass(frozen=True)
class ScoredCandidate:
    record: CandidateRecord
    text_score: float
    image_score: float = 0.0
    final_score: float = 0.0


@dataclass(frozen=True)
class MatchResult:
    record: CandidateRecord
    price: Optional[VariantPrice]
    captured_at: float
    scores: Optional[ScoredCandidate] = None


@dataclass(frozen=True)
class ScanStatus:
    """Snapshot of what the caller observes after each pass."""
    state: PipelineState
    status_message: str
    last_match: Optional[MatchResult] = None
    last_confidence: Optional[float] = None
    last_outcome: Optional[PassOutcome] = None
    error: Optional[str] = None


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _optional_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None
