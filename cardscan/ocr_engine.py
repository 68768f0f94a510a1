"""OCR engine for reading card text from images using EasyOCR."""

import logging
import threading
import warnings
from typing import List, Optional, Sequence, Tuple

import numpy as np

from cardscan.errors import EngineLoadError
from cardscan.models import OCRResult, Token

try:
    import easyocr
    import torch
    has_easyocr = True

    # Suppress PyTorch pin_memory warnings on MPS (Apple Silicon)
    warnings.filterwarnings('ignore', message='.*pin_memory.*', category=UserWarning)
    warnings.filterwarnings('ignore', message='.*not supported on MPS.*', category=UserWarning)
except ImportError:
    easyocr = None
    torch = None
    has_easyocr = False

logger = logging.getLogger(__name__)


def detect_gpu() -> bool:
    """True when CUDA or Apple MPS is usable by torch."""
    if torch is None:
        return False
    if torch.cuda.is_available():
        logger.info("EasyOCR: Using CUDA (NVIDIA/ROCm GPU)")
        return True
    if hasattr(torch.backends, 'mps') and torch.backends.mps.is_available():
        logger.info("EasyOCR: Using MPS (Apple Silicon GPU)")
        return True
    logger.info("EasyOCR: Using CPU (No GPU detected)")
    return False


def group_lines(tokens: Sequence[Token]) -> List[Tuple[str, float]]:
    """
    Group tokens into text lines by vertical overlap.

    Returns (line_text, vertical_center) tuples ordered top to bottom.
    Tokens whose centers fall within half a token height of a line's
    center join that line; words in a line are ordered left to right.
    """
    lines: List[List[Token]] = []
    centers: List[float] = []
    for token in sorted(tokens, key=lambda t: (t.top + t.bottom) / 2.0):
        center = (token.top + token.bottom) / 2.0
        half_height = max(1.0, (token.bottom - token.top) / 2.0)
        if lines and abs(center - centers[-1]) <= half_height:
            lines[-1].append(token)
            centers[-1] = sum((t.top + t.bottom) / 2.0 for t in lines[-1]) / len(lines[-1])
        else:
            lines.append([token])
            centers.append(center)
    return [
        (' '.join(t.text for t in sorted(line, key=lambda t: t.left)), center)
        for line, center in zip(lines, centers)
    ]


class OCREngine:
    """
    Lazily initialized EasyOCR reader owned by one scanner.

    load() is safe to call repeatedly; is_ready tells the controller whether
    scanning may begin.
    """

    def __init__(self, languages: Sequence[str] = ('en',), gpu: Optional[bool] = None,
                 min_confidence: float = 0.2):
        self.languages = list(languages)
        self.gpu = gpu
        self.min_confidence = min_confidence
        self._reader = None
        self._lock = threading.Lock()

    @property
    def is_ready(self) -> bool:
        return self._reader is not None

    def load(self) -> None:
        """
        Initialize the EasyOCR reader, falling back to CPU if the GPU fails.

        Raises:
            EngineLoadError: If easyocr is missing or cannot start
        """
        with self._lock:
            if self._reader is not None:
                return
            if not has_easyocr:
                raise EngineLoadError("easyocr is not installed. Please install it with: pip install easyocr")

            gpu = detect_gpu() if self.gpu is None else self.gpu
            try:
                self._reader = easyocr.Reader(self.languages, gpu=gpu)
            except Exception as e:
                if not gpu:
                    raise EngineLoadError(f"Failed to initialize EasyOCR: {e}") from e
                logger.warning(f"EasyOCR: GPU initialization failed ({e}), falling back to CPU")
                try:
                    self._reader = easyocr.Reader(self.languages, gpu=False)
                except Exception as e2:
                    raise EngineLoadError(
                        f"Failed to initialize EasyOCR (CPU fallback also failed): {e2}"
                    ) from e2
            logger.info(f"EasyOCR reader ready ({', '.join(self.languages)})")

    def recognize(self, image: np.ndarray, allowlist: Optional[str] = None) -> OCRResult:
        """
        Read text from an image.

        Args:
            image: Grayscale or BGR image
            allowlist: Optional set of characters the recognizer may emit

        Returns:
            OCRResult with newline-separated lines and per-token confidence (0-100)
        """
        if self._reader is None:
            self.load()

        kwargs = {}
        if allowlist:
            kwargs['allowlist'] = allowlist
        raw = self._reader.readtext(image, **kwargs)
        return self._to_result(raw, int(image.shape[0]))

    def _to_result(self, raw, image_height: int) -> OCRResult:
        tokens = []
        for bbox, text, confidence in raw:
            text = (text or '').strip()
            if not text or confidence < self.min_confidence:
                continue
            xs = [point[0] for point in bbox]
            ys = [point[1] for point in bbox]
            tokens.append(Token(text=text, confidence=float(confidence) * 100.0,
                                top=float(min(ys)), bottom=float(max(ys)), left=float(min(xs))))
        lines = group_lines(tokens)
        return OCRResult(
            text='\n'.join(line for line, _ in lines),
            tokens=tuple(tokens),
            lines=tuple(lines),
            image_height=image_height,
        )
