"""Region extraction and image preprocessing for OCR and feature matching."""

import io
import logging
from typing import Optional, Tuple

import cv2
import numpy as np
from PIL import Image

from cardscan.models import Frame, RoiConfig

logger = logging.getLogger(__name__)

# White-text mask thresholds (OpenCV HSV: S and V in 0-255)
WHITE_MAX_SATURATION = 70
WHITE_MIN_VALUE = 150


def load_image_from_bytes(data: bytes) -> np.ndarray:
    """Decode JPEG/PNG bytes into a BGR array."""
    image = Image.open(io.BytesIO(data))
    if image.mode != 'RGB':
        image = image.convert('RGB')
    return cv2.cvtColor(np.array(image), cv2.COLOR_RGB2BGR)


def resize_to_width(image: np.ndarray, target_width: Optional[int]) -> np.ndarray:
    """Resize to target_width preserving aspect ratio."""
    if not target_width or target_width <= 0:
        return image
    height, width = image.shape[:2]
    if width == target_width or width == 0:
        return image
    target_height = max(1, int(round(height * target_width / float(width))))
    interpolation = cv2.INTER_AREA if target_width < width else cv2.INTER_LINEAR
    return cv2.resize(image, (target_width, target_height), interpolation=interpolation)


def compute_roi_rect(width: int, height: int, roi: RoiConfig) -> Tuple[int, int, int, int]:
    """
    Convert fractional ROI to a pixel rectangle (x, y, w, h).

    The rectangle always lies inside the frame and is at least 1x1.
    """
    width = max(1, int(width))
    height = max(1, int(height))

    x = min(max(int(round(roi.left * width)), 0), width - 1)
    y = min(max(int(round(roi.top * height)), 0), height - 1)
    w = max(1, int(round(roi.width * width)))
    h = max(1, int(round(roi.height * height)))
    w = min(w, width - x)
    h = min(h, height - y)
    return x, y, w, h


def extract_roi(frame: Frame, roi: RoiConfig) -> np.ndarray:
    x, y, w, h = compute_roi_rect(frame.width, frame.height, roi)
    return frame.image[y:y + h, x:x + w]


def lower_third(frame: Frame) -> np.ndarray:
    """Bottom third of the frame, where the collector number is printed."""
    start = min(frame.height - 1, (frame.height * 2) // 3)
    return frame.image[start:, :]


def preprocess_for_ocr(region: np.ndarray) -> np.ndarray:
    """
    Turn a name-bar crop into dark text on a light background.

    Tuned for white lettering on a dark banner. If any step fails the crop
    is returned untouched so OCR can still run on the raw pixels.
    """
    try:
        if region is None or region.size == 0 or min(region.shape[:2]) < 2:
            raise ValueError(f"degenerate crop {None if region is None else region.shape}")

        hsv = cv2.cvtColor(region, cv2.COLOR_BGR2HSV)
        _, saturation, value = cv2.split(hsv)
        low_sat = cv2.inRange(saturation, 0, WHITE_MAX_SATURATION)
        high_val = cv2.inRange(value, WHITE_MIN_VALUE, 255)
        white_mask = cv2.bitwise_and(low_sat, high_val)

        lab = cv2.cvtColor(region, cv2.COLOR_BGR2LAB)
        lightness = lab[:, :, 0]
        clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
        enhanced = clahe.apply(lightness)

        masked = cv2.bitwise_and(enhanced, enhanced, mask=white_mask)
        blurred = cv2.GaussianBlur(masked, (3, 3), 0)

        block_size = _odd_block_size(min(region.shape[:2]))
        binary = cv2.adaptiveThreshold(
            blurred, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C, cv2.THRESH_BINARY, block_size, -5
        )
        # Close while strokes are still white so thin letters get joined
        kernel = np.ones((2, 2), np.uint8)
        closed = cv2.morphologyEx(binary, cv2.MORPH_CLOSE, kernel)
        return cv2.bitwise_not(closed)
    except (cv2.error, ValueError, IndexError, TypeError) as e:
        logger.debug(f"OCR preprocessing failed, using raw crop: {e}")
        return region


def preprocess_for_features(image: np.ndarray, scale: float = 0.75) -> np.ndarray:
    """Grayscale and downscale an image before keypoint detection."""
    if image.ndim == 3:
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    else:
        gray = image
    if scale and 0 < scale < 1:
        height, width = gray.shape[:2]
        size = (max(1, int(width * scale)), max(1, int(height * scale)))
        gray = cv2.resize(gray, size, interpolation=cv2.INTER_AREA)
    return gray


def _odd_block_size(smallest_side: int) -> int:
    # adaptiveThreshold needs an odd block size > 1 that fits in the image
    block = min(31, smallest_side if smallest_side % 2 == 1 else smallest_side - 1)
    return max(3, block)
