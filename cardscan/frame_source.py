"""Frame sources: live camera, recorded video and still images."""

import logging
import threading
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from cardscan.errors import CameraAccessError
from cardscan.frame_extractor import extract_frames_generator
from cardscan.models import Frame
from cardscan.preprocess import load_image_from_bytes, resize_to_width

logger = logging.getLogger(__name__)


class FrameSource:
    """
    Exclusively owned supplier of frames for one scanning session.

    open() acquires the device, read() returns the latest frame (or None
    when nothing is available right now) and release() frees the device.
    """

    def __init__(self, frame_width: Optional[int] = 720):
        self.frame_width = frame_width
        self._lock = threading.Lock()
        self._opened = False

    @property
    def is_open(self) -> bool:
        return self._opened

    def open(self) -> None:
        with self._lock:
            if self._opened:
                return
            self._open()
            self._opened = True

    def read(self) -> Optional[Frame]:
        with self._lock:
            if not self._opened:
                return None
            image = self._read()
        if image is None:
            return None
        return Frame.capture(resize_to_width(image, self.frame_width))

    def release(self) -> None:
        with self._lock:
            if not self._opened:
                return
            try:
                self._release()
            finally:
                self._opened = False

    def _open(self) -> None:
        raise NotImplementedError

    def _read(self) -> Optional[np.ndarray]:
        raise NotImplementedError

    def _release(self) -> None:
        pass

    def __enter__(self) -> "FrameSource":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class CameraFrameSource(FrameSource):
    """A webcam or capture card read through OpenCV."""

    def __init__(self, device: int = 0, width: int = 1280, height: int = 720, frame_width: Optional[int] = 720):
        super().__init__(frame_width=frame_width)
        self.device = device
        self.width = width
        self.height = height
        self._capture = None

    def _open(self) -> None:
        logger.info(f"Opening camera {self.device} at {self.width}x{self.height}")
        capture = cv2.VideoCapture(self.device)
        if not capture.isOpened():
            capture.release()
            raise CameraAccessError(f"Could not open camera {self.device}. Check that it is connected and not in use.")
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)

        ok, _ = capture.read()
        if not ok:
            capture.release()
            raise CameraAccessError(f"Camera {self.device} opened but returned no frames. Check permissions.")
        self._capture = capture

    def _read(self) -> Optional[np.ndarray]:
        ok, image = self._capture.read()
        if not ok:
            logger.debug(f"Camera {self.device} dropped a frame")
            return None
        return image

    def _release(self) -> None:
        if self._capture is not None:
            self._capture.release()
            self._capture = None
            logger.info(f"Released camera {self.device}")


class VideoFileFrameSource(FrameSource):
    """Replays a recorded clip, one frame per read."""

    def __init__(self, media_file: Path, interval_seconds: float = 0.4, frame_width: Optional[int] = 720):
        super().__init__(frame_width=frame_width)
        self.media_file = Path(media_file)
        self.interval_seconds = interval_seconds
        self._frames: Optional[Iterator[Tuple[float, bytes]]] = None

    def _open(self) -> None:
        if not self.media_file.exists():
            raise CameraAccessError(f"Video file not found: {self.media_file}")
        try:
            self._frames = extract_frames_generator(
                self.media_file,
                interval_seconds=self.interval_seconds,
                frame_width=self.frame_width,
            )
        except (RuntimeError, FileNotFoundError) as e:
            raise CameraAccessError(str(e)) from e

    def _read(self) -> Optional[np.ndarray]:
        try:
            _, frame_bytes = next(self._frames)
        except StopIteration:
            return None
        return load_image_from_bytes(frame_bytes)

    def _release(self) -> None:
        if self._frames is not None:
            self._frames.close()
            self._frames = None


class StaticFrameSource(FrameSource):
    """Cycles through a fixed list of images; used for still photos and tests."""

    def __init__(self, images: Sequence[np.ndarray], frame_width: Optional[int] = None):
        super().__init__(frame_width=frame_width)
        self.images: List[np.ndarray] = list(images)
        self._index = 0

    @classmethod
    def from_files(cls, paths: Sequence[Path], frame_width: Optional[int] = 720) -> "StaticFrameSource":
        images = []
        for path in paths:
            path = Path(path)
            if not path.exists():
                raise CameraAccessError(f"Image not found: {path}")
            images.append(load_image_from_bytes(path.read_bytes()))
        return cls(images, frame_width=frame_width)

    def _open(self) -> None:
        if not self.images:
            raise CameraAccessError("No images to scan")
        self._index = 0

    def _read(self) -> Optional[np.ndarray]:
        image = self.images[self._index % len(self.images)]
        self._index += 1
        return image
