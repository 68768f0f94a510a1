"""Keypoint-based visual similarity between the camera frame and reference card images."""

import logging
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np
import requests

from cardscan.errors import EngineLoadError, PerCandidateFetchError
from cardscan.models import ScoredCandidate
from cardscan.preprocess import load_image_from_bytes, preprocess_for_features

logger = logging.getLogger(__name__)


class VisualMatcher:
    """
    ORB descriptors plus a k=2 Hamming ratio test.

    Reference descriptors are cached per image URI so a card that stays in
    view is only downloaded once.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        scale: float = 0.75,
        n_features: int = 500,
        ratio: float = 0.75,
        good_match_norm: int = 120,
        timeout: float = 5.0,
        workers: int = 4,
        cache_size: int = 64,
    ):
        self.session = session or requests.Session()
        self.scale = scale
        self.n_features = n_features
        self.ratio = ratio
        self.good_match_norm = max(1, good_match_norm)
        self.timeout = timeout
        self.workers = max(1, workers)
        self.cache_size = cache_size
        self._orb = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._orb_lock = threading.Lock()
        self._cache: "OrderedDict[str, Optional[np.ndarray]]" = OrderedDict()
        self._cache_lock = threading.Lock()

    @property
    def is_ready(self) -> bool:
        return self._orb is not None

    def load(self) -> None:
        """Create the ORB detector and matcher. Raises EngineLoadError on failure."""
        if self._orb is not None:
            return
        try:
            self._orb = cv2.ORB_create(nfeatures=self.n_features)
        except (cv2.error, AttributeError) as e:
            raise EngineLoadError(f"Failed to initialize OpenCV feature matching: {e}") from e
        self._executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="refimg")
        logger.info(f"Visual matcher ready (ORB, {self.n_features} features)")

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        self._orb = None
        with self._cache_lock:
            self._cache.clear()

    def extract_features(self, image: np.ndarray) -> Optional[np.ndarray]:
        """Binary descriptors of a downscaled grayscale copy of image (None if no keypoints)."""
        if self._orb is None:
            self.load()
        gray = preprocess_for_features(image, self.scale)
        with self._orb_lock:
            _, descriptors = self._orb.detectAndCompute(gray, None)
        return descriptors

    def match_score(self, scene: Optional[np.ndarray], candidate: Optional[np.ndarray]) -> float:
        """Ratio-test match count, scaled so good_match_norm matches scores 1.0."""
        if scene is None or candidate is None or len(scene) == 0 or len(candidate) < 2:
            return 0.0
        # BFMatcher is cheap; one per call keeps worker threads independent
        pairs = cv2.BFMatcher(cv2.NORM_HAMMING).knnMatch(scene, candidate, k=2)
        good = 0
        for pair in pairs:
            if len(pair) == 2 and pair[0].distance < self.ratio * pair[1].distance:
                good += 1
        return min(good / float(self.good_match_norm), 1.0)

    def reference_descriptors(self, uri: str) -> Optional[np.ndarray]:
        """
        Descriptors of the reference image at uri.

        Raises:
            PerCandidateFetchError: If the image cannot be downloaded or decoded
        """
        with self._cache_lock:
            if uri in self._cache:
                self._cache.move_to_end(uri)
                return self._cache[uri]

        try:
            response = self.session.get(uri, timeout=self.timeout)
            response.raise_for_status()
            image = load_image_from_bytes(response.content)
        except requests.exceptions.RequestException as e:
            raise PerCandidateFetchError(uri, str(e)) from e
        except (OSError, ValueError, cv2.error) as e:
            raise PerCandidateFetchError(uri, f"could not decode image: {e}") from e

        descriptors = self.extract_features(image)
        with self._cache_lock:
            self._cache[uri] = descriptors
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)
        return descriptors

    def _score_one(self, scene: np.ndarray, candidate: ScoredCandidate) -> Optional[float]:
        uri = candidate.record.image_uri
        if not uri:
            return None
        try:
            return self.match_score(scene, self.reference_descriptors(uri))
        except (PerCandidateFetchError, cv2.error) as e:
            logger.debug(f"Reference image skipped for {candidate.record.name}: {e}")
            return None

    def score_candidates(
        self, frame_image: np.ndarray, candidates: Sequence[ScoredCandidate]
    ) -> Tuple[List[ScoredCandidate], bool]:
        """
        Fill in image_score for every candidate.

        All reference fetches finish before this returns. Candidates whose
        image is missing or fails get 0. The flag is True when at least one
        reference image was scored, i.e. visual evidence is usable.
        """
        if not candidates:
            return [], False
        if self._orb is None:
            self.load()

        scene = self.extract_features(frame_image)
        if scene is None:
            logger.debug("No keypoints in frame, skipping visual matching")
            return [replace(c, image_score=0.0) for c in candidates], False

        futures = [self._executor.submit(self._score_one, scene, c) for c in candidates]
        scores = [future.result() for future in futures]

        scored = [replace(c, image_score=score or 0.0) for c, score in zip(candidates, scores)]
        return scored, any(score is not None for score in scores)
