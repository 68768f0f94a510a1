"""Card Scanner - identify trading cards from a live camera feed."""

__version__ = "1.0.0"

from cardscan.card_matcher import rank_candidates
from cardscan.catalog_client import CandidateRetriever, CatalogClient
from cardscan.fusion import fuse_scores, resolve_price, select_top
from cardscan.models import (
    CandidateRecord,
    MatchResult,
    PassOutcome,
    PipelineState,
    RoiConfig,
    ScanStatus,
    ScoredCandidate,
)
from cardscan.scan_controller import ScanController

__all__ = [
    'CandidateRecord',
    'CandidateRetriever',
    'CatalogClient',
    'MatchResult',
    'PassOutcome',
    'PipelineState',
    'RoiConfig',
    'ScanController',
    'ScanStatus',
    'ScoredCandidate',
    'fuse_scores',
    'rank_candidates',
    'resolve_price',
    'select_top',
]
