"""Combining text and visual scores, and resolving the displayed price."""

from dataclasses import replace
from typing import Iterable, List, Optional, Sequence

from cardscan.models import ScoredCandidate, VariantPrice

CONDITION_NAMES = {
    "NM": "Near Mint",
    "LP": "Lightly Played",
    "MP": "Moderately Played",
    "HP": "Heavily Played",
    "DMG": "Damaged",
    "S": "Sealed",
}


def fuse_scores(
    candidates: Sequence[ScoredCandidate],
    visual_available: bool,
    text_weight: float = 0.75,
    image_weight: float = 0.25,
) -> List[ScoredCandidate]:
    """
    Set final_score on each candidate.

    With visual evidence: text_weight * text + image_weight * image.
    Without it the image term drops out and final_score equals text_score,
    so the text ranking order is preserved exactly.
    """
    fused = []
    for candidate in candidates:
        if visual_available and image_weight > 0:
            final = text_weight * candidate.text_score + image_weight * candidate.image_score
        else:
            final = candidate.text_score
        fused.append(replace(candidate, final_score=final))
    return fused


def select_top(candidates: Sequence[ScoredCandidate]) -> Optional[ScoredCandidate]:
    """Highest final_score; the earlier candidate wins a tie."""
    best = None
    for candidate in candidates:
        if best is None or candidate.final_score > best.final_score:
            best = candidate
    return best


def expand_condition(condition: Optional[str]) -> Optional[str]:
    """Full condition name for an abbreviation like "NM"; other values pass through."""
    if not condition:
        return condition
    return CONDITION_NAMES.get(condition.strip().upper(), condition)


def _condition_matches(variant: VariantPrice, condition: Optional[str]) -> bool:
    if not condition:
        return True
    if not variant.condition:
        return False
    wanted = {condition.strip().lower(), (expand_condition(condition) or '').lower()}
    return variant.condition.strip().lower() in wanted or (
        (expand_condition(variant.condition) or '').lower() in wanted
    )


def _printing_matches(variant: VariantPrice, printing: Optional[str]) -> bool:
    if not printing:
        return True
    return (variant.printing or '').strip().lower() == printing.strip().lower()


def resolve_price(
    variants: Iterable[VariantPrice],
    condition: Optional[str] = "NM",
    printing: Optional[str] = None,
) -> Optional[VariantPrice]:
    """
    Cheapest variant matching the condition and printing filters.

    Conditions match by abbreviation or full name, case-insensitively.
    Returns None when no variant with a numeric price passes the filters.
    """
    best = None
    for variant in variants:
        if variant.price is None:
            continue
        if not _condition_matches(variant, condition) or not _printing_matches(variant, printing):
            continue
        if best is None or variant.price < best.price:
            best = variant
    return best
