"""Card candidate ranking using fuzzy string matching."""

from typing import Dict, List, Optional, Sequence

from rapidfuzz import fuzz

from cardscan.models import CandidateRecord, ScoredCandidate

DEFAULT_WEIGHTS = {'name': 0.75, 'set': 0.15, 'number': 0.10}


def _normalize(text: Optional[str]) -> str:
    # OCR confuses punctuation freely ("Elsa - Spirit" vs "Elsa, Spirit"),
    # so every separator becomes a space
    text = (text or '').lower()
    for punct in '!?;:.,-–—_/()"':
        text = text.replace(punct, ' ')
    text = text.replace("'", '')
    return ' '.join(text.split())


def _number_key(number: Optional[str]) -> Optional[str]:
    """Comparable collector number: left of any '/', no leading zeros, lowercase."""
    if number is None:
        return None
    key = str(number).split('/')[0].strip().lower()
    if not key:
        return None
    return key.lstrip('0') or '0'


def numbers_match(recognized: Optional[str], candidate: Optional[str]) -> bool:
    left = _number_key(recognized)
    return left is not None and left == _number_key(candidate)


def field_similarity(query: str, value: Optional[str]) -> float:
    """
    Similarity between OCR text and one record field, 0.0 to 1.0.

    Takes the best of several rapidfuzz strategies: token set ratio handles
    extra or missing words, token sort ratio handles reordering, and the
    plain ratio rewards near-exact strings.
    """
    normalized_query = _normalize(query)
    normalized_value = _normalize(value)
    if not normalized_query or not normalized_value:
        return 0.0

    full_score = fuzz.ratio(normalized_query, normalized_value) / 100.0
    token_sort_score = fuzz.token_sort_ratio(normalized_query, normalized_value) / 100.0
    token_set_score = fuzz.token_set_ratio(normalized_query, normalized_value) / 100.0

    score = max(
        token_set_score * 1.0,
        token_sort_score * 0.95,
        full_score * 0.9,
    )

    # Token set ratio scores any subset as a perfect match ("elsa" vs
    # "elsa snow queen"), so scale down when few of the field's words were read
    value_words = [w for w in normalized_value.split() if len(w) > 2]
    if len(value_words) > 1:
        query_words = normalized_query.split()
        matched = 0.0
        for word in value_words:
            best = max((fuzz.ratio(word, q) / 100.0 for q in query_words), default=0.0)
            if best >= 0.8:
                matched += best
        overlap = matched / len(value_words)
        if overlap < 0.5:
            score *= 0.5 + overlap
    return score


def text_similarity(
    query: str,
    record: CandidateRecord,
    weights: Optional[Dict[str, float]] = None,
    distance_threshold: float = 0.36,
) -> Optional[float]:
    """
    Weighted similarity of query against a record's name, set and number.

    A field counts only when its distance (1 - similarity) is within the
    threshold; the weights of counted fields are renormalized. Returns None
    when no field is close enough.
    """
    weights = weights or DEFAULT_WEIGHTS
    fields = {
        'name': record.name,
        'set': record.set_name,
        'number': record.number,
    }
    weighted_sum = 0.0
    weight_total = 0.0
    for key, value in fields.items():
        weight = weights.get(key, 0.0)
        if weight <= 0 or not value:
            continue
        similarity = field_similarity(query, value)
        if 1.0 - similarity <= distance_threshold:
            weighted_sum += weight * similarity
            weight_total += weight
    if weight_total == 0:
        return None
    return weighted_sum / weight_total


def rank_candidates(
    query: str,
    collector_number: Optional[str],
    candidates: Sequence[CandidateRecord],
    weights: Optional[Dict[str, float]] = None,
    distance_threshold: float = 0.36,
    number_bonus: float = 0.25,
    max_results: int = 8,
) -> List[ScoredCandidate]:
    """
    Score candidates by text and keep the best few.

    text_score = (similarity + bonus) / (1 + number_bonus), where bonus is
    number_bonus when the recognized collector number equals the
    candidate's. Dividing keeps scores in [0, 1] without letting two
    perfect name matches tie when only one has the right number.

    Returns:
        Up to max_results ScoredCandidates, best first. final_score starts
        equal to text_score; fusion may revise it.
    """
    if not query or not candidates:
        return []

    scored = []
    for index, record in enumerate(candidates):
        similarity = text_similarity(query, record, weights, distance_threshold)
        if similarity is None:
            continue
        bonus = number_bonus if numbers_match(collector_number, record.number) else 0.0
        text_score = (similarity + bonus) / (1.0 + number_bonus)
        scored.append((text_score, -index, record))

    # Ties keep catalog order
    scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
    return [
        ScoredCandidate(record=record, text_score=score, image_score=0.0, final_score=score)
        for score, _, record in scored[:max(0, max_results)]
    ]
