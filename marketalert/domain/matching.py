# marketalert/domain/matching.py
"""
Listing -> tracked address matching.

Pure functions only: no I/O, no clock, no randomness. Same inputs always give the
same confidence/method/score.

Ladder (first level that holds wins for a candidate):
  exact       raw street text equal (case/space-insensitive)         exact_address
  exact       normalized street equal, unit included                 normalized_address
  high        normalized street equal once unit designators dropped  normalized_address
  medium      same house number, street-name token overlap >= 0.6    fuzzy_match
  low         same zip + same street + house number within 10,
              or coordinates within 0.1 miles                        geographic_proximity
"""
from __future__ import annotations

import math
from collections.abc import Iterable, Sequence

from ..models import MatchConfidence, MatchMethod
from .address import collapse_raw, normalize_city, normalize_state, normalize_street, normalize_zip
from .types import MatchResult, PropertyListing, TrackedAddress

FUZZY_TOKEN_THRESHOLD = 0.6
PROXIMITY_STREET_NUMBER_WINDOW = 10
PROXIMITY_MILES = 0.1
EARTH_RADIUS_MILES = 3959.0

SCORE_EXACT = 100.0
SCORE_HIGH = 95.0
SCORE_LOW_MAX = 75.0
SCORE_LOW_MIN = 50.0


def haversine_miles(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    p1, p2 = math.radians(lat1), math.radians(lat2)
    dp = p2 - p1
    dl = math.radians(lon2 - lon1)
    a = math.sin(dp / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2) ** 2
    return 2 * EARTH_RADIUS_MILES * math.asin(min(1.0, math.sqrt(a)))


def token_overlap(a: Sequence[str], b: Sequence[str]) -> float:
    """Jaccard overlap of two token sequences (0..1)."""
    sa, sb = set(a), set(b)
    if not sa or not sb:
        return 0.0
    return len(sa & sb) / len(sa | sb)


def _same_locality(listing: PropertyListing, cand: TrackedAddress) -> bool:
    if normalize_state(listing.state) != normalize_state(cand.state):
        return False
    if normalize_city(listing.city) != normalize_city(cand.city):
        return False
    lz, cz = normalize_zip(listing.zip_code), normalize_zip(cand.zip_code)
    if lz and cz and lz != cz:
        return False
    return True


def _proximity(listing: PropertyListing, cand: TrackedAddress) -> float | None:
    """Score for a geographic-proximity hit, or None."""
    if None not in (listing.latitude, listing.longitude, cand.latitude, cand.longitude):
        miles = haversine_miles(listing.latitude, listing.longitude, cand.latitude, cand.longitude)  # type: ignore[arg-type]
        if miles <= PROXIMITY_MILES:
            return round(SCORE_LOW_MAX - (miles / PROXIMITY_MILES) * (SCORE_LOW_MAX - SCORE_LOW_MIN), 2)

    lz, cz = normalize_zip(listing.zip_code), normalize_zip(cand.zip_code)
    if not (lz and cz and lz == cz):
        return None
    ls, cs = normalize_street(listing.street), normalize_street(cand.street)
    if ls.name_tokens != cs.name_tokens or not ls.name_tokens:
        return None
    ln, cn = ls.numeric_number, cs.numeric_number
    if ln is None or cn is None:
        return None
    gap = abs(ln - cn)
    if gap > PROXIMITY_STREET_NUMBER_WINDOW:
        return None
    step = (SCORE_LOW_MAX - SCORE_LOW_MIN) / PROXIMITY_STREET_NUMBER_WINDOW
    return round(SCORE_LOW_MAX - gap * step, 2)


def evaluate(listing: PropertyListing, cand: TrackedAddress) -> MatchResult | None:
    """Strongest level that holds for one (listing, candidate) pair."""
    if _same_locality(listing, cand):
        if collapse_raw(listing.street) == collapse_raw(cand.street):
            return MatchResult(listing, cand, MatchConfidence.exact, MatchMethod.exact_address, SCORE_EXACT)

        ls, cs = normalize_street(listing.street), normalize_street(cand.street)
        if ls.full == cs.full:
            return MatchResult(listing, cand, MatchConfidence.exact, MatchMethod.normalized_address, SCORE_EXACT)
        if ls.base and ls.base == cs.base:
            return MatchResult(listing, cand, MatchConfidence.high, MatchMethod.normalized_address, SCORE_HIGH)

        if ls.number and ls.number == cs.number:
            overlap = token_overlap(ls.name_tokens, cs.name_tokens)
            if overlap >= FUZZY_TOKEN_THRESHOLD:
                return MatchResult(
                    listing, cand, MatchConfidence.medium, MatchMethod.fuzzy_match, round(overlap * 100.0, 2)
                )

    score = _proximity(listing, cand)
    if score is not None:
        return MatchResult(listing, cand, MatchConfidence.low, MatchMethod.geographic_proximity, score)
    return None


def _rank_key(r: MatchResult) -> tuple[int, float, int]:
    return (-r.confidence.rank, -r.score, r.address.id)


def match(
    listing: PropertyListing,
    candidates: Iterable[TrackedAddress],
    min_confidence: MatchConfidence = MatchConfidence.low,
) -> MatchResult | None:
    """
    Best candidate for a listing, or None when nothing reaches min_confidence.
    Ties: stronger confidence, then higher score, then lower address id.
    """
    best: MatchResult | None = None
    for cand in candidates:
        r = evaluate(listing, cand)
        if r is None or r.confidence.rank < min_confidence.rank:
            continue
        if best is None or _rank_key(r) < _rank_key(best):
            best = r
    return best


def match_all(
    listings: Iterable[PropertyListing],
    candidates: Sequence[TrackedAddress],
    min_confidence: MatchConfidence = MatchConfidence.low,
) -> list[MatchResult]:
    out: list[MatchResult] = []
    for listing in listings:
        r = match(listing, candidates, min_confidence)
        if r is not None:
            out.append(r)
    return out
