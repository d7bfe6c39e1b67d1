"""
KNX Resolver — Store Lookup Strategies

Tries, in order, to match a parsed identifier to one catalog product:
  1. program number as order number (prefix, then contains)
  2. ranked search terms against order number / name
  3. exact composite product id  {manufacturerId}_H-{hardwareId}

A strategy that hits the store and fails is logged and treated as a miss,
so the next strategy still gets its chance.
"""
from __future__ import annotations
import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional

from models import Guess, Manufacturer, MatchStrategy, ParsedSegments, Product
from repository import CatalogRepository, ProductFilter

logger = logging.getLogger(__name__)

MIN_TERM_LENGTH = 3
CANDIDATE_LIMIT = 5


@dataclass
class ProductMatch:
    """A store hit and how it was reached."""
    product: Product
    strategy: MatchStrategy
    # True when several candidates qualified and one was picked by order
    ambiguous: bool = False


async def _safe_find(repo: CatalogRepository, manufacturer: Manufacturer,
                     filters: ProductFilter) -> list[Product]:
    try:
        return await repo.find_products(manufacturer.id, filters)
    except Exception:
        logger.exception("Product search failed for %s (%s)",
                         manufacturer.knx_manufacturer_id, filters)
        return []


# ============================================================
# Strategy 1: program number as order number
# ============================================================

async def match_program_number(
    repo: CatalogRepository,
    manufacturer: Manufacturer,
    program_number: str,
) -> Optional[ProductMatch]:
    prefixed = await _safe_find(repo, manufacturer, ProductFilter(
        order_number_prefix=program_number, limit=1))
    if prefixed:
        return ProductMatch(prefixed[0], MatchStrategy.PROGRAM_NUMBER)

    candidates = await _safe_find(repo, manufacturer, ProductFilter(
        order_number_contains=program_number, limit=CANDIDATE_LIMIT))
    if not candidates:
        return None
    if len(candidates) == 1:
        return ProductMatch(candidates[0], MatchStrategy.PROGRAM_NUMBER)

    # Several: prefer an exact start, else take the first as a best guess
    for p in candidates:
        if p.order_number and p.order_number.startswith(program_number):
            return ProductMatch(p, MatchStrategy.PROGRAM_NUMBER, ambiguous=True)
    logger.info("Ambiguous program-number match for %s: %d candidates, taking first",
                program_number, len(candidates))
    return ProductMatch(candidates[0], MatchStrategy.PROGRAM_NUMBER, ambiguous=True)


# ============================================================
# Strategy 2: ranked search terms
# ============================================================

async def match_terms(
    repo: CatalogRepository,
    manufacturer: Manufacturer,
    terms: Iterable[str],
    strategy: MatchStrategy = MatchStrategy.SEARCH_TERMS,
) -> Optional[ProductMatch]:
    for term in terms:
        if not term or len(term) < MIN_TERM_LENGTH:
            continue
        hits = await _safe_find(repo, manufacturer, ProductFilter(
            text=term, limit=CANDIDATE_LIMIT))
        if len(hits) == 1:
            return ProductMatch(hits[0], strategy)
        if len(hits) > 1:
            needle = term.lower()
            by_order = [p for p in hits
                        if p.order_number and needle in p.order_number.lower()]
            if by_order:
                return ProductMatch(by_order[0], strategy,
                                    ambiguous=len(by_order) > 1)
    return None


# ============================================================
# Strategy 3: composite product id
# ============================================================

async def match_composite_id(
    repo: CatalogRepository,
    segments: ParsedSegments,
) -> Optional[ProductMatch]:
    composite = segments.composite_product_id
    if not composite:
        return None
    try:
        product = await repo.find_product_by_composite_id(composite)
    except Exception:
        logger.exception("Composite id lookup failed for %s", composite)
        return None
    return ProductMatch(product, MatchStrategy.COMPOSITE_ID) if product else None


# ============================================================
# Entry points
# ============================================================

async def lookup_product(
    repo: CatalogRepository,
    manufacturer: Manufacturer,
    segments: ParsedSegments,
) -> Optional[ProductMatch]:
    """Run the strategies in order; first confident match wins."""
    if segments.program_number:
        match = await match_program_number(repo, manufacturer, segments.program_number)
        if match:
            return match

    match = await match_terms(repo, manufacturer, segments.search_terms)
    if match:
        return match

    return await match_composite_id(repo, segments)


def guess_terms(guess: Guess) -> list[str]:
    """Order number (as given and compacted) first, then the guess's own terms."""
    terms: list[str] = []
    if guess.order_number:
        terms.append(guess.order_number)
        terms.append(re.sub(r'\s+', '', guess.order_number).replace('..', ''))
    terms.extend(guess.search_terms)
    return list(dict.fromkeys(t for t in terms if t))


async def lookup_by_guess(
    repo: CatalogRepository,
    manufacturer: Manufacturer,
    guess: Guess,
) -> Optional[ProductMatch]:
    """Second pass of the term strategy, seeded by an interpretation."""
    return await match_terms(repo, manufacturer, guess_terms(guess),
                             strategy=MatchStrategy.INTERPRETATION)
