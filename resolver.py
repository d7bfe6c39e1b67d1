"""
KNX Resolver — Resolution Orchestrator

Drives one identifier through the fall-through pipeline:

  START → MANUFACTURER_RESOLVED → STORE_HIT ──────────────────────→ RESOLVED
                                 ↘ INTERPRETING → (guess lookup hit) RESOLVED
                                                → CREATING_PROVISIONAL → RESOLVED
                                                → DISCOVERING | NOT_FOUND

Each call is independent: no state is shared between resolutions beyond
the catalog store and the external services handed in at construction.
"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol
from uuid import uuid4

from config import Settings
from knx_id import parse_knx_id
from matching import ProductMatch, lookup_by_guess, lookup_product
from models import (
    BatchResolveResult, BatchStats, Guess, Manufacturer, MatchInfo,
    MatchStrategy, ParsedSegments, Product, ProductStatus, RelatedCounts,
    RelatedKind, RelatedLink, ResolutionResult, ResolutionStatus,
    UnresolvedEntry,
)
from repository import CatalogRepository

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 200

# ============================================================
# Configuration
# ============================================================

@dataclass
class ResolverConfig:
    """Tunable resolution policy."""
    # Minimum guess confidence before a provisional record is written
    provisional_min_confidence: float = 0.7
    # Provisional records at or above this are served as approved
    auto_approve_confidence: float = 0.7
    retry_after_seconds: int = 120
    max_batch_size: int = MAX_BATCH_SIZE
    provisional_medium_types: tuple[str, ...] = ("TP",)

    @classmethod
    def from_settings(cls, settings: Settings) -> ResolverConfig:
        return cls(
            provisional_min_confidence=settings.provisional_min_confidence,
            auto_approve_confidence=settings.auto_approve_confidence,
            retry_after_seconds=settings.retry_after_seconds,
        )


class ResolutionState(str, Enum):
    START = "start"
    MANUFACTURER_RESOLVED = "manufacturer_resolved"
    STORE_HIT = "store_hit"
    INTERPRETING = "interpreting"
    CREATING_PROVISIONAL = "creating_provisional"
    DISCOVERING = "discovering"
    RESOLVED = "resolved"
    NOT_FOUND = "not_found"
    UNKNOWN_MANUFACTURER = "unknown_manufacturer"


class Interpreter(Protocol):
    async def interpret(self, manufacturer: Manufacturer,
                        segments: ParsedSegments) -> Optional[Guess]: ...


class Discovery(Protocol):
    def trigger(self, manufacturer: Manufacturer, segments: ParsedSegments,
                search_terms: list[str]) -> None: ...


RELATED_HREFS: dict[RelatedKind, str] = {
    RelatedKind.COMMUNICATION_OBJECTS: "/v1/products/{id}/communication-objects",
    RelatedKind.PARAMETERS: "/v1/products/{id}/parameters",
    RelatedKind.SPECIFICATIONS: "/v1/products/{id}/specifications",
}


def new_product_id() -> str:
    return "prod_" + uuid4().hex[:16]


def _merge_terms(*groups: list[Optional[str]]) -> list[str]:
    return list(dict.fromkeys(t for group in groups for t in group if t))


# ============================================================
# Orchestrator
# ============================================================

class KnxResolver:
    """
    Resolves KNX identifiers against the catalog.

    interpreter and discovery are optional collaborators; without an
    interpreter the oracle step is skipped, without discovery the
    "discovering" branch degrades to not_found.
    """

    def __init__(
        self,
        repo: CatalogRepository,
        config: Optional[ResolverConfig] = None,
        interpreter: Optional[Interpreter] = None,
        discovery: Optional[Discovery] = None,
    ):
        self.repo = repo
        self.config = config or ResolverConfig()
        self.interpreter = interpreter
        self.discovery = discovery

    # ----------------------------------------------------------
    # Public API
    # ----------------------------------------------------------

    async def resolve(self, knx_id: str, auto_discover: bool = True) -> ResolutionResult:
        segments = parse_knx_id(knx_id)
        base = ResolutionResult(knx_id=knx_id, id_type=segments.id_type, segments=segments)
        self._enter(knx_id, ResolutionState.START)

        manufacturer = await self._find_manufacturer(segments)
        if manufacturer is None:
            self._enter(knx_id, ResolutionState.UNKNOWN_MANUFACTURER)
            return base.model_copy(update={"status": ResolutionStatus.UNKNOWN_MANUFACTURER})

        base = base.model_copy(update={"manufacturer": manufacturer})
        self._enter(knx_id, ResolutionState.MANUFACTURER_RESOLVED)

        match = await lookup_product(self.repo, manufacturer, segments)
        if match:
            self._enter(knx_id, ResolutionState.STORE_HIT)
            return await self.enrich(base, match)

        guess: Optional[Guess] = None
        if self.interpreter is not None:
            self._enter(knx_id, ResolutionState.INTERPRETING)
            guess = await self._interpret(manufacturer, segments)

        if guess is not None:
            match = await lookup_by_guess(self.repo, manufacturer, guess)
            if match:
                return await self.enrich(base, match)

            if self._qualifies_for_provisional(guess):
                self._enter(knx_id, ResolutionState.CREATING_PROVISIONAL)
                product = await self.create_provisional(manufacturer, segments, guess)
                if product is not None:
                    self._trigger_discovery(
                        manufacturer, segments,
                        _merge_terms(guess.search_terms, [guess.order_number],
                                     segments.search_terms))
                    return await self.enrich(
                        base, ProductMatch(product, MatchStrategy.PROVISIONAL))

            base = base.model_copy(update={"interpretation": guess})

        if auto_discover and self.discovery is not None:
            self._enter(knx_id, ResolutionState.DISCOVERING)
            terms = _merge_terms(
                [guess.order_number, guess.product_name] if guess else [],
                segments.search_terms)
            self._trigger_discovery(manufacturer, segments, terms)
            return base.model_copy(update={
                "status": ResolutionStatus.DISCOVERING,
                "message": self._discovering_message(guess),
                "retry_after": self.config.retry_after_seconds,
            })

        self._enter(knx_id, ResolutionState.NOT_FOUND)
        return base.model_copy(update={"status": ResolutionStatus.NOT_FOUND})

    async def resolve_batch(
        self,
        knx_ids: list[str],
        auto_discover: bool = True,
    ) -> BatchResolveResult:
        """Resolve each id independently; results keyed by id."""
        if not knx_ids or len(knx_ids) > self.config.max_batch_size:
            raise ValueError(
                f"knxIds must contain 1-{self.config.max_batch_size} items.")

        resolved: dict[str, ResolutionResult] = {}
        unresolved: list[UnresolvedEntry] = []
        discovering = 0

        for knx_id in knx_ids:
            result = await self.resolve(knx_id, auto_discover)
            if result.resolved:
                resolved[knx_id] = result
                continue
            status = result.status or ResolutionStatus.NOT_FOUND
            if status == ResolutionStatus.DISCOVERING:
                discovering += 1
            unresolved.append(UnresolvedEntry(
                knx_id=knx_id, segments=result.segments, status=status))

        # Duplicate ids collapse in the map but still count per occurrence
        resolved_count = len(knx_ids) - len(unresolved)
        return BatchResolveResult(
            resolved=resolved,
            unresolved=unresolved,
            stats=BatchStats(
                total=len(knx_ids),
                resolved_count=resolved_count,
                unresolved_count=len(unresolved),
                discovering_count=discovering,
            ),
        )

    # ----------------------------------------------------------
    # Provisional records
    # ----------------------------------------------------------

    def _qualifies_for_provisional(self, guess: Guess) -> bool:
        return bool(guess.order_number) and (
            guess.confidence >= self.config.provisional_min_confidence)

    async def create_provisional(
        self,
        manufacturer: Manufacturer,
        segments: ParsedSegments,
        guess: Guess,
    ) -> Optional[Product]:
        """
        Write a low-trust catalog entry from a confident guess.
        Any write failure means "no product"; the caller carries on.
        """
        if not self._qualifies_for_provisional(guess):
            return None

        status = (ProductStatus.APPROVED
                  if guess.confidence >= self.config.auto_approve_confidence
                  else ProductStatus.PENDING)
        record = Product(
            id=new_product_id(),
            manufacturer_id=manufacturer.id,
            knx_product_id=segments.composite_product_id,
            order_number=guess.order_number,
            name=guess.product_name,
            description=guess.description,
            category=guess.category or "other",
            medium_types=list(self.config.provisional_medium_types),
            confidence_score=guess.confidence,
            status=status,
            source_count=0,
        )
        try:
            inserted = await self.repo.insert_product(record)
            if inserted is None:
                logger.warning("Provisional insert for %s returned nothing", segments.raw)
                return None
            product = await self.repo.get_product(record.id)
        except Exception:
            logger.exception("Provisional product creation failed for %s", segments.raw)
            return None

        if product is None:
            logger.warning("Provisional product %s vanished after insert", record.id)
            return None
        logger.info("Created provisional product %s (%s) for %s [%s]",
                    product.id, product.order_number, segments.raw, status.value)
        return product

    # ----------------------------------------------------------
    # Enrichment
    # ----------------------------------------------------------

    async def enrich(self, base: ResolutionResult, match: ProductMatch) -> ResolutionResult:
        """Attach related-record counts and links; a failed count reads as 0."""
        product = match.product
        kinds = list(RELATED_HREFS)
        counts = await asyncio.gather(
            *(self.repo.count_related(product.id, kind) for kind in kinds),
            return_exceptions=True,
        )
        links: dict[RelatedKind, RelatedLink] = {}
        for kind, count in zip(kinds, counts):
            if isinstance(count, BaseException):
                logger.warning("Counting %s for %s failed: %s", kind.value, product.id, count)
                count = 0
            links[kind] = RelatedLink(count=count, href=RELATED_HREFS[kind].format(id=product.id))

        self._enter(base.knx_id, ResolutionState.RESOLVED)
        return base.model_copy(update={
            "resolved": True,
            "status": None,
            "message": None,
            "retry_after": None,
            "product": product,
            "match": MatchInfo(strategy=match.strategy, ambiguous=match.ambiguous),
            "related_counts": RelatedCounts(
                communication_objects=links[RelatedKind.COMMUNICATION_OBJECTS],
                parameters=links[RelatedKind.PARAMETERS],
                specifications=links[RelatedKind.SPECIFICATIONS],
            ),
        })

    # ----------------------------------------------------------
    # Steps
    # ----------------------------------------------------------

    async def _find_manufacturer(self, segments: ParsedSegments) -> Optional[Manufacturer]:
        if not segments.manufacturer_id:
            return None
        try:
            return await self.repo.find_manufacturer(segments.manufacturer_id)
        except Exception:
            logger.exception("Manufacturer lookup failed for %s", segments.manufacturer_id)
            return None

    async def _interpret(self, manufacturer: Manufacturer,
                         segments: ParsedSegments) -> Optional[Guess]:
        try:
            return await self.interpreter.interpret(manufacturer, segments)
        except Exception:
            logger.exception("Interpretation raised for %s", segments.raw)
            return None

    def _trigger_discovery(self, manufacturer: Manufacturer,
                           segments: ParsedSegments, terms: list[str]) -> None:
        if self.discovery is None:
            return
        try:
            self.discovery.trigger(manufacturer, segments, terms)
        except Exception:
            logger.exception("Discovery trigger failed for %s", segments.raw)

    def _discovering_message(self, guess: Optional[Guess]) -> str:
        minutes = max(1, round(self.config.retry_after_seconds / 60))
        retry = f"Retry in {minutes} minute{'s' if minutes != 1 else ''}."
        if guess is not None:
            return (f'Product identified as "{guess.product_name}" '
                    f'({guess.order_number or "unknown order number"}) but not yet '
                    f'in database. Auto-discovery triggered. {retry}')
        return f"Product not found. Auto-discovery triggered. {retry}"

    @staticmethod
    def _enter(knx_id: str, state: ResolutionState) -> None:
        logger.debug("[resolve] %s → %s", knx_id, state.value)
