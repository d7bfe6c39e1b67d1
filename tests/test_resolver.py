import asyncio

import pytest

from conftest import StubInterpreter
from models import (
    Guess, MatchStrategy, ProductStatus, RelatedKind, ResolutionStatus,
)
from repository import CatalogError
from resolver import KnxResolver, ResolverConfig

KNOWN_ID = "M-0008_H-hp.1038-O00A1_P-1038.10"
UNKNOWN_PRODUCT_ID = "M-0008_H-sa.2173_P-2173.11"


def _guess(confidence: float, order_number: str = "2173 00") -> Guess:
    return Guess(
        product_name="Heating actuator 6fold",
        order_number=order_number,
        category="heating actuator",
        description="Electronic heating actuator for thermal drives",
        confidence=confidence,
        search_terms=["heating actuator 6fold"],
    )


# ============================================================
# Manufacturer gate
# ============================================================

@pytest.mark.parametrize("knx_id", ["M-FFFF_H-0012", "hello world", ""])
def test_unknown_manufacturer(resolver, discovery, knx_id):
    result = asyncio.run(resolver.resolve(knx_id))

    assert not result.resolved
    assert result.status == ResolutionStatus.UNKNOWN_MANUFACTURER
    assert result.manufacturer is None
    assert result.product is None
    assert discovery.calls == []


def test_manufacturer_lookup_failure_reads_as_unknown(repo, resolver):
    repo.failures["find_manufacturer"] = CatalogError("down")
    result = asyncio.run(resolver.resolve(KNOWN_ID))
    assert result.status == ResolutionStatus.UNKNOWN_MANUFACTURER


def test_manufacturer_only_id_goes_through_oracle_and_discovery(repo, discovery):
    interpreter = StubInterpreter(_guess(0.6))
    resolver = KnxResolver(repo, interpreter=interpreter, discovery=discovery)

    result = asyncio.run(resolver.resolve("M-0008"))

    assert result.status == ResolutionStatus.DISCOVERING
    assert result.manufacturer.short_name == "Gira"
    assert result.interpretation.order_number == "2173 00"
    assert interpreter.calls == 1
    assert len(discovery.calls) == 1
    assert discovery.calls[0][2] == ["2173 00", "Heating actuator 6fold"]


def test_manufacturer_only_id_without_auto_discover_is_not_found(repo, discovery):
    interpreter = StubInterpreter()
    resolver = KnxResolver(repo, interpreter=interpreter, discovery=discovery)

    result = asyncio.run(resolver.resolve("M-0008", auto_discover=False))

    assert result.status == ResolutionStatus.NOT_FOUND
    assert interpreter.calls == 1
    assert discovery.calls == []


# ============================================================
# Store hits and enrichment
# ============================================================

def test_store_hit_is_enriched(resolver, discovery):
    result = asyncio.run(resolver.resolve(KNOWN_ID))

    assert result.resolved
    assert result.status is None
    assert result.product.order_number == "1038 00"
    assert result.manufacturer.knx_manufacturer_id == "M-0008"
    assert result.match.strategy == MatchStrategy.PROGRAM_NUMBER
    assert result.related_counts.communication_objects.count == 112
    assert result.related_counts.parameters.count == 340
    assert result.related_counts.specifications.count == 7
    assert result.related_counts.parameters.href == "/v1/products/prod_actuator/parameters"
    assert discovery.calls == []


def test_related_count_failure_reads_as_zero(repo, resolver):
    repo.failures["count_related"] = CatalogError("timeout")
    result = asyncio.run(resolver.resolve(KNOWN_ID))

    assert result.resolved
    assert result.related_counts.communication_objects.count == 0
    assert result.related_counts.specifications.href == (
        "/v1/products/prod_actuator/specifications")


def test_result_serializes_camel_case(resolver):
    data = asyncio.run(resolver.resolve(KNOWN_ID)).model_dump(mode="json", by_alias=True)

    assert data["knxId"] == KNOWN_ID
    assert data["idType"] == "product"
    assert data["segments"]["programNumber"] == "1038"
    assert data["relatedCounts"]["communicationObjects"]["count"] == 112
    assert data["product"]["orderNumber"] == "1038 00"


# ============================================================
# Interpretation, provisional records, discovery
# ============================================================

def test_confident_guess_creates_provisional_product(repo, discovery):
    interpreter = StubInterpreter(_guess(0.85))
    resolver = KnxResolver(repo, interpreter=interpreter, discovery=discovery)

    first = asyncio.run(resolver.resolve(UNKNOWN_PRODUCT_ID))

    assert first.resolved
    assert first.match.strategy == MatchStrategy.PROVISIONAL
    assert first.product.status == ProductStatus.APPROVED
    assert first.product.confidence_score == 0.85
    assert first.product.source_count == 0
    assert first.product.medium_types == ["TP"]
    assert first.product.knx_product_id == "M-0008_H-sa.2173"
    assert first.product.id.startswith("prod_")

    # Discovery still runs to collect the real datasheet
    assert len(discovery.calls) == 1
    _, _, terms = discovery.calls[0]
    assert terms[:2] == ["heating actuator 6fold", "2173 00"]

    second = asyncio.run(resolver.resolve(UNKNOWN_PRODUCT_ID))
    assert second.resolved
    assert second.product.id == first.product.id
    assert second.match.strategy == MatchStrategy.PROGRAM_NUMBER
    assert interpreter.calls == 1


def test_provisional_below_auto_approve_is_pending(repo):
    config = ResolverConfig(provisional_min_confidence=0.7, auto_approve_confidence=0.9)
    resolver = KnxResolver(repo, config=config, interpreter=StubInterpreter(_guess(0.8)))

    result = asyncio.run(resolver.resolve(UNKNOWN_PRODUCT_ID))

    assert result.resolved
    assert result.product.status == ProductStatus.PENDING


def test_guess_matching_existing_product(repo, discovery):
    interpreter = StubInterpreter(_guess(0.6, order_number="1032 00"))
    resolver = KnxResolver(repo, interpreter=interpreter, discovery=discovery)

    result = asyncio.run(resolver.resolve(UNKNOWN_PRODUCT_ID))

    assert result.resolved
    assert result.product.id == "prod_dimmer"
    assert result.match.strategy == MatchStrategy.INTERPRETATION
    assert discovery.calls == []


def test_weak_guess_triggers_discovery(repo, discovery):
    resolver = KnxResolver(repo, interpreter=StubInterpreter(_guess(0.6)),
                           discovery=discovery)

    result = asyncio.run(resolver.resolve(UNKNOWN_PRODUCT_ID))

    assert not result.resolved
    assert result.status == ResolutionStatus.DISCOVERING
    assert result.retry_after == 120
    assert result.interpretation.order_number == "2173 00"
    assert '"Heating actuator 6fold" (2173 00)' in result.message
    assert "Retry in 2 minutes." in result.message
    assert len(repo.products) == 3

    _, segments, terms = discovery.calls[0]
    assert segments.raw == UNKNOWN_PRODUCT_ID
    assert terms == ["2173 00", "Heating actuator 6fold", "2173", "sa.2173"]


def test_interpreter_failure_falls_through_to_discovery(repo, discovery):
    resolver = KnxResolver(repo, interpreter=StubInterpreter(error=RuntimeError("boom")),
                           discovery=discovery)

    result = asyncio.run(resolver.resolve(UNKNOWN_PRODUCT_ID))

    assert result.status == ResolutionStatus.DISCOVERING
    assert result.interpretation is None
    assert result.message.startswith("Product not found.")
    assert discovery.calls[0][2] == ["2173", "2173 00", "sa.2173"]


def test_provisional_write_failure_is_not_fatal(repo, discovery):
    repo.failures["insert_product"] = CatalogError("unique violation")
    resolver = KnxResolver(repo, interpreter=StubInterpreter(_guess(0.95)),
                           discovery=discovery)

    result = asyncio.run(resolver.resolve(UNKNOWN_PRODUCT_ID))

    assert not result.resolved
    assert result.status == ResolutionStatus.DISCOVERING
    assert len(discovery.calls) == 1


def test_miss_without_discovery_is_not_found(repo, discovery):
    resolver = KnxResolver(repo, discovery=discovery)
    result = asyncio.run(resolver.resolve(UNKNOWN_PRODUCT_ID, auto_discover=False))

    assert result.status == ResolutionStatus.NOT_FOUND
    assert result.retry_after is None
    assert discovery.calls == []

    bare = KnxResolver(repo)
    assert asyncio.run(bare.resolve(UNKNOWN_PRODUCT_ID)).status == ResolutionStatus.NOT_FOUND


def test_create_provisional_rejects_weak_or_numberless_guess(repo):
    from conftest import GIRA
    from knx_id import parse_knx_id

    resolver = KnxResolver(repo)
    segments = parse_knx_id(UNKNOWN_PRODUCT_ID)

    assert asyncio.run(resolver.create_provisional(GIRA, segments, _guess(0.5))) is None
    no_number = _guess(0.9).model_copy(update={"order_number": None})
    assert asyncio.run(resolver.create_provisional(GIRA, segments, no_number)) is None


# ============================================================
# Batch
# ============================================================

def test_batch_partitions_results(resolver, discovery):
    ids = [KNOWN_ID, "M-FFFF_H-0012", UNKNOWN_PRODUCT_ID, "M-0008_H-0012", KNOWN_ID]
    result = asyncio.run(resolver.resolve_batch(ids))

    assert set(result.resolved) == {KNOWN_ID, "M-0008_H-0012"}
    assert [u.knx_id for u in result.unresolved] == ["M-FFFF_H-0012", UNKNOWN_PRODUCT_ID]
    assert [u.status for u in result.unresolved] == [
        ResolutionStatus.UNKNOWN_MANUFACTURER, ResolutionStatus.DISCOVERING]
    assert result.stats.total == 5
    assert result.stats.resolved_count == 3
    assert result.stats.unresolved_count == 2
    assert result.stats.discovering_count == 1
    assert len(discovery.calls) == 1


def test_batch_without_auto_discover(resolver, discovery):
    result = asyncio.run(resolver.resolve_batch([UNKNOWN_PRODUCT_ID], auto_discover=False))

    assert result.unresolved[0].status == ResolutionStatus.NOT_FOUND
    assert result.stats.discovering_count == 0
    assert discovery.calls == []


@pytest.mark.parametrize("size", [0, 201])
def test_batch_size_limits(resolver, size):
    with pytest.raises(ValueError, match="1-200"):
        asyncio.run(resolver.resolve_batch(["M-0008"] * size))


def test_batch_accepts_max_size(resolver):
    result = asyncio.run(resolver.resolve_batch(["M-0008"] * 200))
    assert result.stats.total == 200
    assert result.stats.unresolved_count == 200
    assert result.stats.discovering_count == 200
