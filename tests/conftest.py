"""Shared fixtures: a seeded in-memory catalog and fake collaborators."""
from __future__ import annotations
from typing import Optional

import pytest

from models import Guess, Manufacturer, ParsedSegments, Product, RelatedKind
from repository import InMemoryCatalogRepository
from resolver import KnxResolver


GIRA = Manufacturer(
    id="mfr_gira",
    knx_manufacturer_id="M-0008",
    name="Gira Giersiepen GmbH & Co. KG",
    short_name="Gira",
    country="DE",
    hex_code="0008",
    website_url="https://www.gira.de",
)

MDT = Manufacturer(
    id="mfr_mdt",
    knx_manufacturer_id="M-0083",
    name="MDT technologies GmbH",
    short_name="MDT",
    country="DE",
    hex_code="0083",
)


class RecordingDiscovery:
    """Stands in for DiscoveryService; remembers every trigger."""

    def __init__(self):
        self.calls: list[tuple[Manufacturer, ParsedSegments, list[str]]] = []

    def trigger(self, manufacturer, segments, search_terms) -> None:
        self.calls.append((manufacturer, segments, list(search_terms)))


class StubInterpreter:
    """Returns a canned guess and counts calls."""

    def __init__(self, guess: Optional[Guess] = None, error: Optional[Exception] = None):
        self.guess = guess
        self.error = error
        self.calls = 0

    async def interpret(self, manufacturer, segments) -> Optional[Guess]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.guess


@pytest.fixture
def repo() -> InMemoryCatalogRepository:
    r = InMemoryCatalogRepository()
    r.add_manufacturer(GIRA)
    r.add_manufacturer(MDT)
    r.add_product(Product(
        id="prod_actuator",
        manufacturer_id=GIRA.id,
        knx_product_id="M-0008_H-hp.1038-O00A1",
        order_number="1038 00",
        name="Switching actuator 16fold/shutter actuator 8fold 16A",
        category="switch actuator",
        medium_types=["TP"],
    ))
    r.add_product(Product(
        id="prod_dimmer",
        manufacturer_id=GIRA.id,
        order_number="1032 00",
        name="Universal dimming actuator 4fold",
        category="dimmer",
        medium_types=["TP"],
    ))
    r.add_product(Product(
        id="prod_push_button",
        manufacturer_id=GIRA.id,
        knx_product_id="M-0008_H-0012",
        order_number="5012 00",
        name="Push button sensor 3 1gang",
        category="push button",
        medium_types=["TP"],
    ))
    r.set_related_count("prod_actuator", RelatedKind.COMMUNICATION_OBJECTS, 112)
    r.set_related_count("prod_actuator", RelatedKind.PARAMETERS, 340)
    r.set_related_count("prod_actuator", RelatedKind.SPECIFICATIONS, 7)
    return r


@pytest.fixture
def discovery() -> RecordingDiscovery:
    return RecordingDiscovery()


@pytest.fixture
def resolver(repo, discovery) -> KnxResolver:
    return KnxResolver(repo, discovery=discovery)
