"""
KNX Resolver — Core Pydantic Models
"""
from __future__ import annotations
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# ============================================================
# Enums
# ============================================================

class IdType(str, Enum):
    MANUFACTURER = "manufacturer"
    PRODUCT = "product"
    APPLICATION_PROGRAM = "application_program"
    HARDWARE_PROGRAM_MAPPING = "hardware_program_mapping"
    UNKNOWN = "unknown"

class ProductStatus(str, Enum):
    APPROVED = "approved"
    PENDING = "pending_review"

class ResolutionStatus(str, Enum):
    UNKNOWN_MANUFACTURER = "unknown_manufacturer"
    DISCOVERING = "discovering"
    NOT_FOUND = "not_found"

class MatchStrategy(str, Enum):
    PROGRAM_NUMBER = "program_number"
    SEARCH_TERMS = "search_terms"
    COMPOSITE_ID = "composite_id"
    INTERPRETATION = "interpretation"
    PROVISIONAL = "provisional"

class RelatedKind(str, Enum):
    COMMUNICATION_OBJECTS = "communication-objects"
    PARAMETERS = "parameters"
    SPECIFICATIONS = "specifications"


class CamelModel(BaseModel):
    """Snake-case in Python, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

# ============================================================
# Catalog Entities
# ============================================================

class Manufacturer(CamelModel):
    id: str
    knx_manufacturer_id: str
    name: str
    short_name: Optional[str] = None
    country: Optional[str] = None
    hex_code: Optional[str] = None
    website_url: Optional[str] = None
    product_count: int = 0
    application_program_count: int = 0

    @property
    def display_short_name(self) -> str:
        return self.short_name or self.name

    @field_validator("product_count", "application_program_count", mode="before")
    @classmethod
    def _none_count_is_zero(cls, v: Any) -> Any:
        return 0 if v is None else v


class Product(CamelModel):
    id: str
    manufacturer_id: str
    knx_product_id: Optional[str] = None
    order_number: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    medium_types: list[str] = Field(default_factory=list)
    confidence_score: Optional[float] = None
    status: ProductStatus = ProductStatus.APPROVED
    source_count: int = 0
    specifications: dict[str, Any] = Field(default_factory=dict)

    @field_validator("medium_types", "specifications", mode="before")
    @classmethod
    def _none_is_empty(cls, v: Any, info) -> Any:
        if v is None:
            return [] if info.field_name == "medium_types" else {}
        return v

    @field_validator("source_count", mode="before")
    @classmethod
    def _none_source_count(cls, v: Any) -> Any:
        return 0 if v is None else v

    @field_validator("status", mode="before")
    @classmethod
    def _default_status(cls, v: Any) -> Any:
        return ProductStatus.APPROVED if v is None else v

# ============================================================
# Pipeline Value Objects
# ============================================================

class ParsedSegments(CamelModel):
    """Structured view of one raw KNX identifier. Derived, never mutated."""
    model_config = ConfigDict(frozen=True)

    raw: str
    id_type: IdType = IdType.UNKNOWN
    manufacturer_id: Optional[str] = None
    manufacturer_hex: Optional[str] = None
    hardware_id: Optional[str] = None
    order_ref: Optional[str] = None
    program_id: Optional[str] = None
    program_number: Optional[str] = None
    program_version: Optional[str] = None
    search_terms: list[str] = Field(default_factory=list)

    @property
    def composite_product_id(self) -> Optional[str]:
        if self.manufacturer_id and self.hardware_id:
            return f"{self.manufacturer_id}_H-{self.hardware_id}"
        return None


class Guess(CamelModel):
    """Structured answer from the interpretation oracle."""
    product_name: Optional[str] = None
    order_number: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    search_terms: list[str] = Field(default_factory=list)

    @field_validator("search_terms", mode="before")
    @classmethod
    def _clean_terms(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, list):
            return [str(t).strip() for t in v if t is not None and str(t).strip()]
        return v

# ============================================================
# Resolution Results
# ============================================================

class RelatedLink(CamelModel):
    count: int = 0
    href: str


class RelatedCounts(CamelModel):
    communication_objects: RelatedLink
    parameters: RelatedLink
    specifications: RelatedLink


class MatchInfo(CamelModel):
    strategy: MatchStrategy
    ambiguous: bool = False


class ResolutionResult(CamelModel):
    knx_id: str
    id_type: IdType
    segments: ParsedSegments
    resolved: bool = False
    status: Optional[ResolutionStatus] = None
    message: Optional[str] = None
    retry_after: Optional[int] = None
    manufacturer: Optional[Manufacturer] = None
    product: Optional[Product] = None
    related_counts: Optional[RelatedCounts] = None
    match: Optional[MatchInfo] = None
    interpretation: Optional[Guess] = None

    @model_validator(mode="after")
    def _resolved_iff_product(self) -> ResolutionResult:
        if self.resolved != (self.product is not None):
            raise ValueError("resolved must be true exactly when a product is set")
        return self


class UnresolvedEntry(CamelModel):
    knx_id: str
    segments: ParsedSegments
    status: ResolutionStatus


class BatchStats(CamelModel):
    total: int
    resolved_count: int
    unresolved_count: int
    discovering_count: int = 0


class BatchResolveResult(CamelModel):
    resolved: dict[str, ResolutionResult] = Field(default_factory=dict)
    unresolved: list[UnresolvedEntry] = Field(default_factory=list)
    stats: BatchStats

# ============================================================
# API Payloads
# ============================================================

class BatchResolveRequest(CamelModel):
    knx_ids: list[str] = Field(default_factory=list)
    auto_discover: bool = True


class HealthResponse(CamelModel):
    status: str
    version: str
    uptime: int
    request_count: int = 0
    components: dict[str, dict] = Field(default_factory=dict)
