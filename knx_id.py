"""
KNX Resolver — Identifier Parser

Turns an ETS-style catalog identifier into ParsedSegments:

  M-0008                          manufacturer
  M-0008_H-0012                   product (hardware)
  M-0008_H-0012.HP-0034-00-AB01   hardware/program mapping
  M-0008_A-0034-00-AB01           application program
  M-0008_H-hp.1038-O00A1_P-1038.10

Parsing is total: a pattern that does not match just leaves its field empty.
"""
from __future__ import annotations
import re

from models import IdType, ParsedSegments

# ============================================================
# Patterns
# ============================================================

MANUFACTURER_RE = re.compile(r'^M-([0-9A-Fa-f]{4})(?![0-9A-Fa-f])')
HARDWARE_RE = re.compile(r'_H-(.+?)(?=_P-|_A-|_O|$)')
ORDER_REF_RE = re.compile(r'-O([0-9A-Fa-f]{4,})')
PROGRAM_RE = re.compile(r'_P-([0-9A-Fa-f.]+)')
APPLICATION_RE = re.compile(r'_A-([0-9A-Fa-f][0-9A-Fa-f.\-]*)')
LONG_NUMBER_RE = re.compile(r'\d{4,}')
ORDER_LIKE_RE = re.compile(r'[A-Z]{2,}[-.]?\d{3,}', re.IGNORECASE)

# Common order-number suffix, e.g. program 1038 -> "1038 00"
ORDER_SUFFIX = " 00"


def detect_type(raw: str) -> IdType:
    """Classify an identifier by its ETS shape."""
    if not MANUFACTURER_RE.match(raw):
        return IdType.UNKNOWN
    if '_H-' in raw:
        if '.HP-' in raw:
            return IdType.HARDWARE_PROGRAM_MAPPING
        return IdType.PRODUCT
    if '_A-' in raw:
        return IdType.APPLICATION_PROGRAM
    if MANUFACTURER_RE.match(raw).end() == len(raw):
        return IdType.MANUFACTURER
    return IdType.UNKNOWN


def _split_program(program_id: str) -> tuple[str, str | None]:
    parts = program_id.split('.')
    version = '.'.join(parts[1:]) if len(parts) > 1 else None
    return parts[0], version or None


def rank_search_terms(
    program_number: str | None,
    hardware_id: str | None,
    order_ref: str | None,
) -> list[str]:
    """Most specific first, de-duplicated, order preserved."""
    terms: list[str] = []

    # 1. Program number; for many manufacturers this is the order number
    if program_number:
        terms.append(program_number)
        terms.append(program_number + ORDER_SUFFIX)

    if hardware_id:
        # 2. Long digit runs
        terms.extend(LONG_NUMBER_RE.findall(hardware_id))
        # 3. Order-number-like tokens
        terms.extend(ORDER_LIKE_RE.findall(hardware_id))

    # 4. Order reference
    if order_ref:
        terms.append(order_ref)

    return list(dict.fromkeys(terms))


def parse_knx_id(raw: str) -> ParsedSegments:
    manufacturer_id = manufacturer_hex = None
    m = MANUFACTURER_RE.match(raw)
    if m:
        manufacturer_hex = m.group(1).upper()
        manufacturer_id = f"M-{manufacturer_hex}"

    hw = HARDWARE_RE.search(raw)
    hardware_id = hw.group(1) if hw else None

    order = ORDER_REF_RE.search(raw)
    order_ref = order.group(1) if order else None

    program_id = program_number = program_version = None
    prog = PROGRAM_RE.search(raw) or APPLICATION_RE.search(raw)
    if prog and prog.group(1).strip('.'):
        program_id = prog.group(1)
        program_number, program_version = _split_program(program_id)
        if not program_number:
            program_number = None

    return ParsedSegments(
        raw=raw,
        id_type=detect_type(raw),
        manufacturer_id=manufacturer_id,
        manufacturer_hex=manufacturer_hex,
        hardware_id=hardware_id,
        order_ref=order_ref,
        program_id=program_id,
        program_number=program_number,
        program_version=program_version,
        search_terms=rank_search_terms(program_number, hardware_id, order_ref),
    )
