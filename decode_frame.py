#!/usr/bin/env python3
"""
Companytec Frame Decoder
Decodes DT435 response frames into typed records. Each layout is an ordered
list of (name, offset, width) slices over the stripped frame body.

Usage:
    python decode_frame.py supply "(001000000350285902012008101530...XX)"
"""

import json
import logging
import sys
from typing import Dict, List, Optional, Tuple

from companytec_protocol import CompanytecProtocol
from exceptions import ChecksumMismatch, CompanytecError, MalformedFrame, MalformedResponse
from models import (
    CalendarReading,
    IdentifierRecord,
    NozzleStatus,
    NozzleStatusEntry,
    NozzleStatusVector,
    SupplyIdentified,
    SupplyRecord,
    TotalReading,
    VisualizationEntry,
)

logger = logging.getLogger("PumpController")

Layout = List[Tuple[str, int, int]]

# &A reply, always decoded as far as the body reaches
SUPPLY_BASIC_LAYOUT: Layout = [
    ("total_to_pay", 0, 6),
    ("volume", 6, 6),
    ("price", 12, 4),
    ("comma_code", 16, 2),
    ("supply_time", 18, 4),
    ("nozzle", 22, 2),
    ("day", 24, 2),
    ("hour", 26, 2),
    ("minute", 28, 2),
]

# &A reply tail, only present in the full 52 character record
SUPPLY_EXTENDED_LAYOUT: Layout = [
    ("month", 30, 2),
    ("record", 32, 4),
    ("final_total", 36, 10),
    ("status", 46, 2),
]
SUPPLY_EXTENDED_MIN_LENGTH = 52

SUPPLY_IDENTIFIED_LAYOUT: Layout = [
    ("total", 0, 6),
    ("volume", 6, 6),
    ("price", 12, 4),
    ("nozzle", 22, 2),
    ("identifier", 50, 16),
]
SUPPLY_IDENTIFIED_MIN_LENGTH = 70

VISUALIZATION_WINDOW = 8
VISUALIZATION_LAYOUT: Layout = [
    ("nozzle", 0, 2),
    ("value", 2, 6),
]

STATUS_POSITIONS = 32

STATUS_CODE_MAP = {
    "L": NozzleStatus.AVAILABLE,
    "B": NozzleStatus.BLOCKED,
    "C": NozzleStatus.FINISHED,
    "A": NozzleStatus.REFUELING,
    "E": NozzleStatus.WAITING,
    "F": NozzleStatus.NOT_PRESENT,
    "P": NozzleStatus.READY,
}

TOTAL_HEADER_LENGTH = 3   # mode(1) + nozzle(2)

# Checksummed replies end in 2 checksum chars before the closing ')'
CHECKSUM_LENGTH = 2


def extract_fields(body: str, layout: Layout) -> Dict[str, str]:
    """Slice every layout field that lies fully within body"""
    return {
        name: body[offset:offset + width]
        for name, offset, width in layout
        if offset + width <= len(body)
    }


def is_no_data(response: str) -> bool:
    return response == CompanytecProtocol.NO_DATA


def status_code_to_enum(code: str) -> NozzleStatus:
    """Map a single status character to NozzleStatus"""
    return STATUS_CODE_MAP.get(code, NozzleStatus.UNKNOWN)


def _strip(response: str, trailing_count: int, leading_count: int = 1) -> str:
    if not response.startswith(CompanytecProtocol.FRAME_START) or not response.endswith(
        CompanytecProtocol.FRAME_END
    ):
        raise MalformedResponse(f"Response {response!r} is not delimited by '(' and ')'")
    try:
        return CompanytecProtocol.strip_frame(response, trailing_count, leading_count)
    except MalformedFrame as e:
        raise MalformedResponse(str(e)) from e


def _check(response: str, verify: bool):
    if verify and not CompanytecProtocol.verify_checksum(response):
        raise ChecksumMismatch(f"Checksum mismatch in response {response!r}")


def parse_supply(response: str, verify: bool = False) -> Optional[SupplyRecord]:
    """
    Parse &A reply into SupplyRecord

    Basic fields are filled as far as the body reaches; month, record,
    final total and status need the full 52 character body.
    """
    if is_no_data(response):
        return None
    _check(response, verify)

    body = _strip(response, CHECKSUM_LENGTH)
    fields = extract_fields(body, SUPPLY_BASIC_LAYOUT)
    if len(body) >= SUPPLY_EXTENDED_MIN_LENGTH:
        fields.update(extract_fields(body, SUPPLY_EXTENDED_LAYOUT))

    logger.debug(f"Supply body ({len(body)} chars): {fields}")
    return SupplyRecord(raw=response, **fields)


def parse_supply_identified(response: str, verify: bool = False) -> Optional[SupplyIdentified]:
    """Parse identified &A reply; bodies under 70 chars decode to an empty record"""
    if is_no_data(response):
        return None
    _check(response, verify)

    body = _strip(response, CHECKSUM_LENGTH, leading_count=2)
    if len(body) < SUPPLY_IDENTIFIED_MIN_LENGTH:
        logger.debug(f"Identified supply body too short ({len(body)} chars), no fields decoded")
        return SupplyIdentified(raw=response)

    return SupplyIdentified(raw=response, **extract_fields(body, SUPPLY_IDENTIFIED_LAYOUT))


def parse_visualization(response: str) -> Optional[List[VisualizationEntry]]:
    """Parse &V reply: consecutive 8 char windows of nozzle(2) + value(6)"""
    if is_no_data(response):
        return None

    body = _strip(response, 0)
    entries = []
    for start in range(0, len(body) - VISUALIZATION_WINDOW + 1, VISUALIZATION_WINDOW):
        window = body[start:start + VISUALIZATION_WINDOW]
        entries.append(VisualizationEntry(**extract_fields(window, VISUALIZATION_LAYOUT)))

    if len(body) % VISUALIZATION_WINDOW:
        logger.debug(f"Dropping partial visualization window: {body[len(entries) * VISUALIZATION_WINDOW:]!r}")
    return entries


def parse_status(response: str) -> Optional[NozzleStatusVector]:
    """
    Parse &S reply

    First body char is a tag, the next (up to) 32 chars are the status codes
    of nozzle positions 1..32. The nozzle code of a position is its number
    as 2 uppercase hex digits.
    """
    if is_no_data(response):
        return None

    body = _strip(response, 0)
    if not body:
        raise MalformedResponse(f"Status response {response!r} has no tag character")

    tag, codes = body[0], body[1:1 + STATUS_POSITIONS]
    nozzles = [
        NozzleStatusEntry(
            position=position,
            nozzle=f"{position:02X}",
            status_code=code,
            status=status_code_to_enum(code),
        )
        for position, code in enumerate(codes, start=1)
    ]
    return NozzleStatusVector(tag=tag, nozzles=nozzles, raw=response)


def parse_total(response: str, verify: bool = False) -> Optional[TotalReading]:
    """Parse &T reply: mode(1) nozzle(2) value(rest)"""
    if is_no_data(response):
        return None
    _check(response, verify)

    body = _strip(response, CHECKSUM_LENGTH)
    if len(body) < TOTAL_HEADER_LENGTH:
        raise MalformedResponse(f"Total response {response!r} is shorter than its mode/nozzle header")

    return TotalReading(mode=body[0], nozzle=body[1:3], value=body[3:], raw=response)


def parse_identifier(response: str, verify: bool = False) -> Optional[IdentifierRecord]:
    """Parse ?A / ?LF reply; the identifier is the leading 16 chars when present"""
    if is_no_data(response):
        return None
    _check(response, verify)

    body = _strip(response, CHECKSUM_LENGTH)
    width = CompanytecProtocol.IDENTIFIER_WIDTH
    identifier = body[:width] if len(body) >= width else None
    return IdentifierRecord(identifier=identifier, body=body, raw=response)


def parse_calendar(response: str, checksummed: bool = False, verify: bool = False) -> Optional[CalendarReading]:
    """Parse &R (literal, no checksum) or &KR1 (checksummed) reply"""
    if is_no_data(response):
        return None
    if checksummed:
        _check(response, verify)

    body = _strip(response, CHECKSUM_LENGTH if checksummed else 0)
    return CalendarReading(body=body, raw=response)


PARSERS = {
    "supply": parse_supply,
    "supply_identified": parse_supply_identified,
    "visualization": parse_visualization,
    "status": parse_status,
    "total": parse_total,
    "identifier": parse_identifier,
    "calendar": parse_calendar,
}


def decode_frame(kind: str, frame: str):
    """Decode a captured frame of the given kind into plain data"""
    if kind not in PARSERS:
        raise ValueError(f"Unknown frame kind {kind!r}, expected one of {', '.join(PARSERS)}")

    result = PARSERS[kind](frame)
    if result is None:
        return None
    if isinstance(result, list):
        return [entry.model_dump() for entry in result]
    return result.model_dump(mode="json")


def main(argv: List[str] = None) -> int:
    """Main function"""
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) != 2:
        print(f"Usage: decode_frame.py <{'|'.join(PARSERS)}> <frame>")
        return 2

    kind, frame = argv
    print("Companytec Frame Decoder")
    print("=" * 50)
    print(f"Raw frame: {frame}")
    print(f"Length: {len(frame)} chars")
    if len(frame) > 3 and frame != CompanytecProtocol.NO_DATA:
        valid = CompanytecProtocol.verify_checksum(frame)
        print(f"Checksum: {frame[-3:-1]} ({'valid' if valid else 'not valid / not checksummed'})")
    print()

    try:
        decoded = decode_frame(kind, frame)
    except (CompanytecError, ValueError) as e:
        print(f"Error: {e}")
        return 1

    print(json.dumps(decoded, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
