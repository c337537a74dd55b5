import string
from dataclasses import dataclass
from typing import Union

from exceptions import InvalidParameter, MalformedFrame


@dataclass(frozen=True)
class ChecksummedCommand:
    """Command framed as '(' + header + parameters + checksum + ')'"""

    header: str
    parameters: str = ""

    def encode(self) -> str:
        return CompanytecProtocol.build_frame(self.header, self.parameters)


@dataclass(frozen=True)
class LiteralCommand:
    """Command the firmware accepts without a checksum, sent verbatim"""

    frame: str

    def encode(self) -> str:
        return self.frame


Command = Union[ChecksummedCommand, LiteralCommand]


class CompanytecProtocol:
    """
    Companytec DT435 protocol implementation
    Frame format: '(' HEADER PARAMETERS CHECKSUM ')', ASCII over TCP
    """

    # Frame delimiters
    FRAME_START = "("
    FRAME_END = ")"
    NO_DATA = "(0)"            # Sentinel reply: nothing to report

    # Header codes
    HDR_SUPPLY = "&A"                  # Read supply (basic / identified)
    HDR_SUPPLY_DUAL_ID = "&@"          # Supply with dual identification
    HDR_SUPPLY_PAF1 = "&A2"            # Supply PAF1 (123 chars)
    HDR_SUPPLY_PAF2 = "&A3"            # Supply PAF2 (127 chars)
    HDR_SUPPLY_POINTER = "&L"          # Supply at memory pointer
    HDR_MEMORY_POINTERS = "&T99"       # Read/write memory pointers
    HDR_VISUALIZATION_ID = "?V"        # Visualization identified
    HDR_IDENTIFIER = "?A"              # Read unregistered identifier
    HDR_IDENTIFIER_MEMORY = "?LF"      # Identifier at memory position
    HDR_IDENTIFIER_INCREMENT = "?I"    # Identifier increment
    HDR_IDENTIFIER_RECORD = "?F"       # Record / delete identifiers, identified preset
    HDR_TOTAL = "&T"                   # Totals and price reading
    HDR_PRICE_CHANGE = "&U"            # Price change
    HDR_PRESET = "&P"                  # Value preset
    HDR_OPERATING_MODE = "&M"          # Operating mode
    HDR_CLOCK_EXTENDED = "&KR1"        # Extended clock reading
    HDR_CALENDAR_EXTENDED = "&KW1"     # Extended calendar adjustment
    HDR_BLACKLIST = "&M99"             # Blacklist management

    # Literal frames (firmware accepts these without checksum)
    FRAME_INCREMENT = "(&I)"
    FRAME_VISUALIZATION = "(&V)"
    FRAME_STATUS = "(&S)"
    FRAME_CALENDAR = "(&R)"
    HDR_CALENDAR_SET = "&H"            # Sent as literal '(&Hddhhmm)'

    # Parameter widths
    NOZZLE_WIDTH = 2
    PRESET_WIDTH = 6
    PRICE_WIDTH = 4
    PRICE_EXTENDED_WIDTH = 6
    IDENTIFIER_POSITION_WIDTH = 6
    POINTER_POSITION_WIDTH = 4
    IDENTIFIER_WIDTH = 16

    # Allowed mode characters
    TOTAL_MODES = ("$", "L", "l", "N", "U", "P", "u")
    PRICE_MODES = ("U", "u")
    OPERATING_MODES = ("L", "B", "S", "A", "P", "H", "I")
    POINTER_MODES = ("C", "R")
    BLACKLIST_MODES = ("c", "b", "l")
    PRICE_LEVELS = ("0", "1", "2")
    IDENTIFIER_TYPES = ("0", "1", "2")     # attendant, customer, odometer
    AUTHORIZATIONS = ("S", "N")
    PRESET_TYPES = ("$", "V")              # money, volume

    # ---------------------------------------------------------------- codec

    @staticmethod
    def checksum(body: str) -> str:
        """Low byte of the sum of character codes after the opening '(' as 2 hex chars"""
        total = sum(ord(char) for char in body[1:])
        return f"{total & 0xFF:02X}"

    @staticmethod
    def build_frame(header: str, parameters: str = "") -> str:
        """Build checksummed frame: '(' header parameters checksum ')'"""
        body = f"{CompanytecProtocol.FRAME_START}{header}{parameters}"
        return f"{body}{CompanytecProtocol.checksum(body)}{CompanytecProtocol.FRAME_END}"

    @staticmethod
    def strip_frame(response: str, trailing_count: int, leading_count: int = 1) -> str:
        """Remove leading chars and trailing_count chars plus the closing ')'"""
        if len(response) < leading_count + trailing_count + 1:
            raise MalformedFrame(
                f"Frame {response!r} too short to strip {leading_count} leading "
                f"and {trailing_count} trailing characters"
            )
        return response[leading_count:len(response) - 1 - trailing_count]

    @staticmethod
    def verify_checksum(response: str) -> bool:
        """Check the 2 hex chars before ')' against the checksum of what precedes them"""
        if (
            len(response) < 4
            or not response.startswith(CompanytecProtocol.FRAME_START)
            or not response.endswith(CompanytecProtocol.FRAME_END)
        ):
            return False
        expected = CompanytecProtocol.checksum(response[:-3])
        return response[-3:-1].upper() == expected

    # ----------------------------------------------------------- validation

    @staticmethod
    def _validate_text(value: str, name: str) -> str:
        """Printable ASCII without frame delimiters"""
        if not isinstance(value, str):
            raise InvalidParameter(f"{name} must be a string, got {type(value).__name__}")
        for char in value:
            if not (0x20 <= ord(char) <= 0x7E) or char in "()":
                raise InvalidParameter(f"{name} contains illegal character {char!r}")
        return value

    @staticmethod
    def _validate_hex(value: str, width: int, name: str) -> str:
        """Exactly `width` hex characters, case kept as given"""
        if not isinstance(value, str) or len(value) != width:
            raise InvalidParameter(f"{name} must be exactly {width} hex characters, got {value!r}")
        if any(char not in string.hexdigits for char in value):
            raise InvalidParameter(f"{name} must be hexadecimal, got {value!r}")
        return value

    @staticmethod
    def _validate_nozzle(nozzle: str) -> str:
        return CompanytecProtocol._validate_hex(nozzle, CompanytecProtocol.NOZZLE_WIDTH, "Nozzle code")

    @staticmethod
    def _pad_number(value: Union[int, str], width: int, name: str) -> str:
        """Zero-left-pad a non-negative number to a fixed width, never truncating"""
        if isinstance(value, bool):
            raise InvalidParameter(f"{name} must be numeric, got {value!r}")
        if isinstance(value, int):
            if value < 0:
                raise InvalidParameter(f"{name} must not be negative, got {value}")
            digits = str(value)
        elif isinstance(value, str) and value and all(char in string.digits for char in value):
            digits = value
        else:
            raise InvalidParameter(f"{name} must be numeric, got {value!r}")

        if len(digits) > width:
            raise InvalidParameter(f"{name} {value!r} does not fit in {width} digits")
        return digits.zfill(width)

    @staticmethod
    def _validate_choice(value: str, choices, name: str) -> str:
        if value not in choices:
            raise InvalidParameter(f"Invalid {name} {value!r}, expected one of {', '.join(choices)}")
        return value

    # ------------------------------------------------------- supply commands

    @staticmethod
    def build_read_supply() -> Command:
        """Supply reading (52 characters): '&A'"""
        return ChecksummedCommand(CompanytecProtocol.HDR_SUPPLY)

    @staticmethod
    def build_read_supply_identified() -> Command:
        """Identified supply reading (75 characters): same '&A' header"""
        return ChecksummedCommand(CompanytecProtocol.HDR_SUPPLY)

    @staticmethod
    def build_read_supply_dual_identification() -> Command:
        """Supply with dual identification (87 characters): '&@'"""
        return ChecksummedCommand(CompanytecProtocol.HDR_SUPPLY_DUAL_ID)

    @staticmethod
    def build_read_supply_paf1() -> Command:
        return ChecksummedCommand(CompanytecProtocol.HDR_SUPPLY_PAF1)

    @staticmethod
    def build_read_supply_paf2() -> Command:
        return ChecksummedCommand(CompanytecProtocol.HDR_SUPPLY_PAF2)

    @staticmethod
    def build_read_supply_pointer(mode: str, position: Union[int, str]) -> Command:
        """Pointer reading: '&L' mode(C/R) position(4)"""
        mode = CompanytecProtocol._validate_choice(mode, CompanytecProtocol.POINTER_MODES, "pointer mode")
        position = CompanytecProtocol._pad_number(
            position, CompanytecProtocol.POINTER_POSITION_WIDTH, "Memory position"
        )
        return ChecksummedCommand(CompanytecProtocol.HDR_SUPPLY_POINTER, f"{mode}{position}")

    @staticmethod
    def build_read_memory_pointers() -> Command:
        """Writing and reading memory pointers: '&T99' 'P'"""
        return ChecksummedCommand(CompanytecProtocol.HDR_MEMORY_POINTERS, "P")

    @staticmethod
    def build_increment() -> Command:
        """Move reading pointer to next supply: literal '(&I)'"""
        return LiteralCommand(CompanytecProtocol.FRAME_INCREMENT)

    # ------------------------------------------------ visualization commands

    @staticmethod
    def build_visualization() -> Command:
        """Ongoing dispensing: literal '(&V)'"""
        return LiteralCommand(CompanytecProtocol.FRAME_VISUALIZATION)

    @staticmethod
    def build_visualization_identified() -> Command:
        return ChecksummedCommand(CompanytecProtocol.HDR_VISUALIZATION_ID)

    # --------------------------------------------------- identifier commands

    @staticmethod
    def build_read_identifier() -> Command:
        return ChecksummedCommand(CompanytecProtocol.HDR_IDENTIFIER)

    @staticmethod
    def build_read_identifier_from_memory(position: Union[int, str]) -> Command:
        """Identifier register at memory position: '?LF' position(6)"""
        position = CompanytecProtocol._pad_number(
            position, CompanytecProtocol.IDENTIFIER_POSITION_WIDTH, "Memory position"
        )
        return ChecksummedCommand(CompanytecProtocol.HDR_IDENTIFIER_MEMORY, position)

    @staticmethod
    def build_increment_identifier() -> Command:
        return ChecksummedCommand(CompanytecProtocol.HDR_IDENTIFIER_INCREMENT)

    @staticmethod
    def build_record_identifier(
        control: str,
        parameter: str,
        identifier: str,
        shift_a_start: Union[int, str],
        shift_a_end: Union[int, str],
        shift_b_start: Union[int, str],
        shift_b_end: Union[int, str],
    ) -> Command:
        """Recording of identifiers: '?F' control(2) parameter(1) identifier(16) 4 x hhmm"""
        control = CompanytecProtocol._validate_hex(control, 2, "Control code")
        parameter = CompanytecProtocol._validate_text(parameter, "Recording parameter")
        if len(parameter) != 1:
            raise InvalidParameter(f"Recording parameter must be 1 character, got {parameter!r}")
        identifier = CompanytecProtocol._validate_hex(
            identifier, CompanytecProtocol.IDENTIFIER_WIDTH, "Identifier"
        )
        shifts = "".join(
            CompanytecProtocol._pad_number(value, 4, name)
            for value, name in (
                (shift_a_start, "Shift A start"),
                (shift_a_end, "Shift A end"),
                (shift_b_start, "Shift B start"),
                (shift_b_end, "Shift B end"),
            )
        )
        return ChecksummedCommand(
            CompanytecProtocol.HDR_IDENTIFIER_RECORD, f"{control}{parameter}{identifier}{shifts}"
        )

    @staticmethod
    def build_delete_identifier(control: str, identifier: str, position: Union[int, str] = 0) -> Command:
        """Identifier deletion: '?F' control 'A' identifier '00' position(6) '00000000'"""
        control = CompanytecProtocol._validate_hex(control, 2, "Control code")
        identifier = CompanytecProtocol._validate_hex(
            identifier, CompanytecProtocol.IDENTIFIER_WIDTH, "Identifier"
        )
        position = CompanytecProtocol._pad_number(
            position, CompanytecProtocol.IDENTIFIER_POSITION_WIDTH, "Record position"
        )
        return ChecksummedCommand(
            CompanytecProtocol.HDR_IDENTIFIER_RECORD, f"{control}A{identifier}00{position}00000000"
        )

    @staticmethod
    def build_clear_identifier_memory() -> Command:
        return ChecksummedCommand(
            CompanytecProtocol.HDR_IDENTIFIER_RECORD, "00L0000000000000000000000100000000"
        )

    # ------------------------------------------------------- status command

    @staticmethod
    def build_status() -> Command:
        """Status of each nozzle: literal '(&S)'"""
        return LiteralCommand(CompanytecProtocol.FRAME_STATUS)

    # --------------------------------------------- pump management commands

    @staticmethod
    def build_read_total(nozzle: str, mode: str) -> Command:
        """Reading totals: '&T' nozzle(2) mode(1)"""
        nozzle = CompanytecProtocol._validate_nozzle(nozzle)
        mode = CompanytecProtocol._validate_choice(mode, CompanytecProtocol.TOTAL_MODES, "total mode")
        return ChecksummedCommand(CompanytecProtocol.HDR_TOTAL, f"{nozzle}{mode}")

    @staticmethod
    def build_read_price(nozzle: str, mode: str = "U") -> Command:
        """Price reading: '&T' nozzle(2) U (2 levels) or u (3 levels)"""
        nozzle = CompanytecProtocol._validate_nozzle(nozzle)
        mode = CompanytecProtocol._validate_choice(mode, CompanytecProtocol.PRICE_MODES, "price mode")
        return ChecksummedCommand(CompanytecProtocol.HDR_TOTAL, f"{nozzle}{mode}")

    @staticmethod
    def build_change_price(nozzle: str, level: str, price: Union[int, str]) -> Command:
        """Price change: '&U' nozzle(2) level(1) '0' price(4)"""
        nozzle = CompanytecProtocol._validate_nozzle(nozzle)
        level = CompanytecProtocol._validate_choice(str(level), CompanytecProtocol.PRICE_LEVELS, "price level")
        price = CompanytecProtocol._pad_number(price, CompanytecProtocol.PRICE_WIDTH, "Price")
        return ChecksummedCommand(CompanytecProtocol.HDR_PRICE_CHANGE, f"{nozzle}{level}0{price}")

    @staticmethod
    def build_change_price_extended(nozzle: str, level: str, price: Union[int, str]) -> Command:
        """Extended price change: '&U' nozzle(2) level(1) '0' price(6)"""
        nozzle = CompanytecProtocol._validate_nozzle(nozzle)
        level = CompanytecProtocol._validate_choice(str(level), CompanytecProtocol.PRICE_LEVELS, "price level")
        price = CompanytecProtocol._pad_number(price, CompanytecProtocol.PRICE_EXTENDED_WIDTH, "Price")
        return ChecksummedCommand(CompanytecProtocol.HDR_PRICE_CHANGE, f"{nozzle}{level}0{price}")

    @staticmethod
    def build_set_preset(nozzle: str, value: Union[int, str]) -> Command:
        """Value preset: '&P' nozzle(2) value(6)"""
        nozzle = CompanytecProtocol._validate_nozzle(nozzle)
        value = CompanytecProtocol._pad_number(value, CompanytecProtocol.PRESET_WIDTH, "Preset value")
        return ChecksummedCommand(CompanytecProtocol.HDR_PRESET, f"{nozzle}{value}")

    @staticmethod
    def build_set_preset_identified(
        nozzle: str,
        identifier: str,
        identifier_type: str,
        authorization: str,
        preset_value: Union[int, str],
        timeout: Union[int, str],
        preset_type: str,
    ) -> Command:
        """Identified preset: '?F' nozzle 'P' identifier type auth value(6) timeout(2) preset_type '00000'"""
        nozzle = CompanytecProtocol._validate_nozzle(nozzle)
        identifier = CompanytecProtocol._validate_hex(
            identifier, CompanytecProtocol.IDENTIFIER_WIDTH, "Identifier"
        )
        identifier_type = CompanytecProtocol._validate_choice(
            str(identifier_type), CompanytecProtocol.IDENTIFIER_TYPES, "identifier type"
        )
        authorization = CompanytecProtocol._validate_choice(
            authorization, CompanytecProtocol.AUTHORIZATIONS, "authorization"
        )
        value = CompanytecProtocol._pad_number(preset_value, CompanytecProtocol.PRESET_WIDTH, "Preset value")
        timeout = CompanytecProtocol._pad_number(timeout, 2, "Nozzle removal timeout")
        preset_type = CompanytecProtocol._validate_choice(
            preset_type, CompanytecProtocol.PRESET_TYPES, "preset type"
        )
        return ChecksummedCommand(
            CompanytecProtocol.HDR_IDENTIFIER_RECORD,
            f"{nozzle}P{identifier}{identifier_type}{authorization}{value}{timeout}{preset_type}00000",
        )

    @staticmethod
    def build_set_operating_mode(nozzle: str, mode: str) -> Command:
        """Operating mode: '&M' nozzle(2) mode(1)"""
        nozzle = CompanytecProtocol._validate_nozzle(nozzle)
        mode = CompanytecProtocol._validate_choice(mode, CompanytecProtocol.OPERATING_MODES, "operating mode")
        return ChecksummedCommand(CompanytecProtocol.HDR_OPERATING_MODE, f"{nozzle}{mode}")

    # -------------------------------------------------------- clock commands

    @staticmethod
    def build_read_calendar() -> Command:
        """Calendar reading: literal '(&R)'"""
        return LiteralCommand(CompanytecProtocol.FRAME_CALENDAR)

    @staticmethod
    def build_read_clock_extended() -> Command:
        return ChecksummedCommand(CompanytecProtocol.HDR_CLOCK_EXTENDED)

    @staticmethod
    def build_set_calendar(day: Union[int, str], hour: Union[int, str], minute: Union[int, str]) -> Command:
        """Calendar adjustment: literal '(&H' day hour minute ')', no checksum"""
        fields = "".join(
            CompanytecProtocol._pad_number(value, 2, name)
            for value, name in ((day, "Day"), (hour, "Hour"), (minute, "Minute"))
        )
        return LiteralCommand(
            f"{CompanytecProtocol.FRAME_START}{CompanytecProtocol.HDR_CALENDAR_SET}{fields}{CompanytecProtocol.FRAME_END}"
        )

    @staticmethod
    def build_set_calendar_extended(
        year: Union[int, str],
        month: Union[int, str],
        day: Union[int, str],
        weekday: Union[int, str],
        hour: Union[int, str],
        minute: Union[int, str],
        second: Union[int, str],
    ) -> Command:
        """Extended calendar adjustment: '&KW1' yy mm dd ww hh mm ss"""
        fields = "".join(
            CompanytecProtocol._pad_number(value, 2, name)
            for value, name in (
                (year, "Year"),
                (month, "Month"),
                (day, "Day"),
                (weekday, "Weekday"),
                (hour, "Hour"),
                (minute, "Minute"),
                (second, "Second"),
            )
        )
        return ChecksummedCommand(CompanytecProtocol.HDR_CALENDAR_EXTENDED, fields)

    # ---------------------------------------------------- blacklist command

    @staticmethod
    def build_manage_blacklist(mode: str, identifier: str = "") -> Command:
        """Blacklist management: '&M99' mode(c=clear, b=add, l=remove) identifier(16)"""
        mode = CompanytecProtocol._validate_choice(mode, CompanytecProtocol.BLACKLIST_MODES, "blacklist mode")
        if mode == "c":
            if identifier:
                raise InvalidParameter("Blacklist clear takes no identifier")
        else:
            identifier = CompanytecProtocol._validate_hex(
                identifier, CompanytecProtocol.IDENTIFIER_WIDTH, "Identifier"
            )
        return ChecksummedCommand(CompanytecProtocol.HDR_BLACKLIST, f"{mode}{identifier}")

    # -------------------------------------------------------------- custom

    @staticmethod
    def build_custom(header: str, parameters: str = "") -> Command:
        """Arbitrary checksummed command for headers not covered above"""
        header = CompanytecProtocol._validate_text(header, "Header")
        if not 1 <= len(header) <= 4:
            raise InvalidParameter(f"Header must be 1-4 characters, got {header!r}")
        parameters = CompanytecProtocol._validate_text(parameters, "Parameters")
        return ChecksummedCommand(header, parameters)
