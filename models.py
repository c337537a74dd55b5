from typing import Dict, List, Optional, Any
from enum import Enum
from pydantic import BaseModel, Field
from datetime import datetime


class NozzleStatus(str, Enum):
    """
    Protocol Status Codes (one character per nozzle position in the &S reply):
    - L: Available
    - B: Blocked
    - C: Finished (supply completed, waiting to be read)
    - A: Refueling
    - E: Waiting (nozzle lifted, waiting for authorization)
    - F: Not present (no nozzle configured at this position)
    - P: Ready
    Any other character maps to UNKNOWN.
    """
    AVAILABLE = "Available"
    BLOCKED = "Blocked"
    FINISHED = "Finished"
    REFUELING = "Refueling"
    WAITING = "Waiting"
    NOT_PRESENT = "Not present"
    READY = "Ready"
    UNKNOWN = "Unknown"


class ConnectionState(str, Enum):
    """TCP session lifecycle. There is no reconnecting state."""
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"


class SupplyRecord(BaseModel):
    """
    Completed supply read with &A (52 character reply)

    Example:
    {
        "total_to_pay": "001000",
        "volume": "000350",
        "price": "2859",
        "nozzle": "08",
        "record": "0042",
        "final_total": "0001234567"
    }
    """
    total_to_pay: Optional[str] = Field(None, description="Amount to pay (6 digits)")
    volume: Optional[str] = Field(None, description="Dispensed volume (6 digits)")
    price: Optional[str] = Field(None, description="Unit price (4 digits)")
    comma_code: Optional[str] = Field(None, description="Decimal point code")
    supply_time: Optional[str] = Field(None, description="Supply duration (seconds)")
    nozzle: Optional[str] = Field(None, description="Nozzle code (2 hex chars)")
    day: Optional[str] = Field(None, description="Day of month")
    hour: Optional[str] = Field(None, description="Hour")
    minute: Optional[str] = Field(None, description="Minute")
    month: Optional[str] = Field(None, description="Month (extended reply only)")
    record: Optional[str] = Field(None, description="Memory record number (extended reply only)")
    final_total: Optional[str] = Field(None, description="Nozzle totalizer after supply (extended reply only)")
    status: Optional[str] = Field(None, description="Record status code (extended reply only)")
    raw: str = Field(..., description="Raw response frame")


class SupplyIdentified(BaseModel):
    """Identified supply (&A reply with identifier block, at least 70 body chars)"""
    total: Optional[str] = Field(None, description="Amount to pay")
    volume: Optional[str] = Field(None, description="Dispensed volume")
    price: Optional[str] = Field(None, description="Unit price")
    nozzle: Optional[str] = Field(None, description="Nozzle code")
    identifier: Optional[str] = Field(None, description="Identifier code (16 hex chars)")
    raw: str = Field(..., description="Raw response frame")


class VisualizationEntry(BaseModel):
    """Ongoing dispensing reading for one nozzle"""
    nozzle: str = Field(..., description="Nozzle code (2 hex chars)")
    value: str = Field(..., description="Current value/volume (6 digits)")


class NozzleStatusEntry(BaseModel):
    """Status of one nozzle position"""
    position: int = Field(..., description="Nozzle position (1-32)")
    nozzle: str = Field(..., description="Nozzle code derived from position (2 hex chars)")
    status_code: str = Field(..., description="Raw status character")
    status: NozzleStatus = Field(..., description="Decoded status")


class NozzleStatusVector(BaseModel):
    """Decoded &S reply"""
    tag: str = Field(..., description="Header tag character")
    nozzles: List[NozzleStatusEntry] = Field(default_factory=list, description="All decoded positions")
    raw: str = Field(..., description="Raw response frame")

    def present(self) -> List[NozzleStatusEntry]:
        """Positions that have a nozzle configured"""
        return [n for n in self.nozzles if n.status != NozzleStatus.NOT_PRESENT]

    def active(self) -> List[NozzleStatusEntry]:
        """Positions with something going on (not free, blocked or absent)"""
        idle = (NozzleStatus.NOT_PRESENT, NozzleStatus.AVAILABLE, NozzleStatus.BLOCKED)
        return [n for n in self.nozzles if n.status not in idle]

    def get(self, position: int) -> Optional[NozzleStatusEntry]:
        for entry in self.nozzles:
            if entry.position == position:
                return entry
        return None


class TotalReading(BaseModel):
    """Totalizer or price reading (&T reply)"""
    mode: str = Field(..., description="Reading mode ($, L, l, N, U, P, u)")
    nozzle: str = Field(..., description="Nozzle code")
    value: str = Field(..., description="Value string, interpreted per mode")
    raw: str = Field(..., description="Raw response frame")


class IdentifierRecord(BaseModel):
    """Identifier read with ?A or ?LF"""
    identifier: Optional[str] = Field(None, description="Identifier code (16 hex chars)")
    body: str = Field(..., description="Frame body without delimiters/checksum")
    raw: str = Field(..., description="Raw response frame")


class CalendarReading(BaseModel):
    """Device clock read with &R or &KR1"""
    body: str = Field(..., description="Frame body without delimiters/checksum")
    raw: str = Field(..., description="Raw response frame")


class PresetRequest(BaseModel):
    """Preset authorization request"""
    nozzle: str = Field(..., description="Nozzle code (2 hex chars)")
    value: str = Field(..., description="Preset value (up to 6 digits)")


class ModeRequest(BaseModel):
    """Operating mode request"""
    nozzle: str = Field(..., description="Nozzle code (2 hex chars)")
    mode: str = Field(..., description="L=release, B=block, S=stop, A=authorize once, P=pause, H/I=sensor")


class PriceRequest(BaseModel):
    """Price change request"""
    nozzle: str = Field(..., description="Nozzle code (2 hex chars)")
    level: str = Field(..., description="Price level (0=cash, 1=credit, 2=debit)")
    price: str = Field(..., description="Unit price (up to 4 digits)")


class CommandResponse(BaseModel):
    """Generic command response"""
    success: bool = Field(..., description="Command execution success")
    message: str = Field(..., description="Response message")
    data: Optional[Dict[str, Any]] = Field(None, description="Response data")
    timestamp: datetime = Field(default_factory=datetime.now, description="Response timestamp")


class ErrorResponse(BaseModel):
    """Error response model"""
    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Error details")
    timestamp: datetime = Field(default_factory=datetime.now, description="Error timestamp")
