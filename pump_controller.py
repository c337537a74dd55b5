import socket
import threading
import time
import logging
from collections import deque
from typing import Callable, List, Optional, Union

from companytec_protocol import Command, CompanytecProtocol
from config import Settings, settings
from exceptions import (
    ConnectError,
    InvalidParameter,
    NotConnected,
    ResponseTimeout,
    TransportError,
)
from models import (
    CalendarReading,
    ConnectionState,
    IdentifierRecord,
    NozzleStatusVector,
    SupplyIdentified,
    SupplyRecord,
    TotalReading,
    VisualizationEntry,
)
import decode_frame


class FifoLock:
    """Mutex that hands ownership to waiters in arrival order"""

    def __init__(self):
        self._condition = threading.Condition()
        self._waiters = deque()
        self._owner_ticket = None
        self._next_ticket = 0

    def acquire(self):
        with self._condition:
            ticket = self._next_ticket
            self._next_ticket += 1
            self._waiters.append(ticket)
            try:
                while self._owner_ticket is not None or self._waiters[0] != ticket:
                    self._condition.wait()
            except BaseException:
                # Give up our place so later waiters are not stuck behind it
                self._waiters.remove(ticket)
                self._condition.notify_all()
                raise
            self._waiters.popleft()
            self._owner_ticket = ticket

    def release(self):
        with self._condition:
            if self._owner_ticket is None:
                raise RuntimeError("release of unlocked FifoLock")
            self._owner_ticket = None
            self._condition.notify_all()

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()


class TCPConnection:
    """Manages the TCP session with one Companytec device"""

    RECV_BUFFER_SIZE = 256

    def __init__(
        self,
        host: str,
        port: int,
        timeout: float = 5.0,
        socket_factory: Callable = socket.create_connection,
    ):
        self.host = host
        self.port = port
        self.timeout = timeout
        self._socket_factory = socket_factory
        self._socket: Optional[socket.socket] = None
        self._state = ConnectionState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._send_lock = FifoLock()
        self.logger = logging.getLogger("CompanytecConnection")

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    def connect(self, host: str = None, port: int = None, timeout: float = None) -> bool:
        """
        Open the TCP session, no-op when already connected

        host, port and timeout override the values given at construction.
        Asking for a different target while connected raises ConnectError.
        """
        with self._state_lock:
            target = (host or self.host, port or self.port)
            if self._state == ConnectionState.CONNECTED:
                if target != (self.host, self.port):
                    raise ConnectError(
                        f"Already connected to {self.address}, disconnect before connecting to "
                        f"{target[0]}:{target[1]}"
                    )
                self.logger.debug(f"[{self.address}] Already connected")
                return True

            if timeout is not None and timeout <= 0:
                raise InvalidParameter(f"Timeout must be positive, got {timeout}")
            self.host, self.port = target
            if timeout is not None:
                self.timeout = timeout

            self._state = ConnectionState.CONNECTING
            self.logger.info(f"[{self.address}] Connecting (timeout={self.timeout}s)...")
            try:
                sock = self._socket_factory((self.host, self.port), timeout=self.timeout)
            except socket.timeout as e:
                self._state = ConnectionState.DISCONNECTED
                self.logger.error(f"[{self.address}] Connection timed out after {self.timeout}s")
                raise ConnectError(f"Timed out connecting to {self.address}") from e
            except OSError as e:
                self._state = ConnectionState.DISCONNECTED
                self.logger.error(f"[{self.address}] Failed to connect: {str(e)}")
                raise ConnectError(f"Unable to connect to {self.address}: {e}") from e

            self._socket = sock
            self._state = ConnectionState.CONNECTED
            self.logger.info(f"[{self.address}] Connected")
            return True

    def disconnect(self):
        """Close the TCP session; safe to call repeatedly"""
        with self._state_lock:
            sock, self._socket = self._socket, None
            was_connected = self._state == ConnectionState.CONNECTED
            self._state = ConnectionState.DISCONNECTED

        if sock is not None:
            try:
                sock.close()
            except OSError as e:
                self.logger.warning(f"[{self.address}] Error closing socket: {str(e)}")
        if was_connected:
            self.logger.info(f"[{self.address}] Disconnected")

    def send(self, frame: str) -> str:
        """
        Write one frame and block until the reply's closing ')' arrives

        The write and the read share one deadline of `timeout` seconds.
        Any failure tears the session down before raising.
        """
        try:
            data = frame.encode("ascii")
        except UnicodeEncodeError as e:
            raise InvalidParameter(f"Frame {frame!r} is not ASCII") from e

        if not self.is_connected:
            raise NotConnected(f"Not connected to {self.address}")

        with self._send_lock:
            sock = self._socket
            if not self.is_connected or sock is None:
                raise NotConnected(f"Not connected to {self.address}")

            deadline = time.monotonic() + self.timeout
            self.logger.info(f"[{self.address}] TX: {frame}")
            self.logger.debug(f"[{self.address}] Writing {len(data)} bytes")

            try:
                sock.settimeout(self.timeout)
                sock.sendall(data)
            except socket.timeout as e:
                self._teardown("write timed out")
                raise ResponseTimeout(f"Timed out writing to {self.address}") from e
            except OSError as e:
                self._teardown(f"write error: {e}")
                raise TransportError(f"Write to {self.address} failed: {e}") from e

            response = self._read_response(sock, deadline)
            self.logger.info(f"[{self.address}] RX: {response}")
            return response

    def _read_response(self, sock: socket.socket, deadline: float) -> str:
        buffer = bytearray()
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._teardown("response deadline elapsed")
                raise ResponseTimeout(f"No response from {self.address} within {self.timeout}s")

            try:
                sock.settimeout(remaining)
                chunk = sock.recv(self.RECV_BUFFER_SIZE)
            except socket.timeout as e:
                self._teardown("response deadline elapsed")
                raise ResponseTimeout(f"No response from {self.address} within {self.timeout}s") from e
            except OSError as e:
                self._teardown(f"read error: {e}")
                raise TransportError(f"Read from {self.address} failed: {e}") from e

            if not chunk:
                self._teardown("connection closed by device")
                raise TransportError(f"Connection closed by {self.address}")

            buffer.extend(chunk)
            self.logger.debug(f"[{self.address}] Read {len(chunk)} bytes ({len(buffer)} buffered)")

            end = buffer.find(CompanytecProtocol.FRAME_END.encode("ascii"))
            if end >= 0:
                extra = buffer[end + 1:]
                if extra:
                    self.logger.warning(
                        f"[{self.address}] Discarding {len(extra)} bytes after frame end: {bytes(extra)!r}"
                    )
                # Frame runs from the last '(' before the delimiter
                start = max(buffer.rfind(CompanytecProtocol.FRAME_START.encode("ascii"), 0, end), 0)
                if start:
                    self.logger.warning(
                        f"[{self.address}] Discarding {start} bytes before frame start: {bytes(buffer[:start])!r}"
                    )
                return bytes(buffer[start:end + 1]).decode("latin-1")

    def _teardown(self, reason: str):
        self.logger.error(f"[{self.address}] Dropping connection: {reason}")
        self.disconnect()


class PumpController:
    """Typed DT435 operations over a single TCPConnection"""

    def __init__(self, connection: TCPConnection, verify_checksums: bool = False):
        self.connection = connection
        self.verify_checksums = verify_checksums
        self.logger = logging.getLogger("PumpController")

    @classmethod
    def from_settings(cls, config: Settings = None) -> "PumpController":
        config = config or settings
        connection = TCPConnection(config.host, config.port, config.timeout)
        return cls(connection, verify_checksums=config.verify_checksums)

    def connect(self, host: str = None, port: int = None, timeout: float = None) -> bool:
        return self.connection.connect(host, port, timeout)

    def disconnect(self):
        self.connection.disconnect()

    @property
    def is_connected(self) -> bool:
        return self.connection.is_connected

    def execute(self, command: Command) -> str:
        """Encode a command, send it and return the raw reply"""
        frame = command.encode()
        self.logger.debug(f"Executing {type(command).__name__}: {frame}")
        return self.connection.send(frame)

    def send_raw(self, frame: str) -> str:
        """Send a pre-built frame as-is"""
        return self.connection.send(frame)

    # Supply

    def read_supply(self) -> Optional[SupplyRecord]:
        self.logger.info("Reading supply")
        response = self.execute(CompanytecProtocol.build_read_supply())
        record = decode_frame.parse_supply(response, verify=self.verify_checksums)
        if record is None:
            self.logger.info("No supply in memory")
        else:
            self.logger.info(
                f"Supply nozzle {record.nozzle}: total={record.total_to_pay} "
                f"volume={record.volume} price={record.price} record={record.record}"
            )
        return record

    def read_supply_identified(self) -> Optional[SupplyIdentified]:
        self.logger.info("Reading identified supply")
        response = self.execute(CompanytecProtocol.build_read_supply_identified())
        return decode_frame.parse_supply_identified(response, verify=self.verify_checksums)

    def read_supply_dual_identification(self) -> str:
        return self.execute(CompanytecProtocol.build_read_supply_dual_identification())

    def read_supply_paf1(self) -> str:
        return self.execute(CompanytecProtocol.build_read_supply_paf1())

    def read_supply_paf2(self) -> str:
        return self.execute(CompanytecProtocol.build_read_supply_paf2())

    def read_supply_pointer(self, mode: str, position: Union[int, str]) -> Optional[SupplyRecord]:
        """Read the supply stored at a memory pointer (C=current, R=read pointer)"""
        self.logger.info(f"Reading supply at pointer {mode}{position}")
        response = self.execute(CompanytecProtocol.build_read_supply_pointer(mode, position))
        return decode_frame.parse_supply(response, verify=self.verify_checksums)

    def read_memory_pointers(self) -> str:
        return self.execute(CompanytecProtocol.build_read_memory_pointers())

    def increment(self) -> str:
        """Advance the supply read pointer"""
        self.logger.info("Incrementing supply pointer")
        return self.execute(CompanytecProtocol.build_increment())

    # Visualization

    def get_visualization(self) -> Optional[List[VisualizationEntry]]:
        response = self.execute(CompanytecProtocol.build_visualization())
        entries = decode_frame.parse_visualization(response)
        if entries:
            self.logger.debug(f"Visualization: {', '.join(f'{e.nozzle}={e.value}' for e in entries)}")
        return entries

    def get_visualization_identified(self) -> str:
        return self.execute(CompanytecProtocol.build_visualization_identified())

    # Identifiers

    def read_identifier(self) -> Optional[IdentifierRecord]:
        response = self.execute(CompanytecProtocol.build_read_identifier())
        return decode_frame.parse_identifier(response, verify=self.verify_checksums)

    def read_identifier_from_memory(self, position: Union[int, str]) -> Optional[IdentifierRecord]:
        response = self.execute(CompanytecProtocol.build_read_identifier_from_memory(position))
        return decode_frame.parse_identifier(response, verify=self.verify_checksums)

    def increment_identifier(self) -> str:
        return self.execute(CompanytecProtocol.build_increment_identifier())

    def record_identifier(
        self,
        control: str,
        parameter: str,
        identifier: str,
        shift_a_start: Union[int, str],
        shift_a_end: Union[int, str],
        shift_b_start: Union[int, str],
        shift_b_end: Union[int, str],
    ) -> str:
        self.logger.info(f"Recording identifier {identifier} (control {control}, parameter {parameter})")
        return self.execute(
            CompanytecProtocol.build_record_identifier(
                control, parameter, identifier, shift_a_start, shift_a_end, shift_b_start, shift_b_end
            )
        )

    def delete_identifier(self, control: str, identifier: str, position: Union[int, str] = 0) -> str:
        self.logger.info(f"Deleting identifier {identifier}")
        return self.execute(CompanytecProtocol.build_delete_identifier(control, identifier, position))

    def clear_identifier_memory(self) -> str:
        self.logger.warning("Clearing identifier memory")
        return self.execute(CompanytecProtocol.build_clear_identifier_memory())

    # Status

    def get_status(self) -> Optional[NozzleStatusVector]:
        response = self.execute(CompanytecProtocol.build_status())
        vector = decode_frame.parse_status(response)
        if vector is not None:
            for entry in vector.present():
                self.logger.debug(f"Nozzle {entry.nozzle} (position {entry.position}): {entry.status.value}")
        return vector

    # Pump management

    def read_total(self, nozzle: str, mode: str) -> Optional[TotalReading]:
        self.logger.info(f"Reading total for nozzle {nozzle} (mode {mode})")
        response = self.execute(CompanytecProtocol.build_read_total(nozzle, mode))
        return decode_frame.parse_total(response, verify=self.verify_checksums)

    def read_price(self, nozzle: str, mode: str = "U") -> Optional[TotalReading]:
        self.logger.info(f"Reading price for nozzle {nozzle} (mode {mode})")
        response = self.execute(CompanytecProtocol.build_read_price(nozzle, mode))
        return decode_frame.parse_total(response, verify=self.verify_checksums)

    def change_price(self, nozzle: str, level: str, price: Union[int, str]) -> str:
        self.logger.info(f"Changing price of nozzle {nozzle} level {level} to {price}")
        return self.execute(CompanytecProtocol.build_change_price(nozzle, level, price))

    def change_price_extended(self, nozzle: str, level: str, price: Union[int, str]) -> str:
        self.logger.info(f"Changing price of nozzle {nozzle} level {level} to {price} (extended)")
        return self.execute(CompanytecProtocol.build_change_price_extended(nozzle, level, price))

    def set_preset(self, nozzle: str, value: Union[int, str]) -> str:
        self.logger.info(f"Presetting nozzle {nozzle} to {value}")
        return self.execute(CompanytecProtocol.build_set_preset(nozzle, value))

    def set_preset_identified(
        self,
        nozzle: str,
        identifier: str,
        identifier_type: str,
        authorization: str,
        preset_value: Union[int, str],
        timeout: Union[int, str],
        preset_type: str,
    ) -> str:
        self.logger.info(f"Identified preset on nozzle {nozzle} for {identifier}: {preset_value}{preset_type}")
        return self.execute(
            CompanytecProtocol.build_set_preset_identified(
                nozzle, identifier, identifier_type, authorization, preset_value, timeout, preset_type
            )
        )

    def set_operating_mode(self, nozzle: str, mode: str) -> str:
        self.logger.info(f"Setting nozzle {nozzle} operating mode to {mode}")
        return self.execute(CompanytecProtocol.build_set_operating_mode(nozzle, mode))

    # Clock

    def read_calendar(self) -> Optional[CalendarReading]:
        response = self.execute(CompanytecProtocol.build_read_calendar())
        return decode_frame.parse_calendar(response)

    def read_clock_extended(self) -> Optional[CalendarReading]:
        response = self.execute(CompanytecProtocol.build_read_clock_extended())
        return decode_frame.parse_calendar(response, checksummed=True, verify=self.verify_checksums)

    def set_calendar(self, day: Union[int, str], hour: Union[int, str], minute: Union[int, str]) -> str:
        self.logger.info(f"Setting calendar to day {day} {hour}:{minute}")
        return self.execute(CompanytecProtocol.build_set_calendar(day, hour, minute))

    def set_calendar_extended(self, year, month, day, weekday, hour, minute, second) -> str:
        self.logger.info(f"Setting calendar to {year}-{month}-{day} {hour}:{minute}:{second} (weekday {weekday})")
        return self.execute(
            CompanytecProtocol.build_set_calendar_extended(year, month, day, weekday, hour, minute, second)
        )

    # Blacklist

    def manage_blacklist(self, mode: str, identifier: str = "") -> str:
        self.logger.info(f"Blacklist {mode} {identifier}".rstrip())
        return self.execute(CompanytecProtocol.build_manage_blacklist(mode, identifier))
