#!/usr/bin/env python3
"""
Tests for the TCP session and the typed controller
"""

import socket
import threading
import time
import unittest
from unittest.mock import MagicMock, Mock, patch

from exceptions import (
    ChecksumMismatch,
    ConnectError,
    InvalidParameter,
    NotConnected,
    ResponseTimeout,
    TransportError,
)
from models import ConnectionState, NozzleStatus
from pump_controller import FifoLock, PumpController, TCPConnection
import decode_frame


class FakeSocket:
    """Socket double that echoes each frame and records write/read alternation"""

    def __init__(self, replies=None, delay=0.0):
        self.replies = list(replies or [])
        self.delay = delay
        self.sent = []
        self.awaiting_reply = False
        self.violations = 0
        self.closed = False
        self._pending = []
        self._lock = threading.Lock()

    def settimeout(self, value):
        pass

    def sendall(self, data):
        with self._lock:
            if self.awaiting_reply:
                self.violations += 1
            self.awaiting_reply = True
            self.sent.append(data)
            reply = self.replies.pop(0) if self.replies else data
            self._pending = list(reply) if isinstance(reply, list) else [reply]

    def recv(self, size):
        if self.delay:
            time.sleep(self.delay)
        with self._lock:
            chunk = self._pending.pop(0)
            if isinstance(chunk, BaseException):
                raise chunk
            if not self._pending:
                self.awaiting_reply = False
            return chunk

    def close(self):
        self.closed = True


def make_connection(fake: FakeSocket, timeout: float = 5.0) -> TCPConnection:
    factory = Mock(return_value=fake)
    return TCPConnection("10.0.0.5", 2001, timeout=timeout, socket_factory=factory)


class TestTCPConnectionLifecycle(unittest.TestCase):
    """Test connect / disconnect state machine"""

    def test_initial_state(self):
        connection = make_connection(FakeSocket())
        self.assertEqual(connection.state, ConnectionState.DISCONNECTED)
        self.assertFalse(connection.is_connected)

    def test_connect(self):
        """Successful dial moves to CONNECTED"""
        fake = FakeSocket()
        connection = make_connection(fake)
        self.assertTrue(connection.connect())
        self.assertTrue(connection.is_connected)
        self.assertEqual(connection.state, ConnectionState.CONNECTED)
        connection._socket_factory.assert_called_once_with(("10.0.0.5", 2001), timeout=5.0)

    def test_connect_is_idempotent(self):
        """Second connect does not dial again"""
        connection = make_connection(FakeSocket())
        connection.connect()
        connection.connect()
        connection._socket_factory.assert_called_once()

    def test_connect_overrides_target(self):
        """Host, port and timeout given to connect replace the constructed ones"""
        connection = make_connection(FakeSocket())
        connection.connect("192.168.1.100", 1771, timeout=2.5)
        connection._socket_factory.assert_called_once_with(("192.168.1.100", 1771), timeout=2.5)
        self.assertEqual(connection.address, "192.168.1.100:1771")

    def test_connect_other_target_while_connected(self):
        connection = make_connection(FakeSocket())
        connection.connect()
        with self.assertRaises(ConnectError):
            connection.connect("192.168.1.100")
        self.assertTrue(connection.is_connected)
        connection._socket_factory.assert_called_once()

    def test_connect_rejects_bad_timeout(self):
        connection = make_connection(FakeSocket())
        with self.assertRaises(InvalidParameter):
            connection.connect(timeout=0)
        self.assertEqual(connection.state, ConnectionState.DISCONNECTED)

    def test_connect_refused(self):
        """Refusal raises ConnectError and stays DISCONNECTED"""
        connection = TCPConnection("10.0.0.5", 1771, socket_factory=Mock(side_effect=ConnectionRefusedError()))
        with self.assertRaises(ConnectError):
            connection.connect()
        self.assertEqual(connection.state, ConnectionState.DISCONNECTED)

    def test_connect_timeout(self):
        connection = TCPConnection("10.0.0.5", 2001, socket_factory=Mock(side_effect=socket.timeout()))
        with self.assertRaises(ConnectError):
            connection.connect()
        self.assertFalse(connection.is_connected)

    def test_disconnect_is_idempotent(self):
        fake = FakeSocket()
        connection = make_connection(fake)
        connection.connect()
        connection.disconnect()
        connection.disconnect()
        self.assertTrue(fake.closed)
        self.assertEqual(connection.state, ConnectionState.DISCONNECTED)

    def test_send_requires_connection(self):
        connection = make_connection(FakeSocket())
        with self.assertRaises(NotConnected):
            connection.send("(&S)")

    def test_send_rejects_non_ascii(self):
        connection = make_connection(FakeSocket())
        connection.connect()
        with self.assertRaises(InvalidParameter):
            connection.send("(&Té)")


class TestTCPConnectionSend(unittest.TestCase):
    """Test the write-then-read exchange"""

    def test_send_returns_reply(self):
        fake = FakeSocket(replies=[b"(S LLLL)"])
        connection = make_connection(fake)
        connection.connect()
        self.assertEqual(connection.send("(&S)"), "(S LLLL)")
        self.assertEqual(fake.sent, [b"(&S)"])

    def test_reply_split_across_reads(self):
        """Reads accumulate until ')' arrives"""
        fake = FakeSocket(replies=[[b"(L08", b"0001", b"234567ABC)"]])
        connection = make_connection(fake)
        connection.connect()
        self.assertEqual(connection.send("(&T08L2E)"), "(L080001234567ABC)")

    def test_bytes_after_delimiter_discarded(self):
        fake = FakeSocket(replies=[b"(0)(junk"])
        connection = make_connection(fake)
        connection.connect()
        self.assertEqual(connection.send("(&A67)"), "(0)")
        self.assertTrue(connection.is_connected)

    def test_bytes_before_frame_start_discarded(self):
        """Line noise arriving ahead of the next reply is not kept in it"""
        fake = FakeSocket(replies=[[b"(0)"], [b"\r\n", b"(0)"]])
        connection = make_connection(fake)
        connection.connect()
        self.assertEqual(connection.send("(&A67)"), "(0)")
        second = connection.send("(&A67)")
        self.assertEqual(second, "(0)")
        self.assertIsNone(decode_frame.parse_supply(second))

    def test_partial_frame_restarted(self):
        fake = FakeSocket(replies=[[b"(S", b"(SLLA)"]])
        connection = make_connection(fake)
        connection.connect()
        self.assertEqual(connection.send("(&S)"), "(SLLA)")

    def test_latin1_decoding(self):
        """Any byte decodes without error"""
        fake = FakeSocket(replies=[b"(\xe9\xff)"])
        connection = make_connection(fake)
        connection.connect()
        self.assertEqual(connection.send("(&V)"), "(éÿ)")

    def test_read_timeout_disconnects(self):
        """Timeout raises ResponseTimeout and tears the session down"""
        fake = FakeSocket(replies=[[socket.timeout()]])
        connection = make_connection(fake)
        connection.connect()
        with self.assertRaises(ResponseTimeout):
            connection.send("(&S)")
        self.assertFalse(connection.is_connected)
        self.assertTrue(fake.closed)

    def test_deadline_covers_partial_reads(self):
        """A trickle of bytes without ')' still hits the per-call deadline"""
        fake = FakeSocket(replies=[[b"(L0", b"8"]])
        connection = make_connection(fake, timeout=5.0)
        connection.connect()
        with patch("pump_controller.time.monotonic", side_effect=[0.0, 0.0, 10.0]):
            with self.assertRaises(ResponseTimeout):
                connection.send("(&T08L2E)")
        self.assertFalse(connection.is_connected)

    def test_peer_close_disconnects(self):
        """Empty read means the device closed the connection"""
        fake = FakeSocket(replies=[[b""]])
        connection = make_connection(fake)
        connection.connect()
        with self.assertRaises(TransportError) as ctx:
            connection.send("(&S)")
        self.assertNotIsInstance(ctx.exception, ResponseTimeout)
        self.assertFalse(connection.is_connected)

    def test_write_error_disconnects(self):
        fake = MagicMock()
        fake.sendall.side_effect = BrokenPipeError()
        connection = make_connection(fake)
        connection.connect()
        with self.assertRaises(TransportError):
            connection.send("(&S)")
        self.assertEqual(connection.state, ConnectionState.DISCONNECTED)
        fake.close.assert_called_once()

    def test_no_retry_after_failure(self):
        fake = FakeSocket(replies=[[socket.timeout()]])
        connection = make_connection(fake)
        connection.connect()
        with self.assertRaises(ResponseTimeout):
            connection.send("(&S)")
        self.assertEqual(len(fake.sent), 1)
        with self.assertRaises(NotConnected):
            connection.send("(&S)")

    def test_concurrent_sends_alternate(self):
        """Concurrent callers never interleave a write before the previous reply is read"""
        fake = FakeSocket(delay=0.002)
        connection = make_connection(fake)
        connection.connect()
        results = {}
        errors = []

        def worker(index):
            frame = f"(&T{index:02X}L)"
            try:
                results[index] = connection.send(frame)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        self.assertEqual(errors, [])
        self.assertEqual(fake.violations, 0)
        self.assertEqual(len(fake.sent), 16)
        for index, reply in results.items():
            self.assertEqual(reply, f"(&T{index:02X}L)")


class TestFifoLock(unittest.TestCase):
    """Test arrival-order hand-off"""

    def test_waiters_served_in_order(self):
        lock = FifoLock()
        order = []
        lock.acquire()

        def waiter(index):
            with lock:
                order.append(index)

        threads = []
        for i in range(5):
            thread = threading.Thread(target=waiter, args=(i,))
            thread.start()
            threads.append(thread)
            # Let each waiter queue up before starting the next
            deadline = time.monotonic() + 2
            while len(lock._waiters) < i + 1 and time.monotonic() < deadline:
                time.sleep(0.001)

        lock.release()
        for thread in threads:
            thread.join(timeout=5)
        self.assertEqual(order, [0, 1, 2, 3, 4])

    def test_release_unlocked_raises(self):
        with self.assertRaises(RuntimeError):
            FifoLock().release()

    def test_interrupted_waiter_leaves_queue(self):
        """A waiter interrupted while queued does not block later callers"""
        lock = FifoLock()
        lock.acquire()
        with patch.object(lock._condition, "wait", side_effect=KeyboardInterrupt()):
            with self.assertRaises(KeyboardInterrupt):
                lock.acquire()
        self.assertEqual(len(lock._waiters), 0)
        lock.release()

        acquired = threading.Event()

        def waiter():
            with lock:
                acquired.set()

        thread = threading.Thread(target=waiter)
        thread.start()
        thread.join(timeout=5)
        self.assertTrue(acquired.is_set())


class TestPumpController(unittest.TestCase):
    """Test typed operations over a mocked connection"""

    def setUp(self):
        self.connection = Mock()
        self.connection.is_connected = True
        self.controller = PumpController(self.connection)

    def test_read_supply_no_data(self):
        """Sentinel reply yields None"""
        self.connection.send.return_value = "(0)"
        self.assertIsNone(self.controller.read_supply())
        self.connection.send.assert_called_once_with("(&A67)")

    def test_read_supply(self):
        body = "001000000350285902012008101530" + "06" + "0042" + "0001234567" + "00" + "1234"
        self.connection.send.return_value = f"({body}AB)"
        record = self.controller.read_supply()
        self.assertEqual(record.nozzle, "08")
        self.assertEqual(record.record, "0042")

    def test_get_status(self):
        self.connection.send.return_value = "(SLLLLA" + "F" * 27 + ")"
        vector = self.controller.get_status()
        self.connection.send.assert_called_once_with("(&S)")
        self.assertEqual(vector.get(5).status, NozzleStatus.REFUELING)

    def test_read_total(self):
        self.connection.send.return_value = "(L080001234567AB)"
        reading = self.controller.read_total("08", "L")
        self.connection.send.assert_called_once_with("(&T08L2E)")
        self.assertEqual(reading.value, "0001234567")

    def test_invalid_parameter_before_io(self):
        """Validation failures never reach the connection"""
        with self.assertRaises(InvalidParameter):
            self.controller.set_preset("8", 1000)
        self.connection.send.assert_not_called()

    def test_verify_checksums(self):
        """Opt-in verification rejects bad checksums"""
        controller = PumpController(self.connection, verify_checksums=True)
        self.connection.send.return_value = "(L080001234567AB)"
        with self.assertRaises(ChecksumMismatch):
            controller.read_total("08", "L")

    def test_increment_literal(self):
        self.connection.send.return_value = "(0)"
        self.controller.increment()
        self.connection.send.assert_called_once_with("(&I)")

    def test_commands_return_raw_reply(self):
        self.connection.send.return_value = "(OK)"
        self.assertEqual(self.controller.set_operating_mode("04", "B"), "(OK)")
        self.assertEqual(self.controller.read_supply_paf1(), "(OK)")
        self.assertEqual(self.controller.manage_blacklist("c"), "(OK)")

    def test_from_settings(self):
        from config import Settings

        controller = PumpController.from_settings(Settings(host="192.168.1.50", port=1771, timeout=2.0))
        self.assertEqual(controller.connection.host, "192.168.1.50")
        self.assertEqual(controller.connection.port, 1771)
        self.assertEqual(controller.connection.timeout, 2.0)
        self.assertFalse(controller.is_connected)


if __name__ == '__main__':
    unittest.main()
