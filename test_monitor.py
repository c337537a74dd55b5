#!/usr/bin/env python3
"""
Tests for the asyncio pump monitor
"""

import unittest
from unittest.mock import AsyncMock, MagicMock

from config import Settings
from exceptions import ConnectError, TransportError
from models import (
    NozzleStatus,
    NozzleStatusEntry,
    NozzleStatusVector,
    SupplyRecord,
    VisualizationEntry,
)
from pump_monitor import HISTORY_LIMIT, PumpMonitor, format_value


def status_vector(codes: str) -> NozzleStatusVector:
    mapping = {"L": NozzleStatus.AVAILABLE, "A": NozzleStatus.REFUELING, "F": NozzleStatus.NOT_PRESENT}
    return NozzleStatusVector(
        tag="S",
        nozzles=[
            NozzleStatusEntry(position=i, nozzle=f"{i:02X}", status_code=code, status=mapping[code])
            for i, code in enumerate(codes, start=1)
        ],
        raw=f"(S{codes})",
    )


class TestPumpMonitor(unittest.IsolatedAsyncioTestCase):
    """Test monitor polling logic"""

    def setUp(self):
        self.controller = MagicMock()
        self.controller.is_connected = True
        self.config = Settings(
            _env_file=None,
            status_interval=0,
            supply_interval=0,
            visualization_interval=0,
            nozzle_names={"08": "Diesel"},
        )
        self.monitor = PumpMonitor(self.controller, self.config)

    async def test_new_supply_fires_callbacks_and_increments(self):
        record = SupplyRecord(nozzle="08", total_to_pay="001000", record="0042", raw="(r42)")
        self.controller.read_supply.return_value = record
        sync_callback = MagicMock()
        async_callback = AsyncMock()
        self.monitor.add_supply_callback(sync_callback)
        self.monitor.add_supply_callback(async_callback)

        result = await self.monitor.check_supply()

        self.assertIs(result, record)
        sync_callback.assert_called_once_with(record)
        async_callback.assert_awaited_once_with(record)
        self.controller.increment.assert_called_once()

    async def test_same_supply_reported_once(self):
        self.controller.read_supply.return_value = SupplyRecord(record="0042", raw="(r42)")
        callback = MagicMock()
        self.monitor.add_supply_callback(callback)

        await self.monitor.check_supply()
        self.assertIsNone(await self.monitor.check_supply())

        callback.assert_called_once()
        self.controller.increment.assert_called_once()

    async def test_no_supply(self):
        self.controller.read_supply.return_value = None
        self.assertIsNone(await self.monitor.check_supply())
        self.controller.increment.assert_not_called()

    async def test_failing_callback_does_not_stop_increment(self):
        self.controller.read_supply.return_value = SupplyRecord(record="0001", raw="(r1)")
        self.monitor.add_supply_callback(MagicMock(side_effect=RuntimeError("boom")))
        await self.monitor.check_supply()
        self.controller.increment.assert_called_once()

    async def test_visualization_reports_changes_only(self):
        self.controller.get_visualization.return_value = [
            VisualizationEntry(nozzle="08", value="000100"),
            VisualizationEntry(nozzle="0A", value="000200"),
        ]
        self.assertEqual(await self.monitor.check_visualization(), {"08": "000100", "0A": "000200"})

        self.controller.get_visualization.return_value = [
            VisualizationEntry(nozzle="08", value="000150"),
            VisualizationEntry(nozzle="0A", value="000200"),
        ]
        self.assertEqual(await self.monitor.check_visualization(), {"08": "000150"})

    async def test_visualization_no_data(self):
        self.controller.get_visualization.return_value = None
        self.assertEqual(await self.monitor.check_visualization(), {})

    async def test_status_history_records_transitions(self):
        self.controller.get_status.return_value = status_vector("LAF")
        await self.monitor.check_status()
        await self.monitor.check_status()
        self.controller.get_status.return_value = status_vector("AAF")
        await self.monitor.check_status()

        self.assertEqual([h["status"] for h in self.monitor.get_nozzle_history("01")], ["Available", "Refueling"])
        self.assertEqual(len(self.monitor.get_nozzle_history("02")), 1)
        self.assertEqual(self.monitor.get_nozzle_history("03"), [])

    async def test_status_history_capped(self):
        for i in range(HISTORY_LIMIT + 20):
            self.controller.get_status.return_value = status_vector("L" if i % 2 else "A")
            await self.monitor.check_status()
        self.assertEqual(len(self.monitor.status_history["01"]), HISTORY_LIMIT)

    async def test_poll_loop_survives_errors(self):
        """Errors are reported as alerts and polling continues"""
        self.controller.get_status.side_effect = [TransportError("closed"), status_vector("L")]
        alerts = []

        def on_alert(alert):
            alerts.append(alert)

        async def check():
            vector = await self.monitor.check_status()
            if vector is not None:
                self.monitor.stop_monitoring()

        self.monitor.add_alert_callback(on_alert)
        self.monitor.monitoring = True
        await self.monitor._poll_loop(check, 0)

        self.assertEqual(len(alerts), 1)
        self.assertEqual(alerts[0]["type"], "ERROR")
        self.assertEqual(self.controller.get_status.call_count, 2)

    async def test_connects_lazily(self):
        self.controller.is_connected = False
        self.controller.connect.side_effect = ConnectError("refused")
        alerts = []
        self.monitor.add_alert_callback(lambda alert: (alerts.append(alert), self.monitor.stop_monitoring()))
        self.monitor.monitoring = True

        await self.monitor._poll_loop(self.monitor.check_status, 0)

        self.controller.connect.assert_called_once()
        self.controller.get_status.assert_not_called()
        self.assertEqual(alerts[0]["message"], "refused")

    def test_nozzle_label(self):
        self.assertEqual(self.monitor.nozzle_label("08"), "08 (Diesel)")
        self.assertEqual(self.monitor.nozzle_label("09"), "09")

    async def test_supply_logged_with_decimals(self):
        self.controller.read_supply.return_value = SupplyRecord(
            nozzle="08", total_to_pay="001234", volume="000250", price="4936", record="0007", raw="(r7)"
        )
        with self.assertLogs("PumpMonitor", level="INFO") as logs:
            await self.monitor.check_supply()
        self.assertIn("total=12.34 volume=2.50 L price=49.36", "\n".join(logs.output))

    async def test_visualization_logged_with_decimals(self):
        self.controller.get_visualization.return_value = [VisualizationEntry(nozzle="08", value="012500")]
        with self.assertLogs("PumpMonitor", level="INFO") as logs:
            await self.monitor.check_visualization()
        self.assertIn("Nozzle 08 (Diesel) dispensing: 125.00", "\n".join(logs.output))


class TestFormatValue(unittest.TestCase):
    """Test two-decimal rendering of device fields"""

    def test_digits(self):
        self.assertEqual(format_value("001234"), "12.34")
        self.assertEqual(format_value("000005"), "0.05")
        self.assertEqual(format_value("0"), "0.00")

    def test_missing_or_not_numeric(self):
        self.assertEqual(format_value(None), "None")
        self.assertEqual(format_value("12A4"), "12A4")


if __name__ == '__main__':
    unittest.main()
