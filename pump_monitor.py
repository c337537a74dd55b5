import logging
import asyncio
import inspect
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from config import Settings, settings
from exceptions import CompanytecError
from models import NozzleStatusVector, SupplyRecord
from pump_controller import PumpController

HISTORY_LIMIT = 100


def format_value(value: Optional[str]) -> str:
    """Render a zero-padded device field with two implied decimals, e.g. 001234 -> 12.34"""
    if not value or not value.isdigit():
        return str(value)
    number = int(value)
    return f"{number // 100}.{number % 100:02d}"


class PumpMonitor:
    """Polls a Companytec device and reports dispensing activity and completed supplies"""

    def __init__(self, controller: PumpController, config: Settings = None):
        config = config or settings
        self.controller = controller
        self.status_interval = config.status_interval
        self.supply_interval = config.supply_interval
        self.visualization_interval = config.visualization_interval
        self.nozzle_names = dict(config.nozzle_names)
        self.monitoring = False
        self.status_history: Dict[str, List[Dict]] = {}
        self.last_visualization: Dict[str, str] = {}
        self.last_supply_key: Optional[str] = None
        self.supply_callbacks = []
        self.alert_callbacks = []
        self.logger = logging.getLogger("PumpMonitor")

    def add_supply_callback(self, callback):
        """Add callback invoked with each new SupplyRecord"""
        self.supply_callbacks.append(callback)

    def add_alert_callback(self, callback):
        """Add callback function for alerts"""
        self.alert_callbacks.append(callback)

    def nozzle_label(self, nozzle: str) -> str:
        name = self.nozzle_names.get(nozzle)
        return f"{nozzle} ({name})" if name else nozzle

    async def start_monitoring(self):
        """Run the status, supply and visualization loops until stopped"""
        self.monitoring = True
        self.logger.info("Starting pump monitoring...")

        await asyncio.gather(
            self._poll_loop(self.check_status, self.status_interval),
            self._poll_loop(self.check_supply, self.supply_interval),
            self._poll_loop(self.check_visualization, self.visualization_interval),
        )

    def stop_monitoring(self):
        """Stop monitoring"""
        self.monitoring = False
        self.logger.info("Stopping pump monitoring...")

    async def _poll_loop(self, check, interval: float):
        while self.monitoring:
            try:
                await self._ensure_connected()
                await check()
            except CompanytecError as e:
                self.logger.error(f"Error during {check.__name__}: {str(e)}")
                await self._send_alert("ERROR", str(e))
            await asyncio.sleep(interval)

    async def _ensure_connected(self):
        if not self.controller.is_connected:
            self.logger.info("Device not connected, connecting...")
            await asyncio.to_thread(self.controller.connect)

    async def check_status(self) -> Optional[NozzleStatusVector]:
        """Poll nozzle status and report nozzles with activity"""
        vector = await asyncio.to_thread(self.controller.get_status)
        if vector is None:
            return None

        for entry in vector.present():
            self._update_status_history(entry.nozzle, entry.status.value)

        for entry in vector.active():
            self.logger.info(f"Nozzle {self.nozzle_label(entry.nozzle)}: {entry.status.value}")
        return vector

    async def check_supply(self) -> Optional[SupplyRecord]:
        """Report a newly completed supply and advance the read pointer"""
        record = await asyncio.to_thread(self.controller.read_supply)
        if record is None:
            return None

        key = record.record or record.raw
        if key == self.last_supply_key:
            return None
        self.last_supply_key = key

        self.logger.info(
            f"New supply on nozzle {self.nozzle_label(record.nozzle or '??')}: "
            f"total={format_value(record.total_to_pay)} volume={format_value(record.volume)} L "
            f"price={format_value(record.price)}"
        )
        for callback in self.supply_callbacks:
            await self._invoke(callback, record)

        await asyncio.to_thread(self.controller.increment)
        return record

    async def check_visualization(self) -> Dict[str, str]:
        """Report nozzles whose dispensing value changed since the last poll"""
        entries = await asyncio.to_thread(self.controller.get_visualization) or []
        current = {entry.nozzle: entry.value for entry in entries}

        changed = {
            nozzle: value
            for nozzle, value in current.items()
            if self.last_visualization.get(nozzle) != value
        }
        for nozzle, value in changed.items():
            self.logger.info(f"Nozzle {self.nozzle_label(nozzle)} dispensing: {format_value(value)}")

        self.last_visualization = current
        return changed

    def _update_status_history(self, nozzle: str, status: str):
        """Record a status transition for a nozzle"""
        history = self.status_history.setdefault(nozzle, [])
        if history and history[-1]["status"] == status:
            return

        history.append({
            "timestamp": datetime.now(),
            "status": status,
        })

        # Keep last 100 transitions
        if len(history) > HISTORY_LIMIT:
            history.pop(0)

    async def _send_alert(self, alert_type: str, message: str):
        """Send alert to all registered callbacks"""
        alert_data = {
            "type": alert_type,
            "message": message,
            "timestamp": datetime.now()
        }

        self.logger.warning(f"ALERT: {message}")

        for callback in self.alert_callbacks:
            await self._invoke(callback, alert_data)

    async def _invoke(self, callback, payload):
        try:
            result = callback(payload)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.logger.error(f"Error in monitor callback {callback!r}: {str(e)}", exc_info=True)

    def get_nozzle_history(self, nozzle: str, hours: int = 24) -> List[Dict]:
        """Get status history for a nozzle"""
        if nozzle not in self.status_history:
            return []

        cutoff_time = datetime.now() - timedelta(hours=hours)
        return [
            h for h in self.status_history[nozzle]
            if h["timestamp"] >= cutoff_time
        ]


async def run_monitor(config: Settings = None):
    """Monitor the configured device until interrupted"""
    config = config or settings
    controller = PumpController.from_settings(config)
    monitor = PumpMonitor(controller, config)
    monitor.add_supply_callback(lambda record: print(record.model_dump_json(indent=2)))
    try:
        await monitor.start_monitoring()
    finally:
        monitor.stop_monitoring()
        controller.disconnect()


if __name__ == "__main__":
    from config import configure_logging

    configure_logging(settings)
    try:
        asyncio.run(run_monitor())
    except KeyboardInterrupt:
        print("\nMonitoring stopped")
