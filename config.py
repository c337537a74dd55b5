"""
Configuration for the Companytec DT435 client.

Values come from environment variables prefixed with COMPANYTEC_ (or a .env
file), e.g. COMPANYTEC_HOST=192.168.1.100 COMPANYTEC_PORT=2001.
"""

import logging
import sys
from typing import Dict

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="COMPANYTEC_",
        env_file=".env",
        extra="ignore",
    )

    # Device connection
    host: str = Field("127.0.0.1", description="IP address of the Companytec device")
    port: int = Field(2001, description="TCP port (1771 for older devices, 2001 for newer)")
    timeout: float = Field(5.0, gt=0, description="Connect and per-call response timeout in seconds")
    verify_checksums: bool = Field(False, description="Verify checksums of inbound frames")

    # REST API
    api_host: str = "0.0.0.0"
    api_port: int = 3000

    # Monitor polling intervals (seconds)
    status_interval: float = 1.0
    supply_interval: float = 2.0
    visualization_interval: float = 0.5

    # Optional nozzle display names, e.g. {"08": "Pump 4 - Diesel"}
    nozzle_names: Dict[str, str] = Field(default_factory=dict)

    # Logging
    log_level: str = "INFO"
    log_file: str = "companytec.log"


settings = Settings()


def get_settings() -> Settings:
    return settings


def configure_logging(config: Settings = None):
    """Configure root logging and per-component levels"""
    config = config or settings

    level = getattr(logging, config.log_level.upper(), logging.INFO)

    handlers = [logging.StreamHandler(sys.stdout)]
    if config.log_file:
        handlers.append(logging.FileHandler(config.log_file, mode='a', encoding='utf-8'))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )

    # TX/RX frames are logged by the connection at INFO, byte counts at DEBUG
    logging.getLogger("CompanytecAPI").setLevel(logging.INFO)
    logging.getLogger("CompanytecCLI").setLevel(logging.INFO)
    logging.getLogger("PumpMonitor").setLevel(logging.INFO)
    logging.getLogger("PumpController").setLevel(level)
    logging.getLogger("CompanytecConnection").setLevel(level)
    logging.getLogger("uvicorn").setLevel(logging.INFO)
