from contextlib import asynccontextmanager
from datetime import datetime
import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Path, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
import uvicorn

from config import settings
from exceptions import (
    CompanytecError,
    ConnectError,
    InvalidParameter,
    MalformedFrame,
    NotConnected,
    ResponseTimeout,
    TransportError,
)
from models import (
    CalendarReading,
    CommandResponse,
    ErrorResponse,
    ModeRequest,
    PresetRequest,
    PriceRequest,
    SupplyRecord,
    TotalReading,
    VisualizationEntry,
)
from pump_controller import PumpController

API_VERSION = "1.0.0"

logger = logging.getLogger("CompanytecAPI")

# Most specific first
ERROR_STATUS = [
    (InvalidParameter, status.HTTP_400_BAD_REQUEST, "Invalid Parameter"),
    (ConnectError, status.HTTP_503_SERVICE_UNAVAILABLE, "Device Unavailable"),
    (NotConnected, status.HTTP_503_SERVICE_UNAVAILABLE, "Device Unavailable"),
    (ResponseTimeout, status.HTTP_504_GATEWAY_TIMEOUT, "Device Timeout"),
    (TransportError, status.HTTP_502_BAD_GATEWAY, "Device Communication Error"),
    (MalformedFrame, status.HTTP_502_BAD_GATEWAY, "Malformed Device Response"),
]

LOGGER_NAMES = ["CompanytecAPI", "PumpController", "CompanytecConnection", "PumpMonitor", "uvicorn"]


def error_status(exc: Exception):
    """Map an exception to (HTTP status, error title)"""
    for exc_type, status_code, title in ERROR_STATUS:
        if isinstance(exc, exc_type):
            return status_code, title
    return status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Server Error"


def get_controller(request: Request) -> PumpController:
    """Shared controller, connected on demand"""
    controller: Optional[PumpController] = request.app.state.controller
    if controller is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pump controller not initialized",
        )
    if not controller.is_connected:
        logger.info("API: Device not connected, connecting...")
        controller.connect()
    return controller


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    logger.info("=== Starting Companytec DT435 API ===")
    logger.info(f"Startup time: {datetime.now()}")

    owns_controller = app.state.controller is None
    if owns_controller:
        logger.info(f"Device: {settings.host}:{settings.port} (timeout {settings.timeout}s)")
        app.state.controller = PumpController.from_settings(settings)

    logger.info("Swagger UI available at: /docs")

    yield

    logger.info("=== Shutting down Companytec DT435 API ===")
    if owns_controller and app.state.controller is not None:
        app.state.controller.disconnect()
        app.state.controller = None
    logger.info("API shutdown complete")


def create_app(controller: PumpController = None) -> FastAPI:
    """Build the REST facade; without a controller one is created from settings at startup"""
    app = FastAPI(
        title="Companytec DT435 Controller API",
        description="API for reading and controlling fuel dispensers behind a Companytec DT435 concentrator",
        version=API_VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.controller = controller

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CompanytecError)
    async def companytec_exception_handler(request: Request, exc: CompanytecError):
        status_code, title = error_status(exc)
        logger.error(f"API: {request.method} {request.url.path} failed: {type(exc).__name__}: {str(exc)}")
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(
                error=title,
                message=str(exc),
                details={"exception": type(exc).__name__},
            ).model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler"""
        logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Internal Server Error",
                message="An unexpected error occurred",
                details={"exception": str(exc)},
            ).model_dump(mode="json"),
        )

    @app.get("/", include_in_schema=False)
    async def root():
        """Redirect to API documentation"""
        return RedirectResponse(url="/docs")

    @app.get("/health", tags=["General"])
    async def health_check(request: Request):
        """Health check endpoint"""
        controller = request.app.state.controller
        connection = controller.connection if controller else None
        return {
            "status": "healthy",
            "service": "Companytec DT435 Controller API",
            "version": API_VERSION,
            "device": f"{connection.host}:{connection.port}" if connection else None,
            "connected": bool(controller and controller.is_connected),
            "timestamp": datetime.now(),
        }

    # Device reads. Plain `def` so blocking socket I/O runs in the threadpool.

    @app.get("/status", tags=["Status"])
    def get_status(controller: PumpController = Depends(get_controller)):
        """Status of every nozzle configured on the concentrator"""
        vector = controller.get_status()
        nozzles = vector.present() if vector else []
        logger.info(f"API: {len(nozzles)} nozzles present")
        return {"nozzles": [entry.model_dump() for entry in nozzles]}

    @app.get("/calendar", response_model=Optional[CalendarReading], tags=["Status"])
    def get_calendar(controller: PumpController = Depends(get_controller)):
        """Device clock"""
        return controller.read_calendar()

    @app.get("/supply", response_model=Optional[SupplyRecord], tags=["Supply"])
    def get_supply(controller: PumpController = Depends(get_controller)):
        """Oldest unread supply, or null when the memory is empty"""
        return controller.read_supply()

    @app.get("/visualization", response_model=List[VisualizationEntry], tags=["Supply"])
    def get_visualization(controller: PumpController = Depends(get_controller)):
        """Nozzles currently dispensing"""
        return controller.get_visualization() or []

    @app.get("/total/{nozzle}/{mode}", response_model=Optional[TotalReading], tags=["Pump Management"])
    def get_total(
        nozzle: str = Path(..., description="Nozzle code (2 hex chars)"),
        mode: str = Path(..., description="$=money, L=volume, l=extended volume, N, U/u=price, P"),
        controller: PumpController = Depends(get_controller),
    ):
        """Totalizer reading for a nozzle"""
        return controller.read_total(nozzle, mode)

    @app.get("/price/{nozzle}", response_model=Optional[TotalReading], tags=["Pump Management"])
    def get_price(
        nozzle: str = Path(..., description="Nozzle code (2 hex chars)"),
        mode: str = "U",
        controller: PumpController = Depends(get_controller),
    ):
        """Price levels of a nozzle (U=2 levels, u=3 levels)"""
        return controller.read_price(nozzle, mode)

    # Device commands

    @app.post("/preset", response_model=CommandResponse, tags=["Pump Management"])
    def set_preset(request: PresetRequest, controller: PumpController = Depends(get_controller)):
        """Preset a value on a nozzle"""
        logger.info(f"API: Preset nozzle {request.nozzle} to {request.value}")
        response = controller.set_preset(request.nozzle, request.value)
        return CommandResponse(
            success=True,
            message=f"Preset {request.value} sent to nozzle {request.nozzle}",
            data={"nozzle": request.nozzle, "response": response},
        )

    @app.post("/mode", response_model=CommandResponse, tags=["Pump Management"])
    def set_mode(request: ModeRequest, controller: PumpController = Depends(get_controller)):
        """Change the operating mode of a nozzle"""
        logger.info(f"API: Set nozzle {request.nozzle} mode {request.mode}")
        response = controller.set_operating_mode(request.nozzle, request.mode)
        return CommandResponse(
            success=True,
            message=f"Mode {request.mode} sent to nozzle {request.nozzle}",
            data={"nozzle": request.nozzle, "response": response},
        )

    @app.post("/price", response_model=CommandResponse, tags=["Pump Management"])
    def change_price(request: PriceRequest, controller: PumpController = Depends(get_controller)):
        """Change a price level of a nozzle"""
        logger.info(f"API: Change nozzle {request.nozzle} level {request.level} price to {request.price}")
        response = controller.change_price(request.nozzle, request.level, request.price)
        return CommandResponse(
            success=True,
            message=f"Price {request.price} sent to nozzle {request.nozzle} level {request.level}",
            data={"nozzle": request.nozzle, "response": response},
        )

    # Debug and Monitoring Endpoints

    @app.get("/debug/logging", tags=["Debug"])
    async def get_logging_config():
        """Get current logging configuration"""
        return {
            "loggers": {
                name: logging.getLevelName(logging.getLogger(name).level) for name in LOGGER_NAMES
            },
            "log_file": settings.log_file,
            "timestamp": datetime.now(),
        }

    @app.post("/debug/logging/{logger_name}/{level}", tags=["Debug"])
    async def set_logging_level(
        logger_name: str = Path(..., description="Logger name (e.g., PumpController, CompanytecConnection)"),
        level: str = Path(..., description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"),
    ):
        """Set logging level for specific logger at runtime"""
        level_map = {
            "DEBUG": logging.DEBUG,
            "INFO": logging.INFO,
            "WARNING": logging.WARNING,
            "ERROR": logging.ERROR,
            "CRITICAL": logging.CRITICAL,
        }

        if level.upper() not in level_map:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid level: {level}")

        target_logger = logging.getLogger(logger_name)
        old_level = logging.getLevelName(target_logger.level)
        target_logger.setLevel(level_map[level.upper()])

        logger.info(f"Changed {logger_name} log level from {old_level} to {level.upper()}")

        return {
            "logger": logger_name,
            "old_level": old_level,
            "new_level": level.upper(),
            "timestamp": datetime.now(),
        }

    @app.get("/debug/connection", tags=["Debug"])
    async def get_connection_debug(request: Request):
        """Connection details of the device session"""
        controller = request.app.state.controller
        if controller is None:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Pump controller not initialized")

        connection = controller.connection
        return {
            "host": connection.host,
            "port": connection.port,
            "timeout": connection.timeout,
            "state": connection.state.value,
            "verify_checksums": controller.verify_checksums,
            "timestamp": datetime.now(),
        }

    return app


app = create_app()


if __name__ == "__main__":
    from config import configure_logging

    configure_logging(settings)
    uvicorn.run(
        "api:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level="info",
    )
