#!/usr/bin/env python3
"""
Companytec DT435 interactive client

Connects to the concentrator, serves the REST API in the background and
runs a test menu on the terminal.

Usage:
    python main.py --host 192.168.1.100 --port 2001 --api-port 3000
"""

import argparse
import json
import logging
import sys
import threading
from typing import Callable

from pydantic import BaseModel
import uvicorn

from api import create_app
from companytec_protocol import CompanytecProtocol
from config import configure_logging, settings
from exceptions import CompanytecError
from pump_controller import PumpController, TCPConnection

logger = logging.getLogger("CompanytecCLI")

MENU = [
    ("Supply Commands", [
        ("1", "Read Supply (52 chars)"),
        ("2", "Read Supply Identified"),
        ("3", "Read Supply PAF1"),
        ("4", "Read Supply PAF2"),
        ("5", "Read Memory Pointers"),
        ("6", "Increment Supply Pointer"),
    ]),
    ("Visualization", [
        ("7", "Get Visualization"),
        ("8", "Get Visualization Identified"),
    ]),
    ("Status & Info", [
        ("9", "Get Status"),
        ("10", "Read Calendar"),
        ("11", "Read Extended Clock"),
    ]),
    ("Pump Management", [
        ("12", "Read Total (Volume - L)"),
        ("13", "Read Total (Value - $)"),
        ("14", "Read Price"),
        ("15", "Set Operating Mode"),
        ("16", "Set Preset Value"),
        ("17", "Change Price"),
    ]),
    ("Identifier", [
        ("18", "Read Identifier"),
        ("19", "Read Identifier from Memory"),
    ]),
    ("Advanced", [
        ("20", "Send Custom Command"),
    ]),
]

MENU_TITLES = {key: title for _, items in MENU for key, title in items}


def show_menu(api_port: int = None):
    print("\n" + "=" * 40)
    print("   COMPANYTEC CLIENT - TEST MENU")
    print("=" * 40)
    for section, items in MENU:
        print(f"{section}:")
        for key, title in items:
            print(f"  {key + '.':<4}{title}")
    print()
    print("  0.  Exit")
    print("=" * 40)
    if api_port:
        print(f"API: curl localhost:{api_port}/status")
        print("=" * 40)


def custom_frame(text: str) -> str:
    """Send framed input as typed, otherwise treat it as header+parameters and checksum it"""
    text = text.strip()
    if text.startswith(CompanytecProtocol.FRAME_START) and text.endswith(CompanytecProtocol.FRAME_END):
        return text
    # The checksum covers header and parameters alike, so the split point is irrelevant
    return CompanytecProtocol.build_custom(text[:2], text[2:]).encode()


def handle_command(controller: PumpController, choice: str, ask: Callable[[str], str] = input):
    """Run one menu option and return its result (decoded record, list, raw reply or None)"""
    if choice == "1":
        return controller.read_supply()
    if choice == "2":
        return controller.read_supply_identified()
    if choice == "3":
        return controller.read_supply_paf1()
    if choice == "4":
        return controller.read_supply_paf2()
    if choice == "5":
        return controller.read_memory_pointers()
    if choice == "6":
        return controller.increment()
    if choice == "7":
        return controller.get_visualization()
    if choice == "8":
        return controller.get_visualization_identified()
    if choice == "9":
        vector = controller.get_status()
        return vector.present() if vector else None
    if choice == "10":
        return controller.read_calendar()
    if choice == "11":
        return controller.read_clock_extended()
    if choice == "12":
        nozzle = ask("Enter nozzle code (hex, e.g., 08): ").strip()
        return controller.read_total(nozzle, "L")
    if choice == "13":
        nozzle = ask("Enter nozzle code (hex, e.g., 08): ").strip()
        return controller.read_total(nozzle, "$")
    if choice == "14":
        nozzle = ask("Enter nozzle code (hex, e.g., 08): ").strip()
        return controller.read_price(nozzle, "U")
    if choice == "15":
        nozzle = ask("Enter nozzle code (hex, e.g., 04): ").strip()
        mode = ask("Enter mode (L=release, B=block, A=authorize once): ").strip()
        return controller.set_operating_mode(nozzle, mode)
    if choice == "16":
        nozzle = ask("Enter nozzle code (hex, e.g., 08): ").strip()
        value = ask("Enter preset value (e.g., 001000): ").strip()
        return controller.set_preset(nozzle, value)
    if choice == "17":
        nozzle = ask("Enter nozzle code (hex, e.g., 08): ").strip()
        level = ask("Enter price level (0=cash, 1=credit): ").strip()
        price = ask("Enter price (4 digits, e.g., 1234): ").strip()
        return controller.change_price(nozzle, level, price)
    if choice == "18":
        return controller.read_identifier()
    if choice == "19":
        position = ask("Enter memory position (e.g., 1): ").strip()
        return controller.read_identifier_from_memory(position)
    if choice == "20":
        command = ask("Enter custom command (e.g., &T08L or (&S)): ")
        return controller.send_raw(custom_frame(command))
    raise KeyError(choice)


def format_result(result) -> str:
    if result is None:
        return "No data"
    if isinstance(result, BaseModel):
        return result.model_dump_json(indent=2)
    if isinstance(result, list):
        return json.dumps([item.model_dump(mode="json") for item in result], indent=2)
    return str(result)


def start_api_server(controller: PumpController, host: str, port: int) -> threading.Thread:
    """Serve the REST API from a daemon thread sharing the controller"""
    config = uvicorn.Config(create_app(controller), host=host, port=port, log_level="info")
    server = uvicorn.Server(config)
    thread = threading.Thread(target=server.run, name="companytec-api", daemon=True)
    thread.start()
    logger.info(f"API server started on http://localhost:{port}")
    return thread


def run_menu(controller: PumpController, api_port: int = None):
    while True:
        show_menu(api_port)
        try:
            choice = input("Select option: ").strip()
        except EOFError:
            break
        if choice == "0":
            break
        if choice not in MENU_TITLES:
            print("Invalid option")
            continue

        print(f"--- {MENU_TITLES[choice]} ---")
        try:
            if not controller.is_connected:
                controller.connect()
            result = handle_command(controller, choice)
        except CompanytecError as e:
            logger.error(f"{MENU_TITLES[choice]} failed: {str(e)}")
            print(f"Error: {e}")
            continue
        print(f"Result: {format_result(result)}")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Companytec DT435 interactive client")
    parser.add_argument("--host", default=settings.host, help="Device host IP")
    parser.add_argument("--port", type=int, default=settings.port, help="Device port")
    parser.add_argument("--api-port", type=int, default=settings.api_port, help="API server port")
    parser.add_argument("--no-api", action="store_true", help="Do not start the API server")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    configure_logging(settings)

    print("Companytec Client")
    print(f"Device: {args.host}:{args.port}")
    if not args.no_api:
        print(f"API Port: {args.api_port}")
    print()

    controller = PumpController(
        TCPConnection(args.host, args.port, settings.timeout),
        verify_checksums=settings.verify_checksums,
    )

    print("Connecting to device...")
    try:
        controller.connect()
        print("Connected successfully!")
    except CompanytecError as e:
        print(f"Warning: Failed to connect on startup: {e}")

    if not args.no_api:
        start_api_server(controller, settings.api_host, args.api_port)

    try:
        run_menu(controller, None if args.no_api else args.api_port)
    except KeyboardInterrupt:
        print("\nShutting down...")
    finally:
        controller.disconnect()
    return 0


if __name__ == "__main__":
    sys.exit(main())
