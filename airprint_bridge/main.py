"""
AirPrint Bridge - Main Entry Point

Advertises the shared printers of a CUPS server to AirPrint clients through
Avahi service files and relays IPP print jobs to CUPS.

Usage:
    airprint-bridge [options]

Environment Variables:
    CUPS_HOST, CUPS_PORT        CUPS server to mirror
    IPP_PORT                    Port of the IPP proxy server
    AVAHI_SERVICE_DIR           Directory watched by avahi-daemon
    POLL_INTERVAL               Seconds between printer polls
    LOG_LEVEL, LOG_FILE         Logging
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional

from airprint_bridge import __version__
from airprint_bridge.config.settings import BridgeSettings, load_settings
from airprint_bridge.server.capabilities import URFCapabilities
from airprint_bridge.server.ipp_server import IPPServer
from airprint_bridge.server.printer_backend import BackendError, CupsBackend
from airprint_bridge.server.service_files import (
    ServiceDirectoryError,
    ServiceFileError,
    ServiceFileReconciler,
)
from airprint_bridge.server.utils import SignalEvent, SignalHandler, get_local_ip, setup_logging

logger = logging.getLogger(__name__)


class BridgeDaemon:

    def __init__(self, settings: BridgeSettings, backend=None, ipp_server=None, reconciler=None):
        self.settings = settings
        self.backend = backend or CupsBackend(
            host=settings.CUPS_HOST,
            port=settings.CUPS_PORT,
            timeout=settings.CUPS_TIMEOUT,
            user_name=settings.CUPS_USER,
        )
        self.ipp_server = ipp_server or IPPServer(
            printer_backend=self.backend,
            advertised_host=settings.ADVERTISED_HOST or get_local_ip(),
            port=settings.IPP_PORT,
            default_printer_name=settings.PRINTER_NAME,
        )
        self.reconciler = reconciler or ServiceFileReconciler(
            service_dir=settings.AVAHI_SERVICE_DIR,
            file_prefix=settings.AVAHI_FILE_PREFIX,
            port=settings.IPP_PORT,
            io_timeout=settings.FILE_IO_TIMEOUT,
        )
        self.signal_handler = SignalHandler()

    async def initialize(self):
        """Startup checks; any exception raised here is fatal."""
        logger.info(f"Connecting to CUPS at {self.settings.CUPS_HOST}:{self.settings.CUPS_PORT}...")
        await self.backend.test_connection()
        logger.info("CUPS connection OK")

        await asyncio.to_thread(self.reconciler.verify_service_dir)
        logger.info(f"Service directory OK: {self.settings.AVAHI_SERVICE_DIR}")

        await self.reconciler.discover_existing()

    async def sync(self) -> bool:
        try:
            printers = await self.backend.fetch_printers()
        except BackendError as e:
            # Keep the previous snapshot and service files until CUPS answers again
            logger.error(f"Failed to fetch printers: {e}")
            return False

        self.ipp_server.update_printers(printers)
        result = await self.reconciler.reconcile(
            printers,
            shared_only=self.settings.SHARED_ONLY,
            exclude=self.settings.EXCLUDE_PRINTERS,
        )

        if result.changed:
            logger.info(f"Printers synchronized: {len(result.written)} written, "
                        f"{len(result.removed)} removed, {len(result.unchanged)} unchanged")
        else:
            logger.debug(f"No changes for {len(printers)} printers")
        if result.failed:
            logger.warning(f"Service files with errors: {', '.join(result.failed)}")
        return True

    async def run(self, install_signals: bool = True) -> int:

        logger.info(f"Starting AirPrint Bridge v{__version__}")

        try:
            await self.initialize()
        except BackendError as e:
            logger.error(f"Cannot reach CUPS, exiting: {e}")
            self.backend.close()
            return 1
        except ServiceDirectoryError as e:
            logger.error(f"Service directory unusable, exiting: {e}")
            self.backend.close()
            return 1

        try:
            await self.ipp_server.start(self.settings.IPP_HOST, self.settings.IPP_PORT)
        except OSError as e:
            logger.error(f"Failed to start IPP server on port {self.settings.IPP_PORT}: {e}")
            return await self.stop(1)

        if install_signals:
            self.signal_handler.setup_signal_handlers()

        try:
            await self.sync()
            logger.info(f"AirPrint Bridge started: {self.ipp_server.get_connection_info()}")
            await self._event_loop()
        finally:
            self.signal_handler.remove_signal_handlers()

        return await self.stop(0)

    async def _event_loop(self):
        while True:
            try:
                event = await asyncio.wait_for(self.signal_handler.events.get(),
                                               timeout=self.settings.POLL_INTERVAL)
            except asyncio.TimeoutError:
                event = None

            if event is SignalEvent.SHUTDOWN:
                logger.info("Shutdown requested")
                return
            if event is SignalEvent.RELOAD:
                logger.info("Reload requested, refreshing printers")

            await self.sync()

    async def stop(self, exit_code: int = 0) -> int:

        logger.info("Stopping AirPrint Bridge...")

        await self.ipp_server.stop()

        try:
            await self.reconciler.cleanup()
            logger.info("Service files removed")
        except ServiceFileError as e:
            logger.error(f"Service file cleanup failed: {e}")
            exit_code = 1

        self.backend.close()
        logger.info("AirPrint Bridge stopped")
        return exit_code


async def list_printers(settings: BridgeSettings) -> int:
    backend = CupsBackend(settings.CUPS_HOST, settings.CUPS_PORT, settings.CUPS_TIMEOUT, settings.CUPS_USER)
    try:
        printers = await backend.fetch_printers()
    except BackendError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        backend.close()

    if not printers:
        print("No printers found")
        return 0

    for printer in printers:
        flags = []
        if printer.is_shared:
            flags.append("shared")
        if printer.is_accepting:
            flags.append("accepting")
        print(f"{printer.name}")
        print(f"  Model:  {printer.make_model or '-'}")
        print(f"  Flags:  {', '.join(flags) or '-'}")
        print(f"  URF:    {URFCapabilities.from_printer(printer)}")
    return 0


def parse_arguments(argv=None):

    parser = argparse.ArgumentParser(
        prog="airprint-bridge",
        description="Advertise CUPS printers to AirPrint clients",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
            Examples:
                airprint-bridge                                 # Mirror shared printers of the local CUPS
                airprint-bridge --cups-host printhost.lan       # Mirror a remote CUPS server
                airprint-bridge --no-shared-only --exclude PDF  # All printers except "PDF"
                airprint-bridge --list-printers                 # Show what CUPS reports and exit
                    """
    )

    parser.add_argument('--cups-host', help='CUPS server host (default: from config)')
    parser.add_argument('--cups-port', type=int, help='CUPS server port (default: from config)')
    parser.add_argument('--ipp-port', type=int, help='IPP proxy server port (default: from config)')
    parser.add_argument('--poll-interval', type=float, help='Seconds between printer polls')
    parser.add_argument('--service-dir', help='Avahi service directory')
    parser.add_argument('--no-shared-only', action='store_true',
                        help='Advertise printers that are not shared in CUPS')
    parser.add_argument('--exclude', action='append', metavar='PRINTER',
                        help='Printer to skip (repeatable)')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level (default: from config)')
    parser.add_argument('--log-file', help='Log file path (default: console only)')
    parser.add_argument('--env-file', help='Load environment variables from this file')
    parser.add_argument('--list-printers', action='store_true',
                        help='List printers reported by CUPS and exit')
    parser.add_argument('--version', action='version', version=f'AirPrint Bridge v{__version__}')

    return parser.parse_args(argv)


def apply_arguments(settings: BridgeSettings, args) -> BridgeSettings:
    if args.cups_host:
        settings.CUPS_HOST = args.cups_host
    if args.cups_port:
        settings.CUPS_PORT = args.cups_port
    if args.ipp_port:
        settings.IPP_PORT = args.ipp_port
    if args.poll_interval:
        settings.POLL_INTERVAL = args.poll_interval
    if args.service_dir:
        settings.AVAHI_SERVICE_DIR = args.service_dir
    if args.no_shared_only:
        settings.SHARED_ONLY = False
    if args.exclude:
        settings.EXCLUDE_PRINTERS = settings.EXCLUDE_PRINTERS + args.exclude
    if args.log_level:
        settings.LOG_LEVEL = args.log_level
    if args.log_file:
        settings.LOG_FILE = args.log_file
    return settings


def main(argv: Optional[list] = None) -> int:
    args = parse_arguments(argv)

    try:
        settings = apply_arguments(load_settings(args.env_file), args)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)

    errors = settings.validate_config()
    if errors:
        logger.error("Configuration validation failed:")
        for error in errors:
            logger.error(f"  - {error}")
        return 2

    if args.list_printers:
        return asyncio.run(list_printers(settings))

    try:
        return asyncio.run(BridgeDaemon(settings).run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
