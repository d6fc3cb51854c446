import asyncio
import logging
import logging.handlers
import os
import signal
import socket
import sys
from enum import Enum
from typing import Optional

import psutil

logger = logging.getLogger(__name__)

FALLBACK_ADDRESS = "127.0.0.1"


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:

    numeric_level = getattr(logging, (log_level or "INFO").upper(), logging.INFO)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)

            # Rotating file handler to prevent huge log files
            file_handler = logging.handlers.RotatingFileHandler(
                log_file, maxBytes=10*1024*1024, backupCount=5
            )
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

            logger.info(f"Logging to file: {log_file}")

        except OSError as e:
            logger.warning(f"Failed to setup file logging: {e}")

    # urllib3 logs every CUPS request at DEBUG
    logging.getLogger('urllib3').setLevel(max(numeric_level, logging.INFO))

    logger.debug(f"Logging initialized - Level: {log_level}")
    return root_logger


def get_local_ip() -> str:
    """First non-loopback IPv4 address of the host, or 127.0.0.1."""
    try:
        interfaces = psutil.net_if_addrs()
    except OSError as e:
        logger.warning(f"Cannot list network interfaces: {e}")
        return FALLBACK_ADDRESS

    for interface, addrs in sorted(interfaces.items()):
        for addr in addrs:
            if addr.family == socket.AF_INET and not addr.address.startswith("127."):
                logger.debug(f"Using address {addr.address} from interface {interface}")
                return addr.address

    logger.warning(f"No non-loopback IPv4 address found, using {FALLBACK_ADDRESS}")
    return FALLBACK_ADDRESS


class SignalEvent(Enum):
    SHUTDOWN = "shutdown"
    RELOAD = "reload"


class SignalHandler:
    """Turns process signals into events on an asyncio queue.

    SIGTERM and SIGINT request shutdown, SIGHUP requests a reload. The queue
    is consumed by the daemon loop, so handlers never touch daemon state.
    """

    def __init__(self):
        self.events: asyncio.Queue = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._installed = []

    def setup_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop or asyncio.get_running_loop()

        if sys.platform != 'win32':
            # Unix-like systems
            for signum, event in ((signal.SIGTERM, SignalEvent.SHUTDOWN),
                                  (signal.SIGINT, SignalEvent.SHUTDOWN),
                                  (signal.SIGHUP, SignalEvent.RELOAD)):
                self._loop.add_signal_handler(signum, self._signal_handler, signum, event)
                self._installed.append(signum)
        else:
            # Windows
            signal.signal(signal.SIGINT, self._windows_handler)
            signal.signal(signal.SIGTERM, self._windows_handler)

    def _windows_handler(self, signum, frame):
        self._loop.call_soon_threadsafe(self._signal_handler, signum, SignalEvent.SHUTDOWN)

    def _signal_handler(self, signum, event: SignalEvent):
        logger.info(f"Received signal {signal.Signals(signum).name}, requesting {event.value}")
        self.events.put_nowait(event)

    def request(self, event: SignalEvent):
        self.events.put_nowait(event)

    def remove_signal_handlers(self):
        if self._loop is None:
            return
        for signum in self._installed:
            self._loop.remove_signal_handler(signum)
        self._installed.clear()
