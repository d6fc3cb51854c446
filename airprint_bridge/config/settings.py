import os
from typing import List

from dotenv import load_dotenv


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ['true', '1', 'yes']


def _env_list(name: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, '').split(',') if item.strip()]


class BridgeSettings:

    def __init__(self):
        # CUPS server
        self.CUPS_HOST = os.getenv('CUPS_HOST', 'localhost')
        self.CUPS_PORT = int(os.getenv('CUPS_PORT', 631))
        self.CUPS_TIMEOUT = float(os.getenv('CUPS_TIMEOUT', 60))
        self.CUPS_USER = os.getenv('CUPS_USER', 'airprint')

        # IPP proxy server
        self.IPP_HOST = os.getenv('IPP_HOST', '0.0.0.0')
        self.IPP_PORT = int(os.getenv('IPP_PORT', 8631))
        self.ADVERTISED_HOST = os.getenv('ADVERTISED_HOST', '')  # Empty = first non-loopback IPv4
        self.PRINTER_NAME = os.getenv('PRINTER_NAME', 'AirPrint')

        # Avahi service files
        self.AVAHI_SERVICE_DIR = os.getenv('AVAHI_SERVICE_DIR', '/etc/avahi/services')
        self.AVAHI_FILE_PREFIX = os.getenv('AVAHI_FILE_PREFIX', 'airprint-')
        self.FILE_IO_TIMEOUT = float(os.getenv('FILE_IO_TIMEOUT', 5))

        # Printer selection
        self.SHARED_ONLY = _env_bool('SHARED_ONLY', 'true')
        self.EXCLUDE_PRINTERS = _env_list('EXCLUDE_PRINTERS')

        self.POLL_INTERVAL = float(os.getenv('POLL_INTERVAL', 30))

        # Logging
        self.LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
        self.LOG_FILE = os.getenv('LOG_FILE', None)  # None = console only

    def validate_config(self) -> List[str]:
        errors = []

        for name in ('CUPS_PORT', 'IPP_PORT'):
            port = getattr(self, name)
            if port < 1 or port > 65535:
                errors.append(f"{name} must be between 1 and 65535")

        if self.POLL_INTERVAL <= 0:
            errors.append("POLL_INTERVAL must be greater than 0")

        if self.FILE_IO_TIMEOUT <= 0:
            errors.append("FILE_IO_TIMEOUT must be greater than 0")

        if self.CUPS_TIMEOUT <= 0:
            errors.append("CUPS_TIMEOUT must be greater than 0")

        if not self.CUPS_HOST:
            errors.append("CUPS_HOST cannot be empty")

        if not self.AVAHI_SERVICE_DIR:
            errors.append("AVAHI_SERVICE_DIR cannot be empty")

        if not self.PRINTER_NAME:
            errors.append("PRINTER_NAME cannot be empty")

        if self.LOG_LEVEL.upper() not in ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']:
            errors.append(f"LOG_LEVEL is not a valid level: {self.LOG_LEVEL}")

        return errors


def load_settings(env_file: str = None) -> BridgeSettings:
    # Variables already present in the environment win over the .env file
    load_dotenv(env_file)
    return BridgeSettings()
