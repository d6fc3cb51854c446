import asyncio
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional
import xml.etree.ElementTree as ET

from .capabilities import translate, txt_record_pairs
from .printer_backend import PrinterDescriptor

logger = logging.getLogger(__name__)

SERVICE_TYPE = "_ipp._tcp"
SERVICE_SUBTYPE = "_universal._sub._ipp._tcp"

XML_HEADER = (
    '<?xml version="1.0" standalone="no"?>\n'
    '<!DOCTYPE service-group SYSTEM "avahi-service.dtd">\n'
)

UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")
UNSAFE_NAME_CHARS = re.compile(r"[<>&\"']")

WRITE_CHECK_FILENAME = ".airprint-bridge-test"


class ServiceFileError(Exception):
    pass


class ServiceDirectoryError(ServiceFileError):
    pass


# Not injective: "a b" and "a/b" both map to "a_b"
def service_file_name(prefix: str, printer_name: str) -> str:
    return f"{prefix}{UNSAFE_FILENAME_CHARS.sub('_', printer_name)}.service"


def sanitize_service_name(name: str) -> str:
    name = name.replace("_", " ")
    return UNSAFE_NAME_CHARS.sub(" ", name).strip()


def generate_service_file(printer_name: str, port: int, txt_records: Dict[str, str]) -> bytes:
    """Renders the Avahi service-group XML for one printer.

    TXT records are emitted sorted by key so the same input always yields the
    same bytes; the reconciler relies on that to skip unchanged files.
    """
    group = ET.Element("service-group")
    ET.SubElement(group, "name").text = f"{sanitize_service_name(printer_name)} @ %h"

    service = ET.SubElement(group, "service")
    ET.SubElement(service, "type").text = SERVICE_TYPE
    ET.SubElement(service, "subtype").text = SERVICE_SUBTYPE
    ET.SubElement(service, "port").text = str(port)
    for pair in txt_record_pairs(txt_records):
        ET.SubElement(service, "txt-record").text = pair

    ET.indent(group, space="  ")
    body = ET.tostring(group, encoding="unicode")
    return (XML_HEADER + body + "\n").encode("utf-8")


@dataclass(frozen=True)
class ServiceDescriptor:
    filename: str
    content: bytes
    printer_name: str


@dataclass
class ReconcileResult:
    written: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.written or self.removed)


def eligible_printers(printers: Iterable[PrinterDescriptor], shared_only: bool = True,
                      exclude: Iterable[str] = ()) -> List[PrinterDescriptor]:
    excluded = {name.lower() for name in exclude}
    result = []
    for printer in printers:
        if printer.name.lower() in excluded:
            logger.debug(f"Skipping excluded printer {printer.name}")
            continue
        if shared_only and not printer.is_shared:
            logger.debug(f"Skipping non-shared printer {printer.name}")
            continue
        if not printer.is_accepting:
            logger.debug(f"Skipping printer not accepting jobs {printer.name}")
            continue
        result.append(printer)
    return result


class ServiceFileReconciler:
    """Keeps one Avahi ``.service`` file per eligible printer in ``service_dir``.

    The set of managed filenames belongs to this instance. A pass holds the
    internal lock from filtering to orphan removal, so a timer pass and a
    reload pass never interleave. Every file operation runs in a worker
    thread and is abandoned after ``io_timeout`` seconds.
    """

    def __init__(self, service_dir, file_prefix: str = "airprint-", port: int = 8631,
                 io_timeout: float = 5.0):
        self.service_dir = Path(service_dir)
        self.file_prefix = file_prefix
        self.port = port
        self.io_timeout = io_timeout
        self._managed: set = set()
        self._lock = asyncio.Lock()

    @property
    def managed_files(self) -> FrozenSet[str]:
        return frozenset(self._managed)

    def descriptor_for(self, printer: PrinterDescriptor) -> ServiceDescriptor:
        _, txt_records = translate(printer)
        return ServiceDescriptor(
            filename=service_file_name(self.file_prefix, printer.name),
            content=generate_service_file(printer.name, self.port, txt_records),
            printer_name=printer.name,
        )

    def verify_service_dir(self):
        if not self.service_dir.exists():
            raise ServiceDirectoryError(f"Service directory does not exist: {self.service_dir}")
        if not self.service_dir.is_dir():
            raise ServiceDirectoryError(f"Service directory is not a directory: {self.service_dir}")

        check_path = self.service_dir / WRITE_CHECK_FILENAME
        try:
            check_path.write_bytes(b"test")
            check_path.unlink()
        except OSError as e:
            raise ServiceDirectoryError(f"Service directory is not writable: {self.service_dir}: {e}") from e

    async def discover_existing(self) -> int:
        async with self._lock:
            matches = await self._run_io(self._glob_managed)
            for filename in matches:
                self._managed.add(filename)
                logger.debug(f"Discovered existing service file {filename}")
            if matches:
                logger.info(f"Discovered {len(matches)} existing service files")
            return len(matches)

    async def reconcile(self, printers: Iterable[PrinterDescriptor], shared_only: bool = True,
                        exclude: Iterable[str] = ()) -> ReconcileResult:
        async with self._lock:
            result = ReconcileResult()
            current = set()

            for printer in eligible_printers(printers, shared_only, exclude):
                descriptor = self.descriptor_for(printer)
                current.add(descriptor.filename)
                try:
                    written = await self._run_io(self._write_if_changed, descriptor)
                except (OSError, asyncio.TimeoutError) as e:
                    logger.error(f"Failed to update service file {descriptor.filename} "
                                 f"for {printer.name}: {e!r}")
                    result.failed.append(descriptor.filename)
                    continue

                self._managed.add(descriptor.filename)
                if written:
                    result.written.append(descriptor.filename)
                    logger.info(f"Updated service file {descriptor.filename} for {printer.name} "
                                f"(color={printer.color_supported}, duplex={printer.duplex_supported})")
                else:
                    result.unchanged.append(descriptor.filename)
                    logger.debug(f"Service file for {printer.name} unchanged")

            for filename in sorted(self._managed - current):
                logger.info(f"Removing orphaned service file {filename}")
                try:
                    await self._run_io(self._remove, filename)
                except (OSError, asyncio.TimeoutError) as e:
                    # Stays managed so the next pass retries the removal
                    logger.error(f"Failed to remove service file {filename}: {e!r}")
                    result.failed.append(filename)
                    continue
                self._managed.discard(filename)
                result.removed.append(filename)

            return result

    async def cleanup(self):
        async with self._lock:
            last_error: Optional[BaseException] = None
            for filename in sorted(self._managed):
                try:
                    await self._run_io(self._remove, filename)
                except (OSError, asyncio.TimeoutError) as e:
                    logger.error(f"Failed to remove service file {filename} during cleanup: {e!r}")
                    last_error = e
                else:
                    logger.info(f"Removed service file {filename}")

            self._managed.clear()
            if last_error is not None:
                raise ServiceFileError(f"Cleanup incomplete: {last_error}") from last_error

    async def _run_io(self, func, *args):
        return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self.io_timeout)

    def _glob_managed(self) -> List[str]:
        return sorted(path.name for path in self.service_dir.glob(f"{self.file_prefix}*.service"))

    def _write_if_changed(self, descriptor: ServiceDescriptor) -> bool:
        target = self.service_dir / descriptor.filename
        try:
            if target.read_bytes() == descriptor.content:
                return False
        except FileNotFoundError:
            pass

        # Temp file in the same directory so the rename stays atomic
        tmp_path = target.with_name(target.name + ".tmp")
        try:
            tmp_path.write_bytes(descriptor.content)
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, target)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise
        return True

    def _remove(self, filename: str):
        (self.service_dir / filename).unlink(missing_ok=True)
