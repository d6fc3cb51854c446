import asyncio
import logging
import re
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, List, Tuple, Dict, Any, Iterable
from urllib.parse import quote

import requests

from .ipp_parser import (
    IPPParser,
    IPPMessage,
    IPPOperation,
    IPPStatusCode,
    IPPTag,
    IntegerValue,
    TextValue,
    BooleanValue,
    OctetsValue,
    AttributeGroup,
    MalformedMessage,
)

logger = logging.getLogger(__name__)

JOB_PLACEHOLDER_ID = 1

# Attributes requested from CUPS for every printer
PRINTER_ATTRIBUTES = [
    "printer-name",
    "printer-uri-supported",
    "printer-make-and-model",
    "printer-location",
    "printer-info",
    "printer-state",
    "printer-is-shared",
    "printer-is-accepting-jobs",
    "color-supported",
    "sides-supported",
    "printer-resolution-supported",
    "media-supported",
    "media-ready",
    "media-default",
]

RESOLUTION_PATTERN = re.compile(r"(\d+)(?:x(\d+))?dpi")

# printer-resolution units
UNITS_DPI = 3
UNITS_DPCM = 4


class BackendError(Exception):
    pass


class BackendUnavailable(BackendError):
    pass


class SubmitFailed(BackendError):
    pass


class PrinterState(IntEnum):
    IDLE = 3
    PROCESSING = 4
    STOPPED = 5

    @classmethod
    def _missing_(cls, value):
        logger.warning(f"Unknown printer-state: {value}")
        return cls.IDLE


@dataclass(frozen=True)
class PrinterDescriptor:
    name: str
    make_model: str = ""
    location: str = ""
    info: str = ""
    uri: str = ""
    state: PrinterState = PrinterState.IDLE
    is_shared: bool = False
    is_accepting: bool = False
    color_supported: bool = False
    duplex_supported: bool = False
    resolutions: Tuple[int, ...] = ()
    media_supported: Tuple[str, ...] = ()
    media_default: str = ""


# "300dpi", "600x600dpi", "300x600dpi" -> unique DPI values in order of first appearance
def parse_resolutions(values: Iterable[str]) -> List[int]:
    resolutions = []
    for value in values:
        match = RESOLUTION_PATTERN.search(value.lower())
        if not match:
            continue
        for group in match.groups():
            if group and int(group) not in resolutions:
                resolutions.append(int(group))
    return resolutions


def parse_duplex_support(values: Iterable[str]) -> bool:
    for value in values:
        value = value.lower()
        if "two-sided" in value or value == "duplex":
            return True
    return False


# Resolution wire value: cross-feed (4), feed (4), units (1)
def format_resolution(raw: bytes) -> Optional[str]:
    if len(raw) != 9:
        return None
    cross_feed, feed, units = struct.unpack(">iiB", raw)
    if units == UNITS_DPCM:
        cross_feed = round(cross_feed * 2.54)
        feed = round(feed * 2.54)
    return f"{cross_feed}x{feed}dpi"


def _strings(group: AttributeGroup, name: str) -> List[str]:
    result = []
    for value in group.get(name):
        if isinstance(value, TextValue):
            result.append(value.value)
        elif isinstance(value, OctetsValue):
            formatted = format_resolution(value.value)
            if formatted:
                result.append(formatted)
    return result


def _string(group: AttributeGroup, name: str) -> str:
    value = group.first(name)
    return value.value if isinstance(value, TextValue) else ""


def _boolean(group: AttributeGroup, name: str) -> bool:
    value = group.first(name)
    return value.value if isinstance(value, BooleanValue) else False


def printer_from_attributes(group: AttributeGroup) -> Optional[PrinterDescriptor]:
    name = _string(group, "printer-name")
    if not name:
        return None

    state_value = group.first("printer-state")
    state = PrinterState(state_value.value) if isinstance(state_value, IntegerValue) else PrinterState.IDLE

    media = _strings(group, "media-ready") or _strings(group, "media-supported")

    return PrinterDescriptor(
        name=name,
        make_model=_string(group, "printer-make-and-model"),
        location=_string(group, "printer-location"),
        info=_string(group, "printer-info"),
        uri=_string(group, "printer-uri-supported"),
        state=state,
        is_shared=_boolean(group, "printer-is-shared"),
        is_accepting=_boolean(group, "printer-is-accepting-jobs"),
        color_supported=_boolean(group, "color-supported"),
        duplex_supported=parse_duplex_support(_strings(group, "sides-supported")),
        resolutions=tuple(parse_resolutions(_strings(group, "printer-resolution-supported"))),
        media_supported=tuple(media),
        media_default=_string(group, "media-default"),
    )


class CupsBackend:
    """Printing backend that talks IPP to a CUPS server.

    Blocking HTTP calls go through ``requests`` in a worker thread so the
    event loop serving IPP clients keeps running while CUPS answers.
    """

    def __init__(self, host: str = "localhost", port: int = 631, timeout: float = 60.0,
                 user_name: str = "airprint"):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.user_name = user_name
        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/ipp"})
        self._request_id = 0

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def printer_uri(self, printer_name: str) -> str:
        return f"ipp://{self.host}:{self.port}/printers/{quote(printer_name)}"

    def _next_request_id(self) -> int:
        self._request_id = (self._request_id % 0x7fffffff) + 1
        return self._request_id

    def _new_request(self, operation: int) -> Tuple[IPPMessage, AttributeGroup]:
        request = IPPMessage(version=(2, 0), code=operation, request_id=self._next_request_id())
        group = request.add_group(IPPTag.OPERATION_ATTRIBUTES_TAG)
        group.add(IPPTag.CHARSET, "attributes-charset", "utf-8")
        group.add(IPPTag.NATURAL_LANGUAGE, "attributes-natural-language", "en")
        return request, group

    def _post(self, path: str, payload: bytes) -> IPPMessage:
        url = f"{self.base_url}{path}"
        response = self.session.post(url, data=payload, timeout=self.timeout)
        response.raise_for_status()
        return IPPParser.decode(response.content)

    async def fetch_printers(self) -> List[PrinterDescriptor]:
        return await asyncio.to_thread(self._fetch_printers)

    def _fetch_printers(self) -> List[PrinterDescriptor]:
        request, group = self._new_request(IPPOperation.CUPS_GET_PRINTERS)
        group.add(IPPTag.NAME_WITHOUT_LANGUAGE, "requesting-user-name", self.user_name)
        group.add_multi(IPPTag.KEYWORD, "requested-attributes", PRINTER_ATTRIBUTES)

        try:
            response = self._post("/", IPPParser.encode(request))
        except (requests.RequestException, MalformedMessage) as e:
            raise BackendUnavailable(f"Cannot query CUPS at {self.base_url}: {e}") from e

        # CUPS answers client-error-not-found when no destinations are configured
        if response.code == IPPStatusCode.CLIENT_ERROR_NOT_FOUND:
            return []
        if not IPPStatusCode.is_successful(response.code):
            raise BackendUnavailable(f"CUPS-Get-Printers failed with status 0x{response.code:04x}")

        printers = []
        for printer_group in response.find_groups(IPPTag.PRINTER_ATTRIBUTES_TAG):
            printer = printer_from_attributes(printer_group)
            if printer is not None:
                printers.append(printer)

        logger.debug(f"Fetched {len(printers)} printers from CUPS")
        return printers

    async def test_connection(self):
        await self.fetch_printers()

    async def submit_job(self, printer_name: str, document: bytes, job_name: str,
                         options: Optional[Dict[str, str]] = None) -> int:
        return await asyncio.to_thread(self._submit_job, printer_name, document, job_name, options or {})

    def _submit_job(self, printer_name: str, document: bytes, job_name: str, options: Dict[str, str]) -> int:
        request, group = self._new_request(IPPOperation.PRINT_JOB)
        group.add(IPPTag.URI, "printer-uri", self.printer_uri(printer_name))
        group.add(IPPTag.NAME_WITHOUT_LANGUAGE, "requesting-user-name", self.user_name)
        group.add(IPPTag.NAME_WITHOUT_LANGUAGE, "job-name", job_name)
        group.add(IPPTag.MIME_MEDIA_TYPE, "document-format", "application/octet-stream")

        if options:
            job_group = request.add_group(IPPTag.JOB_ATTRIBUTES_TAG)
            for key in sorted(options):
                job_group.add(IPPTag.KEYWORD, key, options[key])

        payload = IPPParser.encode(request) + document

        try:
            response = self._post(f"/printers/{quote(printer_name)}", payload)
        except (requests.RequestException, MalformedMessage) as e:
            raise SubmitFailed(f"Failed to send job to CUPS printer {printer_name}: {e}") from e

        if not IPPStatusCode.is_successful(response.code):
            raise SubmitFailed(f"CUPS returned error status 0x{response.code:04x} for {printer_name}")

        job_id = response.get_value(IPPTag.JOB_ATTRIBUTES_TAG, "job-id")
        if isinstance(job_id, IntegerValue):
            return job_id.value

        logger.warning(f"CUPS did not report a job-id for {printer_name}, using placeholder")
        return JOB_PLACEHOLDER_ID

    # Job tracking is not implemented: every job reports as completed
    async def query_job(self, job_id: int) -> Dict[str, Any]:
        return {
            "job-state": 9,
            "job-state-reasons": "job-completed-successfully",
        }

    async def cancel_job(self, job_id: int):
        logger.debug(f"Cancel-Job for {job_id} accepted without forwarding")

    def close(self):
        self.session.close()
