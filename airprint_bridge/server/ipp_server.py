import asyncio
import logging
import socket
import struct
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, Optional, Tuple
from urllib.parse import quote, unquote, urlsplit

from .capabilities import DOCUMENT_FORMATS, URFCapabilities
from .ipp_parser import (
    IPPParser,
    IPPMessage,
    IPPOperation,
    IPPStatusCode,
    IPPTag,
    JobState,
    IntegerValue,
    TextValue,
    MalformedMessage,
    NoDocumentFound,
    UnsupportedOperation,
    HEADER_SIZE,
)
from .printer_backend import BackendError, PrinterDescriptor

logger = logging.getLogger(__name__)

DEFAULT_JOB_NAME = "AirPrint Job"
DEFAULT_MEDIA = "iso_a4_210x297mm"

REQUEST_LINE_TIMEOUT = 30.0
BODY_TIMEOUT = 60.0
MAX_BODY_SIZE = 256 * 1024 * 1024
MAX_REQUESTS_PER_CONNECTION = 100

Handler = Callable[[IPPMessage, bytes, PrinterDescriptor], Awaitable[IPPMessage]]


class HTTPError(Exception):

    def __init__(self, status: int, reason: str):
        super().__init__(f"{status} {reason}")
        self.status = status
        self.reason = reason


class IPPServer:
    """IPP-over-HTTP proxy in front of the printing backend.

    Every POST gets an ``application/ipp`` reply with the request id echoed,
    including undecodable requests and backend failures. The printer snapshot
    is a tuple replaced wholesale by :meth:`update_printers`.
    """

    OPERATION_NAMES = {
        IPPOperation.PRINT_JOB: 'Print-Job',
        IPPOperation.VALIDATE_JOB: 'Validate-Job',
        IPPOperation.CANCEL_JOB: 'Cancel-Job',
        IPPOperation.GET_JOB_ATTRIBUTES: 'Get-Job-Attributes',
        IPPOperation.GET_JOBS: 'Get-Jobs',
        IPPOperation.GET_PRINTER_ATTRIBUTES: 'Get-Printer-Attributes',
    }

    def __init__(self, printer_backend, advertised_host: str = "localhost", port: int = 8631,
                 default_printer_name: str = "AirPrint"):
        self.printer_backend = printer_backend
        self.advertised_host = advertised_host
        self.port = port
        self.default_printer_name = default_printer_name
        self.server: Optional[asyncio.AbstractServer] = None
        self.is_running = False
        self.start_time: Optional[datetime] = None
        self._printers: Tuple[PrinterDescriptor, ...] = ()

        self.handlers: Dict[int, Handler] = {
            IPPOperation.GET_PRINTER_ATTRIBUTES: self._handle_get_printer_attributes,
            IPPOperation.PRINT_JOB: self._handle_print_job,
            IPPOperation.VALIDATE_JOB: self._handle_validate_job,
            IPPOperation.GET_JOBS: self._handle_get_jobs,
            IPPOperation.GET_JOB_ATTRIBUTES: self._handle_get_job_attributes,
            IPPOperation.CANCEL_JOB: self._handle_cancel_job,
        }

    # Snapshot management

    def update_printers(self, printers: Iterable[PrinterDescriptor]):
        self._printers = tuple(printers)
        logger.debug(f"Printer snapshot updated: {[p.name for p in self._printers]}")

    @property
    def printers(self) -> Tuple[PrinterDescriptor, ...]:
        return self._printers

    def printer_uri(self, printer_name: str) -> str:
        return f"ipp://{self.advertised_host}:{self.port}/printers/{quote(printer_name)}"

    def _select_printer(self, printer_name: Optional[str]) -> Optional[PrinterDescriptor]:
        snapshot = self._printers
        if printer_name:
            for printer in snapshot:
                if printer.name == printer_name:
                    return printer
            return None
        if snapshot:
            return snapshot[0]
        return PrinterDescriptor(name=self.default_printer_name, is_accepting=True)

    # Lifecycle

    async def start(self, host: str = '0.0.0.0', port: Optional[int] = None):
        if port is not None:
            self.port = port

        self.server = await asyncio.start_server(
            self.handle_client,
            host,
            self.port,
            reuse_address=True,
            backlog=100,
        )
        self.is_running = True
        self.start_time = datetime.now()
        logger.info(f"IPP server listening on {host}:{self.port}")

    async def stop(self):
        self.is_running = False
        if self.server:
            self.server.close()
            await self.server.wait_closed()
            self.server = None
            logger.info("IPP server stopped")

    # HTTP transport

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        client_addr = writer.get_extra_info('peername')
        client_ip = client_addr[0] if client_addr else "unknown"
        logger.debug(f"New connection from {client_addr}")

        try:
            for _ in range(MAX_REQUESTS_PER_CONNECTION):
                try:
                    request_line = await asyncio.wait_for(reader.readline(), timeout=REQUEST_LINE_TIMEOUT)
                except asyncio.TimeoutError:
                    logger.debug(f"[{client_ip}] Idle connection timed out")
                    break

                if not request_line:
                    break
                if not request_line.strip():
                    continue

                keep_alive = await self._handle_http_request(reader, writer, request_line, client_ip)
                if not keep_alive:
                    break

        except (ConnectionResetError, BrokenPipeError, asyncio.IncompleteReadError) as e:
            logger.debug(f"[{client_ip}] Connection closed by peer: {e!r}")
        except Exception:
            logger.exception(f"[{client_ip}] Error handling client")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionResetError, BrokenPipeError):
                pass

    async def _handle_http_request(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                                   request_line: bytes, client_ip: str) -> bool:
        parts = request_line.decode('latin-1').strip().split()
        if len(parts) < 2:
            await self._send_http_error(writer, 400, "Bad Request")
            return False

        method, target = parts[0].upper(), parts[1]
        version = parts[2] if len(parts) >= 3 else "HTTP/1.0"
        try:
            headers = await asyncio.wait_for(self._read_headers(reader), timeout=REQUEST_LINE_TIMEOUT)
        except asyncio.TimeoutError:
            logger.debug(f"[{client_ip}] Timed out reading headers")
            await self._send_http_error(writer, 408, "Request Timeout")
            return False

        connection = headers.get('connection', '').lower()
        if version == "HTTP/1.1":
            keep_alive = connection != 'close'
        else:
            keep_alive = connection == 'keep-alive'

        path = urlsplit(target).path or "/"
        logger.debug(f"[{client_ip}] {method} {path} {version}")

        is_ipp_path = path == "/" or path.startswith("/printers/")
        if not is_ipp_path:
            keep_alive = await self._discard_body(reader, headers) and keep_alive
            await self._send_http_error(writer, 404, "Not Found", keep_alive)
            return keep_alive

        if method != 'POST':
            keep_alive = await self._discard_body(reader, headers) and keep_alive
            if method == 'GET' and path == "/":
                await self._send_http_response(writer, 200, "OK", b"AirPrint Bridge IPP Server",
                                               "text/plain", keep_alive)
            else:
                await self._send_http_error(writer, 405, "Method Not Allowed", keep_alive,
                                            extra_headers={"Allow": "POST"})
            return keep_alive

        if 'continue' in headers.get('expect', '').lower():
            writer.write(b"HTTP/1.1 100 Continue\r\n\r\n")
            await writer.drain()

        try:
            body = await asyncio.wait_for(self._read_body(reader, headers), timeout=BODY_TIMEOUT)
        except HTTPError as e:
            await self._send_http_error(writer, e.status, e.reason)
            return False
        except asyncio.TimeoutError:
            await self._send_http_error(writer, 408, "Request Timeout")
            return False

        printer_name = None
        if path.startswith("/printers/"):
            printer_name = unquote(path[len("/printers/"):].split("/")[0]) or None

        response = await self.process_request(body, printer_name)
        await self._send_http_response(writer, 200, "OK", response, "application/ipp", keep_alive)
        return keep_alive

    async def _read_headers(self, reader: asyncio.StreamReader) -> Dict[str, str]:
        headers = {}
        while True:
            line = await reader.readline()
            if not line or line in (b'\r\n', b'\n'):
                break
            text = line.decode('latin-1').strip()
            if ':' in text:
                key, value = text.split(':', 1)
                headers[key.strip().lower()] = value.strip()
        return headers

    async def _read_body(self, reader: asyncio.StreamReader, headers: Dict[str, str]) -> bytes:
        if 'chunked' in headers.get('transfer-encoding', '').lower():
            chunks = []
            total = 0
            while True:
                size_line = await reader.readline()
                try:
                    size = int(size_line.split(b';')[0].strip(), 16)
                except ValueError:
                    raise HTTPError(400, "Invalid chunk size")
                if size == 0:
                    # Trailer section ends with an empty line
                    while (await reader.readline()).strip():
                        pass
                    break
                total += size
                if total > MAX_BODY_SIZE:
                    raise HTTPError(413, "Payload Too Large")
                chunks.append(await reader.readexactly(size))
                await reader.readline()
            return b''.join(chunks)

        try:
            length = int(headers.get('content-length', '0'))
        except ValueError:
            raise HTTPError(400, "Invalid Content-Length")
        if length < 0:
            raise HTTPError(400, "Invalid Content-Length")
        if length > MAX_BODY_SIZE:
            raise HTTPError(413, "Payload Too Large")
        return await reader.readexactly(length) if length else b''

    async def _discard_body(self, reader: asyncio.StreamReader, headers: Dict[str, str]) -> bool:
        """Returns False when the body could not be consumed and the connection must close."""
        try:
            await asyncio.wait_for(self._read_body(reader, headers), timeout=BODY_TIMEOUT)
        except (HTTPError, asyncio.TimeoutError):
            return False
        return True

    async def _send_http_response(self, writer: asyncio.StreamWriter, status: int, reason: str,
                                  body: bytes, content_type: str, keep_alive: bool = False,
                                  extra_headers: Optional[Dict[str, str]] = None):
        head = (
            f"HTTP/1.1 {status} {reason}\r\n"
            f"Content-Type: {content_type}\r\n"
            f"Content-Length: {len(body)}\r\n"
            "Server: airprint-bridge IPP/2.0\r\n"
            f"Date: {datetime.now(timezone.utc).strftime('%a, %d %b %Y %H:%M:%S GMT')}\r\n"
            f"Connection: {'keep-alive' if keep_alive else 'close'}\r\n"
        )
        for key, value in (extra_headers or {}).items():
            head += f"{key}: {value}\r\n"
        head += "\r\n"

        writer.write(head.encode('latin-1'))
        writer.write(body)
        await writer.drain()

    async def _send_http_error(self, writer: asyncio.StreamWriter, status: int, reason: str,
                               keep_alive: bool = False, extra_headers: Optional[Dict[str, str]] = None):
        await self._send_http_response(writer, status, reason, reason.encode(), "text/plain",
                                       keep_alive, extra_headers)

    # IPP processing

    async def process_request(self, body: bytes, printer_name: Optional[str] = None) -> bytes:
        """Turns a raw IPP request body into an encoded IPP response."""
        try:
            request = IPPParser.decode(body)
        except MalformedMessage as e:
            logger.warning(f"Malformed IPP request ({len(body)} bytes): {e}")
            request_id = struct.unpack(">I", body[4:HEADER_SIZE])[0] if len(body) >= HEADER_SIZE else 0
            return IPPParser.encode(
                self._new_response(request_id, IPPStatusCode.CLIENT_ERROR_BAD_REQUEST)
            )

        operation_name = self.OPERATION_NAMES.get(request.code, f"Unknown-0x{request.code:04x}")
        logger.debug(f"{operation_name} request_id={request.request_id} printer={printer_name or '-'}")

        printer = self._select_printer(printer_name)
        if printer is None:
            logger.warning(f"{operation_name} for unknown printer {printer_name}")
            response = self._new_response(request.request_id, IPPStatusCode.CLIENT_ERROR_NOT_FOUND,
                                          request.version)
            return IPPParser.encode(response)

        try:
            handler = self.handlers.get(request.code)
            if handler is None:
                raise UnsupportedOperation(f"Unsupported IPP operation 0x{request.code:04x}")
            response = await handler(request, body, printer)
            # Values out of range for the wire format (integers over 2^31-1, strings over 65535 bytes) fail here
            return IPPParser.encode(response)
        except UnsupportedOperation as e:
            logger.warning(str(e))
            response = self._new_response(request.request_id, IPPStatusCode.CLIENT_ERROR_BAD_REQUEST,
                                          request.version)
        except Exception:
            logger.exception(f"Error processing {operation_name}")
            response = self._new_response(request.request_id, IPPStatusCode.SERVER_ERROR_INTERNAL_ERROR,
                                          request.version)

        return IPPParser.encode(response)

    def _new_response(self, request_id: int, status: int, version: Tuple[int, int] = (2, 0)) -> IPPMessage:
        response = IPPMessage(version=version, code=status, request_id=request_id)
        group = response.add_group(IPPTag.OPERATION_ATTRIBUTES_TAG)
        group.add(IPPTag.CHARSET, 'attributes-charset', 'utf-8')
        group.add(IPPTag.NATURAL_LANGUAGE, 'attributes-natural-language', 'en-us')
        return response

    async def _handle_get_printer_attributes(self, request: IPPMessage, body: bytes,
                                             printer: PrinterDescriptor) -> IPPMessage:
        response = self._new_response(request.request_id, IPPStatusCode.SUCCESSFUL_OK, request.version)
        attrs = response.add_group(IPPTag.PRINTER_ATTRIBUTES_TAG)

        urf = URFCapabilities.from_printer(printer)
        media = list(printer.media_supported) or [DEFAULT_MEDIA]
        media_default = printer.media_default or media[0]
        sides = ['one-sided']
        if printer.duplex_supported:
            sides.extend(['two-sided-long-edge', 'two-sided-short-edge'])

        attrs.add(IPPTag.URI, 'printer-uri-supported', self.printer_uri(printer.name))
        attrs.add(IPPTag.KEYWORD, 'uri-security-supported', 'none')
        attrs.add(IPPTag.KEYWORD, 'uri-authentication-supported', 'none')
        attrs.add(IPPTag.NAME_WITHOUT_LANGUAGE, 'printer-name', printer.name)
        attrs.add(IPPTag.ENUM, 'printer-state', int(printer.state))
        attrs.add(IPPTag.KEYWORD, 'printer-state-reasons', 'none')
        attrs.add_multi(IPPTag.KEYWORD, 'ipp-versions-supported', ['1.1', '2.0'])
        attrs.add_multi(IPPTag.ENUM, 'operations-supported', [int(op) for op in self.handlers])
        attrs.add(IPPTag.CHARSET, 'charset-configured', 'utf-8')
        attrs.add(IPPTag.CHARSET, 'charset-supported', 'utf-8')
        attrs.add(IPPTag.NATURAL_LANGUAGE, 'natural-language-configured', 'en-us')
        attrs.add(IPPTag.NATURAL_LANGUAGE, 'generated-natural-language-supported', 'en-us')
        attrs.add_multi(IPPTag.MIME_MEDIA_TYPE, 'document-format-supported', DOCUMENT_FORMATS)
        attrs.add(IPPTag.MIME_MEDIA_TYPE, 'document-format-default', DOCUMENT_FORMATS[0])
        attrs.add(IPPTag.BOOLEAN, 'printer-is-accepting-jobs', printer.is_accepting)
        attrs.add(IPPTag.INTEGER, 'queued-job-count', 0)
        attrs.add(IPPTag.KEYWORD, 'pdl-override-supported', 'attempted')
        attrs.add(IPPTag.TEXT_WITHOUT_LANGUAGE, 'printer-make-and-model', printer.make_model or printer.name)
        attrs.add(IPPTag.TEXT_WITHOUT_LANGUAGE, 'printer-location', printer.location)
        attrs.add(IPPTag.BOOLEAN, 'color-supported', printer.color_supported)
        attrs.add(IPPTag.KEYWORD, 'media-default', media_default)
        attrs.add_multi(IPPTag.KEYWORD, 'media-supported', media)
        attrs.add_multi(IPPTag.KEYWORD, 'sides-supported', sides)
        attrs.add(IPPTag.KEYWORD, 'sides-default', 'one-sided')
        attrs.add_multi(IPPTag.KEYWORD, 'urf-supported', urf.tokens() + ['V1.4'])

        if self.start_time:
            uptime = int((datetime.now() - self.start_time).total_seconds())
            attrs.add(IPPTag.INTEGER, 'printer-up-time', max(uptime, 1))

        return response

    async def _handle_print_job(self, request: IPPMessage, body: bytes,
                                printer: PrinterDescriptor) -> IPPMessage:
        try:
            document_start = IPPParser.find_document_boundary(body)
        except NoDocumentFound as e:
            logger.error(f"Print-Job without document for {printer.name}: {e}")
            return self._new_response(request.request_id, IPPStatusCode.CLIENT_ERROR_BAD_REQUEST,
                                      request.version)

        document = body[document_start:]
        job_name_value = request.get_value(IPPTag.OPERATION_ATTRIBUTES_TAG, 'job-name')
        job_name = job_name_value.value if isinstance(job_name_value, TextValue) and job_name_value.value \
            else DEFAULT_JOB_NAME

        logger.info(f"Print-Job '{job_name}' for {printer.name}: {len(document)} bytes")

        try:
            job_id = await self.printer_backend.submit_job(printer.name, document, job_name, None)
        except BackendError as e:
            logger.error(f"Failed to forward job to {printer.name}: {e}")
            return self._new_response(request.request_id, IPPStatusCode.SERVER_ERROR_INTERNAL_ERROR,
                                      request.version)

        logger.info(f"Job {job_id} forwarded to {printer.name}")

        response = self._new_response(request.request_id, IPPStatusCode.SUCCESSFUL_OK, request.version)
        job = response.add_group(IPPTag.JOB_ATTRIBUTES_TAG)
        job.add(IPPTag.INTEGER, 'job-id', job_id)
        job.add(IPPTag.URI, 'job-uri', f"{self.printer_uri(printer.name)}/jobs/{job_id}")
        job.add(IPPTag.ENUM, 'job-state', int(JobState.PENDING))
        return response

    async def _handle_validate_job(self, request: IPPMessage, body: bytes,
                                   printer: PrinterDescriptor) -> IPPMessage:
        return self._new_response(request.request_id, IPPStatusCode.SUCCESSFUL_OK, request.version)

    # Jobs are not tracked, the list is always empty
    async def _handle_get_jobs(self, request: IPPMessage, body: bytes,
                               printer: PrinterDescriptor) -> IPPMessage:
        return self._new_response(request.request_id, IPPStatusCode.SUCCESSFUL_OK, request.version)

    # Synthetic status: every job reports as completed
    def _completed_job_response(self, request: IPPMessage) -> IPPMessage:
        response = self._new_response(request.request_id, IPPStatusCode.SUCCESSFUL_OK, request.version)
        job = response.add_group(IPPTag.JOB_ATTRIBUTES_TAG)
        job_id = request.get_value(IPPTag.OPERATION_ATTRIBUTES_TAG, 'job-id')
        if isinstance(job_id, IntegerValue):
            job.add(IPPTag.INTEGER, 'job-id', job_id.value)
        job.add(IPPTag.ENUM, 'job-state', int(JobState.COMPLETED))
        job.add(IPPTag.KEYWORD, 'job-state-reasons', 'job-completed-successfully')
        return response

    async def _handle_get_job_attributes(self, request: IPPMessage, body: bytes,
                                         printer: PrinterDescriptor) -> IPPMessage:
        return self._completed_job_response(request)

    async def _handle_cancel_job(self, request: IPPMessage, body: bytes,
                                 printer: PrinterDescriptor) -> IPPMessage:
        job_id = request.get_value(IPPTag.OPERATION_ATTRIBUTES_TAG, 'job-id')
        if isinstance(job_id, IntegerValue):
            try:
                await self.printer_backend.cancel_job(job_id.value)
            except BackendError as e:
                logger.warning(f"Cancel-Job {job_id.value} not forwarded: {e}")
        return self._completed_job_response(request)

    def get_connection_info(self) -> Dict[str, object]:
        return {
            'hostname': socket.gethostname(),
            'advertised_host': self.advertised_host,
            'port': self.port,
            'printers': [self.printer_uri(p.name) for p in self._printers],
        }
