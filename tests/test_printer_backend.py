import struct
from unittest.mock import Mock

import pytest
import requests

from airprint_bridge.server.ipp_parser import (
    IPPParser,
    IPPMessage,
    IPPOperation,
    IPPStatusCode,
    IPPTag,
    AttributeGroup,
    OctetsValue,
    TextValue,
)
from airprint_bridge.server.printer_backend import (
    BackendUnavailable,
    CupsBackend,
    JOB_PLACEHOLDER_ID,
    PrinterState,
    SubmitFailed,
    format_resolution,
    parse_duplex_support,
    parse_resolutions,
    printer_from_attributes,
)


def _http_response(message: IPPMessage) -> Mock:
    response = Mock()
    response.content = IPPParser.encode(message)
    response.raise_for_status = Mock()
    return response


def _printer_group(message: IPPMessage, name: str, shared: bool = True) -> AttributeGroup:
    group = message.add_group(IPPTag.PRINTER_ATTRIBUTES_TAG)
    group.add(IPPTag.NAME_WITHOUT_LANGUAGE, 'printer-name', name)
    group.add(IPPTag.TEXT_WITHOUT_LANGUAGE, 'printer-make-and-model', f'{name} Model')
    group.add(IPPTag.ENUM, 'printer-state', 3)
    group.add(IPPTag.BOOLEAN, 'printer-is-shared', shared)
    group.add(IPPTag.BOOLEAN, 'printer-is-accepting-jobs', True)
    return group


class TestParsing:
    @pytest.mark.parametrize('values, expected', [
        (['300dpi', '600dpi'], [300, 600]),
        (['600x600dpi', '300x600dpi'], [600, 300]),
        (['1200x600dpi'], [1200, 600]),
        (['draft', ''], []),
    ])
    def test_parse_resolutions(self, values, expected):
        assert parse_resolutions(values) == expected

    def test_parse_duplex_support(self):
        assert parse_duplex_support(['one-sided', 'two-sided-long-edge'])
        assert parse_duplex_support(['Duplex'])
        assert not parse_duplex_support(['one-sided'])
        assert not parse_duplex_support([])

    def test_format_resolution(self):
        assert format_resolution(struct.pack('>iiB', 600, 300, 3)) == '600x300dpi'
        # Dots per centimetre
        assert format_resolution(struct.pack('>iiB', 118, 118, 4)) == '300x300dpi'
        assert format_resolution(b'\x00\x01') is None

    def test_printer_from_attributes(self):
        group = AttributeGroup(IPPTag.PRINTER_ATTRIBUTES_TAG)
        group.add(IPPTag.NAME_WITHOUT_LANGUAGE, 'printer-name', 'Office')
        group.add(IPPTag.TEXT_WITHOUT_LANGUAGE, 'printer-location', 'Room 1')
        group.add(IPPTag.ENUM, 'printer-state', 4)
        group.add(IPPTag.BOOLEAN, 'printer-is-shared', True)
        group.add(IPPTag.BOOLEAN, 'printer-is-accepting-jobs', True)
        group.add(IPPTag.BOOLEAN, 'color-supported', True)
        group.add_multi(IPPTag.KEYWORD, 'sides-supported', ['one-sided', 'two-sided-short-edge'])
        group.add_multi(IPPTag.RESOLUTION, 'printer-resolution-supported', [
            OctetsValue(struct.pack('>iiB', 300, 300, 3)),
            OctetsValue(struct.pack('>iiB', 600, 600, 3)),
        ])
        group.add_multi(IPPTag.KEYWORD, 'media-supported', ['iso_a4_210x297mm', 'na_letter_8.5x11in'])
        group.add(IPPTag.KEYWORD, 'media-ready', 'iso_a4_210x297mm')

        printer = printer_from_attributes(group)

        assert printer.name == 'Office'
        assert printer.location == 'Room 1'
        assert printer.state == PrinterState.PROCESSING
        assert printer.is_shared and printer.is_accepting
        assert printer.color_supported
        assert printer.duplex_supported
        assert printer.resolutions == (300, 600)
        assert printer.media_supported == ('iso_a4_210x297mm',)

    def test_printer_without_name_is_skipped(self):
        group = AttributeGroup(IPPTag.PRINTER_ATTRIBUTES_TAG)
        group.add(IPPTag.ENUM, 'printer-state', 3)

        assert printer_from_attributes(group) is None

    def test_unknown_state_maps_to_idle(self):
        assert PrinterState(42) == PrinterState.IDLE


@pytest.mark.asyncio
class TestCupsBackend:
    # Printer list from CUPS-Get-Printers
    async def test_fetch_printers(self):
        backend = CupsBackend('cups.local', 631)
        reply = IPPMessage(code=IPPStatusCode.SUCCESSFUL_OK, request_id=1)
        reply.add_group(IPPTag.OPERATION_ATTRIBUTES_TAG).add(IPPTag.CHARSET, 'attributes-charset', 'utf-8')
        _printer_group(reply, 'Office')
        _printer_group(reply, 'Lab', shared=False)
        backend.session.post = Mock(return_value=_http_response(reply))

        printers = await backend.fetch_printers()

        assert [p.name for p in printers] == ['Office', 'Lab']
        assert printers[1].is_shared is False

        url = backend.session.post.call_args[0][0]
        request = IPPParser.decode(backend.session.post.call_args[1]['data'])
        assert url == 'http://cups.local:631/'
        assert request.code == IPPOperation.CUPS_GET_PRINTERS
        requested = request.group(IPPTag.OPERATION_ATTRIBUTES_TAG).get('requested-attributes')
        assert TextValue('printer-is-shared') in requested

    async def test_fetch_printers_none_configured(self):
        backend = CupsBackend()
        reply = IPPMessage(code=IPPStatusCode.CLIENT_ERROR_NOT_FOUND, request_id=1)
        backend.session.post = Mock(return_value=_http_response(reply))

        assert await backend.fetch_printers() == []

    async def test_fetch_printers_connection_error(self):
        backend = CupsBackend()
        backend.session.post = Mock(side_effect=requests.ConnectionError('refused'))

        with pytest.raises(BackendUnavailable):
            await backend.fetch_printers()

    async def test_fetch_printers_error_status(self):
        backend = CupsBackend()
        reply = IPPMessage(code=IPPStatusCode.SERVER_ERROR_INTERNAL_ERROR, request_id=1)
        backend.session.post = Mock(return_value=_http_response(reply))

        with pytest.raises(BackendUnavailable):
            await backend.test_connection()

    async def test_fetch_printers_garbage_reply(self):
        backend = CupsBackend()
        response = Mock()
        response.content = b'<html>'
        backend.session.post = Mock(return_value=response)

        with pytest.raises(BackendUnavailable):
            await backend.fetch_printers()

    async def test_submit_job(self):
        backend = CupsBackend('cups.local', 631)
        reply = IPPMessage(code=IPPStatusCode.SUCCESSFUL_OK, request_id=1)
        reply.add_group(IPPTag.JOB_ATTRIBUTES_TAG).add(IPPTag.INTEGER, 'job-id', 42)
        backend.session.post = Mock(return_value=_http_response(reply))

        job_id = await backend.submit_job('Office Laser', b'%PDF-1.4', 'Report', {'copies': '2'})

        assert job_id == 42
        url = backend.session.post.call_args[0][0]
        payload = backend.session.post.call_args[1]['data']
        request = IPPParser.decode(payload)
        operation = request.group(IPPTag.OPERATION_ATTRIBUTES_TAG)
        assert url == 'http://cups.local:631/printers/Office%20Laser'
        assert request.code == IPPOperation.PRINT_JOB
        assert operation.first('printer-uri') == TextValue('ipp://cups.local:631/printers/Office%20Laser')
        assert operation.first('job-name') == TextValue('Report')
        assert request.get_value(IPPTag.JOB_ATTRIBUTES_TAG, 'copies') == TextValue('2')
        assert payload[IPPParser.find_document_boundary(payload):] == b'%PDF-1.4'

    async def test_submit_job_without_job_id(self):
        backend = CupsBackend()
        reply = IPPMessage(code=IPPStatusCode.SUCCESSFUL_OK, request_id=1)
        backend.session.post = Mock(return_value=_http_response(reply))

        assert await backend.submit_job('p', b'data', 'job') == JOB_PLACEHOLDER_ID

    async def test_submit_job_rejected(self):
        backend = CupsBackend()
        reply = IPPMessage(code=IPPStatusCode.CLIENT_ERROR_NOT_FOUND, request_id=1)
        backend.session.post = Mock(return_value=_http_response(reply))

        with pytest.raises(SubmitFailed):
            await backend.submit_job('missing', b'data', 'job')

    async def test_submit_job_http_error(self):
        backend = CupsBackend()
        response = Mock()
        response.raise_for_status = Mock(side_effect=requests.HTTPError('403 Forbidden'))
        backend.session.post = Mock(return_value=response)

        with pytest.raises(SubmitFailed):
            await backend.submit_job('p', b'data', 'job')

    async def test_query_job_reports_completed(self):
        status = await CupsBackend().query_job(7)

        assert status['job-state'] == 9
