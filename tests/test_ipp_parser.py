import struct

import pytest

from airprint_bridge.server.ipp_parser import (
    IPPParser,
    IPPMessage,
    IPPOperation,
    IPPStatusCode,
    IPPTag,
    IPPAttribute,
    AttributeGroup,
    TextValue,
    IntegerValue,
    BooleanValue,
    OctetsValue,
    MalformedMessage,
    NoDocumentFound,
)


def _attribute(tag: int, name: str, value: bytes) -> bytes:
    name_bytes = name.encode('utf-8')
    return (bytes([tag]) + struct.pack(">H", len(name_bytes)) + name_bytes
            + struct.pack(">H", len(value)) + value)


def _header(operation: int = IPPOperation.GET_PRINTER_ATTRIBUTES, request_id: int = 1) -> bytes:
    return struct.pack(">BBHI", 2, 0, operation, request_id)


class TestDecode:
    # Minimal request with charset and natural-language
    def test_decode_minimal_request(self):
        data = (_header(request_id=123)
                + bytes([IPPTag.OPERATION_ATTRIBUTES_TAG])
                + _attribute(IPPTag.CHARSET, 'attributes-charset', b'utf-8')
                + _attribute(IPPTag.NATURAL_LANGUAGE, 'attributes-natural-language', b'en')
                + bytes([IPPTag.END_OF_ATTRIBUTES_TAG]))

        message = IPPParser.decode(data)

        assert message.version == (2, 0)
        assert message.code == IPPOperation.GET_PRINTER_ATTRIBUTES
        assert message.request_id == 123
        group = message.group(IPPTag.OPERATION_ATTRIBUTES_TAG)
        assert group.first('attributes-charset') == TextValue('utf-8')
        assert group.names() == ['attributes-charset', 'attributes-natural-language']

    def test_decode_value_kinds(self):
        resolution = struct.pack(">iiB", 600, 600, 3)
        data = (_header()
                + bytes([IPPTag.PRINTER_ATTRIBUTES_TAG])
                + _attribute(IPPTag.INTEGER, 'queued-job-count', struct.pack(">i", -2))
                + _attribute(IPPTag.BOOLEAN, 'color-supported', b'\x01')
                + _attribute(IPPTag.RESOLUTION, 'printer-resolution-default', resolution)
                + bytes([IPPTag.END_OF_ATTRIBUTES_TAG]))

        group = IPPParser.decode(data).group(IPPTag.PRINTER_ATTRIBUTES_TAG)

        assert group.first('queued-job-count') == IntegerValue(-2)
        assert group.first('color-supported') == BooleanValue(True)
        assert group.first('printer-resolution-default') == OctetsValue(resolution)

    # Additional values (empty name) belong to the previous attribute
    def test_decode_additional_values(self):
        data = (_header()
                + bytes([IPPTag.OPERATION_ATTRIBUTES_TAG])
                + _attribute(IPPTag.KEYWORD, 'requested-attributes', b'printer-name')
                + _attribute(IPPTag.KEYWORD, '', b'printer-state')
                + _attribute(IPPTag.KEYWORD, '', b'media-ready')
                + _attribute(IPPTag.NAME_WITHOUT_LANGUAGE, 'requesting-user-name', b'bob')
                + bytes([IPPTag.END_OF_ATTRIBUTES_TAG]))

        group = IPPParser.decode(data).group(IPPTag.OPERATION_ATTRIBUTES_TAG)

        assert [v.value for v in group.get('requested-attributes')] == [
            'printer-name', 'printer-state', 'media-ready'
        ]
        assert group.get('requesting-user-name') == [TextValue('bob')]

    def test_decode_multiple_printer_groups(self):
        data = (_header()
                + bytes([IPPTag.OPERATION_ATTRIBUTES_TAG])
                + _attribute(IPPTag.CHARSET, 'attributes-charset', b'utf-8')
                + bytes([IPPTag.PRINTER_ATTRIBUTES_TAG])
                + _attribute(IPPTag.NAME_WITHOUT_LANGUAGE, 'printer-name', b'Office')
                + bytes([IPPTag.PRINTER_ATTRIBUTES_TAG])
                + _attribute(IPPTag.NAME_WITHOUT_LANGUAGE, 'printer-name', b'Lab')
                + bytes([IPPTag.END_OF_ATTRIBUTES_TAG]))

        groups = IPPParser.decode(data).find_groups(IPPTag.PRINTER_ATTRIBUTES_TAG)

        assert [g.first('printer-name').value for g in groups] == ['Office', 'Lab']

    def test_decode_stops_at_end_tag(self):
        data = (_header()
                + bytes([IPPTag.OPERATION_ATTRIBUTES_TAG])
                + _attribute(IPPTag.CHARSET, 'attributes-charset', b'utf-8')
                + bytes([IPPTag.END_OF_ATTRIBUTES_TAG])
                + b'%PDF-1.4 \x01\x02\x03')

        message = IPPParser.decode(data)

        assert len(message.groups) == 1

    def test_decode_without_end_tag(self):
        data = _header() + bytes([IPPTag.OPERATION_ATTRIBUTES_TAG]) + _attribute(
            IPPTag.CHARSET, 'attributes-charset', b'utf-8')

        message = IPPParser.decode(data)

        assert message.get_value(IPPTag.OPERATION_ATTRIBUTES_TAG, 'attributes-charset') == TextValue('utf-8')

    @pytest.mark.parametrize('data', [b'', b'\x02\x00\x00\x0b', b'\x02\x00\x00\x0b\x00\x00\x00'])
    def test_decode_too_short(self, data):
        with pytest.raises(MalformedMessage):
            IPPParser.decode(data)

    def test_decode_truncated_value(self):
        data = (_header()
                + bytes([IPPTag.OPERATION_ATTRIBUTES_TAG])
                + _attribute(IPPTag.CHARSET, 'attributes-charset', b'utf-8')[:-2])

        with pytest.raises(MalformedMessage):
            IPPParser.decode(data)

    def test_decode_attribute_outside_group(self):
        data = _header() + _attribute(IPPTag.CHARSET, 'attributes-charset', b'utf-8')

        with pytest.raises(MalformedMessage):
            IPPParser.decode(data)

    # An additional value with no previous attribute in the group is invalid
    def test_decode_orphan_additional_value(self):
        data = (_header()
                + bytes([IPPTag.OPERATION_ATTRIBUTES_TAG])
                + _attribute(IPPTag.KEYWORD, '', b'printer-name')
                + bytes([IPPTag.END_OF_ATTRIBUTES_TAG]))

        with pytest.raises(MalformedMessage):
            IPPParser.decode(data)

    def test_decode_bad_integer_length(self):
        data = (_header()
                + bytes([IPPTag.OPERATION_ATTRIBUTES_TAG])
                + _attribute(IPPTag.INTEGER, 'job-id', b'\x00\x01')
                + bytes([IPPTag.END_OF_ATTRIBUTES_TAG]))

        with pytest.raises(MalformedMessage):
            IPPParser.decode(data)

    def test_decode_invalid_utf8(self):
        data = (_header()
                + bytes([IPPTag.OPERATION_ATTRIBUTES_TAG])
                + _attribute(IPPTag.NAME_WITHOUT_LANGUAGE, 'job-name', b'\xff\xfe')
                + bytes([IPPTag.END_OF_ATTRIBUTES_TAG]))

        with pytest.raises(MalformedMessage):
            IPPParser.decode(data)


class TestEncode:
    def test_encode_header_and_end_tag(self):
        message = IPPMessage(version=(1, 1), code=IPPStatusCode.SUCCESSFUL_OK, request_id=77)

        data = IPPParser.encode(message)

        assert data == struct.pack(">BBHI", 1, 1, 0, 77) + bytes([IPPTag.END_OF_ATTRIBUTES_TAG])

    def test_encode_decode_preserves_message(self):
        message = IPPMessage(version=(2, 0), code=IPPStatusCode.SUCCESSFUL_OK, request_id=9)
        operation = message.add_group(IPPTag.OPERATION_ATTRIBUTES_TAG)
        operation.add(IPPTag.CHARSET, 'attributes-charset', 'utf-8')
        printer = message.add_group(IPPTag.PRINTER_ATTRIBUTES_TAG)
        printer.add(IPPTag.ENUM, 'printer-state', 3)
        printer.add(IPPTag.BOOLEAN, 'color-supported', False)
        printer.add_multi(IPPTag.KEYWORD, 'sides-supported', ['one-sided', 'two-sided-long-edge'])
        printer.add(IPPTag.TEXT_WITHOUT_LANGUAGE, 'printer-location', 'Büro 2')

        decoded = IPPParser.decode(IPPParser.encode(message))

        assert decoded == message

    def test_add_multi_uses_empty_names(self):
        group = AttributeGroup(IPPTag.PRINTER_ATTRIBUTES_TAG)
        group.add_multi(IPPTag.KEYWORD, 'sides-supported', ['one-sided', 'two-sided-long-edge'])

        assert [a.name for a in group.attributes] == ['sides-supported', '']

    def test_encode_rejects_leading_additional_value(self):
        message = IPPMessage()
        group = message.add_group(IPPTag.OPERATION_ATTRIBUTES_TAG)
        group.attributes.append(IPPAttribute(IPPTag.KEYWORD, '', TextValue('orphan')))

        with pytest.raises(ValueError):
            IPPParser.encode(message)

    def test_add_rejects_unknown_value_type(self):
        group = AttributeGroup(IPPTag.OPERATION_ATTRIBUTES_TAG)

        with pytest.raises(TypeError):
            group.add(IPPTag.KEYWORD, 'bad', 1.5)


class TestDocumentBoundary:
    # The document starts right after the end tag
    def test_boundary_after_end_tag(self):
        attributes = (_header(IPPOperation.PRINT_JOB)
                      + bytes([IPPTag.OPERATION_ATTRIBUTES_TAG])
                      + _attribute(IPPTag.CHARSET, 'attributes-charset', b'utf-8')
                      + _attribute(IPPTag.NAME_WITHOUT_LANGUAGE, 'job-name', b'Test Job')
                      + bytes([IPPTag.END_OF_ATTRIBUTES_TAG]))
        data = attributes + b'%PDF-1.4 document'

        offset = IPPParser.find_document_boundary(data)

        assert offset == len(attributes)
        assert data[offset:] == b'%PDF-1.4 document'

    # 0x03 bytes inside lengths or values do not end the attributes
    def test_boundary_ignores_end_tag_bytes_in_records(self):
        attributes = (_header(IPPOperation.PRINT_JOB, request_id=3)
                      + bytes([IPPTag.OPERATION_ATTRIBUTES_TAG])
                      + _attribute(IPPTag.NAME_WITHOUT_LANGUAGE, 'job-name', b'\x03' * 3)
                      + _attribute(IPPTag.INTEGER, 'copies', struct.pack(">i", 3))
                      + bytes([IPPTag.END_OF_ATTRIBUTES_TAG]))

        assert IPPParser.find_document_boundary(attributes + b'\x03DATA') == len(attributes)

    def test_boundary_with_empty_document(self):
        data = _header(IPPOperation.PRINT_JOB) + bytes([IPPTag.END_OF_ATTRIBUTES_TAG])

        assert IPPParser.find_document_boundary(data) == len(data)

    def test_boundary_missing_end_tag(self):
        data = (_header(IPPOperation.PRINT_JOB)
                + bytes([IPPTag.OPERATION_ATTRIBUTES_TAG])
                + _attribute(IPPTag.CHARSET, 'attributes-charset', b'utf-8'))

        with pytest.raises(NoDocumentFound):
            IPPParser.find_document_boundary(data)

    def test_boundary_truncated_record(self):
        data = _header(IPPOperation.PRINT_JOB) + bytes([IPPTag.OPERATION_ATTRIBUTES_TAG, IPPTag.CHARSET, 0x00])

        with pytest.raises(NoDocumentFound):
            IPPParser.find_document_boundary(data)


class TestStatusCodes:
    def test_is_successful(self):
        assert IPPStatusCode.is_successful(IPPStatusCode.SUCCESSFUL_OK)
        assert IPPStatusCode.is_successful(0x0001)
        assert not IPPStatusCode.is_successful(IPPStatusCode.CLIENT_ERROR_NOT_FOUND)
        assert not IPPStatusCode.is_successful(IPPStatusCode.SERVER_ERROR_INTERNAL_ERROR)
