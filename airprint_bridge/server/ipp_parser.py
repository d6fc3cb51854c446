from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple, Union
from enum import IntEnum
import logging
import struct
import io

logger = logging.getLogger(__name__)

HEADER_SIZE = 8


class IPPError(Exception):
    pass


class MalformedMessage(IPPError):
    pass


class NoDocumentFound(IPPError):
    pass


class UnsupportedOperation(IPPError):
    pass


# IPP tags (group delimiters and value tags)
class IPPTag(IntEnum):
    # Group delimiters
    OPERATION_ATTRIBUTES_TAG = 0x01
    JOB_ATTRIBUTES_TAG = 0x02
    END_OF_ATTRIBUTES_TAG = 0x03
    PRINTER_ATTRIBUTES_TAG = 0x04
    UNSUPPORTED_ATTRIBUTES_TAG = 0x05

    # Out-of-band values
    UNSUPPORTED = 0x10
    UNKNOWN = 0x12
    NO_VALUE = 0x13

    # Integers
    INTEGER = 0x21
    BOOLEAN = 0x22
    ENUM = 0x23

    # Binary and structured values
    OCTET_STRING = 0x30
    DATETIME = 0x31
    RESOLUTION = 0x32
    RANGE_OF_INTEGER = 0x33
    BEGIN_COLLECTION = 0x34
    TEXT_WITH_LANGUAGE = 0x35
    NAME_WITH_LANGUAGE = 0x36
    END_COLLECTION = 0x37

    # Character strings
    TEXT_WITHOUT_LANGUAGE = 0x41
    NAME_WITHOUT_LANGUAGE = 0x42
    KEYWORD = 0x44
    URI = 0x45
    URI_SCHEME = 0x46
    CHARSET = 0x47
    NATURAL_LANGUAGE = 0x48
    MIME_MEDIA_TYPE = 0x49
    MEMBER_ATTR_NAME = 0x4A


GROUP_TAGS = frozenset({
    IPPTag.OPERATION_ATTRIBUTES_TAG,
    IPPTag.JOB_ATTRIBUTES_TAG,
    IPPTag.PRINTER_ATTRIBUTES_TAG,
    IPPTag.UNSUPPORTED_ATTRIBUTES_TAG,
})

TEXT_TAGS = frozenset({
    IPPTag.TEXT_WITHOUT_LANGUAGE,
    IPPTag.NAME_WITHOUT_LANGUAGE,
    IPPTag.KEYWORD,
    IPPTag.URI,
    IPPTag.URI_SCHEME,
    IPPTag.CHARSET,
    IPPTag.NATURAL_LANGUAGE,
    IPPTag.MIME_MEDIA_TYPE,
})

INTEGER_TAGS = frozenset({IPPTag.INTEGER, IPPTag.ENUM})


class IPPOperation(IntEnum):
    PRINT_JOB = 0x0002
    VALIDATE_JOB = 0x0004
    CANCEL_JOB = 0x0008
    GET_JOB_ATTRIBUTES = 0x0009
    GET_JOBS = 0x000a
    GET_PRINTER_ATTRIBUTES = 0x000b
    CUPS_GET_PRINTERS = 0x4002


class IPPStatusCode(IntEnum):
    SUCCESSFUL_OK = 0x0000
    SUCCESSFUL_OK_IGNORED_OR_SUBSTITUTED_ATTRIBUTES = 0x0001
    CLIENT_ERROR_BAD_REQUEST = 0x0400
    CLIENT_ERROR_NOT_FOUND = 0x0406
    SERVER_ERROR_INTERNAL_ERROR = 0x0500

    @staticmethod
    def is_successful(code: int) -> bool:
        return code < 0x0100


class JobState(IntEnum):
    PENDING = 3
    PROCESSING = 5
    COMPLETED = 9


# Attribute values: explicit tagged union, one class per wire representation
@dataclass(frozen=True)
class TextValue:
    value: str


@dataclass(frozen=True)
class IntegerValue:
    value: int


@dataclass(frozen=True)
class BooleanValue:
    value: bool


# Raw bytes for tags outside the text/integer/boolean classes (resolution, range, dateTime, out-of-band...)
@dataclass(frozen=True)
class OctetsValue:
    value: bytes


AttributeValue = Union[TextValue, IntegerValue, BooleanValue, OctetsValue]


# An empty name marks an additional value of the preceding named attribute
@dataclass
class IPPAttribute:
    tag: int
    name: str
    value: AttributeValue

    def __repr__(self):
        return f"IPPAttribute(name='{self.name}', tag=0x{self.tag:02x}, value={self.value!r})"


@dataclass
class AttributeGroup:
    tag: int
    attributes: List[IPPAttribute] = field(default_factory=list)

    def add(self, tag: int, name: str, value) -> "AttributeGroup":
        self.attributes.append(IPPAttribute(tag, name, _coerce_value(value)))
        return self

    # First value carries the name, the rest go out with an empty name
    def add_multi(self, tag: int, name: str, values: Iterable) -> "AttributeGroup":
        for index, value in enumerate(values):
            self.add(tag, name if index == 0 else "", value)
        return self

    def get(self, name: str) -> List[AttributeValue]:
        values = []
        collecting = False
        for attribute in self.attributes:
            if attribute.name:
                collecting = attribute.name == name
                if collecting:
                    values.append(attribute.value)
            elif collecting:
                values.append(attribute.value)
        return values

    def first(self, name: str) -> Optional[AttributeValue]:
        values = self.get(name)
        return values[0] if values else None

    def names(self) -> List[str]:
        return [a.name for a in self.attributes if a.name]


@dataclass
class IPPMessage:
    version: Tuple[int, int] = (2, 0)
    # operation-id in requests, status-code in responses
    code: int = 0
    request_id: int = 0
    groups: List[AttributeGroup] = field(default_factory=list)

    def add_group(self, tag: int) -> AttributeGroup:
        group = AttributeGroup(tag)
        self.groups.append(group)
        return group

    def find_groups(self, tag: int) -> List[AttributeGroup]:
        return [g for g in self.groups if g.tag == tag]

    def group(self, tag: int) -> Optional[AttributeGroup]:
        groups = self.find_groups(tag)
        return groups[0] if groups else None

    def get_value(self, group_tag: int, name: str) -> Optional[AttributeValue]:
        group = self.group(group_tag)
        if group is None:
            return None
        return group.first(name)


def _coerce_value(value) -> AttributeValue:
    if isinstance(value, (TextValue, IntegerValue, BooleanValue, OctetsValue)):
        return value
    # bool first: bool is a subclass of int
    if isinstance(value, bool):
        return BooleanValue(value)
    if isinstance(value, int):
        return IntegerValue(value)
    if isinstance(value, str):
        return TextValue(value)
    if isinstance(value, (bytes, bytearray)):
        return OctetsValue(bytes(value))
    raise TypeError(f"Unsupported IPP attribute value: {value!r}")


class IPPParser:

    # Decodes a complete IPP message; bytes after the end-of-attributes tag are not part of it
    @staticmethod
    def decode(data: bytes) -> IPPMessage:
        if len(data) < HEADER_SIZE:
            raise MalformedMessage(f"IPP message too short: {len(data)} bytes")

        stream = io.BytesIO(data)
        major, minor, code, request_id = struct.unpack(">BBHI", stream.read(HEADER_SIZE))
        message = IPPMessage(version=(major, minor), code=code, request_id=request_id)

        logger.debug(
            f"Decoding IPP: version={major}.{minor}, code=0x{code:04x}, request_id={request_id}"
        )

        current_group: Optional[AttributeGroup] = None
        last_name: Optional[str] = None

        while True:
            tag_bytes = stream.read(1)
            if not tag_bytes:
                break

            tag = tag_bytes[0]

            if tag == IPPTag.END_OF_ATTRIBUTES_TAG:
                break

            if tag in GROUP_TAGS:
                current_group = message.add_group(tag)
                last_name = None
                continue

            if current_group is None:
                raise MalformedMessage(f"Attribute tag 0x{tag:02x} outside of an attribute group")

            name_bytes = IPPParser._read_field(stream, "name")
            value_bytes = IPPParser._read_field(stream, "value")

            try:
                name = name_bytes.decode("utf-8")
            except UnicodeDecodeError as e:
                raise MalformedMessage(f"Attribute name is not valid UTF-8: {e}") from e

            if not name and last_name is None:
                raise MalformedMessage("Additional value without a preceding named attribute")
            if name:
                last_name = name

            current_group.attributes.append(
                IPPAttribute(tag, name, IPPParser._decode_value(tag, value_bytes))
            )

        return message

    # Reads a 2-byte length followed by that many bytes
    @staticmethod
    def _read_field(stream: io.BytesIO, what: str) -> bytes:
        length_bytes = stream.read(2)
        if len(length_bytes) < 2:
            raise MalformedMessage(f"Truncated attribute {what} length")
        length = struct.unpack(">H", length_bytes)[0]
        payload = stream.read(length)
        if len(payload) < length:
            raise MalformedMessage(f"Truncated attribute {what}: expected {length} bytes, got {len(payload)}")
        return payload

    @staticmethod
    def _decode_value(tag: int, value_bytes: bytes) -> AttributeValue:
        if tag in TEXT_TAGS:
            try:
                return TextValue(value_bytes.decode("utf-8"))
            except UnicodeDecodeError as e:
                raise MalformedMessage(f"Text value for tag 0x{tag:02x} is not valid UTF-8: {e}") from e
        if tag in INTEGER_TAGS:
            if len(value_bytes) != 4:
                raise MalformedMessage(f"Integer value for tag 0x{tag:02x} has length {len(value_bytes)}")
            return IntegerValue(struct.unpack(">i", value_bytes)[0])
        if tag == IPPTag.BOOLEAN:
            if len(value_bytes) != 1:
                raise MalformedMessage(f"Boolean value has length {len(value_bytes)}")
            return BooleanValue(value_bytes[0] != 0)
        return OctetsValue(value_bytes)

    # Encodes groups in stored order and terminates with the end-of-attributes tag
    @staticmethod
    def encode(message: IPPMessage) -> bytes:
        stream = io.BytesIO()
        major, minor = message.version
        stream.write(struct.pack(">BBHI", major, minor, message.code, message.request_id))

        for group in message.groups:
            stream.write(bytes([group.tag]))
            previous_named = False
            for attribute in group.attributes:
                if not attribute.name and not previous_named:
                    raise ValueError(
                        f"Additional value in group 0x{group.tag:02x} has no preceding named attribute"
                    )
                previous_named = True
                IPPParser._write_attribute(stream, attribute)

        stream.write(bytes([IPPTag.END_OF_ATTRIBUTES_TAG]))
        return stream.getvalue()

    @staticmethod
    def _write_attribute(stream: io.BytesIO, attribute: IPPAttribute):
        value = attribute.value
        if isinstance(value, TextValue):
            value_bytes = value.value.encode("utf-8")
        elif isinstance(value, BooleanValue):
            value_bytes = b"\x01" if value.value else b"\x00"
        elif isinstance(value, IntegerValue):
            value_bytes = struct.pack(">i", value.value)
        elif isinstance(value, OctetsValue):
            value_bytes = value.value
        else:
            raise TypeError(f"Unsupported IPP attribute value: {value!r}")

        name_bytes = attribute.name.encode("utf-8")
        stream.write(bytes([attribute.tag]))
        stream.write(struct.pack(">H", len(name_bytes)))
        stream.write(name_bytes)
        stream.write(struct.pack(">H", len(value_bytes)))
        stream.write(value_bytes)

    # Offset right after the end-of-attributes tag. The document payload of a
    # Print-Job has no length field of its own, so the scan walks tag by tag
    # from the header and skips attribute records by their length fields.
    @staticmethod
    def find_document_boundary(data: bytes) -> int:
        offset = HEADER_SIZE
        while offset < len(data):
            tag = data[offset]
            offset += 1
            if tag == IPPTag.END_OF_ATTRIBUTES_TAG:
                return offset
            if tag in GROUP_TAGS:
                continue
            for _ in range(2):
                if offset + 2 > len(data):
                    raise NoDocumentFound(f"Truncated attribute record at offset {offset}")
                length = struct.unpack_from(">H", data, offset)[0]
                offset += 2 + length
        raise NoDocumentFound("No end-of-attributes tag found in request")


decode = IPPParser.decode
encode = IPPParser.encode
find_document_boundary = IPPParser.find_document_boundary
