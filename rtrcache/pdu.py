"""Wire format of RPKI-to-Router protocol data units."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import BinaryIO

log = logging.getLogger(__name__)

VERSION1 = 1
VERSION2 = 2
SUPPORTED_VERSIONS = (VERSION1, VERSION2)

MIN_PDU_LENGTH = 8
HEADER_LENGTH = 2

_HEADER = struct.Struct(">BBHI")
_SERIAL_NOTIFY = struct.Struct(">BBHII")
_SERIAL_QUERY_BODY = struct.Struct(">HII")
_CACHE_RESPONSE = struct.Struct(">BBHI")
_IPV4_PREFIX = struct.Struct(">BBHIBBBB4sI")
_IPV6_PREFIX = struct.Struct(">BBHIBBBB16sI")
_END_OF_DATA = struct.Struct(">BBHIIIII")
_CACHE_RESET = struct.Struct(">BBHI")
_ERROR_REPORT_HEAD = struct.Struct(">BBHII")


class PduType(IntEnum):
    """PDU type codes."""

    SERIAL_NOTIFY = 0
    SERIAL_QUERY = 1
    RESET_QUERY = 2
    CACHE_RESPONSE = 3
    IPV4_PREFIX = 4
    IPV6_PREFIX = 6
    END_OF_DATA = 7
    CACHE_RESET = 8
    ROUTER_KEY = 9
    ERROR_REPORT = 10


class Flag(IntEnum):
    """Prefix PDU flags."""

    WITHDRAW = 0
    ANNOUNCE = 1


class PduError(Exception):
    """Raised when a PDU is malformed or not acceptable."""


@dataclass(frozen=True)
class Header:
    """Version and type of an incoming PDU."""

    version: int
    ptype: int


class _Writable:
    def to_bytes(self) -> bytes:  # pragma: no cover - overridden
        raise NotImplementedError

    def serialize(self, stream: BinaryIO) -> None:
        """Write the encoded PDU to a binary stream."""
        stream.write(self.to_bytes())


@dataclass
class SerialNotifyPDU(_Writable):
    """Tells a router that new data is available."""

    session: int = 0
    serial: int = 0
    version: int = VERSION1

    def to_bytes(self) -> bytes:
        log.info("Sending a serial notify PDU: %s", self)
        return _SERIAL_NOTIFY.pack(
            self.version, PduType.SERIAL_NOTIFY, self.session, 12, self.serial
        )

    def serialize(self, stream: BinaryIO) -> None:
        stream.write(self.to_bytes())


@dataclass
class SerialQueryPDU:
    """A router's request for changes since a serial number."""

    session: int
    length: int
    serial: int

    @classmethod
    def from_bytes(cls, data: bytes) -> SerialQueryPDU:
        """Decode the body of a serial query, starting after version and type."""
        if len(data) < _SERIAL_QUERY_BODY.size:
            raise PduError(
                f"serial query PDU too short: {len(data) + HEADER_LENGTH} bytes"
            )
        session, length, serial = _SERIAL_QUERY_BODY.unpack_from(data)
        return cls(session=session, length=length, serial=serial)


@dataclass
class CacheResponsePDU(_Writable):
    """Starts a sequence of prefix PDUs."""

    session_id: int = 0
    version: int = VERSION1

    def to_bytes(self) -> bytes:
        log.info("Sending a cache response PDU: %s", self)
        return _CACHE_RESPONSE.pack(
            self.version, PduType.CACHE_RESPONSE, self.session_id, 8
        )

    def serialize(self, stream: BinaryIO) -> None:
        stream.write(self.to_bytes())


def _as_address(prefix: bytes, size: int, family: str) -> bytes:
    raw = bytes(prefix)
    if len(raw) != size:
        raise ValueError(f"{family} prefix must be {size} bytes, got {len(raw)}")
    return raw


@dataclass
class IPv4PrefixPDU(_Writable):
    """Announces or withdraws an IPv4 prefix."""

    flags: int
    min_length: int
    max_length: int
    prefix: bytes
    asn: int
    version: int = VERSION1

    def __post_init__(self) -> None:
        self.prefix = _as_address(self.prefix, 4, "IPv4")

    def to_bytes(self) -> bytes:
        return _IPV4_PREFIX.pack(
            self.version,
            PduType.IPV4_PREFIX,
            0,
            20,
            self.flags,
            self.min_length,
            self.max_length,
            0,
            self.prefix,
            self.asn,
        )

    def serialize(self, stream: BinaryIO) -> None:
        stream.write(self.to_bytes())


@dataclass
class IPv6PrefixPDU(_Writable):
    """Announces or withdraws an IPv6 prefix."""

    flags: int
    min_length: int
    max_length: int
    prefix: bytes
    asn: int
    version: int = VERSION1

    def __post_init__(self) -> None:
        self.prefix = _as_address(self.prefix, 16, "IPv6")

    def to_bytes(self) -> bytes:
        return _IPV6_PREFIX.pack(
            self.version,
            PduType.IPV6_PREFIX,
            0,
            32,
            self.flags,
            self.min_length,
            self.max_length,
            0,
            self.prefix,
            self.asn,
        )

    def serialize(self, stream: BinaryIO) -> None:
        stream.write(self.to_bytes())


@dataclass
class EndOfDataPDU(_Writable):
    """Ends a sequence of prefix PDUs and carries the timers."""

    session: int = 0
    serial: int = 0
    refresh: int = 0
    retry: int = 0
    expire: int = 0
    version: int = VERSION1

    def to_bytes(self) -> bytes:
        log.info("Sending end of data PDU: %s", self)
        return _END_OF_DATA.pack(
            self.version,
            PduType.END_OF_DATA,
            self.session,
            24,
            self.serial,
            self.refresh,
            self.retry,
            self.expire,
        )

    def serialize(self, stream: BinaryIO) -> None:
        stream.write(self.to_bytes())


@dataclass
class CacheResetPDU(_Writable):
    """Tells a router that the cache cannot serve incremental updates."""

    version: int = VERSION1

    def to_bytes(self) -> bytes:
        log.info("Sending a cache reset PDU")
        return _CACHE_RESET.pack(self.version, PduType.CACHE_RESET, 0, 8)

    def serialize(self, stream: BinaryIO) -> None:
        stream.write(self.to_bytes())


@dataclass
class ErrorReportPDU(_Writable):
    """Reports an error; no erroneous PDU is encapsulated."""

    code: int
    report: str = ""
    version: int = VERSION1

    def to_bytes(self) -> bytes:
        log.info("Sending an error report PDU: %s", self)
        text = self.report.encode("utf-8")
        total = _ERROR_REPORT_HEAD.size + 4 + len(text)
        return (
            _ERROR_REPORT_HEAD.pack(
                self.version, PduType.ERROR_REPORT, self.code, total, 0
            )
            + struct.pack(">I", len(text))
            + text
        )

    def serialize(self, stream: BinaryIO) -> None:
        stream.write(self.to_bytes())


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            raise EOFError(f"expected {size} bytes, got {size - remaining}")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def read_pdu(stream: BinaryIO) -> bytes:
    """Read one whole PDU, header included, from a binary stream.

    Raises EOFError if the stream ends before the PDU is complete.
    """
    head = _read_exact(stream, MIN_PDU_LENGTH)
    _, _, _, length = _HEADER.unpack(head)
    if length < MIN_PDU_LENGTH:
        raise PduError(f"PDU length {length} is below the minimum of {MIN_PDU_LENGTH}")
    rest = length - MIN_PDU_LENGTH
    return head + _read_exact(stream, rest) if rest else head


def decode_header(data: bytes, version: int = VERSION1, new: bool = True) -> Header:
    """Check size, version and type of a PDU and return its header.

    When ``new`` is false the PDU must carry the already negotiated ``version``.
    """
    if len(data) < HEADER_LENGTH:
        raise PduError(
            f"PDU headers have a minimum size of {HEADER_LENGTH}. "
            f"PDU passed has length {len(data)}"
        )
    pdu_version, ptype = data[0], data[1]
    if pdu_version not in SUPPORTED_VERSIONS:
        raise PduError(f"unsupported PDU version received: {pdu_version}")
    if not new and pdu_version != version:
        raise PduError(
            f"PDU has version {pdu_version}, but version {version} was negotiated"
        )
    if ptype > 10 or ptype == 5:
        raise PduError(f"unsupported PDU type received: {ptype}")
    if new:
        log.info(
            "Client is connected with version %d and PDU type %d", pdu_version, ptype
        )
    return Header(version=pdu_version, ptype=ptype)