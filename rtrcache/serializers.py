"""Version-specific writers for the PDUs a cache sends to routers."""

from __future__ import annotations

import dataclasses
import logging
from typing import BinaryIO, ClassVar

from rtrcache.pdu import (
    VERSION1,
    VERSION2,
    CacheResponsePDU,
    IPv4PrefixPDU,
    IPv6PrefixPDU,
    PduError,
    SerialNotifyPDU,
)

log = logging.getLogger(__name__)


class PDUSerializer:
    """Writes PDUs stamped with one protocol version."""

    version: ClassVar[int] = VERSION1
    ipv6_version: ClassVar[int] = VERSION1

    @staticmethod
    def _write(stream: BinaryIO, data: bytes, what: str) -> None:
        try:
            stream.write(data)
        except OSError as exc:
            raise PduError(f"failed to serialize {what} PDU: {exc}") from exc

    def serial_notify(self, session_id: int, serial: int, stream: BinaryIO) -> None:
        """Write a serial notify PDU."""
        pdu = SerialNotifyPDU(session=session_id, serial=serial, version=self.version)
        self._write(stream, pdu.to_bytes(), "serial notify")

    def cache_response(self, session_id: int, stream: BinaryIO) -> None:
        """Write a cache response PDU."""
        pdu = CacheResponsePDU(session_id=session_id, version=self.version)
        self._write(stream, pdu.to_bytes(), "cache response")

    def ipv4_prefix(self, pdu: IPv4PrefixPDU, stream: BinaryIO) -> None:
        """Write an IPv4 prefix PDU carrying this serializer's version."""
        stamped = dataclasses.replace(pdu, version=self.version)
        self._write(stream, stamped.to_bytes(), "IPv4 Prefix")

    def ipv6_prefix(self, pdu: IPv6PrefixPDU, stream: BinaryIO) -> None:
        """Write an IPv6 prefix PDU."""
        stamped = dataclasses.replace(pdu, version=self.ipv6_version)
        self._write(stream, stamped.to_bytes(), "IPv6 Prefix")


class V1Serializer(PDUSerializer):
    """Writes version 1 PDUs."""

    version: ClassVar[int] = VERSION1
    ipv6_version: ClassVar[int] = VERSION1


class V2Serializer(PDUSerializer):
    """Writes version 2 PDUs; IPv6 prefixes still go out as version 1."""

    version: ClassVar[int] = VERSION2
    ipv6_version: ClassVar[int] = VERSION1


def new_serializer(version: int) -> PDUSerializer:
    """Return the serializer for a protocol version selector (0 or 1)."""
    if version == 0:
        return V1Serializer()
    if version == 1:
        return V2Serializer()
    raise PduError(f"unsupported protocol version: {version}")