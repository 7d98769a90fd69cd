"""Per-router session handling for the cache server."""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass, field
from typing import BinaryIO

from rtrcache.pdu import (
    HEADER_LENGTH,
    VERSION1,
    CacheResetPDU,
    CacheResponsePDU,
    EndOfDataPDU,
    ErrorReportPDU,
    Flag,
    Header,
    IPv4PrefixPDU,
    IPv6PrefixPDU,
    PduError,
    PduType,
    SerialNotifyPDU,
    SerialQueryPDU,
    decode_header,
    read_pdu,
)
from rtrcache.roa import Roa, SerialDiff

log = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL = 3600  # 1 - 86400
DEFAULT_RETRY_INTERVAL = 600  # 1 - 7200
DEFAULT_EXPIRE_INTERVAL = 7200  # 600 - 172800

_UINT32 = 0xFFFFFFFF


@dataclass
class CacheState:
    """Data shared by the server and every client it serves."""

    roas: list[Roa] = field(default_factory=list)
    serial: int = 0
    diff: SerialDiff = field(default_factory=SerialDiff)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)


def write_prefix_pdu(roa: Roa, stream: BinaryIO, flag: int) -> None:
    """Write the IPv4 or IPv6 prefix PDU announcing or withdrawing ``roa``."""
    pdu_class = IPv4PrefixPDU if roa.is_ipv4 else IPv6PrefixPDU
    pdu_class(
        flags=flag,
        min_length=roa.prefix_length,
        max_length=roa.max_mask,
        prefix=roa.address_bytes,
        asn=roa.asn,
    ).serialize(stream)


def end_of_data_pdu(session: int, serial: int) -> EndOfDataPDU:
    """An end of data PDU carrying the default timers."""
    return EndOfDataPDU(
        session=session,
        serial=serial,
        refresh=DEFAULT_REFRESH_INTERVAL,
        retry=DEFAULT_RETRY_INTERVAL,
        expire=DEFAULT_EXPIRE_INTERVAL,
    )


@dataclass(eq=False)
class Client:
    """One connected router, talking over a binary stream."""

    stream: BinaryIO
    addr: str
    state: CacheState
    version: int = VERSION1
    _write_lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False
    )

    def _flush(self) -> None:
        flush = getattr(self.stream, "flush", None)
        if flush is not None:
            flush()

    def send_reset(self) -> None:
        """Send a cache reset PDU."""
        with self._write_lock:
            CacheResetPDU().serialize(self.stream)
            self._flush()

    def update_client(self, session: int, serial: int, send_diff: bool) -> None:
        """Answer a serial query, with the last diff if asked and if there is one."""
        with self._write_lock:
            CacheResponsePDU(session_id=session).serialize(self.stream)
            with self.state.lock:
                diff = self.state.diff
                if send_diff and diff.diff:
                    for roa in diff.add_roas:
                        write_prefix_pdu(roa, self.stream, Flag.ANNOUNCE)
                    for roa in diff.del_roas:
                        write_prefix_pdu(roa, self.stream, Flag.WITHDRAW)
                    log.info("Finished sending all diffs")
                current = self.state.serial
            end_of_data_pdu(session, current).serialize(self.stream)
            self._flush()

    def send_roas(self) -> None:
        """Send the full ROA set under a fresh session id."""
        session = random.randrange(100)
        with self._write_lock:
            CacheResponsePDU(session_id=session).serialize(self.stream)
            with self.state.lock:
                for roa in self.state.roas:
                    write_prefix_pdu(roa, self.stream, Flag.ANNOUNCE)
                current = self.state.serial
            log.info("Finished sending all prefixes")
            end_of_data_pdu(session, current).serialize(self.stream)
            self._flush()

    def notify(self, serial: int, session: int) -> None:
        """Tell the router that an update has taken place."""
        with self._write_lock:
            SerialNotifyPDU(session=session, serial=serial).serialize(self.stream)
            self._flush()

    def error(self, code: int, report: str) -> None:
        """Send an error report PDU."""
        with self._write_lock:
            ErrorReportPDU(code=code, report=report).serialize(self.stream)
            self._flush()

    def _answer_serial_query(self, pdu: bytes) -> None:
        query = SerialQueryPDU.from_bytes(pdu[HEADER_LENGTH:])
        with self.state.lock:
            serial = self.state.diff.new_serial
        previous = (serial - 1) & _UINT32
        if query.serial == serial:
            log.info(
                "received a serial number which matches my own (%d) from %s",
                serial,
                self.addr,
            )
            self.update_client(query.session, serial, False)
        elif query.serial == previous:
            log.info(
                "received serial %d, one less than %d, so sending diff to %s",
                query.serial,
                serial,
                self.addr,
            )
            self.update_client(query.session, serial, True)
        else:
            log.info(
                "received an unmanageable serial %d (current %d) from %s",
                query.serial,
                serial,
                self.addr,
            )
            self.send_reset()

    def _dispatch(self, header: Header, pdu: bytes) -> None:
        if header.ptype == PduType.RESET_QUERY:
            log.info("received a reset Query PDU from %s", self.addr)
            self.send_roas()
        elif header.ptype == PduType.SERIAL_QUERY:
            log.info("received a serial Query PDU from %s", self.addr)
            self._answer_serial_query(pdu)

    def handle(self) -> None:
        """Serve the router until the connection ends or it misbehaves.

        The first PDU must be a reset or serial query; it fixes the version
        every later PDU must carry.
        """
        try:
            pdu = read_pdu(self.stream)
            header = decode_header(pdu[:HEADER_LENGTH], self.version, new=True)
            self.version = header.version
            if header.ptype not in (PduType.RESET_QUERY, PduType.SERIAL_QUERY):
                log.warning(
                    "On startup, only resetQuery and serialQuery are allowed. "
                    "Received %d",
                    header.ptype,
                )
                return
            self._dispatch(header, pdu)
            while True:
                pdu = read_pdu(self.stream)
                header = decode_header(pdu[:HEADER_LENGTH], self.version, new=False)
                self._dispatch(header, pdu)
        except EOFError as exc:
            log.info("connection from %s ended: %s", self.addr, exc)
        except (PduError, OSError) as exc:
            log.warning("error while serving %s: %s", self.addr, exc)