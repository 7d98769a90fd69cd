"""Route origin authorisations: validation, diffs and retrieval from JSON feeds."""

from __future__ import annotations

import json
import logging
import re
import urllib.request
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from ipaddress import IPv4Interface, IPv6Interface, ip_interface
from typing import Any, Iterable, Sequence, Union

log = logging.getLogger(__name__)

_UINT32 = 0xFFFFFFFF
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_DECIMAL = re.compile(r"[+-]?[0-9]+")
_FETCH_TIMEOUT = 60.0

PrefixType = Union[IPv4Interface, IPv6Interface]


def _parse_prefix(text: Any) -> PrefixType:
    """Parse ``address/length``, keeping the address exactly as written."""
    if not isinstance(text, str) or "/" not in text:
        raise ValueError(f"invalid prefix: {text!r}")
    return ip_interface(text)


@dataclass(frozen=True)
class Roa:
    """A validated ROA payload: a prefix, its maximum length and origin AS."""

    prefix: PrefixType
    max_mask: int
    asn: int

    def __post_init__(self) -> None:
        if not isinstance(self.prefix, (IPv4Interface, IPv6Interface)):
            object.__setattr__(self, "prefix", _parse_prefix(self.prefix))

    @property
    def prefix_length(self) -> int:
        """Length of the prefix in bits."""
        return self.prefix.network.prefixlen

    @property
    def is_ipv4(self) -> bool:
        """True when the prefix is an IPv4 prefix."""
        return self.prefix.version == 4

    @property
    def address_bytes(self) -> bytes:
        """The prefix address in network byte order."""
        return self.prefix.ip.packed

    def is_valid(self) -> bool:
        """Check the maximum length against the prefix (RFC 6482, section 3.3)."""
        if self.max_mask == 0:
            log.info("maxmask <= 0: %s", self)
            return False
        if self.max_mask < self.prefix_length:
            log.info("maxmask < mask: %s", self)
            return False
        if self.is_ipv4 and self.max_mask > 32:
            log.info("maxmask > max: %s", self)
            return False
        if self.max_mask > 128:
            log.info("maxmask > max: %s", self)
            return False
        return True

    def __str__(self) -> str:
        return f"{self.prefix.ip} Mask {self.prefix_length} ASN {self.asn}"


@dataclass
class SerialDiff:
    """ROAs to add and withdraw to move from ``old_serial`` to ``new_serial``."""

    old_serial: int = 0
    new_serial: int = 0
    del_roas: list[Roa] = field(default_factory=list)
    add_roas: list[Roa] = field(default_factory=list)
    diff: bool = False


def make_diff(new: Sequence[Roa], old: Sequence[Roa], serial: int) -> SerialDiff:
    """Work out which ROAs must be announced and withdrawn to reach ``new``."""
    old_set = set(old)
    new_set = set(new)
    added = [roa for roa in new if roa not in old_set]
    deleted = [roa for roa in old if roa not in new_set]
    return SerialDiff(
        old_serial=serial,
        new_serial=(serial + 1) & _UINT32,
        del_roas=deleted,
        add_roas=added,
        diff=bool(added or deleted),
    )


def asn_to_int(text: str) -> int:
    """Convert an ``ASxxx`` string to its number; 0 if it cannot be read."""
    digits = text[2:]
    if not _DECIMAL.fullmatch(digits):
        log.warning("Unable to convert ASN %s to int", text)
        return 0
    number = int(digits)
    if not _INT64_MIN <= number <= _INT64_MAX:
        log.warning("Unable to convert ASN %s to int", text)
        return 0
    return number & _UINT32


def decode_asn(value: Any) -> int:
    """Read an AS number given either as a number or as an ``ASxxx`` string."""
    if isinstance(value, str):
        return asn_to_int(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value) & _UINT32
    return 0


def unique_valid_roas(roas: Iterable[Roa]) -> list[Roa]:
    """Drop duplicates and invalid ROAs, keeping first-seen order."""
    seen: set[Roa] = set()
    result: list[Roa] = []
    for roa in roas:
        if roa in seen:
            continue
        seen.add(roa)
        if roa.is_valid():
            result.append(roa)
    return result


def parse_roas(document: str | bytes | dict) -> list[Roa]:
    """Decode a VRP JSON document into ROAs.

    Entries with an unparsable prefix are skipped. A document that is not
    valid JSON or does not have the expected shape raises ValueError.
    """
    if isinstance(document, (str, bytes, bytearray)):
        data = json.loads(document)
    else:
        data = document
    if not isinstance(data, dict):
        raise ValueError("VRP document must be a JSON object")
    entries = data.get("roas") or []
    if not isinstance(entries, list):
        raise ValueError("'roas' must be a list")

    roas: list[Roa] = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ValueError(f"ROA entry must be an object: {entry!r}")
        mask = entry.get("maxLength", 0)
        if isinstance(mask, bool) or not isinstance(mask, int) or not 0 <= mask <= 255:
            raise ValueError(f"invalid maxLength: {mask!r}")
        try:
            prefix = _parse_prefix(entry.get("prefix"))
        except ValueError as exc:
            log.warning("%s", exc)
            continue
        roas.append(Roa(prefix, mask, decode_asn(entry.get("asn"))))
    return roas


def fetch_roas(url: str) -> list[Roa]:
    """Download and decode one VRP feed; problems are logged and give no ROAs."""
    log.info("Downloading from %s", url)
    try:
        with urllib.request.urlopen(url, timeout=_FETCH_TIMEOUT) as response:
            body = response.read()
    except (OSError, ValueError) as exc:
        log.warning("unable to retrieve ROAs from url: %s", exc)
        return []
    try:
        roas = parse_roas(body)
    except ValueError as exc:
        log.warning("unable to unmarshal: %s", exc)
        return []
    log.info("Returning %d ROAs from %s", len(roas), url)
    return roas


def read_roas(urls: Sequence[str]) -> list[Roa]:
    """Fetch all feeds concurrently and return their unique, valid ROAs."""
    if not urls:
        return []
    with ThreadPoolExecutor(max_workers=len(urls)) as pool:
        batches = list(pool.map(fetch_roas, urls))
    combined = [roa for batch in batches for roa in batch]
    valid = unique_valid_roas(combined)
    log.info("Created a unique set of %d ROAs", len(valid))
    return valid