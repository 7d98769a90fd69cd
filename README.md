# rtrcache

`rtrcache` is an RPKI-to-Router (RTR) cache server. It downloads validated
ROA payloads (VRPs) published as JSON, keeps a de-duplicated and validated
set of them in memory, and serves them to routers over TCP.

## What it does

- Fetches VRP JSON documents from one or more URLs at the same time. Each
  document holds a `roas` list whose entries carry `prefix`, `maxLength`
  and `asn`; the ASN may be a number or a string such as `"AS13335"`.
  Entries whose prefix cannot be parsed are skipped. A feed that cannot be
  downloaded or decoded is logged and contributes no ROAs.
- Drops duplicate ROAs and ROAs whose max length is zero, shorter than the
  prefix length, or longer than the address family allows (32 for IPv4,
  128 for IPv6).
- Every six minutes downloads the feeds again, works out which ROAs were
  added and withdrawn, increments the serial number, sends a Serial Notify
  to every connected router and writes a status report to the log.
- The first PDU from a router must be a Reset Query or a Serial Query; it
  fixes the protocol version (1 or 2) that every later PDU from that router
  must carry. A PDU with another version, an unknown type, or a broken
  length ends the session.
- Answers a Reset Query with a Cache Response, the full set of prefixes and
  an End of Data PDU.
- Answers a Serial Query that carries the current serial with an empty
  update, one that carries the previous serial with the latest diff, and
  any other serial with a Cache Reset.

End of Data PDUs carry the default timers: refresh 3600 s, retry 600 s,
expire 7200 s. PDUs sent by the server carry protocol version 1.

## Installation

```
pip install .
```

## Configuration

The server reads an INI file with an `[rpkirtr]` section:

```ini
[rpkirtr]
port = 8282
log = /var/log/rtrcache.log
```

`port` is the TCP port to listen on and must be a number; `log` is the file
log output is appended to, and must be set. By default the file is
`config.ini` in the directory of the program being run; `--config` gives
another path.

## Running

Pass the VRP sources as a comma-separated list:

```
rtrcache --urls https://vrps.example.com/vrps.json,https://mirror.example.com/vrps.json --config ./config.ini
```

The initial set is downloaded before the server starts listening on every
address (IPv4 and IPv6 where the system allows both). The status report
lists the connected clients, the current serial, the last diff and the
number of IPv4 and IPv6 ROAs. Configuration and log file problems are
printed to standard error and give exit status 1.

## Using the pieces

`rtrcache.pdu` encodes and decodes the wire format:

```python
import io

from rtrcache.pdu import SerialNotifyPDU, decode_header, read_pdu

wire = SerialNotifyPDU(session=123, serial=456).to_bytes()
pdu = read_pdu(io.BytesIO(wire))
header = decode_header(pdu[:2], 1, True)
```

`read_pdu` raises `EOFError` when the stream ends early and `PduError` for a
length below 8; `decode_header` raises `PduError` for a bad size, version or
type.

`rtrcache.serializers` has `V1Serializer` and `V2Serializer`, which write
Serial Notify, Cache Response and prefix PDUs stamped with their version;
`new_serializer(0)` and `new_serializer(1)` return them.

`rtrcache.roa` holds `Roa`, `SerialDiff`, `make_diff(new, old, serial)`,
`unique_valid_roas`, `parse_roas`, `fetch_roas` and `read_roas`.
`make_diff` returns the ROAs to announce and withdraw to move a router from
`serial` to `serial + 1`.

`rtrcache.client.Client` serves one router over a binary stream, and
`rtrcache.server.CacheServer` accepts connections, keeps the client list
and refreshes the ROAs.

## What it does not do

- It keeps only the last diff, so routers more than one serial behind are
  sent a Cache Reset.
- It does not send Router Key PDUs and does not offer TLS or SSH transport.
- It keeps nothing on disk; the ROA set is downloaded again at start-up.

## Tests

```
pip install .[test]
pytest
```