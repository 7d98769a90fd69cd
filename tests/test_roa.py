import http.server
import json
import threading

import pytest

from rtrcache.roa import (
    Roa,
    SerialDiff,
    asn_to_int,
    decode_asn,
    fetch_roas,
    make_diff,
    parse_roas,
    read_roas,
    unique_valid_roas,
)


@pytest.mark.parametrize("text, want", [("AS123", 123), ("word", 0)])
def test_asn_to_int(text, want):
    assert asn_to_int(text) == want


def test_asn_to_int_too_short():
    assert asn_to_int("A") == 0


@pytest.mark.parametrize(
    "value, want",
    [("AS7922", 7922), (13335, 13335), (38803.0, 38803), (None, 0), (True, 0)],
)
def test_decode_asn(value, want):
    assert decode_asn(value) == want


V4_24 = Roa("192.168.1.1/24", 32, 123)
V6 = Roa("2001:db8::/32", 48, 123)

MAKE_DIFF_CASES = [
    ("empty, no diff", [], [], 0, SerialDiff(0, 1, [], [], False)),
    ("one ROA, no diff", [V4_24], [Roa("192.168.1.1/24", 32, 123)], 1,
     SerialDiff(1, 2, [], [], False)),
    ("Min mask change", [Roa("192.168.1.1/23", 32, 123)], [V4_24], 1,
     SerialDiff(1, 2, [V4_24], [Roa("192.168.1.1/23", 32, 123)], True)),
    ("Max mask change", [Roa("192.168.1.1/24", 31, 123)], [V4_24], 1,
     SerialDiff(1, 2, [V4_24], [Roa("192.168.1.1/24", 31, 123)], True)),
    ("ASN change", [V4_24], [Roa("192.168.1.1/24", 32, 1234)], 1,
     SerialDiff(1, 2, [Roa("192.168.1.1/24", 32, 1234)], [V4_24], True)),
    ("Two ROAs to one", [V4_24], [V4_24, V6], 1, SerialDiff(1, 2, [V6], [], True)),
    ("One ROA to two", [V4_24, V6], [V4_24], 1, SerialDiff(1, 2, [], [V6], True)),
]


@pytest.mark.parametrize(
    "new, old, serial, want",
    [case[1:] for case in MAKE_DIFF_CASES],
    ids=[case[0] for case in MAKE_DIFF_CASES],
)
def test_make_diff(new, old, serial, want):
    assert make_diff(new, old, serial) == want


def test_make_diff_serial_wraps():
    assert make_diff([], [], 0xFFFFFFFF).new_serial == 0


def test_roa_keeps_host_bits():
    assert Roa("192.168.1.1/24", 32, 1) != Roa("192.168.1.0/24", 32, 1)
    assert Roa("192.168.1.1/24", 32, 1).prefix_length == 24


def test_roa_rejects_prefix_without_length():
    with pytest.raises(ValueError):
        Roa("10.0.0.0", 32, 1)


@pytest.mark.parametrize(
    "roa, valid",
    [
        (Roa("10.0.0.0/8", 0, 1), False),
        (Roa("10.0.0.0/16", 8, 1), False),
        (Roa("10.0.0.0/8", 33, 1), False),
        (Roa("2001:db8::/32", 129, 1), False),
        (Roa("10.0.0.0/8", 32, 1), True),
        (Roa("2001:678:cdc::/48", 128, 1), True),
    ],
)
def test_is_valid(roa, valid):
    assert roa.is_valid() is valid


def test_unique_valid_roas_drops_duplicates_and_invalid():
    bad = Roa("10.0.0.0/16", 8, 1)
    assert unique_valid_roas([V4_24, bad, V6, V4_24, bad]) == [V4_24, V6]


def test_parse_roas_skips_bad_prefix():
    doc = json.dumps({"roas": [
        {"prefix": "nonsense", "maxLength": 24, "asn": 1},
        {"prefix": "1.0.0.0/24", "maxLength": 24, "asn": "AS13335"},
    ]})
    assert parse_roas(doc) == [Roa("1.0.0.0/24", 24, 13335)]


def test_parse_roas_rejects_non_object():
    with pytest.raises(ValueError):
        parse_roas("[1, 2]")


def test_parse_roas_rejects_bad_json():
    with pytest.raises(ValueError):
        parse_roas(b"{not json")


INT_DOC = {"roas": [
    {"prefix": "1.0.0.0/24", "maxLength": 24, "asn": 13335},
    {"prefix": "1.0.4.0/24", "maxLength": 24, "asn": 38803},
    {"prefix": "1.0.4.0/22", "maxLength": 22, "asn": 38803},
    {"prefix": "1.0.5.0/24", "maxLength": 24, "asn": 38803},
    {"prefix": "1.0.5.0/24", "maxLength": 24, "asn": 38803},
    {"prefix": "2c0f:ffb8::/32", "maxLength": 32, "asn": 37211},
    {"prefix": "2c0f:ffe8::/32", "maxLength": 32, "asn": 37443},
    {"prefix": "10.0.0.0/24", "maxLength": 16, "asn": 1},
    {"prefix": "2001:678:cdc::/48", "maxLength": 128, "asn": 333333},
]}

STRING_DOC = {"roas": [
    {"prefix": "1.0.0.0/24", "maxLength": 24, "asn": "AS13335"},
    {"prefix": "1.0.4.0/24", "maxLength": 24, "asn": "AS38803"},
    {"prefix": "1.0.4.0/22", "maxLength": 23, "asn": "AS38803"},
    {"prefix": "2001:678:cdc::/48", "maxLength": 128, "asn": "AS210660"},
    {"prefix": "bogus", "maxLength": 9, "asn": "AS7922"},
    {"prefix": "50.128.0.0/9", "maxLength": 9, "asn": "AS7922"},
    {"prefix": "73.0.0.0/8", "maxLength": 9, "asn": "AS7922"},
    {"prefix": "10.0.0.0/8", "maxLength": 0, "asn": "AS7922"},
]}

WANT_INT = [
    Roa("1.0.0.0/24", 24, 13335),
    Roa("1.0.4.0/24", 24, 38803),
    Roa("1.0.4.0/22", 22, 38803),
    Roa("1.0.5.0/24", 24, 38803),
    Roa("2c0f:ffb8::/32", 32, 37211),
    Roa("2c0f:ffe8::/32", 32, 37443),
    Roa("2001:678:cdc::/48", 128, 333333),
]

WANT_STRING = [
    Roa("1.0.0.0/24", 24, 13335),
    Roa("1.0.4.0/24", 24, 38803),
    Roa("1.0.4.0/22", 23, 38803),
    Roa("2001:678:cdc::/48", 128, 210660),
    Roa("50.128.0.0/9", 9, 7922),
    Roa("73.0.0.0/8", 9, 7922),
]


@pytest.fixture
def feed_server():
    pages = {
        "/int": json.dumps(INT_DOC).encode(),
        "/string": json.dumps(STRING_DOC).encode(),
        "/broken": b"{this is not json",
    }

    class Handler(http.server.BaseHTTPRequestHandler):
        def do_GET(self):
            body = pages.get(self.path)
            if body is None:
                self.send_response(404)
                self.end_headers()
                return
            self.send_response(200)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, *args):
            pass

    server = http.server.ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    host, port = server.server_address
    yield f"http://{host}:{port}"
    server.shutdown()
    server.server_close()


def test_read_roas_int(feed_server):
    assert read_roas([f"{feed_server}/int"]) == WANT_INT


def test_read_roas_string(feed_server):
    assert read_roas([f"{feed_server}/string"]) == WANT_STRING


def test_read_roas_merges_feeds(feed_server):
    got = read_roas([f"{feed_server}/int", f"{feed_server}/string"])
    assert set(got) == set(WANT_INT) | set(WANT_STRING)
    assert len(got) == len(set(got))


def test_fetch_roas_failures_give_nothing(feed_server):
    assert fetch_roas(f"{feed_server}/broken") == []
    assert fetch_roas(f"{feed_server}/missing") == []
    assert read_roas([""]) == []