import zlib

import pytest

from mailbackends.util import compress, md5_hex, parse_headers, trim_to_limit


def test_parse_headers_single_header():
    assert parse_headers("Subject: Test\r\n\r\nbody text") == {"Subject": "Test"}


def test_parse_headers_canonicalizes_name():
    assert parse_headers("content-type: text/plain\r\n\r\nbody") == {"Content-Type": "text/plain"}


def test_parse_headers_folded_value():
    headers = parse_headers("Subject: Hello\r\n World\r\n\r\nbody")
    assert headers == {"Subject": "Hello World"}


def test_parse_headers_without_blank_line():
    assert parse_headers("Subject: Test\r\nno end") == {}


def test_parse_headers_too_short():
    with pytest.raises(ValueError):
        parse_headers("ab")


def test_md5_hex_empty():
    assert md5_hex() == "d41d8cd98f00b204e9800998ecf8427e"


def test_md5_hex_concatenates():
    assert md5_hex("a", "bc") == md5_hex("abc")
    assert len(md5_hex("x")) == 32


def test_compress_round_trip():
    data = compress("Subject:hello\r\n", "Hello Hello Hello!")
    assert zlib.decompress(data) == b"Subject:hello\r\nHello Hello Hello!"


def test_compress_uses_best_speed_header():
    assert compress("abc")[:2] == b"\x78\x01"


@pytest.mark.parametrize(
    "text, limit, expected",
    [("  abc  ", 10, "abc"), ("abcdef", 3, "abc"), ("  abc", 3, "  a"), ("abc", 3, "abc")],
)
def test_trim_to_limit(text, limit, expected):
    assert trim_to_limit(text, limit) == expected