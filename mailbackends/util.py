"""Helpers for header parsing, hashing, compression and trimming."""

from __future__ import annotations

import hashlib
import re
import string
import zlib

# First group is the header name, second is the value; accounts for one folded line.
_HEADER_RE = re.compile(
    r"^([^\t\n\f\r]+):([^\t\n\f\r]+(?:\r\n[\t\n\f\r ][^\t\n\f\r]+)?)"
)

_TOKEN_CHARS = frozenset(string.ascii_letters + string.digits + "!#$%&'*+-.^_`|~")


def _canonical_mime_header_key(key: str) -> str:
    if not key or any(ch not in _TOKEN_CHARS for ch in key):
        return key
    return "-".join(part[:1].upper() + part[1:].lower() for part in key.split("-"))


def parse_headers(mail_data: str) -> dict[str, str]:
    """Parse the leading header of a raw message into a dict keyed by canonical name."""
    if len(mail_data) < 4:
        raise ValueError("mail data too short to hold a header section")
    boundary = mail_data.rfind("\r\n\r\n", 0, len(mail_data) - 1)
    section_end = boundary + 2 if boundary >= 0 else 0
    headers: dict[str, str] = {}
    for match in _HEADER_RE.finditer(mail_data[:section_end]):
        name = _canonical_mime_header_key(match.group(1).replace("\r\n", "").strip())
        headers[name] = match.group(2).replace("\r\n", "").strip()
    return headers


def md5_hex(*args: str) -> str:
    """Return the hex MD5 digest of the concatenated strings."""
    digest = hashlib.md5()
    for arg in args:
        digest.update(arg.encode("utf-8"))
    return digest.hexdigest()


def compress(*args: str) -> bytes:
    """Concatenate the strings and compress them with zlib at best speed."""
    compressor = zlib.compressobj(1)
    chunks = [compressor.compress(arg.encode("utf-8")) for arg in args]
    chunks.append(compressor.flush())
    return b"".join(chunks)


def trim_to_limit(text: str, limit: int) -> str:
    """Strip surrounding whitespace, or cut to limit characters if text is longer than limit."""
    if len(text) > limit:
        return text[:limit]
    return text.strip()