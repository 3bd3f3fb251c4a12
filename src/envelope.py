"""
Data URL envelopes (RFC 2397) for file contents.
"""

import base64
import binascii
from typing import NamedTuple
from urllib.parse import unquote_to_bytes

DEFAULT_MEDIA_TYPE = "text/plain;charset=utf-8"


class EnvelopeError(Exception):
    """Raised when a file source is not a valid data URL."""


class Envelope(NamedTuple):
    media_type: str
    data: bytes


def decode(source: str) -> Envelope:
    """
    Decode a ``data:`` URL.

    Raises:
        EnvelopeError: If the source is not a data URL or its payload is
            not valid base64.
    """
    if not isinstance(source, str) or not source.startswith("data:"):
        raise EnvelopeError("source is not a data URL")

    header, sep, payload = source[len("data:"):].partition(",")
    if not sep:
        raise EnvelopeError("data URL has no ',' separator")

    params = header.split(";") if header else []
    is_base64 = bool(params) and params[-1] == "base64"
    if is_base64:
        params = params[:-1]
    media_type = ";".join(params) or "text/plain;charset=US-ASCII"

    if is_base64:
        try:
            data = base64.b64decode(unquote_to_bytes(payload), validate=True)
        except (binascii.Error, ValueError) as e:
            raise EnvelopeError(f"invalid base64 payload: {e}")
    else:
        data = unquote_to_bytes(payload)

    return Envelope(media_type, data)


def encode(data: bytes, media_type: str = DEFAULT_MEDIA_TYPE) -> str:
    """Encode bytes as a base64 data URL. The output is deterministic."""
    return f"data:{media_type};base64,{base64.b64encode(data).decode('ascii')}"
