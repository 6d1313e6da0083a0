"""
Utility functions for apsflow.

URN encoding, OSS object addressing and log masking.
"""

import base64
from urllib.parse import quote

OBJECT_URN_PREFIX = "urn:adsk.objects:os.object:"


def b64url_encode(b: bytes) -> str:
    """URL-safe base64 encode bytes to string (no padding)."""
    return base64.urlsafe_b64encode(b).rstrip(b'=').decode('ascii')


def b64url_decode(s: str) -> bytes:
    """URL-safe base64 decode string to bytes (handles missing padding)."""
    padding = 4 - (len(s) % 4)
    if padding != 4:
        s += '=' * padding
    return base64.urlsafe_b64decode(s.encode('ascii'))


def urnify(object_id: str) -> str:
    """
    Derive the viewer/translation URN of an OSS object.

    The URN is the URL-safe, unpadded base64 of the objectId returned by OSS,
    e.g. ``urn:adsk.objects:os.object:bucket/run.rvt``.
    """
    return b64url_encode(object_id.encode('utf-8'))


def deurnify(urn: str) -> str:
    """Inverse of urnify."""
    return b64url_decode(urn).decode('utf-8')


def object_address(bucket_key: str, object_key: str) -> str:
    """Address form used by Design Automation workitem arguments."""
    return f"{OBJECT_URN_PREFIX}{bucket_key}/{object_key}"


def quote_key(object_key: str) -> str:
    """Percent-encode an object key for use in a URL path segment."""
    return quote(object_key, safe='')



def mask_sensitive(value: str, visible_chars: int = 4) -> str:
    """
    Mask a sensitive value, showing only the last N characters.
    Useful for logging.
    """
    if len(value) <= visible_chars:
        return '*' * len(value)
    return '*' * (len(value) - visible_chars) + value[-visible_chars:]


def response_body(resp):
    """Decoded JSON body, or the raw text when the body is not JSON."""
    try:
        return resp.json()
    except ValueError:
        return resp.text
