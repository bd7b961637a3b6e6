"""Choosing between JSON and octet-stream representations of an attachment.

Only attachments stored under the synthetic filename ``json`` (uploaded as a
JSON request body) can be returned as JSON; everything else is always sent as
a downloadable octet stream.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Literal
from urllib.parse import quote

from attachment_service.storage.attachments import JSON_FILENAME

logger = logging.getLogger(__name__)

OCTET_STREAM = "application/octet-stream"
JSON_ACCEPTING_TYPES = frozenset({"application/json", "application/*", "*/*"})

# Stored attachments never change, so responses can be cached indefinitely
CACHE_CONTROL = "public, max-age=31536000, immutable"

_QUALITY_PARAM = re.compile(r"^\s*q\s*=\s*(.*?)\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class AcceptPreference:
    media_type: str
    quality: float


def _parse_quality(raw: str) -> float:
    try:
        quality = float(raw)
    except ValueError:
        return 0.0
    # Rejects nan as well as out-of-range values
    return quality if 0.0 <= quality <= 1.0 else 0.0


def _specificity_rank(media_type: str) -> int:
    main_type, _, subtype = media_type.partition("/")
    if main_type == "*":
        return 2
    if subtype == "*":
        return 1
    return 0


def parse_accept_preferences(header: str | None) -> list[AcceptPreference]:
    """Parse an Accept header into media types, most preferred first.

    Entries sort by descending quality (default 1.0, unparseable 0.0), then
    exact types before ``type/*`` before ``*/*``. Equal entries keep their
    header order. A missing or blank header is treated as ``*/*``.
    """
    if header is None or not header.strip():
        header = "*/*"

    preferences: list[AcceptPreference] = []
    for element in header.split(","):
        media_type, *params = element.split(";")
        media_type = media_type.strip().lower()
        if not media_type:
            continue
        quality = 1.0
        for param in params:
            match = _QUALITY_PARAM.match(param)
            if match:
                quality = _parse_quality(match.group(1))
                break
        preferences.append(AcceptPreference(media_type, quality))

    return sorted(
        preferences,
        key=lambda pref: (-pref.quality, _specificity_rank(pref.media_type)),
    )


@dataclass(frozen=True)
class NegotiatedAttachment:
    """The representation chosen for a response.

    ``kind == "json"`` carries the decoded document in ``value`` (which may be
    any JSON value, including null); ``kind == "octet"`` is sent as bytes.
    """

    kind: Literal["json", "octet"]
    content: bytes
    filename: str
    value: Any = None


def negotiate(
    content: bytes, filename: str, accept_header: str | None
) -> NegotiatedAttachment:
    """Pick the response representation for verified attachment bytes.

    Args:
        content: The attachment bytes
        filename: The resolved filename
        accept_header: The request's Accept header, if any

    Returns:
        A JSON representation when the attachment is a JSON upload and the
        first acceptable type admits JSON; the octet representation otherwise
    """
    octet = NegotiatedAttachment("octet", content, filename)
    if filename != JSON_FILENAME:
        return octet

    for preference in parse_accept_preferences(accept_header):
        if preference.media_type in JSON_ACCEPTING_TYPES:
            try:
                value = json.loads(content.decode("utf-8"))
            except ValueError as e:
                logger.warning(f"Unable to parse json attachment content: {e}")
                return octet
            return NegotiatedAttachment("json", content, filename, value)
        if preference.media_type == OCTET_STREAM:
            return octet
    return octet


def content_disposition(filename: str) -> str:
    """Build an ``attachment`` Content-Disposition header value.

    ASCII names are sent as a quoted ``filename``. Other names get an ASCII
    fallback plus an RFC 5987 ``filename*`` parameter.
    """
    if filename.isascii():
        escaped = filename.replace("\\", "\\\\").replace('"', '\\"')
        return f'attachment; filename="{escaped}"'

    fallback = (
        filename.encode("ascii", "replace")
        .decode("ascii")
        .replace("?", "_")
        .replace("\\", "_")
        .replace('"', "_")
    )
    return (
        f'attachment; filename="{fallback}"; '
        f"filename*=UTF-8''{quote(filename, safe='')}"
    )


def octet_headers(filename: str) -> dict[str, str]:
    """Response headers for an octet-stream attachment download."""
    return {
        "Content-Disposition": content_disposition(filename),
        "Cache-Control": CACHE_CONTROL,
        "Access-Control-Expose-Headers": "content-disposition",
    }
