"""Passive sniffing of slicer requests: session token and uploaded files.

Nothing here may raise on malformed input. A body we can't make sense of
simply yields no capture; the request is forwarded either way.
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass
from urllib.parse import parse_qsl

TOKEN_FIELD = "token"
FILE_FIELD = "file"

_BOUNDARY_RE = re.compile(r"boundary=(?:\"([^\"]+)\"|([^;\s]+))", re.IGNORECASE)
_FIELD_NAME_RE = re.compile(rb'\bname="([^"]*)"', re.IGNORECASE)
_FILENAME_RE = re.compile(rb'filename="([^"]+)"', re.IGNORECASE)


@dataclass
class MultipartCapture:
    token: str | None = None
    filename: str | None = None
    file_content: bytes | None = None


def extract_boundary(content_type: str | None) -> str | None:
    if not content_type:
        return None
    match = _BOUNDARY_RE.search(content_type)
    if not match:
        return None
    return match.group(1) or match.group(2)


def is_multipart(content_type: str | None) -> bool:
    return bool(content_type) and content_type.lower().startswith("multipart/")


def _strip_part_trailer(data: bytes) -> bytes:
    # The CRLF in front of the next delimiter belongs to the delimiter
    if data.endswith(b"\r\n"):
        return data[:-2]
    return data


def parse_multipart(body: bytes, boundary: str) -> MultipartCapture:
    """Pull the token and file fields out of a multipart/form-data body."""
    result = MultipartCapture()
    delimiter = b"--" + boundary.encode("latin-1", errors="replace")

    for part in body.split(delimiter):
        # Preamble and the closing "--" marker
        if not part or part.strip() == b"--" or part.startswith(b"--"):
            continue

        header_end = part.find(b"\r\n\r\n")
        if header_end == -1:
            continue

        headers = part[:header_end]
        data = _strip_part_trailer(part[header_end + 4 :])

        name_match = _FIELD_NAME_RE.search(headers)
        if not name_match:
            continue
        field_name = name_match.group(1).decode("latin-1")

        if field_name == TOKEN_FIELD:
            result.token = data.decode("utf-8", errors="replace").strip() or None
        elif field_name == FILE_FIELD:
            filename_match = _FILENAME_RE.search(headers)
            if filename_match:
                result.filename = filename_match.group(1).decode("utf-8", errors="replace")
            result.file_content = data

    return result


def parse_form_token(body: bytes) -> str | None:
    """Token from an application/x-www-form-urlencoded body."""
    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError:
        text = body.decode("latin-1")
    for key, value in parse_qsl(text, keep_blank_values=True):
        if key == TOKEN_FIELD and value:
            return value
    return None


def find_token(
    query: Mapping[str, str],
    content_type: str | None,
    body: bytes,
    multipart: MultipartCapture | None = None,
) -> str | None:
    """Locate a session token: query string, then form body, then multipart field.

    ``multipart`` is an already parsed body, so large uploads are split once.
    """
    token = query.get(TOKEN_FIELD)
    if token:
        return token

    if not body or not content_type:
        return None

    if content_type.lower().startswith("application/x-www-form-urlencoded"):
        return parse_form_token(body)

    if is_multipart(content_type):
        if multipart is not None:
            return multipart.token
        boundary = extract_boundary(content_type)
        if boundary:
            return parse_multipart(body, boundary).token

    return None
