"""Multipart/mixed encoding and decoding for batch API requests."""
import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

HEADER_SEPARATORS = ('\r\n\r\n', '\n\n')
NESTED_STATUS_PREFIXES = ('HTTP/1.1', 'HTTP/2')
RESPONSE_ID_PATTERN = re.compile(r'response-item(\d+)')
STATUS_LINE_PATTERN = re.compile(r'^HTTP/[\d.]+\s+(\d{3})')


@dataclass
class BatchRequestPart:
    """One logical request inside a batch."""
    method: str
    path: str
    body: Optional[Dict[str, Any]] = None


@dataclass
class MultipartPart:
    """One parsed part of a multipart/mixed response."""
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ''
    status: Optional[int] = None

    def header(self, name: str) -> Optional[str]:
        """Look up a header value case-insensitively."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None

    def json(self) -> Any:
        return json.loads(self.body)


def new_boundary() -> str:
    return f"batch_{uuid.uuid4().hex}"


def encode_batch_request(requests: List[BatchRequestPart], boundary: str) -> bytes:
    """
    Encode logical requests as a multipart/mixed batch body.

    Args:
        requests: Requests in index order
        boundary: Multipart boundary token

    Returns:
        UTF-8 encoded request body
    """
    lines = []
    for index, request in enumerate(requests):
        lines.append(f"--{boundary}")
        lines.append("Content-Type: application/http")
        lines.append(f"Content-ID: <item{index}>")
        lines.append("")
        lines.append(f"{request.method} {request.path}")
        if request.body is not None:
            lines.append("Content-Type: application/json")
            lines.append("")
            lines.append(json.dumps(request.body))
        else:
            lines.append("")
        lines.append("")
    lines.append(f"--{boundary}--")
    lines.append("")
    return "\r\n".join(lines).encode('utf-8')


def boundary_from_content_type(content_type: Optional[str]) -> Optional[str]:
    """
    Extract the boundary parameter from a Content-Type header.

    Args:
        content_type: Header value, e.g. "multipart/mixed; boundary=batch_x"

    Returns:
        Boundary token or None if absent
    """
    if not content_type:
        return None
    for param in content_type.split(';')[1:]:
        key, _, value = param.strip().partition('=')
        if key.strip().lower() == 'boundary':
            return value.strip().strip('"') or None
    return None


def parse_multipart(body: str, boundary: str) -> List[MultipartPart]:
    """
    Split a multipart/mixed body into its parts.

    Nested HTTP responses are unwrapped so each part's body is the inner
    payload; the inner status code is kept on the part.

    Args:
        body: Decoded response body
        boundary: Boundary advertised in the response Content-Type

    Returns:
        Parsed parts in wire order
    """
    parts = []
    for chunk in body.split(f"--{boundary}"):
        trimmed = chunk.strip()
        if not trimmed or trimmed == '--':
            continue
        part = _parse_part(chunk)
        if part is not None:
            parts.append(part)
    return parts


def correlate_parts(parts: List[MultipartPart]) -> Dict[int, MultipartPart]:
    """
    Map response parts back to their request index via Content-ID.

    Args:
        parts: Parsed response parts

    Returns:
        Dictionary of request index to part; parts without a usable id are dropped
    """
    correlated = {}
    for part in parts:
        content_id = part.header('Content-ID') or ''
        match = RESPONSE_ID_PATTERN.search(content_id)
        if not match:
            logger.warning(f"Dropping batch part with unmatched Content-ID: {content_id!r}")
            continue
        correlated[int(match.group(1))] = part
    return correlated


def _split_head(text: str) -> Optional[tuple[str, str]]:
    # Earliest separator wins so a CRLF head is not confused with LF in the body
    best = None
    for separator in HEADER_SEPARATORS:
        position = text.find(separator)
        if position != -1 and (best is None or position < best[0]):
            best = (position, separator)
    if best is None:
        return None
    position, separator = best
    return text[:position], text[position + len(separator):]


def _parse_headers(head: str) -> Dict[str, str]:
    headers = {}
    for line in head.splitlines():
        line = line.strip()
        if not line or ':' not in line:
            continue
        key, _, value = line.partition(':')
        headers[key.strip()] = value.strip()
    return headers


def _parse_part(chunk: str) -> Optional[MultipartPart]:
    split = _split_head(chunk.lstrip('\r\n'))
    if split is None:
        return None
    head, payload = split
    part = MultipartPart(headers=_parse_headers(head), body=payload)

    if payload.startswith(NESTED_STATUS_PREFIXES):
        status_match = STATUS_LINE_PATTERN.match(payload)
        if status_match:
            part.status = int(status_match.group(1))
        nested = _split_head(payload)
        part.body = nested[1] if nested is not None else ''

    part.body = part.body.strip()
    return part
