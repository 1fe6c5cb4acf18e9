"""Incremental decoding of server-sent-event bodies from upstream providers.

Upstream reads do not line up with event boundaries, so the decoder threads an
explicit ``pending`` string through each read: complete lines are returned and the
trailing partial line is carried into the next call.
"""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from .errors import ProviderUnavailable, UpstreamStreamError


logger = logging.getLogger("uvicorn.error")

DONE_SENTINEL = "[DONE]"


def split_lines(pending: str, data: str) -> Tuple[List[str], str]:
    """Append ``data`` to ``pending`` and split off every complete line."""
    buffer = pending + data
    lines = buffer.split("\n")
    remainder = lines.pop()
    return [line.rstrip("\r") for line in lines], remainder


def sse_data(line: str) -> Optional[str]:
    """Return the payload of a ``data:`` line, or None for any other line."""
    trimmed = line.strip()
    if not trimmed.startswith("data:"):
        return None
    return trimmed[5:].strip()


def decode_frame(payload: str) -> Dict[str, Any]:
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise UpstreamStreamError(f"malformed frame: {exc}") from exc
    if not isinstance(data, dict):
        raise UpstreamStreamError("frame is not a JSON object")
    return data


async def iter_sse_payloads(chunks: AsyncIterator[str]) -> AsyncIterator[str]:
    pending = ""
    async for text in chunks:
        lines, pending = split_lines(pending, text)
        for line in lines:
            payload = sse_data(line)
            if not payload:
                continue
            if payload == DONE_SENTINEL:
                return
            yield payload
    # A final event without a trailing newline is still a complete event.
    payload = sse_data(pending)
    if payload and payload != DONE_SENTINEL:
        yield payload


async def iter_sse_json(chunks: AsyncIterator[str], provider: str) -> AsyncIterator[Dict[str, Any]]:
    async for payload in iter_sse_payloads(chunks):
        try:
            yield decode_frame(payload)
        except UpstreamStreamError as exc:
            logger.warning("%s stream frame skipped (%s): %.200s", provider, exc, payload)


def extract_error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
        if isinstance(data, dict):
            return json.dumps(data, ensure_ascii=True)
    except Exception:
        pass
    try:
        return response.text
    except Exception:
        return ""


async def raise_for_upstream(response: httpx.Response, provider: str) -> None:
    if 200 <= response.status_code < 300:
        return
    await response.aread()
    detail = extract_error_detail(response)
    logger.warning("%s API error %s: %.500s", provider, response.status_code, detail)
    raise ProviderUnavailable(provider, detail, status_code=response.status_code)
