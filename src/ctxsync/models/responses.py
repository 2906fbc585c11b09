"""HTTP model client that speaks the JSON Responses API."""

from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Optional

from ..config import DEFAULT_BASE_URL
from .client import ModelClient, ModelResponseFormatError, ModelTransportError

__all__ = ["ResponsesClient", "Transport", "output_text"]

LOGGER = logging.getLogger(__name__)

# Request payload in, raw response document out.
Transport = Callable[[Dict[str, Any]], str]


class ResponsesClient(ModelClient):
    """Posts stage prompts to a Responses endpoint and returns the output text."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        model: str = "gpt-5-mini",
        transport: Optional[Transport] = None,
        timeout: float = 120.0,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        super().__init__(model=model, max_attempts=max_attempts, retry_delay=retry_delay)
        if transport is None:
            key = api_key or os.getenv("CTXSYNC_API_KEY") or os.getenv("OPENAI_API_KEY")
            if not key:
                raise ValueError("No API key configured; set CTXSYNC_API_KEY or OPENAI_API_KEY.")
            transport = _post_json(base_url, key, timeout)
        self._transport = transport

    def _raw_generate(self, payload: Dict[str, Any]) -> str:
        try:
            document = self._transport(payload)
        except ModelTransportError:
            raise
        except Exception as error:
            raise ModelTransportError(f"Transport rejected the {_stage_of(payload)} request: {error}") from error
        return output_text(document)


def output_text(document: str) -> str:
    """Return the assistant text of a Responses API document.

    Uses the ``output_text`` convenience field when present, otherwise joins
    the ``output_text`` parts of every ``message`` item. Refusals and
    truncated responses raise ``ModelResponseFormatError`` so the caller's
    retry loop gets another attempt.
    """
    try:
        data = json.loads(document)
    except json.JSONDecodeError as error:
        raise ModelResponseFormatError(f"Response body is not JSON: {document[:120]!r}") from error
    if not isinstance(data, dict):
        raise ModelResponseFormatError("Response body is not a JSON object.")

    if data.get("status") == "incomplete":
        reason = (data.get("incomplete_details") or {}).get("reason", "unknown")
        raise ModelResponseFormatError(f"Response incomplete: {reason}")

    shortcut = data.get("output_text")
    if isinstance(shortcut, str) and shortcut.strip():
        return shortcut

    chunks: list[str] = []
    for item in data.get("output") or []:
        if not isinstance(item, dict) or item.get("type") != "message":
            continue
        for part in item.get("content") or []:
            kind = part.get("type") if isinstance(part, dict) else None
            if kind == "refusal":
                raise ModelResponseFormatError(f"Model refused: {part.get('refusal', '')}")
            if kind == "output_text":
                chunks.append(part.get("text") or "")
    text = "".join(chunks)
    if not text.strip():
        raise ModelResponseFormatError("Response did not contain output text.")
    return text


def _post_json(url: str, api_key: str, timeout: float) -> Transport:
    headers = {"Content-Type": "application/json", "Authorization": f"Bearer {api_key}"}

    def post(payload: Dict[str, Any]) -> str:
        LOGGER.debug("POST %s for %s (model=%s)", url, _stage_of(payload), payload.get("model"))
        request = urllib.request.Request(url, data=json.dumps(payload).encode("utf-8"), headers=headers, method="POST")
        try:
            with urllib.request.urlopen(request, timeout=timeout) as response:
                return response.read().decode("utf-8")
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            body = error.read().decode("utf-8", errors="replace")
            raise ModelTransportError(f"HTTP {error.code} from {url}: {body[:300]}") from error
        except (urllib.error.URLError, TimeoutError) as error:  # pragma: no cover - network-dependent
            raise ModelTransportError(f"Could not reach {url}: {error}") from error

    return post


def _stage_of(payload: Dict[str, Any]) -> str:
    return (payload.get("metadata") or {}).get("stage", "model")
