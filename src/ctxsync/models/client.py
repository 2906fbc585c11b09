"""Model client base class and helpers that turn model text into JSON data."""

from __future__ import annotations

import ast
import json
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional, Sequence

__all__ = [
    "GenerateOptions",
    "ModelClient",
    "ModelError",
    "ModelResponseFormatError",
    "ModelRetryError",
    "ModelTransportError",
    "parse_json_payload",
]


class ModelError(RuntimeError):
    """Base error raised for model client failures."""


class ModelTransportError(ModelError):
    """Raised when the underlying transport fails to return a response."""


class ModelResponseFormatError(ModelError):
    """Raised when the model returns text that cannot be used."""


class ModelRetryError(ModelError):
    """Raised after exhausting retries."""


@dataclass(slots=True)
class GenerateOptions:
    """Per-call options forwarded to the model backend."""

    model: Optional[str] = None
    temperature: float = 0.8
    json_mode: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)


class ModelClient:
    """Opaque text generator: ordered text parts in, free text out."""

    def __init__(self, model: str, *, max_attempts: int = 3, retry_delay: float = 0.5) -> None:
        self._model = model
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay

    @property
    def model(self) -> str:
        """Return the default model name configured for this client."""
        return self._model

    def generate(self, parts: Sequence[str], options: Optional[GenerateOptions] = None) -> str:
        """Send ``parts`` to the model and return its text, retrying transient failures."""
        if not parts:
            raise ValueError("At least one prompt part is required.")
        options = options or GenerateOptions()
        payload = self.build_payload(parts, options)
        last_error: Optional[Exception] = None

        for attempt in range(1, self._max_attempts + 1):
            try:
                text = self._raw_generate(payload)
                if not text or not text.strip():
                    raise ModelResponseFormatError("Model returned an empty response.")
                return text
            except (ModelTransportError, ModelResponseFormatError) as error:
                last_error = error
                if attempt >= self._max_attempts:
                    break
                time.sleep(self._retry_delay)

        raise ModelRetryError(
            f"Model {options.model or self._model} failed after {self._max_attempts} attempt(s)"
        ) from last_error

    def build_payload(self, parts: Sequence[str], options: GenerateOptions) -> Dict[str, Any]:
        """Render a transport-ready payload for the JSON responses API."""
        payload: Dict[str, Any] = {
            "model": options.model or self._model,
            "input": [
                {
                    "role": "user",
                    "content": [{"type": "input_text", "text": part} for part in parts],
                }
            ],
        }
        if options.json_mode:
            payload["text"] = {"format": {"type": "json_object"}}
        if options.temperature not in (None, 0.0):
            payload["temperature"] = options.temperature
        if options.metadata:
            max_metadata_len = 512
            serialised: Dict[str, str] = {}
            for key, value in options.metadata.items():
                if isinstance(value, str):
                    formatted = value
                else:
                    formatted = json.dumps(value, separators=(",", ":"), sort_keys=True)
                if len(formatted) > max_metadata_len:
                    formatted = f"{formatted[: max_metadata_len - 3]}..."
                serialised[key] = formatted
            payload["metadata"] = serialised
        return payload

    def _raw_generate(self, payload: Dict[str, Any]) -> str:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_generate().")


_TYPOGRAPHIC = str.maketrans({"\u201c": '"', "\u201d": '"', "\u2018": "'", "\u2019": "'", "\u00a0": " ", "\ufeff": ""})
_FENCED = re.compile(r"^```[\w-]*[ \t]*\n(?P<body>.*?)\n?```\s*$", re.DOTALL)
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")


def parse_json_payload(raw_response: str) -> Any:
    """Parse model text into the JSON object a stage payload needs.

    Accepts a bare object, one wrapped in a Markdown fence, one surrounded by
    prose (trailing commas tolerated), or a Python-literal dict.
    """
    text = (raw_response or "").strip().translate(_TYPOGRAPHIC)
    if not text:
        raise ModelResponseFormatError("Model returned an empty response.")
    fenced = _FENCED.match(text)
    if fenced:
        text = fenced.group("body").strip()

    for candidate in _candidates(text):
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            literal = _literal_object(candidate)
            if literal is not None:
                return literal
    raise ModelResponseFormatError(f"Model returned invalid JSON: {text[:200]}")


def _candidates(text: str) -> Iterator[str]:
    yield text
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        embedded = _TRAILING_COMMA.sub(r"\1", text[start : end + 1])
        if embedded != text:
            yield embedded


def _literal_object(candidate: str) -> Optional[Dict[str, Any]]:
    """Read a Python dict literal (single quotes, ``True``) as JSON data."""
    try:
        literal = ast.literal_eval(candidate)
    except (SyntaxError, ValueError):
        return None
    if not isinstance(literal, dict):
        return None
    try:
        return json.loads(json.dumps(literal, default=str))
    except (TypeError, ValueError):
        return None
