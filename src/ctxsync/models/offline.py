"""Local stub model that synthesizes deterministic per-stage responses."""

from __future__ import annotations

import json
from typing import Any, Dict

from .client import ModelClient

__all__ = ["OfflineModelClient"]


class OfflineModelClient(ModelClient):
    """Answers every stage with a minimal valid payload, without network access.

    The stage and, for WORK, the target file are read from the request
    metadata attached by the server session.
    """

    def __init__(self) -> None:
        super().__init__("offline", max_attempts=1)

    def _raw_generate(self, payload: Dict[str, Any]) -> str:
        metadata = payload.get("metadata") or {}
        stage = str(metadata.get("stage", "load"))
        return json.dumps(self._build_response(stage, metadata))

    def _build_response(self, stage: str, metadata: Dict[str, Any]) -> Dict[str, Any]:
        if stage == "select":
            return {"files": [], "additionalContextFiles": []}
        if stage == "work":
            try:
                operation = int(metadata.get("operation", 0))
            except (TypeError, ValueError):
                operation = 0
            return {
                "path": str(metadata.get("path") or "unknown"),
                "operation": operation,
                "patch": "",
                "summary": "Offline model produced no changes.",
            }
        return {"stage": stage, "status": "ok"}
