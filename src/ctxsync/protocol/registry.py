"""Response schema registry: one self-contained JSON Schema per stage."""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Iterable, Mapping

from pydantic import ValidationError
from pydantic.type_adapter import TypeAdapter

from ..errors import SchemaValidationError
from ..schema import FileChangePlan, LoadAck, PatchData, Stage, WireModel

__all__ = [
    "StageEntry",
    "available_stages",
    "render_schema",
    "response_model_for",
    "schema_for",
    "validate_stage_payload",
]


@dataclass(frozen=True, slots=True)
class StageEntry:
    """Metadata describing the expected response of a single stage."""

    response_model: type[WireModel]
    description: str


_REGISTRY: Dict[Stage, StageEntry] = {
    Stage.LOAD: StageEntry(LoadAck, "Acknowledgement of the received codebase context."),
    Stage.SELECT: StageEntry(FileChangePlan, "Files to change plus context-only files."),
    Stage.WORK: StageEntry(PatchData, "Unified diff restricted to a single file."),
}


def available_stages() -> Iterable[Stage]:
    """Return the stages registered with the schema registry."""
    return _REGISTRY.keys()


def response_model_for(stage: Stage | str) -> type[WireModel]:
    """Return the response model reflected for ``stage``."""
    return _REGISTRY[_normalize_stage(stage)].response_model


def schema_for(stage: Stage | str) -> Dict[str, Any]:
    """Return the closed, reference-free schema for ``stage``'s response."""
    return copy.deepcopy(_cached_schema(_normalize_stage(stage)))


def render_schema(stage: Stage | str) -> str:
    """Return the schema as indented JSON text suitable for a prompt."""
    return json.dumps(schema_for(stage), indent=2, sort_keys=True)


def validate_stage_payload(stage: Stage | str, data: Any) -> WireModel:
    """Validate ``data`` against ``stage``'s response model.

    Raises ``SchemaValidationError`` rather than returning a partially
    trusted payload.
    """
    stage_name = _normalize_stage(stage)
    model = _REGISTRY[stage_name].response_model
    if not isinstance(data, Mapping):
        raise SchemaValidationError(
            f"{stage_name.value} payload must be a JSON object, got {type(data).__name__}",
            details={"stage": stage_name.value},
        )
    try:
        return model.model_validate(dict(data))
    except ValidationError as error:
        raise SchemaValidationError(
            f"{stage_name.value} payload did not match {model.__name__}: {error.error_count()} error(s)",
            details={"stage": stage_name.value, "errors": error.errors(include_url=False)},
        ) from error


@lru_cache(maxsize=None)
def _cached_schema(stage: Stage) -> Dict[str, Any]:
    entry = _REGISTRY[stage]
    schema = TypeAdapter(entry.response_model).json_schema(by_alias=True)
    definitions = schema.pop("$defs", {})
    schema = _inline_refs(schema, definitions, ())
    schema = _forbid_extra_keys(schema)
    schema.setdefault("description", entry.description)
    return schema


def _inline_refs(value: Any, definitions: Mapping[str, Any], trail: tuple[str, ...]) -> Any:
    """Replace ``$ref`` pointers with copies of their definitions."""
    if isinstance(value, dict):
        ref = value.get("$ref")
        if isinstance(ref, str) and ref.startswith("#/$defs/"):
            name = ref.rsplit("/", 1)[-1]
            if name in trail:
                raise ValueError(f"Recursive schema reference to {name} cannot be inlined")
            target = copy.deepcopy(definitions[name])
            for key, sibling in value.items():
                if key != "$ref":
                    target.setdefault(key, sibling)
            return _inline_refs(target, definitions, (*trail, name))
        return {
            key: _inline_refs(child, definitions, trail)
            for key, child in value.items()
            if key != "$defs"
        }
    if isinstance(value, list):
        return [_inline_refs(item, definitions, trail) for item in value]
    return value


def _forbid_extra_keys(value: Any) -> Any:
    """Set ``additionalProperties: false`` on every object schema.

    ``required`` is left as generated: fields with defaults stay optional,
    matching what ``validate_stage_payload`` accepts.
    """
    if isinstance(value, list):
        return [_forbid_extra_keys(item) for item in value]
    if not isinstance(value, dict):
        return value
    closed = {key: _forbid_extra_keys(child) for key, child in value.items()}
    if closed.get("type") == "object":
        closed["additionalProperties"] = False
    return closed


def _normalize_stage(stage: Stage | str) -> Stage:
    if isinstance(stage, Stage):
        return stage
    try:
        return Stage(stage)
    except ValueError as error:
        valid = ", ".join(item.value for item in Stage)
        raise KeyError(f"Unknown stage '{stage}'. Expected one of: {valid}") from error
