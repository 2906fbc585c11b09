"""Typed wire records exchanged between the client, the server and the model."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .errors import EnvelopeDecodeError

__all__ = [
    "CodebaseContext",
    "FileChange",
    "FileChangePlan",
    "FileOperation",
    "LoadAck",
    "PatchData",
    "ResponseStatus",
    "SessionRequest",
    "SessionResponse",
    "SnapshotNode",
    "Stage",
    "WireModel",
    "decode_request",
    "decode_response",
    "utc_timestamp",
]


def utc_timestamp() -> str:
    """Return the current UTC time as an RFC3339 string."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class WireModel(BaseModel):
    """Base model with strict field handling and camelCase wire names."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, alias_generator=to_camel)

    def to_wire(self) -> Dict[str, Any]:
        """Return the JSON-ready mapping, omitting fields left at their defaults."""
        return self.model_dump(mode="json", by_alias=True, exclude_defaults=True)

    def to_json(self) -> str:
        """Return the compact JSON document sent as one text frame."""
        return self.model_dump_json(by_alias=True, exclude_defaults=True)


class Stage(str, Enum):
    """The three fixed session stages."""

    LOAD = "load"
    SELECT = "select"
    WORK = "work"


class ResponseStatus(str, Enum):
    """Status tags carried by response envelopes."""

    OK = "ok"
    INVALID_REQUEST = "invalid_request"
    OUT_OF_ORDER = "out_of_order"
    INVALID_RESPONSE = "invalid_response"


class FileOperation(IntEnum):
    """Intended change for a file listed in a change plan."""

    REMOVE = -1
    UPDATE = 0
    CREATE = 1


class SnapshotNode(WireModel):
    """One filesystem entry in the codebase snapshot."""

    model_config = ConfigDict(frozen=True)

    is_directory: bool = False
    children: Optional[Dict[str, "SnapshotNode"]] = None
    excluded: bool = False
    identifiers: Optional[List[str]] = None

    @field_validator("identifiers")
    @classmethod
    def _dedupe_identifiers(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return None
        return sorted(set(value))

    @model_validator(mode="after")
    def _check_shape(self) -> "SnapshotNode":
        if self.is_directory and self.identifiers is not None:
            raise ValueError("directory nodes cannot carry identifiers")
        if not self.is_directory and self.children is not None:
            raise ValueError("file nodes cannot carry children")
        if self.excluded and (self.children or self.identifiers):
            raise ValueError("excluded nodes are markers only")
        return self

    @classmethod
    def directory(cls) -> "SnapshotNode":
        """Return an empty, included directory node."""
        return cls(is_directory=True, children={})

    @classmethod
    def file(cls, identifiers: Optional[set[str]] = None) -> "SnapshotNode":
        """Return an included file node with the given identifiers."""
        return cls(identifiers=sorted(identifiers or ()))

    @classmethod
    def excluded_marker(cls, *, is_directory: bool) -> "SnapshotNode":
        """Return the leaf marker stored for an ignored entry."""
        return cls(is_directory=is_directory, excluded=True)

    def find(self, relative_path: str) -> Optional["SnapshotNode"]:
        """Return the node reached by splitting ``relative_path`` on separators."""
        node: Optional[SnapshotNode] = self
        for part in relative_path.replace("\\", "/").split("/"):
            if not part or part == ".":
                continue
            if node is None or not node.children:
                return None
            node = node.children.get(part)
        return node


class CodebaseContext(WireModel):
    """The unit of knowledge shared with the remote side."""

    snapshot: Dict[str, SnapshotNode] = Field(default_factory=dict)
    notes: List[str] = Field(default_factory=list)
    file_contents: Dict[str, str] = Field(default_factory=dict)

    def merge_file_contents(self, contents: Mapping[str, str]) -> list[str]:
        """Add new entries to ``file_contents``; existing entries are kept as-is."""
        added: list[str] = []
        for path, text in contents.items():
            if path in self.file_contents:
                continue
            self.file_contents[path] = text
            added.append(path)
        return added


class LoadAck(WireModel):
    """Model acknowledgement for the LOAD stage."""

    stage: str
    status: str


class FileChange(WireModel):
    """One file entry in a change plan."""

    path: str = Field(min_length=1)
    operation: FileOperation
    reason: str = ""

    @field_validator("path")
    @classmethod
    def _normalise_path(cls, value: str) -> str:
        cleaned = value.strip().replace("\\", "/")
        while cleaned.startswith("./"):
            cleaned = cleaned[2:]
        if not cleaned:
            raise ValueError("path must not be empty")
        return cleaned


class FileChangePlan(WireModel):
    """SELECT payload: files to change plus context-only files."""

    files: List[FileChange] = Field(default_factory=list)
    additional_context_files: List[FileChange] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_unique_paths(self) -> "FileChangePlan":
        primary = [entry.path for entry in self.files]
        secondary = [entry.path for entry in self.additional_context_files]
        for label, paths in (("files", primary), ("additionalContextFiles", secondary)):
            if len(paths) != len(set(paths)):
                raise ValueError(f"duplicate path in {label}")
        overlap = sorted(set(primary) & set(secondary))
        if overlap:
            raise ValueError(f"path listed in both lists: {', '.join(overlap)}")
        return self


class PatchData(WireModel):
    """WORK payload: a unified diff restricted to a single file."""

    path: str = Field(min_length=1)
    operation: FileOperation
    patch: str
    summary: str = ""


class SessionRequest(WireModel):
    """Client-to-server envelope."""

    client_id: str = Field(alias="clientID")
    stage: Stage
    context: CodebaseContext = Field(default_factory=CodebaseContext)
    task_prompt: Optional[str] = None
    file_work_prompt: Optional[str] = None

    @model_validator(mode="after")
    def _check_stage_fields(self) -> "SessionRequest":
        if self.stage is Stage.LOAD:
            if self.task_prompt is not None or self.file_work_prompt is not None:
                raise ValueError("load requests carry no prompts")
        elif self.stage is Stage.SELECT:
            if not self.task_prompt:
                raise ValueError("select requests require a task prompt")
            if self.file_work_prompt is not None:
                raise ValueError("select requests carry no file work prompt")
        elif not self.task_prompt or not self.file_work_prompt:
            raise ValueError("work requests require task and file work prompts")
        return self


class SessionResponse(WireModel):
    """Server-to-client envelope."""

    timestamp: str = Field(default_factory=utc_timestamp)
    stage: Stage
    status: str
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """Return True when the server reported success."""
        return self.status == ResponseStatus.OK.value

    def to_json(self) -> str:
        """Serialise every field; the timestamp must always be present."""
        return self.model_dump_json(by_alias=True)

    @classmethod
    def failure(cls, stage: Stage, status: ResponseStatus, message: str) -> "SessionResponse":
        """Build a non-ok response carrying an error message."""
        return cls(stage=stage, status=status.value, data={"error": message})


def decode_request(frame: str | bytes) -> SessionRequest:
    """Decode one text frame into a request envelope."""
    try:
        return SessionRequest.model_validate_json(frame)
    except ValidationError as error:
        raise EnvelopeDecodeError(f"Malformed request envelope: {error}") from error


def decode_response(frame: str | bytes) -> SessionResponse:
    """Decode one text frame into a response envelope."""
    try:
        return SessionResponse.model_validate_json(frame)
    except ValidationError as error:
        raise EnvelopeDecodeError(f"Malformed response envelope: {error}") from error
