"""Staged context-synchronization protocol: LOAD, SELECT, WORK."""

from ..schema import Stage
from .client import ClientSession, SessionResult, SessionState, StageOutcome, WorkResult, make_file_reader
from .registry import render_schema, schema_for, validate_stage_payload
from .server import ContextServer, ServerSession

STAGE_SEQUENCE: tuple[Stage, ...] = (Stage.LOAD, Stage.SELECT, Stage.WORK)

__all__ = [
    "ClientSession",
    "ContextServer",
    "STAGE_SEQUENCE",
    "ServerSession",
    "SessionResult",
    "SessionState",
    "Stage",
    "StageOutcome",
    "WorkResult",
    "make_file_reader",
    "render_schema",
    "schema_for",
    "validate_stage_payload",
]
