"""Client side of the staged session: LOAD, then SELECT, then WORK per file."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from ..errors import (
    EnvelopeDecodeError,
    SchemaValidationError,
    SessionClosedError,
    StageOrderError,
)
from ..schema import (
    CodebaseContext,
    FileChange,
    FileChangePlan,
    FileOperation,
    LoadAck,
    PatchData,
    SessionRequest,
    SessionResponse,
    Stage,
    WireModel,
    decode_response,
)
from ..transport import Channel, CloseCode
from .prompts import render_file_work_prompt
from .registry import validate_stage_payload

__all__ = [
    "ClientSession",
    "FileReader",
    "SessionResult",
    "SessionState",
    "StageOutcome",
    "WorkResult",
    "make_file_reader",
]

LOGGER = logging.getLogger(__name__)

FileReader = Callable[[str], str]


class SessionState(str, Enum):
    """Client session states; transitions only move forward."""

    IDLE = "idle"
    AWAITING_LOAD_ACK = "awaiting_load_ack"
    AWAITING_SELECT_RESPONSE = "awaiting_select_response"
    AWAITING_WORK_RESPONSE = "awaiting_work_response"
    DONE = "done"


@dataclass(slots=True)
class StageOutcome:
    """Result of one LOAD or SELECT exchange."""

    stage: Stage
    ok: bool
    payload: Optional[WireModel] = None
    error: Optional[str] = None


@dataclass(slots=True)
class WorkResult:
    """Result of the WORK exchange for a single planned file."""

    change: FileChange
    patch: Optional[PatchData] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.patch is not None


@dataclass(slots=True)
class SessionResult:
    """Everything a full ``run`` produced."""

    load: Optional[StageOutcome] = None
    select: Optional[StageOutcome] = None
    work: List[WorkResult] = field(default_factory=list)
    closed: bool = False
    close_code: Optional[int] = None

    @property
    def plan(self) -> Optional[FileChangePlan]:
        if self.select is None or not self.select.ok:
            return None
        payload = self.select.payload
        return payload if isinstance(payload, FileChangePlan) else None

    @property
    def patches(self) -> List[PatchData]:
        return [result.patch for result in self.work if result.patch is not None]


def make_file_reader(root: Path) -> FileReader:
    """Return a reader resolving root-relative paths under ``root``.

    Plan paths come from the model, so anything resolving outside ``root``
    (absolute paths, ``..`` segments, symlinks) raises ``PermissionError``.
    """
    base = root.resolve()

    def read(relative_path: str) -> str:
        target = (base / relative_path).resolve()
        if not target.is_relative_to(base):
            raise PermissionError(f"{relative_path} resolves outside {base}")
        return target.read_text(encoding="utf-8")

    return read


class ClientSession:
    """Drives one three-stage conversation over a channel."""

    def __init__(
        self,
        channel: Channel,
        context: CodebaseContext,
        *,
        client_id: str,
        file_reader: FileReader,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._channel = channel
        self._context = context
        self._client_id = client_id
        self._read_file = file_reader
        self._logger = logger or LOGGER
        self._state = SessionState.IDLE
        self._completed: set[Stage] = set()
        self._task_prompt: Optional[str] = None
        self._plan: Optional[FileChangePlan] = None
        self._close_code: Optional[int] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def context(self) -> CodebaseContext:
        return self._context

    @property
    def close_code(self) -> Optional[int]:
        return self._close_code

    def load(self) -> StageOutcome:
        """Send the full context and validate the acknowledgement.

        A failed acknowledgement is logged; the session still moves on to
        SELECT.
        """
        if self._state is not SessionState.IDLE:
            raise StageOrderError(f"load is only valid in the idle state, not {self._state.value}")
        self._state = SessionState.AWAITING_LOAD_ACK
        request = SessionRequest(client_id=self._client_id, stage=Stage.LOAD, context=self._context)
        outcome = self._stage_exchange(request)
        self._completed.add(Stage.LOAD)
        if outcome.ok:
            self._logger.info("Context acknowledged by server")
        else:
            self._logger.warning("Context acknowledgement failed: %s", outcome.error)
        return outcome

    def select(self, task_prompt: str) -> StageOutcome:
        """Ask for a change plan, then load the content of the planned files."""
        self._require_open("select")
        if Stage.LOAD not in self._completed:
            raise StageOrderError("select requires a completed load")
        if Stage.SELECT in self._completed:
            raise StageOrderError("select has already been sent in this session")
        if not task_prompt or not task_prompt.strip():
            raise ValueError("A non-empty task prompt is required.")

        self._state = SessionState.AWAITING_SELECT_RESPONSE
        self._task_prompt = task_prompt
        request = SessionRequest(
            client_id=self._client_id,
            stage=Stage.SELECT,
            context=self._context,
            task_prompt=task_prompt,
        )
        outcome = self._stage_exchange(request)
        self._completed.add(Stage.SELECT)
        if not outcome.ok:
            self._logger.error("File selection failed: %s", outcome.error)
            self._state = SessionState.DONE
            return outcome

        plan = outcome.payload
        assert isinstance(plan, FileChangePlan)
        self._plan = plan
        self._logger.info(
            "Plan lists %d file(s) to change and %d context file(s)",
            len(plan.files),
            len(plan.additional_context_files),
        )
        self._load_planned_contents(plan)
        return outcome

    def work(self, change: FileChange) -> WorkResult:
        """Request the patch for one planned file."""
        self._require_open("work")
        if Stage.SELECT not in self._completed or self._plan is None:
            raise StageOrderError("work requires a successful select")

        self._state = SessionState.AWAITING_WORK_RESPONSE
        content = self._context.file_contents.get(change.path)
        request = SessionRequest(
            client_id=self._client_id,
            stage=Stage.WORK,
            context=self._context,
            task_prompt=self._task_prompt,
            file_work_prompt=render_file_work_prompt(change.path, change.operation, content),
        )
        outcome = self._stage_exchange(request)
        if not outcome.ok:
            self._logger.error("Work for %s failed, skipping: %s", change.path, outcome.error)
            return WorkResult(change=change, error=outcome.error)

        patch = outcome.payload
        assert isinstance(patch, PatchData)
        if patch.path != change.path:
            message = f"patch targets {patch.path}, expected {change.path}"
            self._logger.error("Work for %s failed, skipping: %s", change.path, message)
            return WorkResult(change=change, error=message)
        return WorkResult(change=change, patch=patch)

    def run(self, task_prompt: str) -> SessionResult:
        """Drive LOAD, SELECT and one WORK per planned file."""
        result = SessionResult()
        try:
            result.load = self.load()
            result.select = self.select(task_prompt)
            plan = result.plan
            if plan is not None:
                for change in plan.files:
                    if self._state is SessionState.DONE:
                        break
                    result.work.append(self.work(change))
        except SessionClosedError as error:
            self._logger.warning("Session ended early: %s", error)
            result.closed = True
            result.close_code = error.code
        self._state = SessionState.DONE
        return result

    def close(self, code: int = CloseCode.NORMAL, reason: str = "") -> None:
        """Send a close frame and stop issuing requests."""
        if self._close_code is None:
            self._close_code = int(code)
            try:
                self._channel.close(code, reason)
            except SessionClosedError:
                self._logger.debug("Channel already closed")
        self._state = SessionState.DONE

    def _require_open(self, operation: str) -> None:
        if self._state is SessionState.DONE:
            raise StageOrderError(f"{operation} is not valid once the session is done")

    def _stage_exchange(self, request: SessionRequest) -> StageOutcome:
        response = self._exchange(request)
        try:
            payload = self._validate(request.stage, response)
        except SchemaValidationError as error:
            return StageOutcome(stage=request.stage, ok=False, error=str(error))
        return StageOutcome(stage=request.stage, ok=True, payload=payload)

    def _exchange(self, request: SessionRequest) -> SessionResponse:
        try:
            self._channel.send(request.to_json())
            while True:
                frame = self._channel.receive()
                try:
                    return decode_response(frame)
                except EnvelopeDecodeError as error:
                    self._logger.warning("Dropping undecodable frame: %s", error)
        except SessionClosedError as error:
            self._close_code = error.code
            self._state = SessionState.DONE
            raise

    def _validate(self, stage: Stage, response: SessionResponse) -> WireModel:
        if response.stage is not stage:
            raise SchemaValidationError(
                f"response stage {response.stage.value} does not match request stage {stage.value}",
                details={"stage": stage.value},
            )
        if not response.ok:
            reason = response.data.get("error", "no details")
            raise SchemaValidationError(
                f"server answered {response.status}: {reason}",
                details={"stage": stage.value, "status": response.status},
            )
        payload = validate_stage_payload(stage, response.data)
        if stage is Stage.LOAD:
            assert isinstance(payload, LoadAck)
            if payload.status != "ok":
                raise SchemaValidationError(
                    f"load acknowledged with status {payload.status}",
                    details={"stage": stage.value},
                )
        return payload

    def _load_planned_contents(self, plan: FileChangePlan) -> None:
        contents: dict[str, str] = {}
        seen: set[str] = set()
        for change in [*plan.files, *plan.additional_context_files]:
            if change.operation is FileOperation.CREATE or change.path in seen:
                continue
            seen.add(change.path)
            try:
                contents[change.path] = self._read_file(change.path)
            except (OSError, UnicodeDecodeError) as error:
                self._logger.warning("Failed to read %s: %s", change.path, error)
        added = self._context.merge_file_contents(contents)
        self._logger.debug("Loaded content for %d file(s)", len(added))
