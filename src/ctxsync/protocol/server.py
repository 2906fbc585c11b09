"""Server side of the staged session and the WebSocket front end."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

from websockets.sync.server import Server, serve

from ..config import Settings
from ..debug import DebugSnapshotTask, write_debug_snapshot
from ..errors import EnvelopeDecodeError, ModelCallError, SchemaValidationError, SessionClosedError
from ..models import GenerateOptions, ModelClient, ModelError, ModelResponseFormatError, parse_json_payload
from ..schema import (
    FileChangePlan,
    FileOperation,
    PatchData,
    ResponseStatus,
    SessionRequest,
    SessionResponse,
    Stage,
    decode_request,
)
from ..transport import Channel, CloseCode, WebSocketChannel
from .prompts import stage_instructions
from .registry import validate_stage_payload

__all__ = ["ContextServer", "PING_PATH", "ServerSession"]

LOGGER = logging.getLogger(__name__)

PING_PATH = "/ping"
_FILE_HEADER = "File: "


class ServerSession:
    """Per-connection stage machine that relays each request to the model."""

    def __init__(
        self,
        model: ModelClient,
        *,
        options: Optional[GenerateOptions] = None,
        debug_snapshot_path: Optional[Path] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._model = model
        self._options = options or GenerateOptions()
        self._debug_snapshot_path = debug_snapshot_path
        self._logger = logger or LOGGER
        self._received: set[Stage] = set()
        self._plan: Optional[FileChangePlan] = None
        self.debug_task: Optional[DebugSnapshotTask] = None

    def handle(self, message: str | bytes) -> Optional[SessionResponse]:
        """Answer one request frame.

        Returns ``None`` for frames that do not decode; raises
        ``ModelCallError`` when the model backend fails.
        """
        try:
            request = decode_request(message)
        except EnvelopeDecodeError as error:
            self._logger.warning("Dropping undecodable request: %s", error)
            return None

        stage = request.stage
        violation = self._order_violation(stage)
        if violation is not None:
            self._logger.warning("Rejecting %s request from %s: %s", stage.value, request.client_id, violation)
            return SessionResponse.failure(stage, ResponseStatus.OUT_OF_ORDER, violation)
        self._received.add(stage)

        context_json = request.context.to_json()
        self._logger.debug("Handling %s for %s (%d chars of context)", stage.value, request.client_id, len(context_json))
        if stage is Stage.LOAD and self._debug_snapshot_path is not None:
            self.debug_task = write_debug_snapshot(self._debug_snapshot_path, context_json, logger=self._logger)

        target = _target_path(request) if stage is Stage.WORK else None
        instructions = stage_instructions(
            stage,
            task_prompt=request.task_prompt,
            file_work_prompt=request.file_work_prompt,
        )
        text = self._generate([context_json, *instructions], self._options_for(request, target))

        try:
            payload = validate_stage_payload(stage, parse_json_payload(text))
            if isinstance(payload, PatchData) and target is not None and payload.path != target:
                raise SchemaValidationError(
                    f"patch targets {payload.path}, expected {target}",
                    details={"stage": stage.value},
                )
        except (ModelResponseFormatError, SchemaValidationError) as error:
            self._logger.error("Model response for %s was invalid: %s", stage.value, error)
            return SessionResponse.failure(stage, ResponseStatus.INVALID_RESPONSE, str(error))

        if isinstance(payload, FileChangePlan):
            self._plan = payload
        return SessionResponse(
            stage=stage,
            status=ResponseStatus.OK.value,
            data=payload.model_dump(mode="json", by_alias=True),
        )

    def _order_violation(self, stage: Stage) -> Optional[str]:
        if stage is Stage.LOAD:
            if Stage.LOAD in self._received:
                return "load has already been received"
            return None
        if Stage.LOAD not in self._received:
            return f"{stage.value} requires a prior load"
        if stage is Stage.SELECT and Stage.SELECT in self._received:
            return "select has already been received"
        if stage is Stage.WORK and Stage.SELECT not in self._received:
            return "work requires a prior select"
        return None

    def _options_for(self, request: SessionRequest, target: Optional[str]) -> GenerateOptions:
        metadata: dict[str, Any] = {"stage": request.stage.value, "clientID": request.client_id}
        if target is not None:
            metadata["path"] = target
            metadata["operation"] = int(self._planned_operation(target))
        return GenerateOptions(
            model=self._options.model,
            temperature=self._options.temperature,
            json_mode=self._options.json_mode,
            metadata=metadata,
        )

    def _planned_operation(self, path: str) -> FileOperation:
        if self._plan is not None:
            for change in self._plan.files:
                if change.path == path:
                    return change.operation
        return FileOperation.UPDATE

    def _generate(self, parts: list[str], options: GenerateOptions) -> str:
        try:
            return self._model.generate(parts, options)
        except ModelError as error:
            raise ModelCallError(f"Model call failed for {options.metadata.get('stage')}: {error}") from error


def _target_path(request: SessionRequest) -> Optional[str]:
    first_line = (request.file_work_prompt or "").split("\n", 1)[0]
    if first_line.startswith(_FILE_HEADER):
        return first_line[len(_FILE_HEADER) :].strip() or None
    return None


class ContextServer:
    """Accepts connections and runs one ``ServerSession`` per connection."""

    def __init__(
        self,
        model: ModelClient,
        settings: Settings,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._model = model
        self._settings = settings
        self._logger = logger or LOGGER
        self._server: Optional[Server] = None

    def new_session(self) -> ServerSession:
        model_settings = self._settings.model
        return ServerSession(
            self._model,
            options=GenerateOptions(model=model_settings.name, temperature=model_settings.temperature),
            debug_snapshot_path=self._settings.debug_snapshot_path,
            logger=self._logger,
        )

    def serve_connection(self, channel: Channel) -> None:
        """Read requests until the peer closes or the model fails."""
        session = self.new_session()
        while True:
            try:
                frame = channel.receive()
            except SessionClosedError as error:
                self._logger.info("Connection closed: %s", error)
                return

            try:
                response = session.handle(frame)
            except ModelCallError as error:
                self._logger.error("Closing connection: %s", error)
                channel.close(CloseCode.INTERNAL_ERROR, "ai generation failed")
                return

            if response is None:
                continue
            try:
                channel.send(response.to_json())
            except SessionClosedError as error:
                self._logger.info("Connection closed before reply: %s", error)
                return

    def serve_ping(self, channel: Channel) -> None:
        """Answer every text frame with ``pong``."""
        while True:
            try:
                channel.receive()
                channel.send("pong")
            except SessionClosedError:
                return

    def handler(self, connection: Any) -> None:
        """Route a ``websockets`` connection by request path."""
        channel = WebSocketChannel(connection)
        path = channel.path.split("?", 1)[0]
        if path == PING_PATH:
            self.serve_ping(channel)
        elif path == self._settings.server.path:
            self._logger.info("Client connected on %s", path)
            self.serve_connection(channel)
        else:
            self._logger.warning("Rejecting connection on unknown path %s", path)
            channel.close(CloseCode.NORMAL, f"unknown path {path}")

    def serve_forever(self) -> None:
        server_settings = self._settings.server
        with serve(self.handler, server_settings.host, server_settings.port, max_size=None) as server:
            self._server = server
            self._logger.info("Listening on %s", server_settings.url())
            server.serve_forever()

    def shutdown(self) -> None:
        if self._server is not None:
            self._server.shutdown()
