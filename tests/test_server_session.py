from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from conftest import ScriptedModelClient
from ctxsync.config import Settings
from ctxsync.errors import ModelCallError, SessionClosedError
from ctxsync.models import ModelTransportError, OfflineModelClient
from ctxsync.protocol import ClientSession, ContextServer, ServerSession
from ctxsync.schema import CodebaseContext, SessionRequest, SnapshotNode, Stage, decode_response
from ctxsync.transport import CloseCode, LoopbackChannel

LOAD_ACK = '{"stage": "load", "status": "ok"}'
PLAN = json.dumps({"files": [{"path": "b.go", "operation": 0}], "additionalContextFiles": []})


def _context() -> CodebaseContext:
    return CodebaseContext(
        snapshot={"/repo": SnapshotNode(is_directory=True, children={"b.go": SnapshotNode.file({"main"})})}
    )


def _frame(stage: Stage, **fields) -> str:
    return SessionRequest(client_id="tester", stage=stage, context=_context(), **fields).to_json()


def _load() -> str:
    return _frame(Stage.LOAD)


def _select() -> str:
    return _frame(Stage.SELECT, task_prompt="rename main")


def _work(path: str = "b.go") -> str:
    return _frame(Stage.WORK, task_prompt="rename main", file_work_prompt=f"File: {path}\n\n1: package main")


def test_select_before_load_is_answered_out_of_order() -> None:
    model = ScriptedModelClient()
    session = ServerSession(model)

    response = session.handle(_select())

    assert response.stage is Stage.SELECT
    assert response.status == "out_of_order"
    assert "load" in response.data["error"]
    assert model.payloads == []


def test_repeated_load_and_early_work_are_out_of_order() -> None:
    model = ScriptedModelClient([LOAD_ACK, PLAN])
    session = ServerSession(model)

    assert session.handle(_load()).ok
    assert session.handle(_load()).status == "out_of_order"
    assert session.handle(_work()).status == "out_of_order"
    assert session.handle(_select()).ok

    repeated = session.handle(_select())

    assert repeated.status == "out_of_order"
    assert "select" in repeated.data["error"]
    assert len(model.payloads) == 2


def test_undecodable_request_yields_no_response() -> None:
    session = ServerSession(ScriptedModelClient())

    assert session.handle("{not json") is None
    assert session.handle(json.dumps({"stage": "load"})) is None


def test_load_sends_context_first_and_validates_acknowledgement() -> None:
    model = ScriptedModelClient(["```json\n" + LOAD_ACK + "\n```"])
    session = ServerSession(model)

    response = session.handle(_load())

    assert response.ok
    assert response.data == {"stage": "load", "status": "ok"}
    parts = [part["text"] for part in model.payloads[0]["input"][0]["content"]]
    assert json.loads(parts[0]) == json.loads(_context().to_json())
    assert any('"additionalProperties": false' in part for part in parts[1:])
    assert model.payloads[0]["metadata"]["stage"] == "load"


def test_invalid_model_output_is_reported_as_invalid_response() -> None:
    session = ServerSession(ScriptedModelClient([LOAD_ACK, '{"files": "all of them"}']))

    session.handle(_load())
    response = session.handle(_select())

    assert response.status == "invalid_response"
    assert response.data["error"]


def test_work_patch_for_another_file_is_rejected() -> None:
    stray_patch = json.dumps({"path": "other.go", "operation": 0, "patch": ""})
    session = ServerSession(ScriptedModelClient([LOAD_ACK, PLAN, stray_patch]))

    session.handle(_load())
    session.handle(_select())
    response = session.handle(_work("b.go"))

    assert response.status == "invalid_response"
    assert "other.go" in response.data["error"]


def test_work_metadata_carries_planned_operation() -> None:
    model = ScriptedModelClient(
        [LOAD_ACK, PLAN, json.dumps({"path": "b.go", "operation": 0, "patch": "", "summary": "noop"})]
    )
    session = ServerSession(model)

    session.handle(_load())
    session.handle(_select())
    response = session.handle(_work("b.go"))

    assert response.ok
    assert response.data["summary"] == "noop"
    assert model.payloads[-1]["metadata"]["path"] == "b.go"
    assert model.payloads[-1]["metadata"]["operation"] == "0"


def test_model_failure_raises_model_call_error() -> None:
    session = ServerSession(ScriptedModelClient([ModelTransportError("timeout")]))

    with pytest.raises(ModelCallError):
        session.handle(_load())


def test_load_starts_debug_snapshot_write(tmp_path: Path) -> None:
    target = tmp_path / "ctx.json"
    session = ServerSession(ScriptedModelClient([LOAD_ACK]), debug_snapshot_path=target)

    session.handle(_load())

    assert session.debug_task is not None
    assert session.debug_task.wait(timeout=5)
    assert json.loads(target.read_text(encoding="utf-8")) == json.loads(_context().to_json())


def _serve_in_thread(server: ContextServer, channel: LoopbackChannel) -> threading.Thread:
    thread = threading.Thread(target=server.serve_connection, args=(channel,), daemon=True)
    thread.start()
    return thread


def test_model_failure_closes_connection_with_internal_error() -> None:
    server = ContextServer(ScriptedModelClient([ModelTransportError("boom")]), Settings())
    client_end, server_end = LoopbackChannel.pair()
    thread = _serve_in_thread(server, server_end)

    client_end.send("garbage frame")
    client_end.send(_load())
    with pytest.raises(SessionClosedError) as excinfo:
        client_end.receive()
    thread.join(timeout=5)

    assert excinfo.value.code == CloseCode.INTERNAL_ERROR
    assert excinfo.value.reason == "ai generation failed"
    assert not thread.is_alive()


def test_full_session_over_loopback(tmp_path: Path) -> None:
    (tmp_path / "b.go").write_text("package main\n", encoding="utf-8")
    patch = json.dumps(
        {"path": "b.go", "operation": 0, "patch": "--- a/b.go\n+++ b/b.go\n", "summary": "rename"}
    )
    server = ContextServer(ScriptedModelClient([LOAD_ACK, PLAN, patch]), Settings())
    client_end, server_end = LoopbackChannel.pair()
    thread = _serve_in_thread(server, server_end)

    session = ClientSession(
        client_end,
        _context(),
        client_id="tester",
        file_reader=lambda path: (tmp_path / path).read_text(encoding="utf-8"),
    )
    result = session.run("rename main")
    session.close()
    thread.join(timeout=5)

    assert result.load.ok and result.select.ok
    assert [patch.summary for patch in result.patches] == ["rename"]
    assert session.context.file_contents == {"b.go": "package main\n"}
    assert not thread.is_alive()


def test_offline_model_completes_a_session() -> None:
    server = ContextServer(OfflineModelClient(), Settings())
    client_end, server_end = LoopbackChannel.pair()
    thread = _serve_in_thread(server, server_end)

    session = ClientSession(client_end, _context(), client_id="tester", file_reader=lambda path: "")
    result = session.run("anything")
    session.close()
    thread.join(timeout=5)

    assert result.select.ok
    assert result.plan.files == []
    assert result.work == []


def test_responses_echo_request_stage() -> None:
    session = ServerSession(ScriptedModelClient([LOAD_ACK]))

    frame = session.handle(_load()).to_json()

    assert decode_response(frame).stage is Stage.LOAD
