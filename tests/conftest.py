from __future__ import annotations

import json
import sys
import textwrap
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from ctxsync.errors import SessionClosedError  # noqa: E402
from ctxsync.models import ModelClient, ModelTransportError  # noqa: E402
from ctxsync.schema import SessionResponse, Stage  # noqa: E402
from ctxsync.transport import CloseCode  # noqa: E402

GO_MAIN = "package main\n\nfunc foo() {}\n\nfunc main() {\n\tfoo()\n}\n"


def reply(stage: str, data: Dict[str, Any], status: str = "ok") -> str:
    """Render one server response frame."""
    return SessionResponse(stage=Stage(stage), status=status, data=data).to_json()


class ScriptedChannel:
    """Channel double that records sent requests and replays canned frames."""

    def __init__(self, replies: Iterable[Union[str, BaseException]] = ()) -> None:
        self._replies = deque(replies)
        self.sent: List[Dict[str, Any]] = []
        self.closed: Optional[tuple[int, str]] = None

    def send(self, text: str) -> None:
        self.sent.append(json.loads(text))

    def receive(self) -> str:
        if not self._replies:
            raise SessionClosedError(int(CloseCode.ABNORMAL), "script exhausted")
        item = self._replies.popleft()
        if isinstance(item, BaseException):
            raise item
        return item

    def close(self, code: int = CloseCode.NORMAL, reason: str = "") -> None:
        self.closed = (int(code), reason)


class ScriptedModelClient(ModelClient):
    """Model double returning queued texts; ``Exception`` entries are raised."""

    def __init__(self, responses: Iterable[Union[str, Exception, Callable[[Dict[str, Any]], str]]] = ()) -> None:
        super().__init__("scripted", max_attempts=1, retry_delay=0.0)
        self._responses = deque(responses)
        self.payloads: List[Dict[str, Any]] = []

    def _raw_generate(self, payload: Dict[str, Any]) -> str:
        self.payloads.append(payload)
        if not self._responses:
            raise ModelTransportError("no scripted response left")
        item = self._responses.popleft()
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(payload)
        return item


@dataclass(slots=True)
class SampleRepo:
    """Small source tree used by snapshot and CLI tests."""

    root: Path

    def write(self, relative: str, content: str) -> Path:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path


@pytest.fixture()
def sample_repo(tmp_path: Path) -> SampleRepo:
    """Create ``main.go`` plus an ``ignored/`` directory."""

    repo = SampleRepo(root=tmp_path / "repo")
    repo.root.mkdir()
    repo.write("main.go", GO_MAIN)
    repo.write(
        "ignored/secret.go",
        textwrap.dedent(
            """
            package ignored

            func hidden() {}
            """
        ).lstrip(),
    )
    return repo
