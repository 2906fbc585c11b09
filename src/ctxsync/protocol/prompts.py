"""Per-stage model instructions and the file work prompt sent during WORK."""

from __future__ import annotations

from typing import Optional

from ..schema import FileOperation, Stage
from .registry import render_schema

JSON_RESPONSE_INSTRUCTION = (
    "Return only JSON. Emit a single JSON object that satisfies the response schema below. "
    "Do not include markdown fences, explanations, or trailing text."
)

_ROLE = (
    "You are a senior software engineer and system architect. Consider the previously "
    "provided codebase context along with this request describing changes needed to the "
    "codebase: ``{task}``."
)


def stage_instructions(
    stage: Stage,
    *,
    task_prompt: Optional[str] = None,
    file_work_prompt: Optional[str] = None,
) -> list[str]:
    """Return the ordered instruction parts sent after the context for ``stage``."""
    schema_block = f"{JSON_RESPONSE_INSTRUCTION}\nResponse schema:\n{render_schema(stage)}"

    if stage is Stage.LOAD:
        return [
            "Acknowledge the codebase context and respond with stage=load and status=ok.",
            schema_block,
        ]

    if stage is Stage.SELECT:
        return [
            _ROLE.format(task=task_prompt or ""),
            "First identify the files that must be updated, created or removed to carry out "
            "the request. Return them in the `files` array. The `operation` field is 0 for "
            "update, 1 for create and -1 for remove.",
            "Next identify other existing files whose content would help make the changes. "
            "Return them in the `additionalContextFiles` array with operation 0. A path may "
            "appear in only one of the two arrays.",
            schema_block,
        ]

    return [
        _ROLE.format(task=task_prompt or ""),
        "Changes are focused on the request and leave unrelated code untouched.",
        "Return the change as a unified diff in the `patch` field, restricted to the file "
        "named below, and echo that file's path and operation.",
        schema_block,
        f"Return the changes needed for this file:\n\n{file_work_prompt or ''}",
    ]


def number_lines(content: str) -> str:
    """Prefix every line of ``content`` with its 1-based line number."""
    lines = content.splitlines()
    width = len(str(len(lines))) if lines else 1
    return "\n".join(f"{index:>{width}}: {line}" for index, line in enumerate(lines, start=1))


def render_file_work_prompt(
    path: str,
    operation: FileOperation,
    content: Optional[str] = None,
) -> str:
    """Render the WORK prompt: a file header plus numbered content for updates."""
    header = f"File: {path}"
    if operation is FileOperation.UPDATE and content is not None:
        return f"{header}\n\n{number_lines(content)}"
    return header


__all__ = [
    "JSON_RESPONSE_INSTRUCTION",
    "number_lines",
    "render_file_work_prompt",
    "stage_instructions",
]
