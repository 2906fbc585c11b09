"""CLI commands for snapshotting a codebase and running context sessions."""

from __future__ import annotations

import logging
import platform
import threading
from pathlib import Path
from typing import List, Optional

import typer
from websockets.exceptions import WebSocketException

from .config import DEFAULT_CONFIG_NAME, ConfigError, Settings, load_settings, write_default_config
from .errors import SnapshotError
from .ignore import load_ignore_patterns, render_ignore_file
from .models import ModelClient, OfflineModelClient, ResponsesClient
from .protocol import ClientSession, ContextServer, SessionResult, make_file_reader
from .schema import CodebaseContext
from .snapshot import SnapshotBuilder
from .transport import Channel, CloseCode, LoopbackChannel, connect_channel

APP_HELP = "Share a codebase snapshot with a remote model and collect per-file patches."

app = typer.Typer(help=APP_HELP)

_CONFIG_OPTION = typer.Option(
    DEFAULT_CONFIG_NAME,
    "--config",
    "-c",
    help="Path to the ctxsync configuration file.",
)


def _load(config: str) -> Settings:
    try:
        return load_settings(Path(config))
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error


def _build_model_client(settings: Settings, offline: bool) -> ModelClient:
    """Return the configured model client, or the offline stub."""
    model_settings = settings.model
    if offline or model_settings.offline:
        typer.echo("Using offline stub model.")
        return OfflineModelClient()
    try:
        return ResponsesClient(
            api_key=model_settings.api_key or None,
            base_url=model_settings.base_url,
            model=model_settings.name,
            timeout=model_settings.timeout,
            max_attempts=model_settings.max_attempts,
            retry_delay=model_settings.retry_delay,
        )
    except ValueError as error:
        typer.echo(
            f"Failed to initialise model client: {error} "
            "Set OPENAI_API_KEY or CTXSYNC_API_KEY, or re-run with --offline."
        )
        raise typer.Exit(code=1) from error


def _build_context(settings: Settings, builder: SnapshotBuilder, logger: logging.Logger) -> CodebaseContext:
    patterns = load_ignore_patterns(settings.client.ignore_path(), logger=logger)
    try:
        return builder.build_context(settings.client.root, patterns)
    except SnapshotError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error


@app.command()
def init(
    config: str = _CONFIG_OPTION,
    force: bool = typer.Option(False, "--force", help="Overwrite existing files."),
) -> None:
    """Write the default configuration and a starter ignore file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Config already exists at {config_path}; use --force to overwrite.")
    else:
        write_default_config(config_path)
        typer.echo(f"Wrote {config_path}.")

    settings = _load(config)
    ignore_path = settings.client.ignore_path()
    if ignore_path.exists() and not force:
        typer.echo(f"Ignore file already exists at {ignore_path}.")
        return
    ignore_path.parent.mkdir(parents=True, exist_ok=True)
    ignore_path.write_text(render_ignore_file(), encoding="utf-8")
    typer.echo(f"Wrote {ignore_path}.")


@app.command()
def snapshot(
    config: str = _CONFIG_OPTION,
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Write the context JSON to this file instead of stdout.",
    ),
) -> None:
    """Build the codebase context and print it as JSON."""
    settings = _load(config)
    logger = settings.build_logger()
    builder = SnapshotBuilder(logger=logger)
    context = _build_context(settings, builder, logger)
    document = context.model_dump_json(by_alias=True, exclude_defaults=True, indent=2)
    if output:
        Path(output).write_text(document + "\n", encoding="utf-8")
        typer.echo(f"Wrote context for {settings.client.root} to {output}.")
    else:
        typer.echo(document)


@app.command()
def serve(
    config: str = _CONFIG_OPTION,
    offline: bool = typer.Option(False, "--offline", help="Answer with the offline stub model."),
) -> None:
    """Accept client sessions and relay them to the model."""
    settings = _load(config)
    logger = settings.build_logger()
    server = ContextServer(_build_model_client(settings, offline), settings, logger=logger)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        typer.echo("Shutting down.")
        server.shutdown()


@app.command()
def run(
    prompts: List[str] = typer.Argument(..., help="Task prompt(s); one session per prompt."),
    config: str = _CONFIG_OPTION,
    offline: bool = typer.Option(
        False,
        "--offline",
        help="Run the server in-process with the offline stub model.",
    ),
) -> None:
    """Snapshot the codebase and run one session per task prompt."""
    settings = _load(config)
    logger = settings.build_logger()
    client_id = settings.client.client_id or platform.node() or "ctxsync"
    failed = False

    for prompt in prompts:
        builder = SnapshotBuilder(logger=logger)
        context = _build_context(settings, builder, logger)
        server_thread: Optional[threading.Thread] = None
        if offline:
            channel, server_end = LoopbackChannel.pair()
            server = ContextServer(_build_model_client(settings, True), settings, logger=logger)
            server_thread = threading.Thread(target=server.serve_connection, args=(server_end,), daemon=True)
            server_thread.start()
        else:
            channel = _connect(settings)

        session = ClientSession(
            channel,
            context,
            client_id=client_id,
            file_reader=make_file_reader(settings.client.root),
            logger=logger,
        )
        try:
            result = session.run(prompt)
        except KeyboardInterrupt:
            typer.echo("Interrupted; closing session.")
            session.close(CloseCode.NORMAL)
            raise typer.Exit(code=130)
        session.close(CloseCode.NORMAL)
        if server_thread is not None:
            server_thread.join(timeout=5)

        failed = _report(prompt, result) or failed

    if failed:
        raise typer.Exit(code=1)


def _connect(settings: Settings) -> Channel:
    url = settings.server.url()
    try:
        return connect_channel(url)
    except (OSError, WebSocketException) as error:
        typer.echo(f"Failed to connect to {url}: {error}")
        raise typer.Exit(code=1) from error


def _report(prompt: str, result: SessionResult) -> bool:
    """Print a session summary; return True when the session failed."""
    typer.echo(f"Task: {prompt}")
    if result.closed:
        typer.echo(f"- Session closed by server (code {result.close_code}).")
        return True
    if result.select is None or not result.select.ok:
        reason = result.select.error if result.select is not None else "not attempted"
        typer.echo(f"- Select: failed ({reason})")
        return True

    plan = result.plan
    if plan is not None and not plan.files:
        typer.echo("- No files to change.")
    for work in result.work:
        if work.patch is None:
            typer.echo(f"- {work.change.path}: failed ({work.error})")
            continue
        summary = f" :: {work.patch.summary}" if work.patch.summary else ""
        typer.echo(f"- {work.change.path} [{work.change.operation.name.lower()}]{summary}")
        if work.patch.patch:
            typer.echo(work.patch.patch)
    return any(not work.ok for work in result.work)


if __name__ == "__main__":
    app()
