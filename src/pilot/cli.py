"""CLI commands for creating, driving, and inspecting pilot sessions."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from .config import (
    DEFAULT_CONFIG_NAME,
    ConfigError,
    PilotSettings,
    copy_config_template,
    read_config,
    resolve_path,
    write_config,
)
from .context import RunContext
from .driver import PilotService, SessionNotFoundError, SessionRequest
from .memory.schema import SessionStatus
from .memory.store import PilotStore
from .models import LLMClient, OfflineLLMClient, ResponsesClient, is_offline_model
from .planning.engine import PlanEngine
from .planning.intent import IntentAnalysisService
from .planning.progress import ProgressPlan
from .queue import JobQueue
from .skills.dispatch import LocalSkillDispatcher, render_local_answer
from .tools.planning_logs import load_planning_log

APP_HELP = "Epoch pilot CLI entry point."

app = typer.Typer(help=APP_HELP)


@dataclass(slots=True)
class _Runtime:
    store: PilotStore
    service: PilotService
    dispatcher: LocalSkillDispatcher
    queue: JobQueue
    ctx: RunContext


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Emit debug logging."),
) -> None:
    """Configure logging for all commands."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk and return it as a dictionary."""
    if not config_path.exists():
        raise typer.BadParameter(f"Config file not found: {config_path}")
    try:
        return read_config(config_path)
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error


def _build_client(config: Dict[str, Any], *, use_remote: bool) -> LLMClient:
    """Select either the Responses API client or the offline planner."""
    models_cfg = config.get("models") or {}
    model_name = str(models_cfg.get("default") or "offline")

    if not use_remote or is_offline_model(model_name):
        typer.echo("Using offline planner.")
        return OfflineLLMClient()

    client_kwargs: Dict[str, Any] = {}
    timeout_value = models_cfg.get("timeout")
    if isinstance(timeout_value, (int, float)) and timeout_value > 0:
        client_kwargs["timeout"] = float(timeout_value)
    max_attempts_value = models_cfg.get("max_attempts")
    if isinstance(max_attempts_value, int) and max_attempts_value > 0:
        client_kwargs["max_attempts"] = max_attempts_value
    retry_delay_value = models_cfg.get("retry_delay")
    if isinstance(retry_delay_value, (int, float)) and retry_delay_value >= 0:
        client_kwargs["retry_delay"] = float(retry_delay_value)
    base_url_value = models_cfg.get("base_url")
    if isinstance(base_url_value, str) and base_url_value.strip():
        client_kwargs["base_url"] = base_url_value.strip()

    try:
        client = ResponsesClient(model=model_name, **client_kwargs)
    except ValueError as error:
        typer.echo(
            f"Failed to initialise Responses client: {error} "
            "Set PILOT_API_KEY or OPENAI_API_KEY, or re-run with --no-use-remote."
        )
        raise typer.Exit(code=1) from error
    typer.echo(f"Using Responses client ({model_name}).")
    return client


def _build_runtime(config: Dict[str, Any], config_path: Path, *, use_remote: bool) -> _Runtime:
    store = PilotStore(resolve_path(config, "db_path", config_path))
    planner = IntentAnalysisService(
        _build_client(config, use_remote=use_remote),
        logs_root=resolve_path(config, "logs", config_path),
    )
    dispatcher = LocalSkillDispatcher()
    queue = JobQueue()
    service = PilotService(
        store,
        PlanEngine(store, planner),
        dispatcher,
        queue,
        settings=PilotSettings.from_config(config),
    )
    user_cfg = config.get("user") or {}
    ctx = RunContext(uid=str(user_cfg.get("uid") or "local-user"), locale=user_cfg.get("locale") or None)
    return _Runtime(store=store, service=service, dispatcher=dispatcher, queue=queue, ctx=ctx)


def _drive(runtime: _Runtime, session_id: str, *, max_rounds: int) -> None:
    """Process queued jobs and complete dispatched skills locally until idle."""
    for round_index in range(1, max_rounds + 1):
        report = runtime.queue.drain(runtime.service.handle_job)
        if report.failed:
            typer.echo(f"Round {round_index}: {len(report.failed)} job(s) failed: {', '.join(report.failed)}")

        invocations = runtime.dispatcher.take_pending()
        if not invocations and not len(runtime.queue):
            return
        for invocation in invocations:
            typer.echo(f"- [{invocation.skill_name}] {invocation.query}")
            runtime.service.complete_step(
                runtime.ctx,
                invocation.result_id,
                content=render_local_answer(invocation),
                storage_key=f"action-results/{invocation.result_id}",
            )
    typer.echo(f"Stopped after {max_rounds} round(s); session {session_id} may still have pending work.")


def _render_plan(plan: Optional[ProgressPlan]) -> None:
    if plan is None:
        typer.echo("No progress plan recorded yet.")
        return
    typer.echo(f"Plan: {len(plan.stages)} stage(s), current stage {plan.current_stage_index}, {plan.overall_progress}%")
    for index, stage in enumerate(plan.stages):
        marker = ">" if index == plan.current_stage_index else " "
        typer.echo(f"{marker} [{stage.status.value}] {stage.name} ({stage.stage_progress}%)")
        for subtask in stage.subtasks:
            typer.echo(f"    - [{subtask.status.value}] {subtask.name}")
        if stage.summary:
            typer.echo(f"    summary: {stage.summary.splitlines()[0]}")


@app.command()
def init(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the pilot configuration file.",
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write a default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Configuration already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=1)
    write_config(config_path, copy_config_template())
    typer.echo(f"Wrote configuration to {config_path}")


@app.command()
def run(
    question: str = typer.Argument(..., help="Request the pilot should work on."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the pilot configuration file.",
    ),
    title: Optional[str] = typer.Option(None, "--title", help="Session title (defaults to the question)."),
    max_epoch: Optional[int] = typer.Option(None, "--max-epoch", min=0, help="Override the epoch limit."),
    max_rounds: int = typer.Option(50, "--max-rounds", min=1, help="Upper bound on local processing rounds."),
    use_remote: bool = typer.Option(
        False,
        "--use-remote/--no-use-remote",
        help="Plan with the Responses API instead of the offline planner (requires API key).",
    ),
) -> None:
    """Create a session and drive it to completion with locally completed skills."""
    config_path = Path(config)
    config_data = load_config(config_path)
    runtime = _build_runtime(config_data, config_path, use_remote=use_remote)
    with runtime.store:
        session = runtime.service.create_session(
            runtime.ctx,
            SessionRequest(input={"query": question}, title=title, max_epoch=max_epoch),
        )
        typer.echo(f"Created session {session.session_id}")
        _drive(runtime, session.session_id, max_rounds=max_rounds)

        detail = runtime.service.get_session_detail(runtime.ctx, session.session_id)
        typer.echo(f"Session status: {detail.session.status.value} (epoch {detail.session.current_epoch})")
        _render_plan(detail.plan)
        if detail.session.status == SessionStatus.FAILED:
            raise typer.Exit(code=1)


@app.command()
def status(
    session_id: str = typer.Argument(..., help="Session to inspect."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the pilot configuration file.",
    ),
    todo: bool = typer.Option(False, "--todo", help="Print the session as a markdown todo list."),
) -> None:
    """Report a session's status and progress plan."""
    config_path = Path(config)
    config_data = load_config(config_path)
    runtime = _build_runtime(config_data, config_path, use_remote=False)
    with runtime.store:
        try:
            detail = runtime.service.get_session_detail(runtime.ctx, session_id)
        except SessionNotFoundError as error:
            typer.echo(str(error))
            raise typer.Exit(code=1) from error

        if todo:
            typer.echo(runtime.service.todo_markdown(runtime.ctx, session_id))
            return

        session = detail.session
        typer.echo(f"Session {session.session_id}: {session.title}")
        typer.echo(f"Status: {session.status.value} | epoch {session.current_epoch}/{session.max_epoch}")
        typer.echo(f"Steps: {len(detail.steps)}")
        _render_plan(detail.plan)


@app.command()
def sessions(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the pilot configuration file.",
    ),
    page: int = typer.Option(1, "--page", min=1),
    page_size: int = typer.Option(10, "--page-size", min=1),
) -> None:
    """List the configured user's sessions, newest first."""
    config_path = Path(config)
    config_data = load_config(config_path)
    runtime = _build_runtime(config_data, config_path, use_remote=False)
    with runtime.store:
        found = runtime.service.list_sessions(runtime.ctx, page=page, page_size=page_size)
    if not found:
        typer.echo("No sessions found.")
        return
    for session in found:
        typer.echo(f"- {session.session_id} [{session.status.value}] {session.title}")


@app.command()
def replay_log(
    log_path: Path = typer.Argument(..., help="Path to a stored planning log JSON file."),
) -> None:
    """Print a stored planning log."""
    try:
        entry = load_planning_log(log_path)
    except (OSError, ValueError) as error:
        typer.echo(f"Failed to load planning log: {error}")
        raise typer.Exit(code=1) from error

    typer.echo(f"Mode: {entry.mode or 'unknown'}")
    typer.echo(f"Question: {entry.question}")
    typer.echo(f"Attempts: {len(entry.attempts)}")
    if entry.error:
        typer.echo(f"Error: {entry.error}")
    if entry.result is not None:
        typer.echo(json.dumps(entry.result, indent=2, sort_keys=True))


if __name__ == "__main__":
    app()
