from __future__ import annotations

import json
import os
from typing import List, Optional

import httpx
import typer
import uvicorn
from dotenv import load_dotenv

app = typer.Typer(add_completion=False)

DEFAULT_SERVER = "http://127.0.0.1:18791"


def _load_env() -> None:
    load_dotenv()


def _setup_logging() -> None:
    """Configure centralized logging to both stdout and log files."""
    from subclaw.core.config import Settings
    from subclaw.core.logging_config import setup_logging

    settings = Settings.from_env()
    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level)


def _server_url(server: Optional[str]) -> str:
    return (server or os.getenv("subclaw_SERVER") or DEFAULT_SERVER).rstrip("/")


def _request(method: str, server: Optional[str], path: str, payload: Optional[dict] = None) -> dict:
    url = f"{_server_url(server)}{path}"
    try:
        with httpx.Client(timeout=30.0) as client:
            resp = client.request(method, url, json=payload)
    except httpx.HTTPError as exc:
        typer.secho(f"❌ Cannot reach {url}: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    if resp.status_code >= 400:
        try:
            detail = resp.json().get("detail", resp.text)
        except ValueError:
            detail = resp.text
        typer.secho(f"❌ {resp.status_code}: {detail}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    return resp.json()


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind host (default subclaw_HOST or 127.0.0.1)"),
    port: Optional[int] = typer.Option(None, help="Bind port (default subclaw_PORT or 18791)"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
) -> None:
    """Run the sub-agent gateway."""
    _load_env()
    _setup_logging()

    from subclaw.core.config import Settings

    settings = Settings.from_env()
    uvicorn.run(
        "subclaw.core.gateway:create_app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        factory=True,
    )


@app.command()
def version() -> None:
    from subclaw import __version__

    typer.echo(__version__)


@app.command()
def spawn(
    goal: str = typer.Argument(..., help="What the sub-agent should accomplish"),
    context: str = typer.Option("", help="Extra background for the planner and executor"),
    max_turns: Optional[int] = typer.Option(None, "--max-turns", help="Turn budget"),
    timeout: Optional[float] = typer.Option(None, help="Wall-clock budget in seconds"),
    tool: Optional[List[str]] = typer.Option(None, "--tool", help="Allowed tool (repeatable)"),
    depends_on: Optional[str] = typer.Option(None, "--depends-on", help="Task id to wait for"),
    ask: bool = typer.Option(False, "--ask", help="Allow the sub-agent to ask clarifying questions"),
    approve_plan: bool = typer.Option(False, "--approve-plan", help="Wait for plan approval before executing"),
    server: Optional[str] = typer.Option(None, help="Gateway URL"),
) -> None:
    """Spawn a sub-agent on a running gateway."""
    _load_env()
    payload = {
        "goal": goal,
        "context": context,
        "max_turns": max_turns,
        "timeout": timeout,
        "allowed_tools": tool or None,
        "depends_on": depends_on,
        "can_ask_clarification": ask,
        "require_plan_approval": approve_plan,
    }
    data = _request("POST", server, "/subagents", payload)
    typer.echo(f"🤖 Sub-agent {data['task_id']} started")


@app.command()
def status(
    task_id: Optional[str] = typer.Argument(None, help="Task id (omit to list all)"),
    server: Optional[str] = typer.Option(None, help="Gateway URL"),
) -> None:
    """Show one sub-agent's snapshot, or list all of them."""
    _load_env()
    if task_id:
        typer.echo(json.dumps(_request("GET", server, f"/subagents/{task_id}"), indent=2))
        return
    rows = _request("GET", server, "/subagents")["tasks"]
    if not rows:
        typer.echo("No sub-agents.")
        return
    for row in rows:
        typer.echo(f"{row['task_id']}  {row['status']:<22} {row['turn_count']:>4} turns  {row['goal']}")


@app.command()
def abort(
    task_id: str = typer.Argument(..., help="Task id"),
    server: Optional[str] = typer.Option(None, help="Gateway URL"),
) -> None:
    """Abort a sub-agent."""
    _load_env()
    data = _request("POST", server, f"/subagents/{task_id}/abort")
    typer.echo("🛑 Abort requested." if data["aborted"] else "Task already finished.")


@app.command()
def answer(
    task_id: str = typer.Argument(..., help="Task id"),
    text: str = typer.Argument(..., help="Answer, or yes/no for a plan approval"),
    server: Optional[str] = typer.Option(None, help="Gateway URL"),
) -> None:
    """Answer a pending clarification or plan approval."""
    _load_env()
    data = _request("POST", server, f"/subagents/{task_id}/answer", {"answer": text})
    typer.echo("✅ Answer delivered." if data["delivered"] else "Task is not waiting for an answer.")


if __name__ == "__main__":
    app()
