"""Command-line entry point for Vibey."""

import asyncio
import json
import os
import signal
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from vibey import __version__
from vibey.agent import ChatStatus, Orchestrator, OrchestratorEvent
from vibey.config import Config, set_config
from vibey.exceptions import LLMError, VibeyError
from vibey.instructions import InstructionLoader
from vibey.llm import LLMBackend, create_backend
from vibey.logging import configure_logging, get_logger
from vibey.mcp import McpClient, McpEvent, McpEventType, ServerStatus
from vibey.metrics import MetricsCollector
from vibey.tools import ToolRegistry, register_default_tools

app = typer.Typer(help="Vibey - an autonomous coding agent driven by a local LLM")
console = Console()
log = get_logger(__name__)

_STATUS_STYLES = {
    ServerStatus.CONNECTED: "green",
    ServerStatus.CONNECTING: "yellow",
    ServerStatus.ERROR: "red",
    ServerStatus.DISCONNECTED: "dim",
}


def _load_config(
    config: str = "",
    model: str = "",
    provider: str = "",
    max_turns: int | None = None,
    verbose: bool = False,
) -> Config:
    if verbose:
        os.environ["VIBEY_LOGGING__LEVEL"] = "DEBUG"

    cfg = Config.from_yaml(Path(config)) if config else Config.load()
    if model:
        cfg.model.model = model
    if provider:
        if provider not in ("ollama", "openai-compatible"):
            raise typer.BadParameter("provider must be 'ollama' or 'openai-compatible'")
        cfg.model.provider = provider  # type: ignore[assignment]
    if max_turns is not None:
        cfg.agent.max_turns = max(1, max_turns)
    if verbose:
        cfg.logging.level = "DEBUG"

    set_config(cfg)
    configure_logging(cfg.logging)
    return cfg


@dataclass
class Runtime:
    """Services wired together for one CLI session."""

    config: Config
    registry: ToolRegistry
    mcp: McpClient
    llm: LLMBackend
    metrics: MetricsCollector
    orchestrator: Orchestrator
    config_path: str = ""
    reload_task: "asyncio.Task[None] | None" = None

    @classmethod
    def build(cls, cfg: Config, config_path: str = "") -> "Runtime":
        workspace = cfg.resolved_workspace_path()
        registry = ToolRegistry()
        mcp = McpClient(registry, cfg.mcp)
        register_default_tools(registry, cfg, workspace_root=workspace, mcp_client=mcp)
        metrics = MetricsCollector()
        llm = create_backend(cfg.model, usage_sink=metrics.record_usage)
        orchestrator = Orchestrator(
            llm,
            registry,
            max_turns=cfg.agent.max_turns,
            instructions=InstructionLoader(),
            workspace_root=workspace,
            system_prompt_template=cfg.agent.system_prompt_template,
        )
        return cls(cfg, registry, mcp, llm, metrics, orchestrator, config_path)

    def start_servers(self) -> "asyncio.Task[None]":
        """Connect the configured MCP servers in the background."""
        self.reload_task = self.mcp.start_reload()
        return self.reload_task

    async def reload_config(self) -> None:
        """Re-read the config file and reconcile MCP servers with it."""
        fresh = Config.from_yaml(Path(self.config_path)) if self.config_path else Config.load()
        self.config.mcp = fresh.mcp
        await self.mcp.apply_config(fresh.mcp)

    async def close(self) -> None:
        task, self.reload_task = self.reload_task, None
        if task is not None:
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                log.error("MCP server startup failed", error=str(e))
        await self.mcp.dispose()
        await self.llm.close()


def _render_event(event: OrchestratorEvent) -> None:
    data = event.data
    if event.type == "thinking":
        console.print(f"[dim]{data.get('message', '')}[/dim]")
    elif event.type == "thought":
        console.print(f"[italic cyan]{data.get('message', '')}[/italic cyan]")
    elif event.type == "tool_start":
        params = json.dumps(data.get("parameters") or {}, ensure_ascii=False)
        if len(params) > 200:
            params = params[:200] + "..."
        console.print(f"[blue]> {data.get('tool')}[/blue] [dim]{params}[/dim]")
    elif event.type == "tool_end":
        if data.get("success"):
            console.print(f"[green]  ok[/green] [dim]{data.get('tool')}[/dim]")
        else:
            console.print(f"[red]  failed[/red] [dim]{data.get('tool')}: {data.get('error')}[/dim]")


def _render_mcp_event(event: McpEvent) -> None:
    if event.type == McpEventType.SERVER_CONNECTED:
        tools = (event.data or {}).get("toolCount", 0)
        console.print(f"[dim]MCP server '{event.server_name}' connected ({tools} tools)[/dim]")
    elif event.type == McpEventType.SERVER_ERROR:
        error = (event.data or {}).get("error", "")
        console.print(f"[red]MCP server '{event.server_name}' failed: {error}[/red]")


@contextmanager
def _cancel_on_interrupt(orchestrator: Orchestrator) -> Iterator[None]:
    """Route Ctrl-C to ``orchestrator.cancel`` while a turn is running."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.cancel)
    except (NotImplementedError, RuntimeError):
        yield
        return
    try:
        yield
    finally:
        loop.remove_signal_handler(signal.SIGINT)


def _servers_table(mcp: McpClient) -> Table:
    table = Table(title="MCP servers")
    table.add_column("Server")
    table.add_column("Status")
    table.add_column("Tools", justify="right")
    table.add_column("Resources", justify="right")
    table.add_column("Prompts", justify="right")
    table.add_column("Details")
    for state in mcp.get_server_states():
        style = _STATUS_STYLES.get(state.status, "")
        details = state.error or "; ".join(state.warnings)
        table.add_row(
            state.name,
            f"[{style}]{state.status.value}[/{style}]",
            str(state.tool_count),
            str(state.resource_count),
            str(state.prompt_count),
            details,
        )
    return table


def _print_result(content: str, status: ChatStatus) -> None:
    if status == ChatStatus.CANCELLED:
        console.print(f"[yellow]{content}[/yellow]")
    else:
        console.print(Markdown(content))


async def _run_chat(runtime: Runtime) -> None:
    runtime.mcp.add_listener(_render_mcp_event)
    runtime.start_servers()
    orchestrator = runtime.orchestrator

    console.print(f"[bold]Vibey v{__version__}[/bold] [dim]({runtime.config.model.provider}: {runtime.config.model.model})[/dim]")
    console.print("[dim]Commands: /servers, /reload, /tokens, /reset, /exit. Ctrl-C cancels a running turn.[/dim]")

    while True:
        try:
            line = await asyncio.to_thread(console.input, "[bold green]you> [/bold green]")
        except (EOFError, KeyboardInterrupt):
            break
        text = line.strip()
        if not text:
            continue
        if text in ("/exit", "/quit"):
            break
        if text == "/reset":
            orchestrator.reset()
            console.print("[dim]Conversation cleared.[/dim]")
            continue
        if text == "/servers":
            console.print(_servers_table(runtime.mcp))
            continue
        if text == "/reload":
            try:
                await runtime.reload_config()
            except (VibeyError, ValueError, OSError) as e:
                console.print(f"[red]Reload failed: {e}[/red]")
                continue
            console.print(_servers_table(runtime.mcp))
            continue
        if text == "/tokens":
            sent = int(runtime.metrics.total(MetricsCollector.TOKENS_SENT))
            received = int(runtime.metrics.total(MetricsCollector.TOKENS_RECEIVED))
            console.print(f"[dim]tokens sent: {sent}, received: {received}[/dim]")
            continue

        try:
            with _cancel_on_interrupt(orchestrator):
                result = await orchestrator.chat(text, on_update=_render_event)
        except LLMError as e:
            log.error("LLM request failed", error=str(e))
            console.print(f"[red]LLM error: {e}[/red]")
            continue
        _print_result(result.content, result.status)


async def _run_ask(runtime: Runtime, prompt: str, wait_for_servers: bool) -> int:
    reload_task = runtime.start_servers()
    if wait_for_servers:
        await reload_task
    with _cancel_on_interrupt(runtime.orchestrator):
        result = await runtime.orchestrator.chat(prompt, on_update=_render_event)
    _print_result(result.content, result.status)
    return 1 if result.status == ChatStatus.CANCELLED else 0


async def _with_runtime(cfg: Config, work, config_path: str = "") -> int:
    runtime = Runtime.build(cfg, config_path)
    try:
        return await work(runtime) or 0
    finally:
        await runtime.close()


@app.command()
def chat(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    provider: str = typer.Option("", "-p", "--provider", help="Override provider"),
    max_turns: Optional[int] = typer.Option(None, "--max-turns", help="Override turn budget"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Start an interactive chat session."""
    cfg = _load_config(config, model, provider, max_turns, verbose)
    try:
        asyncio.run(_with_runtime(cfg, _run_chat, config))
    except KeyboardInterrupt:
        log.info("Shutting down...")
    except VibeyError as e:
        log.error("Fatal error", error=str(e))
        raise typer.Exit(code=1) from e


@app.command()
def ask(
    prompt: str = typer.Argument(..., help="Task for the agent"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    provider: str = typer.Option("", "-p", "--provider", help="Override provider"),
    max_turns: Optional[int] = typer.Option(None, "--max-turns", help="Override turn budget"),
    wait_for_servers: bool = typer.Option(True, "--wait-servers/--no-wait-servers", help="Connect MCP servers before starting"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run a single prompt and print the final answer."""
    cfg = _load_config(config, model, provider, max_turns, verbose)
    try:
        code = asyncio.run(
            _with_runtime(cfg, lambda runtime: _run_ask(runtime, prompt, wait_for_servers), config)
        )
    except VibeyError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from e
    raise typer.Exit(code=code)


@app.command()
def servers(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Connect the configured MCP servers and print their status."""
    cfg = _load_config(config, verbose=verbose)

    async def _show(runtime: Runtime) -> int:
        await runtime.mcp.initialize()
        if not runtime.mcp.get_server_states():
            console.print("[dim]No MCP servers configured.[/dim]")
            return 0
        console.print(_servers_table(runtime.mcp))
        return 1 if runtime.mcp.summary()["error"] else 0

    raise typer.Exit(code=asyncio.run(_with_runtime(cfg, _show, config)))


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"Vibey v{__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    sys.exit(main())
