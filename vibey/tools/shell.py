"""run_command tool: short-lived shell commands in the workspace."""

import asyncio
import os
import re
import shlex
from pathlib import Path
from typing import Any

from vibey.config import ShellToolConfig
from vibey.logging import get_logger
from vibey.tools.registry import Tool, ToolResult

log = get_logger(__name__)

MAX_OUTPUT_CHARS = 10_000
MAX_TIMEOUT_SECONDS = 600

_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=.*$")
_SHELL_SEPARATOR_TOKENS = {";", "&&", "||", "|", "&"}
_SHELL_WRAPPER_TOKENS = {"sudo", "command", "builtin", "nohup", "time", "env"}


def _compile_pattern(pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern)
    except re.error:
        return re.compile(re.escape(pattern))


def split_segments(command: str) -> list[list[str]]:
    """Tokenize a command and split it on control operators.

    Raises:
        ValueError if the command cannot be tokenized (e.g. unbalanced quotes)
    """
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    segments: list[list[str]] = []
    current: list[str] = []
    for token in lexer:
        if token in _SHELL_SEPARATOR_TOKENS:
            if current:
                segments.append(current)
                current = []
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def base_command(tokens: list[str]) -> str:
    """First executable token of a segment, skipping wrappers and assignments."""
    for token in tokens:
        token = token.strip()
        if not token or token in _SHELL_WRAPPER_TOKENS:
            continue
        if _ASSIGNMENT_RE.match(token) and "/" not in token:
            continue
        return token
    return ""


def find_blocked_pattern(command: str, blocked_patterns: list[str]) -> str | None:
    """Return the reason a command is blocked, or ``None`` if it may run.

    Patterns containing whitespace are searched in each segment's text;
    single-word patterns are matched against each segment's base command.
    Any pattern occurring verbatim in the command also blocks it.
    """
    cleaned = (command or "").strip()
    if not cleaned:
        return "empty command"
    try:
        segments = split_segments(cleaned)
    except ValueError:
        return "command is not parseable"

    segment_texts = [" ".join(tokens) for tokens in segments]
    bases = [base for tokens in segments if (base := base_command(tokens))]
    if not bases:
        return "command is not parseable"

    for raw_pattern in blocked_patterns:
        pattern = str(raw_pattern or "").strip()
        if not pattern:
            continue
        if pattern in cleaned:
            return f"matches blocked pattern: {pattern}"
        compiled = _compile_pattern(pattern)
        if re.search(r"\s", pattern):
            if any(compiled.search(text) for text in segment_texts):
                return f"matches blocked pattern: {pattern}"
        elif any(compiled.match(base) for base in bases):
            return f"matches blocked pattern: {pattern}"
    return None


class RunCommandTool(Tool):
    """Execute a shell command and return its combined output."""

    name = "run_command"
    description = (
        "Run a shell command in the workspace and wait for it to finish. Use this for "
        "short-lived commands like `ls`, `git status`, `cat`. Do NOT use for servers."
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The shell command to execute",
            },
            "timeout": {
                "type": "number",
                "description": "Timeout in seconds (optional, default from config)",
            },
        },
        "required": ["command"],
    }
    # The command enforces its own timeout and kills the process on expiry.
    timeout_seconds = None

    def __init__(self, config: ShellToolConfig | None = None, workspace_root: Path | str | None = None):
        self.config = config or ShellToolConfig()
        self.workspace_root = Path(workspace_root or Path.cwd()).expanduser().resolve()

    async def execute(self, command: str, timeout: float | None = None, **kwargs: Any) -> ToolResult:
        reason = find_blocked_pattern(command, self.config.blocked)
        if reason:
            log.warning("Blocked unsafe command", command=command, reason=reason)
            return ToolResult(success=False, error=f"Command blocked: {reason}")

        limit = float(timeout if timeout is not None else self.config.timeout)
        limit = min(max(1.0, limit), MAX_TIMEOUT_SECONDS)

        log.info("Executing shell command", command=command, timeout=limit)
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.workspace_root),
                env=os.environ.copy(),
            )
        except OSError as e:
            log.error("Shell command failed to start", command=command, error=str(e))
            return ToolResult(success=False, error=str(e))

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=limit)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            label = int(limit) if limit.is_integer() else limit
            return ToolResult(success=False, error=f"Command timed out after {label}s")
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        stdout_text = stdout.decode("utf-8", errors="replace").strip()
        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        output = stdout_text
        if stderr_text:
            output += f"\n[stderr] {stderr_text}"
        if len(output) > MAX_OUTPUT_CHARS:
            output = output[:MAX_OUTPUT_CHARS] + f"\n... [truncated, {len(output)} total chars]"
        output = output.strip() or "[no output]"

        if process.returncode != 0:
            log.info("Shell command exited non-zero", command=command, returncode=process.returncode)
            return ToolResult(success=False, error=f"Exit code {process.returncode}\n{output}")
        return ToolResult(success=True, content=output)
