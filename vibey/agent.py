"""Agent orchestrator: the LLM / tool-call turn loop."""

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from vibey.directive import DirectiveParser
from vibey.exceptions import Cancelled, ToolError
from vibey.instructions import InstructionLoader
from vibey.llm import LLMBackend, Message, race_abort
from vibey.logging import get_logger
from vibey.tools.registry import ToolCall, ToolRegistry, error_envelope

log = get_logger(__name__)

CANCELLED_MESSAGE = "Request cancelled."
DEFAULT_MAX_TURNS = 64
SYSTEM_PROMPT_TEMPLATE = "system_prompt.md"
REFLECTION_TEMPLATE = "max_turns_reflection.md"


class ChatStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    MAX_TURNS = "max_turns"


@dataclass
class ChatResult:
    """Outcome of one ``Orchestrator.chat`` call."""

    content: str
    status: ChatStatus = ChatStatus.COMPLETED
    turns: int = 0

    @property
    def cancelled(self) -> bool:
        return self.status == ChatStatus.CANCELLED


@dataclass
class OrchestratorEvent:
    type: str  # thinking, thought, tool_start, tool_end, cancelled, final
    data: dict[str, Any] = field(default_factory=dict)


OrchestratorListener = Callable[[OrchestratorEvent], None]


class Orchestrator:
    """Drives one conversation against an LLM backend and a tool registry.

    Each ``chat`` call appends to a single growing history. The model replies
    either with a plain-text answer or with a directive listing tool calls;
    tool calls run one after another and their results are fed back until
    the model answers or the turn budget runs out.
    """

    def __init__(
        self,
        llm: LLMBackend,
        registry: ToolRegistry,
        max_turns: int = DEFAULT_MAX_TURNS,
        instructions: InstructionLoader | None = None,
        workspace_root: Path | str | None = None,
        parser: DirectiveParser | None = None,
        system_prompt_template: str = SYSTEM_PROMPT_TEMPLATE,
    ):
        if max_turns < 1:
            raise ValueError("max_turns must be at least 1")
        self.llm = llm
        self.registry = registry
        self.max_turns = max_turns
        self.instructions = instructions or InstructionLoader()
        self.workspace_root = Path(workspace_root or Path.cwd()).resolve()
        self.parser = parser or DirectiveParser()
        self.system_prompt_template = system_prompt_template
        self.messages: list[Message] = []
        self._abort: asyncio.Event | None = None
        self._listeners: list[OrchestratorListener] = []

    @property
    def history(self) -> list[Message]:
        return list(self.messages)

    @property
    def is_running(self) -> bool:
        return self._abort is not None and not self._abort.is_set()

    def add_listener(self, listener: OrchestratorListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: OrchestratorListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(
        self,
        on_update: OrchestratorListener | None,
        event_type: str,
        **data: Any,
    ) -> None:
        event = OrchestratorEvent(type=event_type, data=data)
        targets = list(self._listeners)
        if on_update is not None:
            targets.append(on_update)
        for listener in targets:
            try:
                listener(event)
            except Exception as e:
                log.warning("Orchestrator listener failed", event_type=event_type, error=str(e))

    def cancel(self) -> None:
        """Request cancellation of the in-flight chat, if any."""
        if self._abort is not None and not self._abort.is_set():
            log.info("Cancelling in-flight request")
            self._abort.set()

    def reset(self) -> None:
        """Cancel any in-flight chat and clear the conversation."""
        self.cancel()
        self._abort = None
        self.messages.clear()

    def build_system_prompt(self) -> str:
        definitions = json.dumps(self.registry.get_definitions(), indent=2, ensure_ascii=False)
        return self.instructions.render(
            self.system_prompt_template,
            workspace_root=str(self.workspace_root),
            tool_definitions=definitions,
        )

    def _refresh_system_prompt(self) -> None:
        prompt = Message(role="system", content=self.build_system_prompt())
        if self.messages and self.messages[0].role == "system":
            self.messages[0] = prompt
        else:
            self.messages.insert(0, prompt)

    @staticmethod
    def _check_abort(abort: asyncio.Event) -> None:
        if abort.is_set():
            raise Cancelled("Request cancelled by user")

    def _append(self, abort: asyncio.Event, message: Message) -> None:
        """Append to history unless a newer chat or a reset took it over."""
        if self._abort is not abort:
            log.info("Dropping message from superseded chat", role=message.role)
            raise Cancelled("Request superseded")
        self.messages.append(message)

    async def chat(self, user_message: str, on_update: OrchestratorListener | None = None) -> ChatResult:
        """Run the turn loop for one user message.

        Returns a ``ChatResult``; user cancellation is reported through its
        status, never raised. LLM transport errors propagate.
        """
        self.cancel()
        abort = asyncio.Event()
        self._abort = abort
        progress = {"turns": 0}

        self._refresh_system_prompt()
        self.messages.append(Message(role="user", content=user_message))
        log.info("Chat started", history=len(self.messages), max_turns=self.max_turns)

        try:
            result = await self._run(abort, progress, on_update)
        except Cancelled:
            log.info("Chat cancelled", turns=progress["turns"])
            self._emit(on_update, "cancelled", turns=progress["turns"])
            return ChatResult(CANCELLED_MESSAGE, ChatStatus.CANCELLED, progress["turns"])
        finally:
            if self._abort is abort:
                self._abort = None

        self._emit(on_update, "final", content=result.content, status=result.status.value, turns=result.turns)
        return result

    async def _run(
        self,
        abort: asyncio.Event,
        progress: dict[str, int],
        on_update: OrchestratorListener | None,
    ) -> ChatResult:
        while progress["turns"] < self.max_turns:
            self._check_abort(abort)
            progress["turns"] += 1
            turn = progress["turns"]

            message = "Analyzing request..." if turn == 1 else f"Turn {turn}/{self.max_turns}: Reasoning..."
            self._emit(on_update, "thinking", message=message, turn=turn)
            log.debug("Turn started", turn=turn)

            response = await race_abort(self.llm.chat(self.history, abort_event=abort), abort)
            self._check_abort(abort)

            directive = self.parser.parse(response)
            if directive is None:
                self._append(abort, Message(role="assistant", content=response))
                return ChatResult(response, ChatStatus.COMPLETED, turn)

            if directive.thought:
                self._emit(on_update, "thought", message=directive.thought)

            if not directive.tool_calls:
                self._append(abort, Message(role="assistant", content=response))
                return ChatResult(directive.thought or response, ChatStatus.COMPLETED, turn)

            self._append(abort, Message(role="assistant", content=response))
            log.info("Executing tool calls", turn=turn, count=len(directive.tool_calls))
            for call in directive.tool_calls:
                self._check_abort(abort)
                await self._execute_call(abort, call, on_update)

        return await self._reflect(abort, progress, on_update)

    async def _execute_call(
        self,
        abort: asyncio.Event,
        call: ToolCall,
        on_update: OrchestratorListener | None,
    ) -> None:
        self._emit(on_update, "tool_start", id=call.id, tool=call.name, parameters=call.parameters)
        try:
            outcome = await self.registry.execute(call)
        except ToolError as e:
            error = str(e)
        except Exception as e:
            log.error("Unexpected tool failure", tool=call.name, error=str(e))
            error = str(e) or type(e).__name__
        else:
            self._emit(
                on_update,
                "tool_end",
                id=call.id,
                tool=call.name,
                success=True,
                result=outcome.output,
            )
            self._append(abort, Message(role="tool", content=json.dumps(outcome.to_envelope(), ensure_ascii=False)))
            return

        self._emit(on_update, "tool_end", id=call.id, tool=call.name, success=False, error=error)
        self._append(
            abort, Message(role="tool", content=json.dumps(error_envelope(call.id, error), ensure_ascii=False))
        )

    async def _reflect(
        self,
        abort: asyncio.Event,
        progress: dict[str, int],
        on_update: OrchestratorListener | None,
    ) -> ChatResult:
        self._check_abort(abort)
        log.warning("Max turns reached", max_turns=self.max_turns)
        self._emit(on_update, "thinking", message="Max turns reached. Summarizing progress...", turn=progress["turns"])

        self._append(abort, Message(role="user", content=self.instructions.load(REFLECTION_TEMPLATE)))
        summary = await race_abort(self.llm.chat(self.history, abort_event=abort), abort)
        self._check_abort(abort)
        self._append(abort, Message(role="assistant", content=summary))

        content = f"**Max Turns Reached ({self.max_turns})**\n\n{summary}"
        return ChatResult(content, ChatStatus.MAX_TURNS, progress["turns"])
