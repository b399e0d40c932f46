import asyncio
import json
from pathlib import Path
from typing import Callable

import pytest

from vibey.agent import CANCELLED_MESSAGE, ChatStatus, Orchestrator, OrchestratorEvent
from vibey.exceptions import LLMAPIError
from vibey.instructions import InstructionLoader
from vibey.llm import LLMBackend, Message
from vibey.tools.registry import Tool, ToolRegistry, ToolResult


def directive(*calls: dict, thought: str = "working") -> str:
    return "```json\n" + json.dumps({"thought": thought, "tool_calls": list(calls)}) + "\n```"


def call(name: str, call_id: str, **parameters) -> dict:
    return {"id": call_id, "name": name, "parameters": parameters}


class ScriptedLLM(LLMBackend):
    """Replies from a list of strings or callables taking the history."""

    def __init__(self, replies: list[str | Callable[[list[Message]], str]]):
        self.replies = list(replies)
        self.requests: list[list[Message]] = []

    async def chat(self, messages, abort_event=None):
        self.requests.append(list(messages))
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        return reply(messages) if callable(reply) else reply


class BlockingLLM(LLMBackend):
    """First reply is scripted; later calls block until cancelled."""

    def __init__(self, first: str):
        self.first = first
        self.calls = 0
        self.blocked = asyncio.Event()
        self.was_cancelled = False

    async def chat(self, messages, abort_event=None):
        self.calls += 1
        if self.calls == 1:
            return self.first
        self.blocked.set()
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            self.was_cancelled = True
            raise
        return "too late"


class FailingLLM(LLMBackend):
    async def chat(self, messages, abort_event=None):
        raise LLMAPIError("API error 500: boom", status_code=500)


class RecordTool(Tool):
    name = "record"
    description = "Record a label"
    parameters = {
        "type": "object",
        "properties": {"label": {"type": "string"}},
        "required": ["label"],
    }

    def __init__(self):
        self.orchestrator: Orchestrator | None = None
        self.order: list[tuple[str, int]] = []
        self.cancel_on: str | None = None

    async def execute(self, label: str, **kwargs):
        assert self.orchestrator is not None
        tool_messages = sum(1 for m in self.orchestrator.messages if m.role == "tool")
        self.order.append((label, tool_messages))
        await asyncio.sleep(0)
        if label == self.cancel_on:
            self.orchestrator.cancel()
        return ToolResult(success=True, content=f"recorded {label}")


@pytest.fixture
def instructions(tmp_path: Path) -> InstructionLoader:
    return InstructionLoader(personal_dir=tmp_path / "personal")


def make_orchestrator(llm: LLMBackend, instructions: InstructionLoader, max_turns: int = 64):
    registry = ToolRegistry()
    tool = RecordTool()
    registry.register(tool)
    orchestrator = Orchestrator(llm, registry, max_turns=max_turns, instructions=instructions, workspace_root="/tmp")
    tool.orchestrator = orchestrator
    return orchestrator, registry, tool


@pytest.mark.asyncio
async def test_tool_calls_run_sequentially_and_results_precede_next_call(instructions):
    llm = ScriptedLLM(
        [
            directive(call("record", "1", label="a"), call("record", "2", label="b"), call("record", "3", label="c")),
            "All done.",
        ]
    )
    orchestrator, _, tool = make_orchestrator(llm, instructions)

    result = await orchestrator.chat("do three things")

    assert result.content == "All done."
    assert result.status == ChatStatus.COMPLETED
    assert result.turns == 2
    assert tool.order == [("a", 0), ("b", 1), ("c", 2)]
    roles = [m.role for m in orchestrator.history]
    assert roles == ["system", "user", "assistant", "tool", "tool", "tool", "assistant"]
    envelopes = [json.loads(m.content) for m in orchestrator.history if m.role == "tool"]
    assert [e["tool_call_id"] for e in envelopes] == ["1", "2", "3"]
    assert envelopes[0] == {
        "role": "tool_result",
        "tool_call_id": "1",
        "status": "success",
        "output": "recorded a",
    }


@pytest.mark.asyncio
async def test_tool_failures_are_fed_back_and_loop_continues(instructions):
    llm = ScriptedLLM(
        [
            directive(call("missing_tool", "1"), call("record", "2", label=5)),
            "Recovered.",
        ]
    )
    orchestrator, _, tool = make_orchestrator(llm, instructions)
    events: list[OrchestratorEvent] = []

    result = await orchestrator.chat("try", on_update=events.append)

    assert result.content == "Recovered."
    assert tool.order == []
    envelopes = [json.loads(m.content) for m in orchestrator.history if m.role == "tool"]
    assert [e["status"] for e in envelopes] == ["error", "error"]
    assert envelopes[0]["error"] == "Tool missing_tool not found"
    assert "label" in envelopes[1]["error"]
    ends = [e for e in events if e.type == "tool_end"]
    assert [e.data["success"] for e in ends] == [False, False]


@pytest.mark.asyncio
async def test_malformed_directive_is_returned_as_plain_text(instructions):
    reply = 'I would call {"thought": "x", "tool_calls": [ oops'
    orchestrator, _, _ = make_orchestrator(ScriptedLLM([reply]), instructions)

    result = await orchestrator.chat("hi")

    assert result.content == reply
    assert result.status == ChatStatus.COMPLETED
    assert orchestrator.history[-1] == Message(role="assistant", content=reply)


@pytest.mark.asyncio
async def test_directive_without_tool_calls_returns_thought(instructions):
    orchestrator, _, _ = make_orchestrator(ScriptedLLM(['{"thought": "The answer is 4."}']), instructions)
    events: list[OrchestratorEvent] = []

    result = await orchestrator.chat("2+2?", on_update=events.append)

    assert result.content == "The answer is 4."
    assert [e.type for e in events] == ["thinking", "thought", "final"]


@pytest.mark.asyncio
async def test_turn_budget_forces_single_reflection_call(instructions):
    def reply(messages: list[Message]) -> str:
        last = messages[-1]
        if last.role == "user" and "maximum number of turns" in last.text():
            return "Summary of progress."
        return directive(call("record", "x", label="again"))

    llm = ScriptedLLM([reply])
    orchestrator, _, tool = make_orchestrator(llm, instructions, max_turns=3)

    result = await orchestrator.chat("loop forever")

    assert len(tool.order) == 3
    assert len(llm.requests) == 4
    assert result.status == ChatStatus.MAX_TURNS
    assert result.content == "**Max Turns Reached (3)**\n\nSummary of progress."
    assert orchestrator.history[-1].content == "Summary of progress."


@pytest.mark.asyncio
async def test_cancel_while_waiting_for_llm_returns_sentinel_without_new_messages(instructions):
    llm = BlockingLLM(directive(call("record", "1", label="a")))
    orchestrator, _, _ = make_orchestrator(llm, instructions)

    task = asyncio.create_task(orchestrator.chat("start"))
    await llm.blocked.wait()
    before = orchestrator.history
    orchestrator.cancel()
    result = await task

    assert result.status == ChatStatus.CANCELLED
    assert result.content == CANCELLED_MESSAGE
    assert result.cancelled
    assert orchestrator.history == before
    assert llm.was_cancelled
    assert not orchestrator.is_running


@pytest.mark.asyncio
async def test_cancel_during_tool_lets_it_finish_but_stops_the_turn(instructions):
    llm = ScriptedLLM([directive(call("record", "1", label="a"), call("record", "2", label="b")), "unreachable"])
    orchestrator, _, tool = make_orchestrator(llm, instructions)
    tool.cancel_on = "a"

    result = await orchestrator.chat("go")

    assert result.status == ChatStatus.CANCELLED
    assert [label for label, _ in tool.order] == ["a"]
    assert orchestrator.history[-1].role == "tool"
    assert len(llm.requests) == 1


@pytest.mark.asyncio
async def test_new_chat_cancels_previous_one(instructions):
    llm = BlockingLLM(directive(call("record", "1", label="a")))
    orchestrator, _, _ = make_orchestrator(llm, instructions)

    first = asyncio.create_task(orchestrator.chat("first"))
    await llm.blocked.wait()
    orchestrator.llm = ScriptedLLM(["second answer"])
    second = await orchestrator.chat("second")

    assert (await first).status == ChatStatus.CANCELLED
    assert second.content == "second answer"


@pytest.mark.asyncio
async def test_llm_errors_propagate(instructions):
    orchestrator, _, _ = make_orchestrator(FailingLLM(), instructions)

    with pytest.raises(LLMAPIError):
        await orchestrator.chat("hi")

    assert not orchestrator.is_running


@pytest.mark.asyncio
async def test_system_prompt_is_refreshed_with_current_tools(instructions):
    llm = ScriptedLLM(["ok"])
    orchestrator, registry, _ = make_orchestrator(llm, instructions)

    await orchestrator.chat("one")

    class LateTool(Tool):
        name = "late_tool"
        description = "Registered mid-session"
        parameters = {"type": "object", "properties": {}}

        async def execute(self, **kwargs):
            return "late"

    registry.register(LateTool())
    await orchestrator.chat("two")

    system_messages = [m for m in orchestrator.history if m.role == "system"]
    assert len(system_messages) == 1
    assert orchestrator.history[0].role == "system"
    assert "late_tool" in orchestrator.history[0].content
    assert "late_tool" not in llm.requests[0][0].content
    assert f"Workspace root: {Path('/tmp').resolve()}" in orchestrator.history[0].content


@pytest.mark.asyncio
async def test_listener_exceptions_do_not_break_the_loop(instructions):
    def explode(event: OrchestratorEvent) -> None:
        raise RuntimeError("ui bug")

    orchestrator, _, _ = make_orchestrator(ScriptedLLM(["fine"]), instructions)
    orchestrator.add_listener(explode)

    result = await orchestrator.chat("hi")

    assert result.content == "fine"


def test_reset_clears_history(instructions):
    orchestrator, _, _ = make_orchestrator(ScriptedLLM(["ok"]), instructions)
    orchestrator.messages.append(Message(role="user", content="x"))

    orchestrator.reset()

    assert orchestrator.history == []


class GateTool(Tool):
    name = "gate"
    description = "Wait until released"
    parameters = {"type": "object", "properties": {}}

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def execute(self, **kwargs):
        self.started.set()
        await self.release.wait()
        return "released"


def make_gated_orchestrator(llm: LLMBackend, instructions: InstructionLoader):
    registry = ToolRegistry()
    gate = GateTool()
    registry.register(gate)
    return Orchestrator(llm, registry, instructions=instructions, workspace_root="/tmp"), gate


@pytest.mark.asyncio
async def test_tool_finishing_after_new_chat_does_not_touch_new_history(instructions):
    llm = ScriptedLLM([directive(call("gate", "1")), "second answer"])
    orchestrator, gate = make_gated_orchestrator(llm, instructions)

    first = asyncio.create_task(orchestrator.chat("first"))
    await gate.started.wait()
    second = await orchestrator.chat("second")
    gate.release.set()
    first_result = await first

    assert first_result.status == ChatStatus.CANCELLED
    assert second.content == "second answer"
    assert [m.role for m in orchestrator.history] == ["system", "user", "assistant", "user", "assistant"]
    assert orchestrator.history[-1].content == "second answer"


@pytest.mark.asyncio
async def test_tool_finishing_after_reset_leaves_history_empty(instructions):
    llm = ScriptedLLM([directive(call("gate", "1")), "unreachable"])
    orchestrator, gate = make_gated_orchestrator(llm, instructions)

    task = asyncio.create_task(orchestrator.chat("start"))
    await gate.started.wait()
    orchestrator.reset()
    gate.release.set()
    result = await task

    assert result.status == ChatStatus.CANCELLED
    assert orchestrator.history == []
    assert len(llm.requests) == 1


@pytest.mark.asyncio
async def test_truncated_directive_is_answered_as_plain_text(instructions):
    reply = 'Plan: {"thought": "outer", "tool_calls": [{"name": "record", "parameters": {"thought": "deep"}'
    orchestrator, _, tool = make_orchestrator(ScriptedLLM([reply]), instructions)

    result = await orchestrator.chat("go")

    assert result.content == reply
    assert tool.order == []
