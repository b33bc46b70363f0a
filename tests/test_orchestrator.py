"""Tests for the agentic tool-invocation loop."""

import asyncio

import pytest

from todoagent.conversation import InvalidHistoryError, validate_role_alternation
from todoagent.gateway import ServerNotReadyError
from todoagent.orchestrator import FALLBACK_EMPTY, Orchestrator
from todoagent.schemas import ChatMessage, TaskPriority, TaskStatus, ToolResultBlock


def tool_results(result):
    """All tool_result blocks in a run's history delta."""
    return [
        block
        for message in result.history_delta
        if isinstance(message.content, list)
        for block in message.content
        if isinstance(block, ToolResultBlock)
    ]


class TestScenarios:
    """End-to-end turns against the real protocol server and store."""

    @pytest.mark.asyncio
    async def test_create_high_priority(self, server, gateway, scripted_model):
        orchestrator = Orchestrator(scripted_model(), gateway)

        result = await orchestrator.run("create a todo called 'Write report', high priority")

        todos = server.store.query_sync()
        assert len(todos) == 1
        assert todos[0].title == "Write report"
        assert todos[0].priority == TaskPriority.HIGH
        assert todos[0].status == TaskStatus.PENDING
        assert "Write report" in result.response
        assert todos[0].id not in result.response
        assert result.tools_executed == ["todo_create"]
        assert result.finalized is False

    @pytest.mark.asyncio
    async def test_mark_it_completed_uses_history(self, server, gateway, scripted_model):
        """A follow-up turn updates the same record instead of creating another."""
        orchestrator = Orchestrator(scripted_model(), gateway)
        first = await orchestrator.run("create a todo called 'Write report', high priority")

        second = await orchestrator.run("mark it completed", first.history_delta)

        todos = server.store.query_sync()
        assert len(todos) == 1
        assert todos[0].status == TaskStatus.COMPLETED
        assert todos[0].completed_at is not None
        assert second.tools_executed == ["todo_update"]
        assert "Write report" in second.response
        assert todos[0].id not in second.response

    @pytest.mark.asyncio
    async def test_history_delta_shape(self, gateway, scripted_model):
        """The delta starts with the user message and keeps alternation."""
        orchestrator = Orchestrator(scripted_model(), gateway)
        result = await orchestrator.run("create a todo called 'Write report'")

        delta = result.history_delta
        assert delta[0] == ChatMessage(role="user", content="create a todo called 'Write report'")
        assert [message.role for message in delta] == ["user", "assistant", "user", "assistant"]
        assert validate_role_alternation(delta)

    @pytest.mark.asyncio
    async def test_tool_results_carry_data_line(self, gateway, scripted_model):
        """The model sees the rendering plus the machine payload."""
        orchestrator = Orchestrator(scripted_model(), gateway)
        result = await orchestrator.run("create a todo called 'Write report'")

        content = tool_results(result)[0].content
        assert content.startswith('✅ Created todo: "Write report"')
        assert '\n\nData: {"todo":' in content


class TestHistoryHandling:
    """Test input history validation."""

    @pytest.mark.asyncio
    async def test_invalid_history_rejected_before_model_call(self, gateway, scripted_model):
        model = scripted_model()
        orchestrator = Orchestrator(model, gateway)
        history = [ChatMessage(role="user", content="a"), ChatMessage(role="user", content="b")]

        with pytest.raises(InvalidHistoryError):
            await orchestrator.run("c", history)
        assert model.calls == []

    @pytest.mark.asyncio
    async def test_trailing_user_message_not_duplicated(self, gateway, scripted_model):
        model = scripted_model()
        orchestrator = Orchestrator(model, gateway)
        history = [ChatMessage(role="user", content="hello")]

        result = await orchestrator.run("hello", history)

        assert len(model.calls[0]["messages"]) == 1
        assert [message.role for message in result.history_delta] == ["assistant"]


class TestDeduplication:
    """Test that identical calls run at most once per run."""

    @pytest.mark.asyncio
    async def test_duplicates_in_one_batch(self, server, gateway, scripted_model, reply):
        model = scripted_model(replies=[
            reply.tools(
                ("call_1", "todo_create", {"title": "Buy milk", "priority": "low"}),
                ("call_2", "todo_create", {"priority": "low", "title": "Buy milk"}),
            ),
        ])
        result = await Orchestrator(model, gateway).run("add milk twice")

        assert server.store.count_sync() == 1
        first, second = tool_results(result)
        assert first.is_error is False
        assert second.is_error is True
        assert second.content.startswith("Duplicate call skipped: todo_create")

    @pytest.mark.asyncio
    async def test_duplicates_across_iterations(self, server, gateway, scripted_model, reply):
        model = scripted_model(replies=[
            reply.tools(("call_1", "todo_create", {"title": "Buy milk"})),
            reply.tools(("call_2", "todo_create", {"title": "Buy milk"})),
        ])
        result = await Orchestrator(model, gateway, max_iterations=3).run("add milk")

        assert server.store.count_sync() == 1
        assert tool_results(result)[1].content.startswith("Duplicate call skipped")


class TestBudget:
    """Test the iteration cap, the deadline and forced finalization."""

    @pytest.mark.asyncio
    async def test_iteration_cap_forces_finalization(self, gateway, scripted_model):
        model = scripted_model(always_tools=True)
        events = []
        orchestrator = Orchestrator(model, gateway, max_iterations=2)

        result = await orchestrator.run("keep looking", progress=events.append)

        assert result.iterations == 2
        assert result.finalized is True
        assert len(model.calls) == 3
        assert model.calls[-1]["tool_choice"] == "none"
        assert result.response.startswith("Final answer.")
        assert [event.type for event in events].count("iteration") == 2
        assert events[-1].type == "finalizing"
        assert result.history_delta[-1].role == "assistant"
        assert validate_role_alternation(result.history_delta)

    @pytest.mark.asyncio
    async def test_per_run_cap_is_clamped(self, gateway, scripted_model):
        model = scripted_model(always_tools=True)
        result = await Orchestrator(model, gateway).run("loop", max_iterations=50)
        assert result.iterations == 5

    @pytest.mark.asyncio
    async def test_finalization_falls_back_to_tool_renderings(self, gateway, scripted_model):
        model = scripted_model(always_tools=True, fail_finalize=True)
        result = await Orchestrator(model, gateway, max_iterations=1).run("loop")

        assert result.response.startswith("Here's what I was able to do:")
        assert "No todos found." in result.response

    @pytest.mark.asyncio
    async def test_deadline_aborts_model_call(self, gateway, scripted_model):
        model = scripted_model(delay=1.0)
        orchestrator = Orchestrator(model, gateway, deadline_s=0.05)

        result = await orchestrator.run("anything")

        assert result.finalized is True
        assert result.iterations == 1
        assert model.calls[-1]["tool_choice"] == "none"

    @pytest.mark.asyncio
    async def test_deadline_covers_registry_fetch(self, scripted_model, fake_gateway):
        """A slow tool registry counts against the run deadline."""
        gateway = fake_gateway(tools_delay=1.0)
        model = scripted_model()
        orchestrator = Orchestrator(model, gateway, deadline_s=0.05, finalize_timeout_s=0.05)

        result = await orchestrator.run("anything")

        assert model.calls == []
        assert result.finalized is True
        assert result.response == FALLBACK_EMPTY

    @pytest.mark.asyncio
    async def test_expired_deadline_before_first_iteration(self, gateway, scripted_model):
        """With no budget left the loop never runs and the answer is composed locally."""
        ticks = iter([0.0, 100.0, 100.0])
        model = scripted_model(fail_finalize=True)
        orchestrator = Orchestrator(model, gateway, deadline_s=1.0, clock=lambda: next(ticks))

        result = await orchestrator.run("anything")

        assert result.iterations == 0
        assert result.response == FALLBACK_EMPTY


class TestParallelExecution:
    """Test concurrent sibling tool calls."""

    @pytest.mark.asyncio
    async def test_results_matched_by_request_id(self, scripted_model, fake_gateway, reply):
        gateway = fake_gateway(delays={"slow": 0.05, "fast": 0.0})
        model = scripted_model(replies=[
            reply.tools(
                ("call_slow", "todo_get", {"tag": "slow"}),
                ("call_fast", "todo_get", {"tag": "fast"}),
            ),
        ])
        events = []

        result = await Orchestrator(model, gateway).run("two lookups", progress=events.append)

        blocks = tool_results(result)
        assert [block.tool_use_id for block in blocks] == ["call_slow", "call_fast"]
        assert blocks[0].content.startswith("done slow")
        assert blocks[1].content.startswith("done fast")
        assert result.tools_executed == ["todo_get"]
        assert [event.type for event in events].count("tool_complete") == 2


class TestErrorCapture:
    """Test that tool failures become results and the run continues."""

    @pytest.mark.asyncio
    async def test_not_found_fed_back(self, gateway, scripted_model, reply):
        model = scripted_model(replies=[
            reply.tools(("call_1", "todo_update", {"id": "missing", "status": "completed"})),
        ])
        result = await Orchestrator(model, gateway).run("complete it")

        block = tool_results(result)[0]
        assert block.is_error is True
        assert block.content == "❌ Error: Todo with ID missing not found"
        assert len(model.calls) == 2
        assert result.finalized is False

    @pytest.mark.asyncio
    async def test_unknown_tool_and_bad_params_fed_back(self, gateway, scripted_model, reply):
        model = scripted_model(replies=[
            reply.tools(
                ("call_1", "todo_explode", {}),
                ("call_2", "todo_create", {"title": ""}),
                ("call_3", "todo_create", {"title": "Valid"}),
            ),
        ])
        result = await Orchestrator(model, gateway).run("do things")

        unknown, invalid, valid = tool_results(result)
        assert unknown.is_error and "Unknown tool" in unknown.content
        assert invalid.is_error and "Invalid parameters" in invalid.content
        assert valid.is_error is False
        assert result.tools_executed == ["todo_create"]

    @pytest.mark.asyncio
    async def test_server_not_ready_ends_run(self, scripted_model, fake_gateway, reply):
        gateway = fake_gateway(error=ServerNotReadyError())
        model = scripted_model(replies=[reply.tools(("call_1", "todo_list", {}))])

        with pytest.raises(ServerNotReadyError):
            await Orchestrator(model, gateway).run("list")

    @pytest.mark.asyncio
    async def test_failing_sibling_cancels_rest_of_batch(self, scripted_model, fake_gateway, reply):
        """No tool effect lands after the run has ended with an error."""
        gateway = fake_gateway(
            delays={"slow": 0.05},
            failures={"boom": ServerNotReadyError()},
        )
        model = scripted_model(replies=[
            reply.tools(
                ("call_slow", "todo_create", {"tag": "slow"}),
                ("call_boom", "todo_create", {"tag": "boom"}),
            ),
        ])

        with pytest.raises(ServerNotReadyError):
            await Orchestrator(model, gateway).run("two creates")
        await asyncio.sleep(0.1)

        assert gateway.completed == []
