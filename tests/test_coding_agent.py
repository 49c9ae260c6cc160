"""Tests for agents/coding_agent.py -- the streamed reason/act loop.

Uses MockLLMClient with scripted responses; tools run against ``tmp_path``.
"""

from pathlib import Path
from unittest.mock import patch

import pytest

from agents.coding_agent import (
    AgentMessage,
    CodingAgentSession,
    _scripted_site_responses,
    create_agent_session,
)
from agents.prompts import MAX_ITERATIONS_NOTICE
from agents.utils import MockLLMClient, make_mock_response
from tests.conftest import make_tool_call, site_responses


async def _collect(session: CodingAgentSession, description: str = "A todo app") -> list[AgentMessage]:
    return [message async for message in session.run(description)]


class TestRun:
    async def test_message_order_for_two_step_script(self, tmp_path: Path) -> None:
        session = CodingAgentSession(MockLLMClient(responses=site_responses()), str(tmp_path))

        messages = await _collect(session)

        assert [m.type for m in messages] == [
            "text",
            "tool_use",
            "tool_use",
            "tool_result",
            "tool_result",
            "text",
            "turn_end",
        ]
        assert messages[-1].text == "end_turn"
        assert messages[1].is_write
        assert messages[1].tool_input["path"] == "index.html"
        assert [m.tool_call_id for m in messages if m.type == "tool_result"] == ["tc_html", "tc_css"]
        assert (tmp_path / "index.html").read_text() == "<h1>Todo</h1>"
        assert (tmp_path / "style.css").read_text() == "h1 { color: red; }"

    async def test_prompts_carry_description(self, tmp_path: Path) -> None:
        client = MockLLMClient(responses=[make_mock_response("Nothing to do.")])
        session = CodingAgentSession(client, str(tmp_path))

        await _collect(session, "A pomodoro timer")

        first_call = client.call_history[0]["messages"]
        assert first_call[0]["role"] == "system"
        assert 'based on this description: "A pomodoro timer"' in first_call[1]["content"]
        assert client.call_history[0]["tools"]

    async def test_failed_tool_is_reported_as_error_result(self, tmp_path: Path) -> None:
        responses = [
            make_mock_response(
                tool_calls=[make_tool_call("write_file", {"path": "../escape.html", "content": "x"})]
            ),
            make_mock_response("Gave up."),
        ]
        session = CodingAgentSession(MockLLMClient(responses=responses), str(tmp_path))

        messages = await _collect(session)

        results = [m for m in messages if m.type == "tool_result"]
        assert len(results) == 1
        assert results[0].is_error
        assert results[0].text.startswith("Error:")
        assert not (tmp_path.parent / "escape.html").exists()

    async def test_max_iterations_ends_turn(self, tmp_path: Path) -> None:
        responses = [
            make_mock_response(
                tool_calls=[make_tool_call("list_files", {}, f"tc_{i}")]
            )
            for i in range(2)
        ]
        client = MockLLMClient(responses=responses)
        session = CodingAgentSession(client, str(tmp_path), max_iterations=2)

        messages = await _collect(session)

        assert messages[-1].type == "turn_end"
        assert messages[-1].text == "max_iterations"
        assert len(client.call_history) == 2
        notice = MAX_ITERATIONS_NOTICE.format(remaining=1)
        assert client.call_history[1]["messages"][-1]["content"] == notice

    async def test_llm_failure_propagates(self, tmp_path: Path) -> None:
        session = CodingAgentSession(MockLLMClient(responses=[]), str(tmp_path))
        with pytest.raises(IndexError):
            await _collect(session)


class TestFactory:
    def test_mock_llm_setting_uses_scripted_client(self, tmp_path: Path) -> None:
        with patch("agents.coding_agent.settings") as mock_settings:
            mock_settings.use_mock_llm = True
            mock_settings.max_agent_iterations = 5
            session = create_agent_session(str(tmp_path))
        assert isinstance(session.llm_client, MockLLMClient)

    async def test_scripted_site_writes_static_files(self, tmp_path: Path) -> None:
        session = CodingAgentSession(
            MockLLMClient(responses=_scripted_site_responses()), str(tmp_path)
        )
        await _collect(session)
        assert (tmp_path / "index.html").exists()
        assert (tmp_path / "style.css").exists()
