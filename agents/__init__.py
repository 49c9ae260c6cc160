"""Coding agent: tools, prompts, LLM integration and the session graph.

This module exports the key components needed for agent execution:
- Scratch-directory tool definitions and executor
- Prompts for the coding agent
- LLM client utilities with retry logic
- CodingAgentSession, which streams AgentMessages for one turn
"""

from agents.coding_agent import (
    AgentFactory,
    AgentMessage,
    CodingAgentSession,
    create_agent_session,
)
from agents.prompts import CODING_AGENT_PROMPT, build_generation_prompt
from agents.tools import (
    TOOL_DEFINITIONS,
    WRITE_FILE_TOOL,
    ScratchToolExecutor,
    ToolResult,
    get_tool_definitions_for_llm,
)
from agents.utils import (
    LLMClient,
    LLMResponse,
    MockLLMClient,
    ToolCallData,
    assistant_message,
    make_mock_response,
    tool_result_message,
)

__all__ = [
    # Tools
    "TOOL_DEFINITIONS",
    "WRITE_FILE_TOOL",
    "ScratchToolExecutor",
    "ToolResult",
    "get_tool_definitions_for_llm",
    # Prompts
    "CODING_AGENT_PROMPT",
    "build_generation_prompt",
    # Utils
    "LLMClient",
    "LLMResponse",
    "MockLLMClient",
    "ToolCallData",
    "assistant_message",
    "make_mock_response",
    "tool_result_message",
    # Session
    "AgentFactory",
    "AgentMessage",
    "CodingAgentSession",
    "create_agent_session",
]
