"""Coding agent session over a local scratch directory.

The session is a LangGraph loop:

    START -> reason -> [tools requested -> act -> reason | no tools -> END]

and is consumed as an ordered stream of ``AgentMessage``s: assistant text,
tool uses, tool results and one final ``turn_end``. Consumers only need to
react to ``write_file`` tool-use/tool-result pairs and the end of the turn.
"""

import operator
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, TypedDict

import structlog
from langgraph.graph import END, START, StateGraph

from agents.prompts import (
    MAX_ITERATIONS_NOTICE,
    build_generation_prompt,
    get_coding_system_prompt,
)
from agents.tools import WRITE_FILE_TOOL, ScratchToolExecutor, get_tool_definitions_for_llm
from agents.utils import (
    LLMClient,
    MockLLMClient,
    ToolCallData,
    assistant_message,
    make_mock_response,
    tool_result_message,
)
from config import settings

logger = structlog.get_logger()

AgentMessageType = Literal["text", "tool_use", "tool_result", "turn_end"]


@dataclass
class AgentMessage:
    """One item of the agent's streamed output.

    Attributes:
        type: ``text``, ``tool_use``, ``tool_result`` or ``turn_end``
        text: Assistant text, tool result content or the stop reason
        tool_name: Tool involved (tool_use/tool_result only)
        tool_call_id: Pairs a tool_result with its tool_use
        tool_input: Normalized arguments of a tool_use
        is_error: Whether a tool_result reports a failure
    """

    type: AgentMessageType
    text: str = ""
    tool_name: str | None = None
    tool_call_id: str | None = None
    tool_input: dict[str, Any] = field(default_factory=dict)
    is_error: bool = False

    @property
    def is_write(self) -> bool:
        return self.tool_name == WRITE_FILE_TOOL


class CodingState(TypedDict):
    """State flowing through the coding graph.

    ``outbox`` holds the messages produced by the node that just ran and is
    replaced on every step; ``messages`` accumulates the LLM conversation.
    """

    messages: Annotated[list[dict[str, Any]], operator.add]
    pending_tool_calls: list[ToolCallData]
    iteration: int
    max_iterations: int
    files_written: list[str]
    outbox: list[AgentMessage]
    stop_reason: str


class CodingAgentSession:
    """One agent turn against one scratch directory.

    Usage:
        >>> session = CodingAgentSession(llm_client, "/tmp/gen-123")
        >>> async for message in session.run("A pomodoro timer"):
        ...     handle(message)
    """

    def __init__(
        self,
        llm_client: LLMClient,
        scratch_dir: str,
        max_iterations: int | None = None,
        model: str | None = None,
        temperature: float = 0.7,
    ) -> None:
        self.llm_client = llm_client
        self.scratch_dir = scratch_dir
        self.max_iterations = max_iterations or settings.max_agent_iterations
        self.model = model
        self.temperature = temperature
        self.executor = ScratchToolExecutor(scratch_dir)
        self._compiled_graph = self._build_graph()

    @property
    def model_name(self) -> str:
        return self.model or self.llm_client.default_model

    def _build_graph(self):
        graph = StateGraph(CodingState)

        graph.add_node("reason", self._reason)
        graph.add_node("act", self._act)

        graph.add_edge(START, "reason")
        graph.add_conditional_edges(
            "reason",
            self._after_reason,
            {"act": "act", "end": END},
        )
        graph.add_conditional_edges(
            "act",
            self._after_act,
            {"continue": "reason", "end": END},
        )

        return graph.compile()

    async def _reason(self, state: CodingState) -> dict[str, Any]:
        messages = list(state["messages"])
        remaining = state["max_iterations"] - state["iteration"]
        if remaining == 1:
            messages.append({
                "role": "user",
                "content": MAX_ITERATIONS_NOTICE.format(remaining=remaining),
            })

        response = await self.llm_client.complete(
            messages=messages,
            tools=get_tool_definitions_for_llm(),
            model=self.model,
            temperature=self.temperature,
        )

        outbox: list[AgentMessage] = []
        if response.content:
            outbox.append(AgentMessage(type="text", text=response.content))
        for tc in response.tool_calls:
            outbox.append(
                AgentMessage(
                    type="tool_use",
                    tool_name=tc.name,
                    tool_call_id=tc.id,
                    tool_input=tc.args,
                )
            )

        logger.debug(
            "coding_agent_reasoned",
            scratch_dir=self.scratch_dir,
            iteration=state["iteration"] + 1,
            tool_calls=len(response.tool_calls),
        )

        return {
            "messages": [assistant_message(response.content, response.tool_calls)],
            "pending_tool_calls": response.tool_calls,
            "iteration": state["iteration"] + 1,
            "outbox": outbox,
            "stop_reason": "end_turn" if not response.tool_calls else state["stop_reason"],
        }

    async def _act(self, state: CodingState) -> dict[str, Any]:
        tool_messages: list[dict[str, Any]] = []
        outbox: list[AgentMessage] = []
        files_written = list(state["files_written"])

        for tc in state["pending_tool_calls"]:
            result = await self.executor.execute(tc.name, tc.args, tool_call_id=tc.id)
            tool_messages.append(tool_result_message(tc.id, result.content))
            outbox.append(
                AgentMessage(
                    type="tool_result",
                    text=result.content,
                    tool_name=tc.name,
                    tool_call_id=tc.id,
                    is_error=not result.success,
                )
            )
            if tc.name == WRITE_FILE_TOOL and result.success:
                path = str(tc.args.get("path", "")).strip()
                if path and path not in files_written:
                    files_written.append(path)

        return {
            "messages": tool_messages,
            "pending_tool_calls": [],
            "files_written": files_written,
            "outbox": outbox,
        }

    def _after_reason(self, state: CodingState) -> str:
        return "act" if state["pending_tool_calls"] else "end"

    def _after_act(self, state: CodingState) -> str:
        if state["iteration"] >= state["max_iterations"]:
            logger.warning(
                "max_iterations_reached",
                scratch_dir=self.scratch_dir,
                iterations=state["iteration"],
            )
            return "end"
        return "continue"

    def _initial_state(self, description: str) -> CodingState:
        return CodingState(
            messages=[
                {"role": "system", "content": get_coding_system_prompt()},
                {"role": "user", "content": build_generation_prompt(description)},
            ],
            pending_tool_calls=[],
            iteration=0,
            max_iterations=self.max_iterations,
            files_written=[],
            outbox=[],
            stop_reason="max_iterations",
        )

    async def run(self, description: str) -> AsyncIterator[AgentMessage]:
        """Run one agent turn, yielding its messages in emission order.

        LLM failures propagate to the caller; tool failures are reported as
        ``tool_result`` messages with ``is_error`` set.
        """
        stop_reason = "max_iterations"
        files_written: list[str] = []

        async for update in self._compiled_graph.astream(
            self._initial_state(description),
            stream_mode="updates",
            config={"recursion_limit": self.max_iterations * 2 + 5},
        ):
            # LangGraph streams {node_name: state_update} dicts
            for node_update in update.values():
                if not isinstance(node_update, dict):
                    continue
                for message in node_update.get("outbox", []):
                    yield message
                stop_reason = node_update.get("stop_reason", stop_reason)
                files_written = node_update.get("files_written", files_written)

        logger.info(
            "coding_agent_turn_complete",
            scratch_dir=self.scratch_dir,
            stop_reason=stop_reason,
            files_written=len(files_written),
        )
        yield AgentMessage(type="turn_end", text=stop_reason)


AgentFactory = Callable[[str], CodingAgentSession]


def _scripted_site_responses() -> list:
    """Canned responses that write a small static site, used with ``use_mock_llm``."""
    html = (
        "<!DOCTYPE html>\n<html lang=\"en\">\n<head>\n"
        "  <meta charset=\"UTF-8\">\n"
        "  <meta name=\"viewport\" content=\"width=device-width, initial-scale=1.0\">\n"
        "  <title>Generated Project</title>\n"
        "  <link rel=\"stylesheet\" href=\"style.css\">\n"
        "</head>\n<body>\n"
        "  <!-- Placeholder page produced without a model -->\n"
        "  <main><h1>Generated Project</h1></main>\n"
        "</body>\n</html>\n"
    )
    css = "body {\n  font-family: system-ui, sans-serif;\n  margin: 2rem;\n}\n"
    return [
        make_mock_response(
            "Creating the page and its stylesheet.",
            tool_calls=[
                ToolCallData(id="mock_write_html", name=WRITE_FILE_TOOL,
                             args={"path": "index.html", "content": html}),
                ToolCallData(id="mock_write_css", name=WRITE_FILE_TOOL,
                             args={"path": "style.css", "content": css}),
            ],
        ),
        make_mock_response("The project is ready: index.html and style.css."),
    ]


def create_agent_session(scratch_dir: str) -> CodingAgentSession:
    """Default agent factory: real LLM, or scripted responses with ``use_mock_llm``."""
    if settings.use_mock_llm:
        llm_client: LLMClient = MockLLMClient(responses=_scripted_site_responses())
    else:
        llm_client = LLMClient()
    return CodingAgentSession(llm_client, scratch_dir)
