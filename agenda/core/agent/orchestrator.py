"""
Tool Orchestrator.

Drives the bounded model/tool loop for one inbound message:

    AWAIT_MODEL -> MODEL_RESPONDED -> DISPATCH_TOOLS -> AWAIT_MODEL ...
    AWAIT_MODEL -> MODEL_RESPONDED -> TERMINAL

Tools requested in one turn run concurrently; the model is only called again
once all of them have finished. Tool failures are fed back as data. Model
failures end the run with the fallback reply.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol

from agenda.config import settings
from agenda.core.agent.tools import ToolCatalog
from agenda.core.conversation.context import AssembledContext
from agenda.infra.claude import ModelTurn, ToolCall, Usage

logger = logging.getLogger(__name__)

FALLBACK_REPLY = (
    "Sorry, I'm having a bit of trouble right now. "
    "Please try again in a few minutes."
)


class ModelClient(Protocol):
    async def create_message(
        self,
        messages: list[dict[str, Any]],
        system: Optional[str] = None,
        tools: Optional[list[dict[str, Any]]] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> ModelTurn: ...


class OrchestratorState(str, Enum):
    AWAIT_MODEL = "await_model"
    MODEL_RESPONDED = "model_responded"
    DISPATCH_TOOLS = "dispatch_tools"
    TERMINAL = "terminal"


@dataclass
class OrchestrationResult:
    """Final reply plus accounting for one run."""

    text: str
    usage: Usage = field(default_factory=Usage)
    rounds: int = 0
    model: Optional[str] = None
    tool_calls: list[str] = field(default_factory=list)
    state_trace: list[OrchestratorState] = field(default_factory=list)
    fallback: bool = False


class ToolOrchestrator:
    """Runs the state machine against a model client and a tool catalog."""

    def __init__(
        self,
        client: Optional[ModelClient],
        max_rounds: Optional[int] = None,
        max_tokens: Optional[int] = None,
        fallback_reply: str = FALLBACK_REPLY,
    ):
        self._client = client
        self.max_rounds = max_rounds if max_rounds is not None else settings.max_tool_rounds
        self.max_tokens = max_tokens or settings.max_tokens
        self.fallback_reply = fallback_reply

    async def run(self, context: AssembledContext, catalog: ToolCatalog) -> OrchestrationResult:
        """
        Run to termination. Always returns a non-empty reply.

        Args:
            context: Assembled system prompt and history
            catalog: Tools bound to this conversation

        Returns:
            OrchestrationResult with reply text and summed usage
        """
        result = OrchestrationResult(text="", model=context.model)
        if self._client is None:
            logger.error("No model client configured - replying with fallback")
            result.text = self.fallback_reply
            result.fallback = True
            result.state_trace.append(OrchestratorState.TERMINAL)
            return result

        tools = catalog.definitions()
        messages: list[dict[str, Any]] = [dict(m) for m in context.history]
        last_text = ""
        turn: Optional[ModelTurn] = None
        state = OrchestratorState.AWAIT_MODEL

        while state != OrchestratorState.TERMINAL:
            result.state_trace.append(state)

            match state:
                case OrchestratorState.AWAIT_MODEL:
                    turn = await self._call_model(context, messages, tools)
                    if turn is None:
                        # Interim text from an earlier turn is not a reply
                        result.fallback = True
                        last_text = ""
                        state = OrchestratorState.TERMINAL
                        continue
                    result.usage = result.usage + turn.usage
                    result.model = turn.model
                    if turn.text:
                        last_text = turn.text
                    state = OrchestratorState.MODEL_RESPONDED

                case OrchestratorState.MODEL_RESPONDED:
                    if not turn.wants_tools:
                        state = OrchestratorState.TERMINAL
                    elif result.rounds >= self.max_rounds:
                        logger.warning(
                            f"Tool round limit ({self.max_rounds}) reached - ending with last text"
                        )
                        state = OrchestratorState.TERMINAL
                    else:
                        state = OrchestratorState.DISPATCH_TOOLS

                case OrchestratorState.DISPATCH_TOOLS:
                    result.rounds += 1
                    tool_results = await asyncio.gather(
                        *(self._run_tool(catalog, call) for call in turn.tool_calls)
                    )
                    result.tool_calls.extend(call.name for call in turn.tool_calls)
                    messages.append({"role": "assistant", "content": turn.content_blocks})
                    messages.append({"role": "user", "content": list(tool_results)})
                    state = OrchestratorState.AWAIT_MODEL

        result.state_trace.append(OrchestratorState.TERMINAL)
        result.text = last_text or self.fallback_reply
        if not last_text:
            result.fallback = True

        logger.info(
            f"Orchestration finished: rounds={result.rounds}, "
            f"tools={result.tool_calls}, tokens={result.usage.total_tokens}"
        )
        return result

    async def _call_model(
        self,
        context: AssembledContext,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> Optional[ModelTurn]:
        try:
            return await self._client.create_message(
                messages=messages,
                system=context.system_prompt,
                tools=tools,
                model=context.model,
                max_tokens=self.max_tokens,
            )
        except asyncio.TimeoutError:
            logger.error("Model call timed out")
        except Exception as e:
            logger.exception(f"Model call failed: {e}")
        return None

    @staticmethod
    async def _run_tool(catalog: ToolCatalog, call: ToolCall) -> dict[str, Any]:
        logger.info(f"Executing tool: {call.name}")
        try:
            output = await catalog.execute(call.name, call.input)
        except Exception as e:
            logger.error(f"Tool execution error: {e}")
            output = {"error": "execution_failed", "message": str(e)}

        block: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": call.id,
            "content": json.dumps(output, default=str),
        }
        if isinstance(output, dict) and "error" in output:
            block["is_error"] = True
        return block
