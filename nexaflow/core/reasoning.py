"""Reasoning backends that decide the agent's next move."""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from ..models.core import AgentDecision, ConversationMessage, Step, StepType, ToolCall
from .exceptions import ReasoningBackendError
from .logging import get_logger

logger = get_logger(__name__)


DEFAULT_SYSTEM_PROMPT = (
    "You are a coding assistant working inside a project workspace. "
    "Use the available tools to inspect and change files. "
    "All paths are relative to the workspace root. "
    "When the task is complete, answer without calling any tool."
)


class ReasoningBackend(ABC):
    """Chooses the next action given the conversation and the steps so far."""

    @abstractmethod
    def decide(
        self,
        history: Sequence[ConversationMessage],
        steps: Sequence[Step],
        tools: List[Dict[str, Any]],
        system_prompt: Optional[str] = None,
    ) -> AgentDecision:
        """Return the next decision.

        Raises:
            ReasoningBackendError: If no decision can be produced
        """


def render_messages(history: Sequence[ConversationMessage], steps: Sequence[Step]) -> List[Dict[str, str]]:
    """Flatten history plus this call's steps into alternating user/assistant turns.

    Tool calls become assistant text, tool results become user text, and
    consecutive turns of the same role are merged. The first turn is always
    a user turn.
    """
    raw: List[Dict[str, str]] = [{"role": m.role, "content": m.content} for m in history]

    for step in steps:
        if step.type == StepType.THOUGHT:
            raw.append({"role": "assistant", "content": step.content})
        elif step.type == StepType.TOOL_CALL:
            raw.append({
                "role": "assistant",
                "content": f"Calling {step.tool_name} with {json.dumps(step.tool_args or {}, default=str)}",
            })
        elif step.type in (StepType.TOOL_RESULT, StepType.ERROR) and step.tool_name:
            payload = step.tool_result if step.tool_result is not None else {"error": step.content}
            raw.append({
                "role": "user",
                "content": f"Tool result from {step.tool_name}:\n{json.dumps(payload, default=str)}",
            })

    merged: List[Dict[str, str]] = []
    for message in raw:
        if not message["content"] or not message["content"].strip():
            continue
        if merged and merged[-1]["role"] == message["role"]:
            merged[-1]["content"] += "\n\n" + message["content"]
        else:
            merged.append(dict(message))

    if merged and merged[0]["role"] != "user":
        first_user = next((m.content for m in history if m.role == "user"), "Continue.")
        merged.insert(0, {"role": "user", "content": first_user})
    return merged


class AnthropicReasoningBackend(ReasoningBackend):
    """Backend calling the Anthropic Messages API with tool definitions."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "claude-sonnet-4-5-20250929",
        max_tokens: int = 16384,
        temperature: float = 0.2,
        client: Any = None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._api_key = api_key
        self._client = client

    def _get_client(self):
        if self._client is None:
            if not self._api_key:
                raise ReasoningBackendError("Anthropic API key is not configured", model=self.model)
            from anthropic import Anthropic
            self._client = Anthropic(api_key=self._api_key)
        return self._client

    def decide(self, history, steps, tools, system_prompt=None) -> AgentDecision:
        client = self._get_client()
        messages = render_messages(history, steps)
        if not messages:
            raise ReasoningBackendError("Nothing to send: conversation is empty", model=self.model)

        try:
            response = client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                system=system_prompt or DEFAULT_SYSTEM_PROMPT,
                messages=messages,
                tools=tools,
            )
        except Exception as e:
            logger.error(f"Reasoning backend request failed: {e}")
            raise ReasoningBackendError(f"Reasoning backend request failed: {e}", model=self.model) from e

        return self._parse_response(response)

    @staticmethod
    def _parse_response(response) -> AgentDecision:
        texts = []
        tool_calls = []
        for block in response.content:
            if block.type == "text":
                texts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(id=block.id, name=block.name, arguments=dict(block.input or {})))

        text = "\n".join(t for t in texts if t).strip() or None
        if tool_calls:
            return AgentDecision(thought=text, tool_calls=tool_calls)
        return AgentDecision(response=text or "Task completed")


class ScriptedReasoningBackend(ReasoningBackend):
    """Replays a fixed list of decisions; useful for tests and local runs without an API key.

    Entries may be ``AgentDecision`` instances or exceptions to raise.
    Once the script is exhausted the backend keeps answering with a final
    response.
    """

    def __init__(self, decisions: Sequence[Any], final_response: str = "Task completed"):
        self._decisions = list(decisions)
        self._final_response = final_response
        self.calls: List[Dict[str, Any]] = []

    def decide(self, history, steps, tools, system_prompt=None) -> AgentDecision:
        self.calls.append({"history": list(history), "steps": list(steps), "tools": tools})
        if not self._decisions:
            return AgentDecision(response=self._final_response)
        decision = self._decisions.pop(0)
        if isinstance(decision, Exception):
            raise decision
        return decision
