"""
Reasoning service contract and the Anthropic implementation.

The command agent treats the model as a black box: a system prompt, a
message history and tool schemas go in; text blocks and tool-use blocks come
out. Zero, one or many tool-use blocks per response are all valid.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from mne_agents.config import AgentSettings
from mne_agents.errors import ExternalServiceError
from mne_agents.types.portfolio_types import ConversationTurn

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ToolUseBlock:
    name: str
    input: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None


ContentBlock = Union[TextBlock, ToolUseBlock]


@dataclass(frozen=True)
class ReasoningResponse:
    content: Tuple[ContentBlock, ...] = ()

    @property
    def tool_uses(self) -> List[ToolUseBlock]:
        return [block for block in self.content if isinstance(block, ToolUseBlock)]

    @property
    def text(self) -> str:
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock) and b.text).strip()


class ReasoningService(ABC):
    """Given a prompt, history and tool schemas, returns text and/or tool invocations."""

    @abstractmethod
    def respond(
        self,
        system_prompt: str,
        tools: Sequence[Dict[str, Any]],
        messages: Sequence[ConversationTurn],
    ) -> ReasoningResponse:
        pass


def to_langchain_messages(system_prompt: str, messages: Sequence[ConversationTurn]) -> List[BaseMessage]:
    converted: List[BaseMessage] = [SystemMessage(content=system_prompt)]
    for turn in messages:
        if turn.role == "user":
            converted.append(HumanMessage(content=turn.content))
        else:
            converted.append(AIMessage(content=turn.content))
    return converted


def parse_ai_message(message: AIMessage) -> ReasoningResponse:
    """Flatten an AIMessage into text and tool-use blocks."""
    blocks: List[ContentBlock] = []
    content = message.content
    if isinstance(content, str):
        if content.strip():
            blocks.append(TextBlock(text=content))
    else:
        for part in content or []:
            if isinstance(part, str):
                if part.strip():
                    blocks.append(TextBlock(text=part))
            elif isinstance(part, dict) and part.get("type") == "text" and part.get("text"):
                blocks.append(TextBlock(text=part["text"]))

    for call in getattr(message, "tool_calls", None) or []:
        blocks.append(ToolUseBlock(name=call["name"], input=dict(call.get("args") or {}), id=call.get("id")))
    return ReasoningResponse(content=tuple(blocks))


class AnthropicReasoningService(ReasoningService):
    """ReasoningService backed by ChatAnthropic with bound tools."""

    def __init__(self, settings: Optional[AgentSettings] = None, llm: Optional[ChatAnthropic] = None):
        settings = settings or AgentSettings.from_env()
        self.settings = settings
        self.llm = llm or ChatAnthropic(
            anthropic_api_key=settings.anthropic_api_key,
            model=settings.model,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            max_retries=settings.max_retries,
            timeout=settings.timeout,
        )

    def respond(
        self,
        system_prompt: str,
        tools: Sequence[Dict[str, Any]],
        messages: Sequence[ConversationTurn],
    ) -> ReasoningResponse:
        model = self.llm.bind_tools(list(tools)) if tools else self.llm
        try:
            ai_message = model.invoke(to_langchain_messages(system_prompt, messages))
        except Exception as e:
            logger.error(f"[Reasoning] Model call failed: {e}")
            raise ExternalServiceError(f"The reasoning service is unavailable: {e}") from e

        response = parse_ai_message(ai_message)
        logger.info(
            f"[Reasoning] Response with {len(response.tool_uses)} tool call(s)"
            + (f": {', '.join(t.name for t in response.tool_uses)}" if response.tool_uses else "")
        )
        return response
