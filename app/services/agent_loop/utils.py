"""Utility functions for the agent loop."""

from __future__ import annotations

import json
from typing import Any, List, Optional, Tuple

from dotenv import load_dotenv
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage
from langchain_openai import ChatOpenAI

from app.core.config import settings


def get_message_text(msg: Any) -> str:
    """Extract the textual part of a message.

    Multi-part content (text and image parts) is reduced to the concatenation
    of its text parts; image parts carry no text.

    Args:
        msg: Message object or raw content

    Returns:
        Text content of the message
    """
    content = msg.content if hasattr(msg, "content") else msg
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict):
                text = part.get("text")
                if text is None and part.get("type") == "text":
                    text = part.get("content")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)
    return str(content)


def last_ai_message(messages: List[BaseMessage]) -> Optional[AIMessage]:
    """Get the most recent assistant message, if any."""
    for msg in reversed(messages):
        if isinstance(msg, AIMessage):
            return msg
    return None


def has_structured_marker(text: str) -> bool:
    """Check whether a response looks like an attempted structured answer."""
    return "{" in text or "```" in text


def stringify_tool_result(result: Any) -> str:
    """Render a tool return value as message content."""
    if isinstance(result, str):
        return result
    if isinstance(result, BaseMessage):
        return get_message_text(result)
    return json.dumps(result, default=str, ensure_ascii=False)


def truncate(text: str, limit: int = 100) -> str:
    return text if len(text) <= limit else text[:limit]


def create_llm(temperature: float = 0.7, max_retries: int = 3, model: str = None) -> ChatOpenAI:
    """Create a ChatOpenAI instance with shared configuration.

    The endpoint is any OpenAI-compatible server configured through
    ``OPENAI_API_URL``.

    Args:
        temperature: Temperature for the LLM (default: 0.7)
        max_retries: Provider-level retry count for failed requests
        model: Model name to use (default: ``settings.model_name``)

    Returns:
        Configured ChatOpenAI instance
    """
    load_dotenv()
    return ChatOpenAI(
        model=model or settings.model_name,
        api_key=settings.openai_api_key,
        base_url=settings.openai_api_url,
        temperature=temperature,
        max_retries=max_retries,
    )


def resolve_models(
    llm: Optional[BaseChatModel],
    format_llm: Optional[BaseChatModel],
    temperature: float = 0.7,
    max_retries: int = 4,
) -> Tuple[BaseChatModel, BaseChatModel]:
    """Return the agent model and the formatting model.

    Injected models are used as given. When no agent model is injected both
    are created from settings, the formatting model with temperature 0.
    """
    if llm is None:
        llm = create_llm(temperature=temperature, max_retries=max_retries)
        format_llm = format_llm or create_llm(temperature=0, max_retries=3)
    return llm, format_llm or llm
