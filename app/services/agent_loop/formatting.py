"""Coerce a free-form final answer into a validated result model."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Type

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from pydantic import BaseModel

from .context_budget import CharacterTokenEstimator, TokenEstimator
from .rate_limit import TokenBucket, wait_for_tokens
from .utils import get_message_text

FORMAT_REQUEST = "Please format the response as valid JSON."


def describe_schema(schema: Type[BaseModel]) -> str:
    """Return the expected field layout of ``schema`` as compact JSON."""
    return json.dumps(schema.model_json_schema().get("properties", {}))


class StructuredOutputCoercer:
    """Ask the model to restate the conversation as a ``schema`` instance.

    A failed parse or validation does not raise. The coercer returns a
    corrective instruction for the conversation instead, so the agent loop
    can try again within its own iteration budget.
    """

    def __init__(
        self,
        llm: BaseChatModel,
        schema: Type[BaseModel],
        *,
        thread_id: str,
        bucket: Optional[TokenBucket] = None,
        estimator: Optional[TokenEstimator] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.schema = schema
        self.thread_id = thread_id
        self.bucket = bucket
        self.estimator = estimator or CharacterTokenEstimator()
        self.logger = logger or logging.getLogger(__name__)
        self._structured_llm = llm.with_structured_output(schema, include_raw=True)

    def corrective_message(self) -> HumanMessage:
        return HumanMessage(
            content=(
                "The response format is invalid. Please provide a valid JSON response "
                f"with the required structure: {describe_schema(self.schema)}"
            )
        )

    def parse(self, response: Dict[str, Any]) -> BaseModel:
        """Validate the structured response, falling back to the raw model text.

        Raises:
            ValueError: when neither the parsed value nor the raw text
                validates against the schema (``json.JSONDecodeError`` and
                pydantic's ``ValidationError`` are both ``ValueError``).
        """
        parsed = response.get("parsed")
        if parsed is None:
            raw = response.get("raw")
            parsed = json.loads(get_message_text(raw))
        return self.schema.model_validate(parsed)

    def coerce(self, messages: List[BaseMessage]) -> Dict[str, Any]:
        """Run one formatting call and return the state update it produces."""
        prompt = [*messages, HumanMessage(content=FORMAT_REQUEST)]
        if self.bucket is not None:
            wait_for_tokens(self.bucket, self.estimator.estimate(prompt), log=self.logger)

        response = self._structured_llm.invoke(
            prompt, config={"configurable": {"thread_id": self.thread_id}}
        )

        try:
            validated = self.parse(response)
        except (ValueError, TypeError) as exc:
            self.logger.warning(f"[{self.thread_id}] Invalid structured response: {exc}")
            return {"messages": [self.corrective_message()]}

        self.logger.info(f"[{self.thread_id}] Structured response accepted: {validated.model_dump_json()}")
        return {
            "result": validated,
            "messages": [AIMessage(content=validated.model_dump_json())],
        }
