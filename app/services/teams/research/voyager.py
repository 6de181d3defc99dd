"""Research voyager: answers a question by browsing the web one action at a time.

Each step sends a fresh observation (question, previous actions and a labeled
screenshot) instead of the growing conversation. Only the first tool call of
a turn is executed; the model finishes by replying ``ANSWER; <answer>``.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Union

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
from pydantic import BaseModel, Field

from app.core.config import settings
from app.services.agent_loop.agent import AgentLoop
from app.services.agent_loop.dispatcher import DispatchPolicy
from app.services.agent_loop.errors import AgentLoopError
from app.services.agent_loop.rate_limit import TokenBucket, get_token_bucket
from app.services.agent_loop.state import ExhaustedResult, VoyagerState, is_exhausted
from app.services.agent_loop.utils import get_message_text, last_ai_message, resolve_models
from app.services.tools.browser import BrowserSession, browser_tools

SYSTEM_PROMPT = """Imagine you are a robot browsing the web, just like humans. Now you need to complete a task. In each iteration, you will receive an Observation that includes a screenshot of a webpage and some texts. This screenshot will feature Numerical Labels placed in the TOP LEFT corner of each Web Element. Carefully analyze the visual information to identify the Numerical Label corresponding to the Web Element that requires interaction, then follow the guidelines and choose one of the following actions:

1. Click a Web Element.
2. Delete existing content in a textbox and then type content.
3. Scroll up or down.
4. Wait
5. Go back
6. Return to google to start over.
7. Respond with the final answer

When you respond with the final answer you must use STRICTLY the following format:
- ANSWER; [content]

Key Guidelines You MUST follow:

*Action guidelines*
1) Execute ONLY one action.
2) When clicking or typing, ensure to select the correct bounding box.
3) Numeric labels lie in the top-left corner of their corresponding bounding boxes and are colored the same.
4) Only perform the relevant action via calling a tool.
5) Use the 'to_google' tool to make another search.

*Web Browsing Guidelines*
1) Don't interact with useless web elements like Login, Sign-in, donation, feedback that appear in Webpages
2) Select strategically to minimize time wasted.
3) If an 'Are you a robot?' CAPTCHA appears, you must wait for a human to complete it for you. Wait 15 seconds in this event.
4) Always reject cookies if given the option.

ALWAYS make only 1 tool call UNLESS you are outputting an answer.

Your reply should strictly follow the format:

Thought: {Your brief thoughts (briefly summarize the info that will help ANSWER)}
Action: {One Action format you choose}

Then the User will provide:
Observation: {A labeled screenshot Given by User}"""

THOUGHT_MARKER = "Thought:"
ANSWER_MARKER = "ANSWER;"


class VoyagerAnswer(BaseModel):
    answer: str = Field(description="The answer to the given question.")


def _answer_text(result: Any) -> Union[str, ExhaustedResult]:
    return result if is_exhausted(result) else result.answer


def parse_thought(text: str) -> Optional[str]:
    if THOUGHT_MARKER not in text:
        return None
    return text.split(THOUGHT_MARKER, 1)[1].strip().split("\n")[0]


def parse_answer(text: str) -> Optional[str]:
    if ANSWER_MARKER not in text:
        return None
    return text.split(ANSWER_MARKER, 1)[1].strip()


def format_scratchpad(scratchpad: List[str]) -> str:
    lines = ["Your previous actions:"]
    lines.extend(f"{i}. {entry}" for i, entry in enumerate(scratchpad, 1))
    return "\n".join(lines) + "\n"


class VoyagerLoop(AgentLoop):
    """Agent loop whose prompt is rebuilt from the live browser page each step."""

    state_schema = VoyagerState

    def __init__(self, session: BrowserSession, **kwargs: Any) -> None:
        self.session = session
        super().__init__(**kwargs)

    def build_prompt(self, state: Dict[str, Any]) -> List[BaseMessage]:
        self.session.wait_for_idle()
        marked = self.session.get_marked_page()

        scratchpad_text = format_scratchpad(state.get("scratchpad") or [])
        self.logger.info(
            f"[{self.thread_id}] Scratchpad for iteration {state.get('iterations', 0)}:\n{scratchpad_text}"
        )

        messages: List[BaseMessage] = [
            SystemMessage(content=self.system_prompt),
            HumanMessage(content=f"Here is the question you need to answer: {state.get('question', '')}"),
            HumanMessage(content=scratchpad_text),
            HumanMessage(
                content=[
                    {"type": "text", "text": "Observation:"},
                    {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{marked.screenshot_b64}"}},
                ]
            ),
        ]
        self.logger.info(
            f"[{self.thread_id}] Invoking agent with {len(messages)} messages and estimated "
            f"{self.budgeter.estimator.estimate(messages)} tokens"
        )
        return messages

    def build_format_prompt(self, state: Dict[str, Any]) -> List[BaseMessage]:
        """Question, previous actions and the latest reply as plain text.

        The stored conversation holds neither the question nor the
        observations, so it is not replayed here.
        """
        messages: List[BaseMessage] = [
            SystemMessage(content=self.system_prompt),
            HumanMessage(content=f"Here is the question you need to answer: {state.get('question', '')}"),
            HumanMessage(content=format_scratchpad(state.get("scratchpad") or [])),
        ]
        last = last_ai_message(state.get("messages", []))
        if last is not None:
            messages.append(AIMessage(content=get_message_text(last)))
        return messages

    def read_direct_result(self, state: Dict[str, Any], response: AIMessage) -> Dict[str, Any]:
        text = get_message_text(response)
        update: Dict[str, Any] = {"thought": parse_thought(text)}
        answer = parse_answer(text)
        if answer is not None:
            update["result"] = VoyagerAnswer(answer=answer)
        return update

    def absorb_tool_results(self, state: Dict[str, Any], tool_messages: List[ToolMessage]) -> Dict[str, Any]:
        thought = state.get("thought")
        entries = [f"{get_message_text(message)} - {thought}" for message in tool_messages]
        return {
            "scratchpad": [*(state.get("scratchpad") or []), *entries],
            "messages": tool_messages,
        }


class ResearchVoyager:
    """Browser-driving research agent.

    :meth:`init` launches the browser (unless a session was injected) and
    builds the loop; :meth:`dispose` closes a browser it launched.
    """

    def __init__(
        self,
        llm: Optional[BaseChatModel] = None,
        format_llm: Optional[BaseChatModel] = None,
        bucket: Optional[TokenBucket] = None,
        session: Optional[BrowserSession] = None,
        max_iterations: int = settings.agent_max_iterations,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.thread_id = f"research-voyager-{int(time.time() * 1000)}"
        self.llm, self.format_llm = resolve_models(llm, format_llm, temperature=0, max_retries=3)
        self.bucket = bucket or get_token_bucket()
        self.max_iterations = max_iterations
        self.session = session
        self._owns_session = session is None
        self.loop: Optional[VoyagerLoop] = None

    def init(self) -> "ResearchVoyager":
        if self.session is None:
            self.session = BrowserSession.launch()
        self.loop = VoyagerLoop(
            self.session,
            name="research-voyager",
            thread_id=self.thread_id,
            llm=self.llm,
            format_llm=self.format_llm,
            system_prompt=SYSTEM_PROMPT,
            result_schema=VoyagerAnswer,
            tools=browser_tools(self.session),
            dispatch_policy=DispatchPolicy.FIRST_ONLY,
            extract=_answer_text,
            bucket=self.bucket,
            max_iterations=self.max_iterations,
            logger=self.logger,
        )
        return self

    def dispose(self) -> None:
        if self._owns_session and self.session is not None:
            self.session.close()
            self.session = None

    def __enter__(self) -> "ResearchVoyager":
        return self.init()

    def __exit__(self, *exc_info) -> None:
        self.dispose()

    def invoke(self, question: str) -> Union[str, ExhaustedResult]:
        """Answer ``question`` by browsing.

        Returns:
            The answer, or ``BUDGET_EXHAUSTED`` if the iteration budget ran out.
        """
        if self.loop is None:
            raise AgentLoopError("ResearchVoyager.init() must be called before invoke()")
        return self.loop.complete([], question=question, scratchpad=[], thought=None)
