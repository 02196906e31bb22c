"""Ticket title/body generation from a conversation.

Uses a structured-output model call to condense the conversation into a
ticket title and, when forking a new conversation, a ticket body.
"""

import logging
from typing import List, Optional

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, Field

from src.manager.state.models import Message


logger = logging.getLogger(__name__)


ISSUE_FIELDS_SYSTEM_PROMPT = """You write GitHub issues from a conversation between a user and a software engineering assistant.

Produce:
- title: a concise issue title (under 80 characters) describing the user's most recent request.
- body: the full request in markdown, including every relevant detail the user provided across the conversation.

Only describe what the user asked for. Do not invent requirements."""


class IssueFields(BaseModel):
    """Generated ticket title and body."""

    title: str = Field(..., min_length=1, description="Concise issue title")
    body: str = Field(..., description="Issue body in markdown")


def _format_conversation(messages: List[Message]) -> str:
    lines = []
    for message in messages:
        lines.append(f"<{message.role.value}>\n{message.content}\n</{message.role.value}>")
    return "\n\n".join(lines)


class IssueFieldsWriter:
    """Generates ticket fields with a structured-output model call.

    Attributes:
        llm_url: URL of the OpenAI-compatible endpoint.
        model_name: Model used for generation.
        api_key: API key for the endpoint.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        llm_url: str,
        model_name: str,
        api_key: str = "not-needed",
        timeout: float = 60.0,
        temperature: float = 0.0,
    ):
        self.llm_url = llm_url
        self.model_name = model_name
        self.api_key = api_key
        self.timeout = timeout
        self.temperature = temperature
        self._llm: Optional[ChatOpenAI] = None

    @property
    def llm(self) -> ChatOpenAI:
        if self._llm is None:
            self._llm = ChatOpenAI(
                base_url=self.llm_url,
                model=self.model_name,
                temperature=self.temperature,
                timeout=self.timeout,
                api_key=self.api_key,
            )
        return self._llm

    async def generate(self, messages: List[Message]) -> IssueFields:
        """Generate ticket fields from the visible conversation."""
        structured = self.llm.with_structured_output(IssueFields)
        fields = await structured.ainvoke(
            [
                SystemMessage(content=ISSUE_FIELDS_SYSTEM_PROMPT),
                HumanMessage(content=_format_conversation(messages)),
            ]
        )
        logger.info(
            "Generated issue fields",
            extra={"title_length": len(fields.title), "body_length": len(fields.body)},
        )
        return fields
