"""
LLM Gateway — Single Entry Point for Answer Generation

  QueryEngine ──► LLMClient.generate(question, context)
                        │
                        ▼
                  LLMGateway.build_messages()   [SystemMessage(context), HumanMessage(question)]
                        │
                        ▼
                  ChatOpenAI.ainvoke()           (SDK retries disabled)
                        │
                        ▼
                  GatewayResponse / plain text

Timeouts and retries belong to the caller (core.retry.call_with_retry): the
gateway makes exactly one provider call per generate().

Usage::

    gateway = LLMGateway.from_settings(get_settings())
    text    = await gateway.generate(question, context)
"""

from __future__ import annotations

import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Final

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from pdfqa.core.config import Settings

logger = logging.getLogger(__name__)


SYSTEM_TEMPLATE: Final[str] = """\
You are an assistant that answers questions about a single PDF document.
You answer ONLY using the provided context, which consists of numbered chunks of that document.
If the answer is not in the context, say "I don't have enough information to answer that."
Do not fabricate information. When you use a chunk, mention its number, e.g. [chunk 3].

Context:
{context}
"""


# ---------------------------------------------------------------------------
# Token usage estimation (approximate: real count from API response)
# ---------------------------------------------------------------------------

def _estimate_tokens(messages: list[BaseMessage]) -> int:
    """Rough token count: 4 chars ≈ 1 token (OpenAI heuristic)."""
    total_chars = sum(len(m.content) for m in messages if isinstance(m.content, str))
    return max(1, total_chars // 4)


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class LLMClient(ABC):
    """generate(question, context) → answer text."""

    model_id: str = "unknown"

    @abstractmethod
    async def generate(self, question: str, context: str) -> str:
        ...


# ---------------------------------------------------------------------------
# LLMGateway
# ---------------------------------------------------------------------------

class LLMGateway(LLMClient):
    """
    OpenAI chat model behind the LLMClient interface.

    Instantiate once per process; safe for concurrent use.
    """

    def __init__(self, llm: ChatOpenAI, *, model_id: str) -> None:
        self._llm     = llm
        self.model_id = model_id

    @classmethod
    def from_settings(cls, settings: Settings) -> "LLMGateway":
        llm = ChatOpenAI(
            model=settings.llm_model,
            api_key=settings.openai_api_key,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            max_retries=0,
        )
        return cls(llm, model_id=settings.llm_model)

    async def generate(self, question: str, context: str) -> str:
        response = await self.invoke(self.build_messages(context, question))
        return response.content

    async def invoke(self, messages: list[BaseMessage]) -> "GatewayResponse":
        t0      = time.perf_counter()
        result  = await self._llm.ainvoke(messages)
        latency = (time.perf_counter() - t0) * 1000

        content = result.content if isinstance(result.content, str) else str(result.content)
        response = GatewayResponse(
            content       = content,
            model_used    = self.model_id,
            input_tokens  = _estimate_tokens(messages),
            output_tokens = max(1, len(content) // 4),
            latency_ms    = latency,
            request_id    = str(uuid.uuid4()),
        )

        logger.info(
            "LLMGateway | model=%s tokens_in=%d tokens_out=%d latency_ms=%.1f",
            response.model_used, response.input_tokens,
            response.output_tokens, response.latency_ms,
        )
        return response

    # -----------------------------------------------------------------------
    # Convenience: build message list
    # -----------------------------------------------------------------------

    @staticmethod
    def build_messages(context: str, user_question: str) -> list[BaseMessage]:
        """
        Build a standard [SystemMessage, HumanMessage] list.

        Args:
            context:       Numbered chunk blocks assembled by the query engine.
            user_question: The user's raw question.
        """
        return [
            SystemMessage(content=SYSTEM_TEMPLATE.format(context=context)),
            HumanMessage(content=user_question),
        ]


# ---------------------------------------------------------------------------
# Response dataclass
# ---------------------------------------------------------------------------

@dataclass
class GatewayResponse:
    """The result of a single LLM gateway call."""
    content:       str
    model_used:    str
    input_tokens:  int
    output_tokens: int
    latency_ms:    float
    request_id:    str
