"""
LLM Package

Provides the answer-generation interface used by the query engine:
  - LLMClient   abstract generate(question, context) → text
  - LLMGateway  OpenAI chat model via langchain-openai

Public API::

    from pdfqa.llm import LLMGateway

    gateway = LLMGateway.from_settings(get_settings())
    answer  = await gateway.generate(question, context)
"""

from pdfqa.llm.gateway import GatewayResponse, LLMClient, LLMGateway

__all__ = [
    "GatewayResponse",
    "LLMClient",
    "LLMGateway",
]
