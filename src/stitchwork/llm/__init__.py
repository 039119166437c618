"""LLM provider clients."""

from stitchwork.llm.anthropic import AnthropicClient, LlmClient

__all__ = ["AnthropicClient", "LlmClient"]
