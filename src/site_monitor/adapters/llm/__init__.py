"""Scoring oracle adapters."""

from site_monitor.adapters.llm.openai_oracle import OpenAICompatibleOracle

__all__ = ["OpenAICompatibleOracle"]
