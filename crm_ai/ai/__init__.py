"""
CRM AI Module
=============

Model-facing components of the pipeline:
- Generation clients (OpenAI, Anthropic)
- Layered moderation of inputs and outputs
- Bounded prompt assembly
- Confidence scoring
- Per-feature handlers
"""

from .confidence import ConfidenceScorer
from .features import FEATURE_HANDLERS, FeatureHandler, FeatureRequest, get_handler
from .llm_client import AnthropicClient, LLMClient, LLMResponse, OpenAIClient, get_llm_client
from .moderation import ModerationContext, ModerationFilter
from .prompt_assembler import BoundedPrompt, PromptAssembler, PromptTemplate

__all__ = [
    "ConfidenceScorer",
    "FEATURE_HANDLERS",
    "FeatureHandler",
    "FeatureRequest",
    "get_handler",
    "AnthropicClient",
    "LLMClient",
    "LLMResponse",
    "OpenAIClient",
    "get_llm_client",
    "ModerationContext",
    "ModerationFilter",
    "BoundedPrompt",
    "PromptAssembler",
    "PromptTemplate",
]
