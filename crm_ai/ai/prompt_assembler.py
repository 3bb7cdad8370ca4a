"""
Prompt Assembler
================

Builds a bounded prompt from an entity snapshot, retrieved context and a
feature template.

- Entity fields are rendered in template order
- Retrieved context summaries are appended until max_context_chars is used
- The user prompt is capped at max_prompt_chars (the closing instruction is
  always kept)
- Deterministic: identical inputs produce an identical prompt

Prompt wording lives in the feature templates, not here.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..config import PromptConfig
from ..models import RagContextItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PromptTemplate:
    """Prompt data for one feature."""
    name: str
    system: str
    header: str
    fields: Tuple[Tuple[str, str], ...]  # (entity key, label)
    context_heading: str
    instruction: str
    max_tokens: int
    temperature: float = 0.7
    empty_value: str = "Unknown"


@dataclass(frozen=True)
class BoundedPrompt:
    """A prompt ready for the generation provider."""
    system: str
    user: str
    max_tokens: int
    temperature: float
    context_items_used: int = 0


class PromptAssembler:
    """Renders PromptTemplates within the configured size bounds."""

    def __init__(self, config: Optional[PromptConfig] = None):
        self.config = config or PromptConfig()

    def build(
        self,
        entity: Dict[str, Any],
        rag_context: Sequence[RagContextItem],
        template: PromptTemplate,
    ) -> BoundedPrompt:
        """
        Assemble the prompt.

        Args:
            entity: Entity fields keyed as in template.fields
            rag_context: Retrieved items, most similar first
            template: Feature template

        Returns:
            BoundedPrompt with max_tokens and temperature from the template
        """
        sections = [template.header, ""]
        sections.extend(self._render_fields(entity, template))

        context_lines = self._render_context(rag_context)
        if context_lines:
            sections.extend(["", template.context_heading])
            sections.extend(context_lines)

        body = "\n".join(sections).rstrip()
        user = self._cap(body, template.instruction)

        return BoundedPrompt(
            system=template.system,
            user=user,
            max_tokens=template.max_tokens,
            temperature=template.temperature,
            context_items_used=len(context_lines),
        )

    def _render_fields(self, entity: Dict[str, Any], template: PromptTemplate) -> List[str]:
        lines = []
        for key, label in template.fields:
            value = entity.get(key)
            if isinstance(value, (list, tuple)):
                lines.append(f"{label}:")
                if value:
                    lines.extend(f"- {self._clip(item)}" for item in value)
                else:
                    lines.append("- None")
            else:
                rendered = self._clip(value) if value not in (None, "") else template.empty_value
                lines.append(f"- {label}: {rendered}")
        return lines

    def _render_context(self, rag_context: Sequence[RagContextItem]) -> List[str]:
        lines = []
        used = 0
        for item in rag_context:
            line = f"- {item.summary} (similarity {item.similarity_score:.2f})"
            if used + len(line) + 1 > self.config.max_context_chars:
                break
            lines.append(line)
            used += len(line) + 1
        return lines

    def _cap(self, body: str, instruction: str) -> str:
        limit = self.config.max_prompt_chars
        separator = "\n\n"
        if len(body) + len(separator) + len(instruction) > limit:
            keep = max(0, limit - len(separator) - len(instruction))
            logger.debug(f"Prompt truncated from {len(body)} to {keep} chars")
            body = body[:keep].rstrip()
        return f"{body}{separator}{instruction}"

    def _clip(self, value: Any) -> str:
        text = " ".join(str(value).split())
        limit = self.config.max_field_chars
        if len(text) > limit:
            return text[: limit - 3].rstrip() + "..."
        return text
