"""
Tests for the prompt assembler.

Usage:
    pytest tests/test_prompt_assembler.py -v
"""

from crm_ai.ai.features import DealCoachHandler
from crm_ai.ai.prompt_assembler import PromptAssembler, PromptTemplate
from crm_ai.config import PromptConfig
from crm_ai.models import RagContextItem

TEMPLATE = PromptTemplate(
    name="test",
    system="You are a test assistant.",
    header="Analyze this deal:",
    fields=(
        ("company", "Company"),
        ("stage", "Stage"),
        ("activity", "Recent Activity"),
    ),
    context_heading="Similar deals:",
    instruction="Give one suggestion.",
    max_tokens=123,
    temperature=0.3,
)


def item(source_id, summary, similarity=0.9):
    return RagContextItem(source_id=source_id, similarity_score=similarity, summary=summary)


class TestPromptAssembler:

    def setup_method(self):
        self.assembler = PromptAssembler(PromptConfig(max_context_chars=1500, max_prompt_chars=6000))

    def test_fields_rendered_in_template_order(self):
        prompt = self.assembler.build(
            {"stage": "proposal", "company": "Acme", "activity": ["call: pricing"]}, [], TEMPLATE,
        )

        lines = prompt.user.split("\n")
        assert lines[0] == "Analyze this deal:"
        assert lines[2] == "- Company: Acme"
        assert lines[3] == "- Stage: proposal"
        assert lines[4] == "Recent Activity:"
        assert lines[5] == "- call: pricing"
        assert prompt.user.endswith("\n\nGive one suggestion.")

    def test_missing_values_render_as_unknown(self):
        prompt = self.assembler.build({"company": None, "stage": "", "activity": []}, [], TEMPLATE)

        assert "- Company: Unknown" in prompt.user
        assert "- Stage: Unknown" in prompt.user
        assert "Recent Activity:\n- None" in prompt.user

    def test_template_settings_carried_over(self):
        prompt = self.assembler.build({}, [], TEMPLATE)

        assert prompt.system == "You are a test assistant."
        assert prompt.max_tokens == 123
        assert prompt.temperature == 0.3

    def test_context_section(self):
        prompt = self.assembler.build(
            {"company": "Acme"},
            [item("d1", "SaaS deal worth $45,000", 0.91), item("d2", "SaaS deal worth $60,000", 0.72)],
            TEMPLATE,
        )

        assert "Similar deals:\n- SaaS deal worth $45,000 (similarity 0.91)\n- SaaS deal worth $60,000 (similarity 0.72)" in prompt.user
        assert prompt.context_items_used == 2

    def test_no_context_section_without_items(self):
        prompt = self.assembler.build({"company": "Acme"}, [], TEMPLATE)

        assert "Similar deals:" not in prompt.user
        assert prompt.context_items_used == 0

    def test_context_budget_drops_trailing_items(self):
        assembler = PromptAssembler(PromptConfig(max_context_chars=80, max_prompt_chars=6000))
        items = [item(f"d{i}", f"context item number {i} " + "x" * 20) for i in range(5)]

        prompt = assembler.build({}, items, TEMPLATE)

        assert prompt.context_items_used == 1
        assert "context item number 0" in prompt.user
        assert "context item number 1" not in prompt.user

    def test_prompt_capped_and_instruction_kept(self):
        assembler = PromptAssembler(PromptConfig(max_context_chars=1500, max_prompt_chars=200))
        items = [item(f"d{i}", "long summary " * 5) for i in range(10)]

        prompt = assembler.build({"company": "Acme", "stage": "proposal"}, items, TEMPLATE)

        assert len(prompt.user) <= 200
        assert prompt.user.endswith("Give one suggestion.")
        assert prompt.user.startswith("Analyze this deal:")

    def test_long_field_values_clipped(self):
        prompt = self.assembler.build({"company": "A" * 1000}, [], TEMPLATE)

        company_line = next(line for line in prompt.user.split("\n") if line.startswith("- Company:"))
        assert company_line.endswith("...")
        assert len(company_line) <= len("- Company: ") + 300

    def test_deterministic(self):
        entity = {"company": "Acme", "stage": "proposal", "activity": ["call", "email"]}
        items = [item("d1", "SaaS deal")]

        assert self.assembler.build(entity, items, TEMPLATE) == self.assembler.build(entity, items, TEMPLATE)

    def test_feature_template_renders(self):
        template = DealCoachHandler.template
        prompt = self.assembler.build({"company": "Acme Cloud", "industry": "SaaS"}, [], template)

        assert "- Company: Acme Cloud" in prompt.user
        assert "- Industry: SaaS" in prompt.user
        assert prompt.max_tokens == 400
