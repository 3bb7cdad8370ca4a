"""
Moderation Filter - Safe In, Safe Out
=====================================

Validates user input and generated output against the disallowed-content
policy. Layers run in order and short-circuit on the first block:

0. Basic validation: empty text, markup / script injection
1. Local policy: threats, heavy profanity, credential phishing, sexual
   content, spam markers. Each match carries a severity tier.
2. Business context: personal attacks, off-topic text for the feature
3. Remote moderation: OpenAI moderation endpoint, mapped to the same verdict

Philosophy: ordinary negative business language must pass.
"This is disappointing", "waste of time" and "too expensive for our budget"
are objections, not abuse. False positives on legitimate objections are bugs.

Usage:
    from crm_ai.ai.moderation import ModerationFilter, ModerationContext

    verdict = await moderation.check(text, ModerationContext(Feature.OBJECTION_HANDLER))
    if not verdict.is_allowed:
        ...
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Tuple

from ..models import Feature, ModerationVerdict, Severity
from ..upstream import call_with_timeout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModerationContext:
    """Where the text comes from."""
    feature: Feature
    direction: str = "input"  # input | output


# =============================================================================
# LOCAL POLICY PATTERNS
# =============================================================================

_TARGETS = (
    r"(?:you|u|ya|everyone|everybody|all of you|your\s+(?:team|company|staff|people|family|boss|office|ceo)"
    r"|the\s+(?:team|staff|ceo|rep))"
)

_CREDENTIALS = (
    r"(?:password|passcode|ssn|social security(?: number)?|credit card(?: number)?|card number|cvv|"
    r"pin(?: number| code)?|login credentials|bank account(?: number)?|routing number)"
)

# Threats need a stated intent from the writer
_INTENT = (
    r"(?:i(?:'ll|'m going to|'m gonna| will| want to| wanna| am going to| am gonna| would love to)"
    r"|we(?:'ll| will|'re going to| are going to)|some(?:one|body) (?:should|needs to|ought to))"
)

# "shoot you an email" / "shoot the team a recap" are business idioms
_VIOLENT_VERBS = (
    r"(?:kill|murder|stab|strangle|beat up|slaughter|hurt|shoot(?!\s+(?:\w+\s+){0,2}?(?:a|an|over|back)\b))"
)

# (category, severity, pattern)
LOCAL_POLICY: List[Tuple[str, Severity, re.Pattern]] = [
    # Explicit threats against people
    ("threat", Severity.CRITICAL, re.compile(
        r"\b" + _INTENT + r"\s+(?:\w+\s+){0,2}?" + _VIOLENT_VERBS + r"\s+(?:\w+\s+){0,2}?" + _TARGETS + r"\b",
        re.IGNORECASE,
    )),
    ("threat", Severity.CRITICAL, re.compile(
        r"\b(?:i know where you live|watch your back|you(?:'re| are) (?:going to|gonna) die)\b",
        re.IGNORECASE,
    )),
    ("violence", Severity.CRITICAL, re.compile(
        r"\b(?:bomb|shoot up|blow up|mass shooting|gun down|terrorist attack)\b",
        re.IGNORECASE,
    )),
    # Heavy profanity (mild words like "damn" or "crap" are handled below)
    ("profanity", Severity.HIGH, re.compile(
        r"\b(?:fuck\w*|motherfuck\w*|shit(?:ty|head)?|bullshit|bitch\w*|asshole\w*|bastard\w*|cunt\w*|dickhead\w*)\b",
        re.IGNORECASE,
    )),
    # Credential / personal data phishing: a request aimed at the reader's own secrets
    ("phishing", Severity.HIGH, re.compile(
        r"\b(?:(?:send|give|tell|email|text|dm|provide|read|share with)\s+(?:me|us)\b(?:\W+\w+){0,3}?\W+"
        r"|(?:verify|confirm|enter|type in)\s+)"
        r"(?:your|ur)\s+(?:\w+\s+)?" + _CREDENTIALS + r"\b(?!\s+(?:policy|policies|rules?|requirements?|reset|manager))",
        re.IGNORECASE,
    )),
    # Sexual content
    ("sexual", Severity.HIGH, re.compile(
        r"\b(?:porn\w*|xxx|nude\w*|naked|sexting|sexual favou?rs?)\b",
        re.IGNORECASE,
    )),
    # Mild profanity: recorded, not blocked
    ("mild_profanity", Severity.LOW, re.compile(
        r"\b(?:damn|hell|crap|sucks)\b",
        re.IGNORECASE,
    )),
]

MALICIOUS_MARKUP = [
    re.compile(r"<script\b", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"\bon\w+\s*=\s*['\"]", re.IGNORECASE),
    re.compile(r"data:text/html", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
]

URGENCY_PHRASES = re.compile(
    r"\b(?:act now|buy now|click here|limited time offer|call immediately|free money|make money fast|"
    r"get rich|work from home|100% free|risk[- ]free|winner|congratulations you)\b",
    re.IGNORECASE,
)
URL_PATTERN = re.compile(r"(?:https?://|www\.)\S+", re.IGNORECASE)
EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
REPEATED_PUNCTUATION = re.compile(r"[!?]{3,}")
REPEATED_CHARS = re.compile(r"(.)\1{5,}")

# Personal attacks are unprofessional for every feature
PERSONAL_ATTACKS = [
    re.compile(
        r"\b(?:you are|you're|ur|your company is|your team is|your product is)\s+(?:a\s+)?"
        r"(?:stupid|dumb|idiots?|morons?|pathetic|scum|clowns?|liars?|useless|worthless)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(?:i hate|i despise|i can't stand|i cannot stand)\s+(?:you|your|everyone at)\b",
        re.IGNORECASE,
    ),
]

# Vocabulary of legitimate sales conversations
BUSINESS_TERMS = re.compile(
    r"\b(?:price|pricing|cost|costs|budget|expensive|cheap|afford|money|roi|invoice|discount|contract|"
    r"timing|time|schedule|deadline|quarter|year|month|next|later|"
    r"decision|approve|approval|boss|manager|team|board|stakeholders?|procurement|legal|"
    r"need|require|requirements|priority|priorities|"
    r"trust|reliab\w*|references?|reputation|risk|"
    r"competitor\w*|alternative\w*|vendor\w*|supplier\w*|options?|"
    r"features?|functionality|product|solution|service|platform|software|tool|demo|trial|"
    r"support|training|onboarding|implementation|integrat\w*|migration|"
    r"security|privacy|compliance|data|contract|renewal|license\w*|"
    r"company|business|customers?|clients?|deal|proposal|meeting|follow[- ]up|call|email|sales)\b",
    re.IGNORECASE,
)
OFF_TOPIC_MIN_CHARS = 50


# =============================================================================
# REMOTE CATEGORY MAPPING
# =============================================================================

CRITICAL_REMOTE_CATEGORIES = {
    "violence", "violence/graphic", "harassment/threatening", "hate/threatening",
    "self-harm", "self-harm/intent", "self-harm/instructions", "sexual/minors",
    "illicit/violent",
}


def _remote_category_name(category: str) -> str:
    """Normalize OpenAI category keys (python SDK uses underscores)."""
    return category.replace("_", "/").replace("self/harm", "self-harm")


class ModerationFilter:
    """
    Moderation filter applied to both user input and generated output.

    Args:
        openai_client: Optional AsyncOpenAI client for the remote layer
        model: OpenAI moderation model
        timeout: Remote call timeout in seconds
        max_retries: Automatic retries after a timeout (0 or 1)
        block_severity: Local verdicts at or above this severity are blocked
        remote_enabled: Disable the remote layer (local-only mode)
    """

    def __init__(
        self,
        openai_client=None,
        model: str = "omni-moderation-latest",
        timeout: float = 5.0,
        max_retries: int = 1,
        block_severity: Severity = Severity.MEDIUM,
        remote_enabled: bool = True,
        max_input_chars: int = 2000,
    ):
        self._client = openai_client
        self.model = model
        self.timeout = timeout
        self.max_retries = max_retries
        self.block_severity = Severity(block_severity)
        self.remote_enabled = remote_enabled and openai_client is not None
        self.max_input_chars = max_input_chars

        if remote_enabled and openai_client is None:
            logger.warning("No OpenAI client configured - remote moderation disabled")

    async def check(self, text: str, context: ModerationContext) -> ModerationVerdict:
        """
        Run all moderation layers on a text.

        Returns:
            ModerationVerdict (is_allowed False on the first blocking layer)

        Raises:
            UpstreamServiceError: remote moderation unavailable or timed out
        """
        verdict = self.basic_validation(text, context)
        if not verdict.is_allowed:
            return self._log_block(verdict, context)

        local = self.check_local_policy(text)
        if not local.is_allowed:
            return self._log_block(local, context)

        business = self.validate_business_context(text, context)
        if not business.is_allowed:
            return self._log_block(business, context)

        if self.remote_enabled:
            remote = await self.check_remote(text)
            if not remote.is_allowed:
                return self._log_block(remote, context)

        return local

    def basic_validation(self, text: str, context: ModerationContext) -> ModerationVerdict:
        """Reject empty text and markup injection."""
        if not text or not text.strip():
            return ModerationVerdict(
                is_allowed=False,
                reason_code="empty_content",
                severity=Severity.MEDIUM,
                matched_categories=("empty",),
                layer="basic",
            )

        if context.direction == "input" and len(text) > self.max_input_chars:
            return ModerationVerdict(
                is_allowed=False,
                reason_code="content_too_long",
                severity=Severity.MEDIUM,
                matched_categories=("length",),
                layer="basic",
            )

        for pattern in MALICIOUS_MARKUP:
            if pattern.search(text):
                return ModerationVerdict(
                    is_allowed=False,
                    reason_code="malicious_markup",
                    severity=Severity.HIGH,
                    matched_categories=("malicious_markup",),
                    layer="basic",
                )

        return ModerationVerdict.allowed(layer="basic")

    def check_local_policy(self, text: str) -> ModerationVerdict:
        """Pattern matching for abuse, phishing and spam."""
        categories: List[str] = []
        severity = Severity.NONE

        for category, tier, pattern in LOCAL_POLICY:
            if pattern.search(text):
                if category not in categories:
                    categories.append(category)
                if tier > severity:
                    severity = tier

        spam_indicators = self.spam_indicators(text)
        if spam_indicators:
            categories.append("spam")
            # Multiple indicators = likely spam
            spam_tier = Severity.MEDIUM if len(spam_indicators) >= 2 else Severity.LOW
            if spam_tier > severity:
                severity = spam_tier

        if severity >= self.block_severity:
            return ModerationVerdict(
                is_allowed=False,
                reason_code="inappropriate_content" if categories != ["spam"] else "spam_content",
                severity=severity,
                matched_categories=tuple(categories),
                layer="local",
            )

        return ModerationVerdict.allowed(severity=severity, categories=categories, layer="local")

    @staticmethod
    def spam_indicators(text: str) -> List[str]:
        """List spam markers present in the text."""
        indicators = []

        letters = [c for c in text if c.isalpha()]
        if len(letters) > 20:
            upper_ratio = sum(1 for c in letters if c.isupper()) / len(letters)
            if upper_ratio > 0.8:
                indicators.append("excessive_capitalization")

        if URGENCY_PHRASES.search(text):
            indicators.append("urgency_phrasing")
        if URL_PATTERN.search(text):
            indicators.append("promotional_link")
        if EMAIL_PATTERN.search(text):
            indicators.append("email_address")
        if REPEATED_PUNCTUATION.search(text):
            indicators.append("excessive_punctuation")
        if REPEATED_CHARS.search(text):
            indicators.append("repeated_characters")

        return indicators

    def validate_business_context(self, text: str, context: ModerationContext) -> ModerationVerdict:
        """Reject personal attacks and, for objections, non-business chatter."""
        for pattern in PERSONAL_ATTACKS:
            if pattern.search(text):
                return ModerationVerdict(
                    is_allowed=False,
                    reason_code="business_context",
                    severity=Severity.MEDIUM,
                    matched_categories=("personal_attack",),
                    layer="business",
                )

        if (
            context.feature == Feature.OBJECTION_HANDLER
            and context.direction == "input"
            and len(text) > OFF_TOPIC_MIN_CHARS
            and not BUSINESS_TERMS.search(text)
        ):
            return ModerationVerdict(
                is_allowed=False,
                reason_code="off_topic",
                severity=Severity.MEDIUM,
                matched_categories=("off_topic",),
                layer="business",
            )

        return ModerationVerdict.allowed(layer="business")

    async def check_remote(self, text: str) -> ModerationVerdict:
        """Delegate to the OpenAI moderation endpoint."""
        response = await call_with_timeout(
            "moderation",
            lambda: self._client.moderations.create(model=self.model, input=text),
            timeout=self.timeout,
            max_retries=self.max_retries,
        )

        result = response.results[0]
        if not result.flagged:
            return ModerationVerdict.allowed(layer="remote")

        categories = result.categories.model_dump() if hasattr(result.categories, "model_dump") else dict(result.categories)
        flagged = sorted(_remote_category_name(name) for name, hit in categories.items() if hit)
        severity = (
            Severity.CRITICAL
            if any(c in CRITICAL_REMOTE_CATEGORIES for c in flagged)
            else Severity.HIGH
        )
        return ModerationVerdict(
            is_allowed=False,
            reason_code="ai_moderation",
            severity=severity,
            matched_categories=tuple(flagged),
            layer="remote",
        )

    def _log_block(self, verdict: ModerationVerdict, context: ModerationContext) -> ModerationVerdict:
        logger.info(
            f"Content blocked ({context.direction}, {context.feature.value}): "
            f"{verdict.reason_code} [{', '.join(verdict.matched_categories)}]",
            extra={"feature": context.feature.value, "severity": verdict.severity.value},
        )
        return verdict
