"""
Intent Classifier
=================

Decides what a chat request is for, so it can be sent to the provider
that handles that kind of request best.

Intents:
- knowledge_query: enterprise knowledge search
- code_task: code generation and debugging
- data_analysis: data and math tasks (also image analysis)
- action_request: actions on external systems
- general_chat: everything else

Rule-based pass:
    Each intent has a group of regex patterns, matched against the latest
    user message.

    score      = min(matches / max(len(group) * 0.2, 1), 1)
    confidence = min(0.5 + (top - second) + top * 0.3, 0.95)

    No match at all gives general_chat at 0.5; an empty message gives
    general_chat at 1.0.

Hybrid mode:
    IntentClassifier hands results below the confidence threshold to a
    secondary model-based classifier, and keeps its answer only when it is
    a valid intent with a higher confidence.
"""

import json
import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable

from taskpilot.utils.logger import Logger

logger = Logger("Classifier")


class Intent(str, Enum):
    KNOWLEDGE_QUERY = "knowledge_query"
    CODE_TASK = "code_task"
    DATA_ANALYSIS = "data_analysis"
    ACTION_REQUEST = "action_request"
    GENERAL_CHAT = "general_chat"


class Provider(str, Enum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GLEAN = "glean"
    DUST = "dust"
    ONDOBOT = "ondobot"


DEFAULT_MODEL_FOR_PROVIDER: dict[Provider, str] = {
    Provider.GLEAN: "glean-default",
    Provider.ANTHROPIC: "claude-sonnet-4-20250514",
    Provider.OPENAI: "gpt-4o",
    Provider.DUST: "dust-default",
    Provider.ONDOBOT: "ondobot-default",
}

PROVIDER_FOR_INTENT: dict[Intent, Provider] = {
    Intent.KNOWLEDGE_QUERY: Provider.GLEAN,
    Intent.CODE_TASK: Provider.ANTHROPIC,
    Intent.DATA_ANALYSIS: Provider.OPENAI,
    Intent.ACTION_REQUEST: Provider.GLEAN,
    Intent.GENERAL_CHAT: Provider.ANTHROPIC,
}

# Providers that cannot take image input
TEXT_ONLY_PROVIDERS = frozenset({Provider.GLEAN, Provider.DUST, Provider.ONDOBOT})

MULTIMODAL_MIN_CONFIDENCE = 0.8

CODE_FILE_EXTENSIONS = (
    ".py", ".ts", ".tsx", ".js", ".jsx", ".rs", ".go", ".java", ".rb",
    ".php", ".swift", ".kt", ".c", ".cc", ".cpp", ".h", ".cs", ".sql", ".sh",
)


def _compile(*patterns: str) -> tuple[re.Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


# ==============================================================================
# Pattern groups
# ==============================================================================

KNOWLEDGE_PATTERNS = _compile(
    r"what\s+is|what\s+are|what's",
    r"how\s+do\s+(i|we)|how\s+does|how\s+to",
    r"explain\s+|tell\s+me\s+about",
    r"find\s+(me\s+)?.*documentation|search\s+for",
    r"company\s+policy|our\s+policy|the\s+policy",
    r"procedure\s+for|process\s+for|guidelines?\s+for",
    r"who\s+(is|are|can)|where\s+(is|can|do)",
    r"when\s+(is|was|did)",
    r"confluence|notion|sharepoint|wiki",
    r"documentation|docs\s+for|spec\s+for",
    r"knowledge\s+base|internal\s+docs",
    r"^(what|who|where|when|why|which|how)\b",
)

CODE_PATTERNS = _compile(
    r"write\s+(me\s+)?.*code|implement\s+|create\s+.*function",
    r"refactor\s+|optimize\s+.*code|debug\s+|fix\s+(the\s+)?bug",
    r"build\s+.*component|add\s+.*feature",
    r"typescript|javascript|python|react|nextjs|node\.?js",
    r"rust|golang|java|c\+\+|c#|ruby|php|swift|kotlin",
    r"html|css|sql|graphql|rest\s+api",
    r"function|class|component|module|interface|type",
    r"variable|constant|enum|struct|method",
    r"algorithm|data\s+structure|design\s+pattern",
    r"test\s+case|unit\s+test|integration\s+test",
    r"\.(ts|tsx|js|jsx|py|rs|go|java|rb|php|swift|kt)$",
    r"package\.json|tsconfig|dockerfile|makefile",
)

DATA_ANALYSIS_PATTERNS = _compile(
    r"analyze\s+(this|the)?\s*data|data\s+analysis",
    r"calculate|compute|sum|average|mean|median",
    r"statistics|statistical|regression|correlation",
    r"create\s+(a\s+)?chart|graph|plot|visualize",
    r"spreadsheet|excel|csv|json\s+data",
    r"math|equation|formula|solve\s+for",
    r"percentage|ratio|proportion|probability",
    r"report\s+on|summarize\s+.*data|metrics|kpi",
    r"trend|forecast|prediction|projection",
)

ACTION_PATTERNS = _compile(
    r"create\s+(a\s+)?(jira|ticket|issue|task)",
    r"update\s+(the\s+)?(record|entry|contact|deal)",
    r"send\s+(an?\s+)?email|slack\s+message|notification",
    r"schedule\s+(a\s+)?meeting|calendar",
    r"hubspot|salesforce|jira|confluence|slack",
    r"zendesk|intercom|freshdesk|servicenow",
    r"zapier|make|automate",
    r"post\s+to|push\s+to|sync\s+with",
    r"trigger\s+(a\s+)?workflow|run\s+(the\s+)?automation",
)

PATTERN_GROUPS: dict[Intent, tuple[re.Pattern, ...]] = {
    Intent.KNOWLEDGE_QUERY: KNOWLEDGE_PATTERNS,
    Intent.CODE_TASK: CODE_PATTERNS,
    Intent.DATA_ANALYSIS: DATA_ANALYSIS_PATTERNS,
    Intent.ACTION_REQUEST: ACTION_PATTERNS,
}


# ==============================================================================
# Results
# ==============================================================================

@dataclass(frozen=True)
class ClassificationResult:
    """
    What a request is for and where it should go.

    Attributes:
        intent: The detected intent
        confidence: 0.0 to 1.0
        suggested_provider: Provider best suited to the intent
        suggested_model: That provider's default model
        reasoning: Short human-readable explanation
    """
    intent: Intent
    confidence: float
    suggested_provider: Provider
    suggested_model: str
    reasoning: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "intent": self.intent.value,
            "confidence": self.confidence,
            "suggested_provider": self.suggested_provider.value,
            "suggested_model": self.suggested_model,
            "reasoning": self.reasoning,
        }


@dataclass(frozen=True)
class ClassificationConfig:
    mode: str = "rule_based"            # "rule_based" or "llm_hybrid"
    confidence_threshold: float = 0.7


def _result_for(intent: Intent, confidence: float, reasoning: str) -> ClassificationResult:
    provider = PROVIDER_FOR_INTENT[intent]
    return ClassificationResult(
        intent=intent,
        confidence=confidence,
        suggested_provider=provider,
        suggested_model=DEFAULT_MODEL_FOR_PROVIDER[provider],
        reasoning=reasoning,
    )


# ==============================================================================
# Rule-based classification
# ==============================================================================

def extract_latest_user_content(messages: list[dict[str, Any]]) -> str:
    """Text of the most recent user message (first text part for multi-part content)."""
    for message in reversed(messages):
        if message.get("role") != "user":
            continue
        content = message.get("content")
        if isinstance(content, str):
            return content
        for part in content or []:
            if isinstance(part, dict) and part.get("type") == "text":
                return part.get("text", "")
    return ""


def pattern_score(content: str, patterns: tuple[re.Pattern, ...]) -> tuple[int, float]:
    """
    Score a pattern group against the content.

    Returns:
        (matches, score) with score capped at 1.0
    """
    matches = sum(1 for pattern in patterns if pattern.search(content))
    score = min(matches / max(len(patterns) * 0.2, 1), 1.0)
    return matches, score


def classify_with_rules(content: str) -> ClassificationResult:
    scores = []
    for intent, patterns in PATTERN_GROUPS.items():
        matches, score = pattern_score(content, patterns)
        scores.append((intent, score, matches))

    # Stable sort keeps the group order for ties
    scores.sort(key=lambda s: s[1], reverse=True)
    top_intent, top_score, top_matches = scores[0]
    second_score = scores[1][1]

    if top_matches == 0:
        return _result_for(
            Intent.GENERAL_CHAT,
            0.5,
            "No strong intent signals detected, defaulting to general chat.",
        )

    separation = top_score - second_score
    confidence = min(0.5 + separation + top_score * 0.3, 0.95)

    return _result_for(
        top_intent,
        confidence,
        f"Matched {top_matches} patterns for {top_intent.value} (score: {top_score:.2f}).",
    )


def classify(
    messages: list[dict[str, Any]],
    config: ClassificationConfig | None = None
) -> ClassificationResult:
    """
    Classify a request by its latest user message.

    Args:
        messages: Conversation in chat-message form
        config: Mode and threshold (only annotates the reasoning here)

    Returns:
        ClassificationResult
    """
    config = config or ClassificationConfig()
    content = extract_latest_user_content(messages)

    if not content.strip():
        return _result_for(Intent.GENERAL_CHAT, 1.0, "Empty message content.")

    result = classify_with_rules(content)
    if config.mode == "llm_hybrid" and result.confidence < config.confidence_threshold:
        result = replace(result, reasoning=result.reasoning + " (Below confidence threshold.)")

    logger.debug(f"Classified as {result.intent.value} ({result.confidence:.2f})")
    return result


# ==============================================================================
# Multi-modal adjustment
# ==============================================================================

def _attached_files(message: dict[str, Any]) -> list[str]:
    names = []
    for attached in message.get("files") or []:
        if isinstance(attached, dict):
            names.append(str(attached.get("name") or attached.get("filename") or ""))
        else:
            names.append(str(attached))

    content = message.get("content")
    if isinstance(content, list):
        for part in content:
            if isinstance(part, dict) and part.get("type") == "file":
                file_info = part.get("file") or {}
                names.append(str(file_info.get("filename") or file_info.get("name") or ""))
    return names


def _has_images(message: dict[str, Any]) -> bool:
    if message.get("images"):
        return True
    content = message.get("content")
    if isinstance(content, list):
        return any(isinstance(p, dict) and p.get("type") == "image_url" for p in content)
    return False


def has_multimodal_content(messages: list[dict[str, Any]]) -> bool:
    """True when any message carries images or attached files."""
    return any(_has_images(m) or _attached_files(m) for m in messages)


def has_code_attachment(messages: list[dict[str, Any]]) -> bool:
    for message in messages:
        for name in _attached_files(message):
            if name.lower().endswith(CODE_FILE_EXTENSIONS):
                return True
    return False


def adjust_for_multimodal(
    result: ClassificationResult,
    messages: list[dict[str, Any]]
) -> ClassificationResult:
    """
    Correct a text-only classification for attached images and files.

    Text heuristics see only the words, so an attachment raises the
    confidence to at least 0.8. A general_chat result becomes code_task
    when a source file is attached and data_analysis (vision analysis)
    otherwise. Providers that cannot take images are replaced by anthropic.
    """
    if not has_multimodal_content(messages):
        return result

    notes = ["Adjusted for multi-modal content."]
    intent = result.intent
    provider = result.suggested_provider
    model = result.suggested_model

    if intent == Intent.GENERAL_CHAT:
        intent = Intent.CODE_TASK if has_code_attachment(messages) else Intent.DATA_ANALYSIS
        provider = PROVIDER_FOR_INTENT[intent]
        model = DEFAULT_MODEL_FOR_PROVIDER[provider]
        notes.append(f"Attachment reclassified as {intent.value}.")

    if provider in TEXT_ONLY_PROVIDERS:
        provider = Provider.ANTHROPIC
        model = DEFAULT_MODEL_FOR_PROVIDER[provider]
        notes.append("Vision required.")

    return ClassificationResult(
        intent=intent,
        confidence=max(result.confidence, MULTIMODAL_MIN_CONFIDENCE),
        suggested_provider=provider,
        suggested_model=model,
        reasoning=" ".join([result.reasoning, *notes]),
    )


# ==============================================================================
# Hybrid classification
# ==============================================================================

ModelClassifier = Callable[[str], Awaitable[ClassificationResult | None]]


class IntentClassifier:
    """
    Rule-based classifier with optional model escalation.

    Example:
        classifier = IntentClassifier(
            ClassificationConfig(mode="llm_hybrid"),
            model_classifier=model_intent_classifier(backend),
        )
        result = await classifier.classify(messages)
    """

    def __init__(
        self,
        config: ClassificationConfig | None = None,
        model_classifier: ModelClassifier | None = None
    ):
        self.config = config or ClassificationConfig()
        self.model_classifier = model_classifier

    async def classify(self, messages: list[dict[str, Any]]) -> ClassificationResult:
        result = classify(messages, self.config)

        if (
            self.config.mode != "llm_hybrid"
            or self.model_classifier is None
            or result.confidence >= self.config.confidence_threshold
        ):
            return result

        content = extract_latest_user_content(messages)
        try:
            second = await self.model_classifier(content)
        except Exception as e:
            logger.warning(f"Model classifier failed, keeping rule-based result: {e}")
            return result

        if second is None or not isinstance(second.intent, Intent):
            return result
        if second.confidence <= result.confidence:
            logger.debug(
                f"Model classifier ({second.confidence:.2f}) not more confident "
                f"than rules ({result.confidence:.2f})"
            )
            return result

        logger.info(f"Model classifier overrode {result.intent.value} -> {second.intent.value}")
        return second


CLASSIFIER_PROMPT = """Classify the user's request into exactly one intent:
knowledge_query, code_task, data_analysis, action_request, general_chat.

Reply with JSON only: {"intent": "<intent>", "confidence": <0.0-1.0>}"""


def parse_model_classification(text: str) -> ClassificationResult | None:
    """Parse the model's JSON answer; None when it is not a valid intent."""
    match = re.search(r"\{.*\}", text or "", re.DOTALL)
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
        intent = Intent(data.get("intent"))
        confidence = min(max(float(data.get("confidence", 0.0)), 0.0), 1.0)
    except (ValueError, TypeError, AttributeError):
        return None
    return _result_for(intent, confidence, f"Model classified as {intent.value}.")


def model_intent_classifier(backend) -> ModelClassifier:
    """
    Build a secondary classifier on top of a ModelBackend.

    Args:
        backend: Anything with `await complete(system, messages, tools)`
    """
    async def classify_with_model(content: str) -> ClassificationResult | None:
        response = await backend.complete(
            CLASSIFIER_PROMPT,
            [{"role": "user", "content": content}],
            [],
        )
        return parse_model_classification(response.text)

    return classify_with_model
