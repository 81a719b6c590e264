"""
Request Router
==============

Chooses the model and provider for a chat request.

Routing Flow:
    Auto-routing off?  ──► caller's model/provider, was_auto_routed=False
         │
         ▼
    Classify latest user message (rule-based or hybrid)
         │
         ▼
    Adjust for attached images / files
         │
         ▼
    Confidence below threshold?  ──► caller's model/provider,
         │                           was_auto_routed=True + reason
         ▼
    Per-intent preference maps:
        caller overrides > configured defaults > built-in defaults

The classification is attached to every auto-routed result for
observability.
"""

from dataclasses import dataclass, field
from typing import Any

from taskpilot.routing.classifier import (
    ClassificationConfig,
    ClassificationResult,
    Intent,
    IntentClassifier,
    Provider,
    TEXT_ONLY_PROVIDERS,
    adjust_for_multimodal,
    has_multimodal_content,
)
from taskpilot.utils.config import RoutingConfig, get_config
from taskpilot.utils.logger import Logger

logger = Logger("Router")

DEFAULT_PROVIDER_PREFERENCES: dict[Intent, Provider] = {
    Intent.KNOWLEDGE_QUERY: Provider.GLEAN,
    Intent.CODE_TASK: Provider.ANTHROPIC,
    Intent.DATA_ANALYSIS: Provider.OPENAI,
    Intent.ACTION_REQUEST: Provider.GLEAN,
    Intent.GENERAL_CHAT: Provider.ANTHROPIC,
}

DEFAULT_MODEL_PREFERENCES: dict[Intent, str] = {
    Intent.KNOWLEDGE_QUERY: "glean-default",
    Intent.CODE_TASK: "claude-sonnet-4-20250514",
    Intent.DATA_ANALYSIS: "gpt-4o",
    Intent.ACTION_REQUEST: "glean-default",
    Intent.GENERAL_CHAT: "claude-sonnet-4-20250514",
}


def provider_for_model(model: str) -> Provider:
    """Infer the provider from a model id prefix."""
    if model.startswith("gpt-") or model.startswith("o1") or model.startswith("o3"):
        return Provider.OPENAI
    for provider in (Provider.GLEAN, Provider.DUST, Provider.ONDOBOT):
        if model.startswith(f"{provider.value}-"):
            return provider
    return Provider.ANTHROPIC


@dataclass
class ChatRequest:
    """
    A chat request as sent to the chat endpoint.

    Messages are chat-message dicts; a user message may carry "images",
    "files", or a list of content parts.
    """
    model: str
    provider: Provider
    messages: list[dict[str, Any]]
    conversation_id: str = ""
    options: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversationId": self.conversation_id,
            "messages": list(self.messages),
            "provider": self.provider.value,
            "model": self.model,
            "options": dict(self.options),
        }


@dataclass(frozen=True)
class RouteResult:
    """
    Where a request goes.

    Attributes:
        model: Resolved model id
        provider: Resolved provider
        was_auto_routed: True when classification decided (or was consulted)
        classification: The classification used, when auto-routed
        reason: Why the caller's choice was kept despite auto-routing
    """
    model: str
    provider: Provider
    was_auto_routed: bool
    classification: ClassificationResult | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "provider": self.provider.value,
            "was_auto_routed": self.was_auto_routed,
            "classification": self.classification.to_dict() if self.classification else None,
            "reason": self.reason,
        }


@dataclass
class RoutingOptions:
    """
    Per-request routing options.

    Attributes:
        auto_routing: Classify and route (False = passthrough)
        confidence_threshold: Overrides the configured threshold
        provider_preferences: Caller's provider per intent
        model_overrides: Caller's model per intent
    """
    auto_routing: bool
    confidence_threshold: float | None = None
    provider_preferences: dict[Intent, Provider] = field(default_factory=dict)
    model_overrides: dict[Intent, str] = field(default_factory=dict)


def get_routing_config() -> RoutingConfig:
    """The routing section of the process configuration."""
    return get_config().routing


def _configured_preferences(config: RoutingConfig) -> tuple[dict[Intent, Provider], dict[Intent, str]]:
    providers = {}
    for intent, provider in config.intent_providers.items():
        try:
            providers[Intent(intent)] = Provider(provider)
        except ValueError:
            logger.warning(f"Ignoring invalid provider '{provider}' for intent '{intent}'")
    models = {Intent(intent): model for intent, model in config.intent_models.items()}
    return providers, models


def _resolve(
    classification: ClassificationResult,
    options: RoutingOptions,
    config: RoutingConfig,
    multimodal: bool = False
) -> tuple[Provider, str]:
    configured_providers, configured_models = _configured_preferences(config)
    intent = classification.intent

    provider = (
        options.provider_preferences.get(intent)
        or configured_providers.get(intent)
        or DEFAULT_PROVIDER_PREFERENCES[intent]
    )
    if multimodal and provider in TEXT_ONLY_PROVIDERS:
        return classification.suggested_provider, classification.suggested_model

    model = (
        options.model_overrides.get(intent)
        or configured_models.get(intent)
        or DEFAULT_MODEL_PREFERENCES.get(intent)
        or classification.suggested_model
    )
    return provider, model


async def get_route_for_request(
    request: ChatRequest,
    options: RoutingOptions,
    classifier: IntentClassifier | None = None,
    config: RoutingConfig | None = None
) -> RouteResult:
    """
    Determine the route for a chat request.

    Args:
        request: The chat request
        options: Per-request routing options
        classifier: Classifier to use (rule-based from config if None)
        config: Routing config (process config if None)

    Returns:
        RouteResult
    """
    if not options.auto_routing:
        return RouteResult(model=request.model, provider=request.provider, was_auto_routed=False)

    config = config or get_routing_config()
    threshold = (
        options.confidence_threshold
        if options.confidence_threshold is not None
        else config.confidence_threshold
    )

    classifier = classifier or IntentClassifier(
        ClassificationConfig(mode=config.mode, confidence_threshold=threshold)
    )
    classification = await classifier.classify(request.messages)
    classification = adjust_for_multimodal(classification, request.messages)

    if classification.confidence < threshold:
        reason = (
            f"Confidence {classification.confidence:.2f} below threshold {threshold:.2f}; "
            "keeping the requested model"
        )
        logger.debug(reason)
        return RouteResult(
            model=request.model,
            provider=request.provider,
            was_auto_routed=True,
            classification=classification,
            reason=reason,
        )

    provider, model = _resolve(classification, options, config, has_multimodal_content(request.messages))
    logger.info(
        f"Routed {classification.intent.value} ({classification.confidence:.2f}) "
        f"to {provider.value}/{model}"
    )
    return RouteResult(
        model=model,
        provider=provider,
        was_auto_routed=True,
        classification=classification,
    )


def map_intent_to_route(
    classification: ClassificationResult,
    preferences: dict[Intent, Provider] | None = None
) -> RouteResult:
    """Route straight from a classification, with optional provider preferences."""
    provider = (preferences or {}).get(classification.intent) or DEFAULT_PROVIDER_PREFERENCES[classification.intent]
    model = DEFAULT_MODEL_PREFERENCES.get(classification.intent) or classification.suggested_model
    return RouteResult(
        model=model,
        provider=provider,
        was_auto_routed=True,
        classification=classification,
    )
