"""
Request Routing
===============

Classifies chat requests by intent and routes them to a provider/model.

This module provides:
- classify / IntentClassifier: rule-based and hybrid intent classification
- adjust_for_multimodal: corrections for attached images and files
- get_route_for_request: the routing decision for one request
"""

from taskpilot.routing.classifier import (
    ClassificationConfig,
    ClassificationResult,
    Intent,
    IntentClassifier,
    Provider,
    adjust_for_multimodal,
    classify,
    has_multimodal_content,
    model_intent_classifier,
    parse_model_classification,
)
from taskpilot.routing.router import (
    ChatRequest,
    RouteResult,
    RoutingOptions,
    get_route_for_request,
    get_routing_config,
    map_intent_to_route,
    provider_for_model,
)

__all__ = [
    "ChatRequest",
    "ClassificationConfig",
    "ClassificationResult",
    "Intent",
    "IntentClassifier",
    "Provider",
    "RouteResult",
    "RoutingOptions",
    "adjust_for_multimodal",
    "classify",
    "get_route_for_request",
    "get_routing_config",
    "has_multimodal_content",
    "map_intent_to_route",
    "model_intent_classifier",
    "parse_model_classification",
    "provider_for_model",
]
