"""Dual-model quarantine for tainted conversation context."""

from warden.quarantine.client import AnthropicModelClient, ModelClient, OpenAIModelClient, create_model_client
from warden.quarantine.controller import DualModelController, QuarantineEvaluator
from warden.quarantine.schemas import (
    ModelOutcome,
    PrivilegedDecision,
    QuarantineAnalysisResult,
    SecurityVerdict,
    TaintedItem,
)

__all__ = [
    "AnthropicModelClient",
    "DualModelController",
    "ModelClient",
    "ModelOutcome",
    "OpenAIModelClient",
    "PrivilegedDecision",
    "QuarantineAnalysisResult",
    "QuarantineEvaluator",
    "SecurityVerdict",
    "TaintedItem",
    "create_model_client",
]
