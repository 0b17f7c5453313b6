"""Trusted-data and tool-invocation policies.

Public API:
    TrustedDataEvaluator - trust verdicts for tool results
    ToolInvocationEngine - allow/deny for requested tool calls
    PolicyStore          - persistence port for tools and rules
"""

from warden.policies.schemas import (
    InvocationAction,
    InvocationDecision,
    Operator,
    ToolInvocationPolicyRecord,
    ToolRecord,
    TrustedDataAction,
    TrustedDataPolicyRecord,
    TrustResult,
)
from warden.policies.store import PolicyStore
from warden.policies.tool_invocation import ToolInvocationEngine
from warden.policies.trusted_data import TrustedDataEvaluator

__all__ = [
    "PolicyStore",
    "ToolInvocationEngine",
    "TrustedDataEvaluator",
    # Type aliases
    "InvocationAction",
    "Operator",
    "TrustedDataAction",
    # Records
    "ToolInvocationPolicyRecord",
    "ToolRecord",
    "TrustedDataPolicyRecord",
    # Decisions
    "InvocationDecision",
    "TrustResult",
]
