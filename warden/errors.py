"""Error taxonomy for Warden.

Policy errors are absorbed as non-matches; model errors fail closed;
upstream errors surface as gateway failures; request validation errors are
rejected before any policy runs.
"""

from __future__ import annotations


class WardenError(Exception):
    """Base class for all Warden errors."""


class PolicyEvaluationError(WardenError):
    """A rule could not be evaluated (malformed operator/value, bad regex)."""


class ModelInvocationError(WardenError):
    """A quarantine or privileged model call failed or timed out."""


class UpstreamForwardError(WardenError):
    """The upstream provider was unreachable or failed mid-request."""


class RequestValidationError(WardenError):
    """The inbound request does not match the provider envelope."""
