"""
Middleware Package

This package contains the request-facing components of the TaskTrack service.
"""

from tasktrack.middleware.rate_limit import (
    GateDecision,
    RateLimitPolicies,
    RateLimitPolicy,
    RequestGate,
    default_policies,
    rate_limit
)

__all__ = [
    'GateDecision',
    'RateLimitPolicies',
    'RateLimitPolicy',
    'RequestGate',
    'default_policies',
    'rate_limit',
]
