"""
Authorization flow: pending-request storage and the login orchestrator.
"""

from .orchestrator import AuthenticationAttempt, AuthenticationResult, FlowState, OAuthFlowOrchestrator
from .state_store import InMemoryStateStore, RedisStateStore, StateStore

__all__ = [
    "AuthenticationAttempt",
    "AuthenticationResult",
    "FlowState",
    "InMemoryStateStore",
    "OAuthFlowOrchestrator",
    "RedisStateStore",
    "StateStore",
]
