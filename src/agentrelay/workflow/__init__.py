"""Workflow layer — phase checkpoints and pre-handoff validation around runs."""

from agentrelay.workflow.runner import (
    RecoveryConfig,
    RetryConfig,
    StateManagementConfig,
    ValidationConfig,
    WorkflowConfig,
    WorkflowHooks,
    WorkflowRunner,
)
from agentrelay.workflow.state import (
    InMemoryStateStore,
    JsonlStateStore,
    Severity,
    StateStore,
    ValidationRule,
    WorkflowState,
)

__all__ = [
    "RecoveryConfig",
    "RetryConfig",
    "StateManagementConfig",
    "ValidationConfig",
    "WorkflowConfig",
    "WorkflowHooks",
    "WorkflowRunner",
    "InMemoryStateStore",
    "JsonlStateStore",
    "Severity",
    "StateStore",
    "ValidationRule",
    "WorkflowState",
]
