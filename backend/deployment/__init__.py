"""
Deployment module for Refit

Stack access for the update engine.

Components:
    - stack_storage: Compose files under STACKS_DIR
    - stack_provider: Stack status/services and `docker compose` pull/down/up
"""

from .stack_provider import (
    ComposeCommandError,
    ComposeStackProvider,
    StackInfo,
    StackProvider,
    StackService,
    StackStatus,
)

__all__ = [
    "ComposeCommandError",
    "ComposeStackProvider",
    "StackInfo",
    "StackProvider",
    "StackService",
    "StackStatus",
]
