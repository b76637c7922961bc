"""
Updates Module

Image update detection and application.

Architecture:
- BatchUpdateChecker (batch_checker): registry checks on a bounded worker pool
- UpdatePlanner (planner): pending records → UpdatePlans
- UpdateApplier (applier): image pull → container recreate → stack redeploy → cleanup
- AutoUpdater (auto_updater): label-driven per-resource updates
- UpdateRecordStore (record_store): image_updates / auto_update_records persistence

Only leaf modules are re-exported here; import the services from their modules.
"""

from updates.errors import (
    AuthError,
    DaemonError,
    NetworkError,
    NotFoundError,
    ParseError,
    UnauthorizedError,
    UpdateEngineError,
)
from updates.reference import ImageReference, canonicalize, parse_reference
from updates.types import CheckResult, ItemStatus, RunResult, UpdatePlan, UpdaterItem

__all__ = [
    'UpdateEngineError',
    'ParseError',
    'AuthError',
    'UnauthorizedError',
    'NetworkError',
    'DaemonError',
    'NotFoundError',
    'ImageReference',
    'parse_reference',
    'canonicalize',
    'CheckResult',
    'ItemStatus',
    'RunResult',
    'UpdatePlan',
    'UpdaterItem',
]
