"""
Update policy labels.

Containers and compose services opt in or out of automatic updates through
labels. Label values are parsed exactly once into a tri-state UpdatePolicy
so decision points never compare raw strings.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

# Per-container opt-out for the pending-update applier
UPDATER_LABEL = "refit.updater"
# Opt-in for the per-resource auto-update path
AUTO_UPDATE_LABEL = "refit.auto-update"
STACK_AUTO_UPDATE_LABEL = "refit.stack.auto-update"

# Stack membership labels
COMPOSE_PROJECT_LABEL = "com.docker.compose.project"
COMPOSE_SERVICE_LABEL = "com.docker.compose.service"
SWARM_NAMESPACE_LABEL = "com.docker.stack.namespace"

_TRUTHY = frozenset({"true", "1", "yes", "on", "enabled"})
_FALSY = frozenset({"false", "0", "no", "off", "disabled"})


class UpdatePolicy(str, Enum):
    """Tri-state update flag parsed from a label value."""
    ENABLED = "enabled"
    DISABLED = "disabled"
    UNSPECIFIED = "unspecified"

    @classmethod
    def from_label(cls, value) -> "UpdatePolicy":
        """
        Parse a raw label value.

        Accepts strings in any case (true/false, 1/0, yes/no, on/off,
        enabled/disabled) and YAML booleans from compose files.
        Anything else, including a missing label, is UNSPECIFIED.
        """
        if value is None:
            return cls.UNSPECIFIED
        if isinstance(value, bool):
            return cls.ENABLED if value else cls.DISABLED
        normalized = str(value).strip().lower()
        if normalized in _TRUTHY:
            return cls.ENABLED
        if normalized in _FALSY:
            return cls.DISABLED
        return cls.UNSPECIFIED

    @property
    def is_disabled(self) -> bool:
        return self is UpdatePolicy.DISABLED

    @property
    def is_enabled(self) -> bool:
        return self is UpdatePolicy.ENABLED


@dataclass(frozen=True)
class ContainerLabels:
    """Update-relevant facts extracted once from a container's labels."""
    updater: UpdatePolicy = UpdatePolicy.UNSPECIFIED
    auto_update: UpdatePolicy = UpdatePolicy.UNSPECIFIED
    compose_project: Optional[str] = None
    swarm_namespace: Optional[str] = None

    @classmethod
    def from_labels(cls, labels: Optional[Dict[str, str]]) -> "ContainerLabels":
        labels = labels or {}
        return cls(
            updater=UpdatePolicy.from_label(labels.get(UPDATER_LABEL)),
            auto_update=UpdatePolicy.from_label(labels.get(AUTO_UPDATE_LABEL)),
            compose_project=labels.get(COMPOSE_PROJECT_LABEL),
            swarm_namespace=labels.get(SWARM_NAMESPACE_LABEL),
        )

    @property
    def is_stack_managed(self) -> bool:
        """Created by a compose project or swarm stack; handled only via the stack path."""
        return self.compose_project is not None or self.swarm_namespace is not None

    @property
    def opted_out(self) -> bool:
        return self.updater.is_disabled


def parse_service_labels(labels) -> Dict[str, str]:
    """
    Normalize compose service labels (list or mapping form) into a dict.

    Examples:
        ["a=1", "b"]      → {"a": "1", "b": ""}
        {"a": True}       → {"a": True}
    """
    if isinstance(labels, dict):
        return dict(labels)
    result = {}
    if isinstance(labels, list):
        for item in labels:
            if not isinstance(item, str):
                continue
            key, _, value = item.partition("=")
            result[key.strip()] = value.strip()
    return result
