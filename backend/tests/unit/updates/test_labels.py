"""
Unit tests for update policy labels.
"""

import pytest

from updates.labels import (
    AUTO_UPDATE_LABEL,
    COMPOSE_PROJECT_LABEL,
    SWARM_NAMESPACE_LABEL,
    UPDATER_LABEL,
    ContainerLabels,
    UpdatePolicy,
    parse_service_labels,
)


class TestUpdatePolicy:
    """Label values parse once into a tri-state policy"""

    @pytest.mark.parametrize("value", ["true", "TRUE", " True ", "1", "yes", "on", "enabled", True])
    def test_enabled_values(self, value):
        assert UpdatePolicy.from_label(value) is UpdatePolicy.ENABLED

    @pytest.mark.parametrize("value", ["false", "False", "0", "no", "OFF", "disabled", False])
    def test_disabled_values(self, value):
        assert UpdatePolicy.from_label(value) is UpdatePolicy.DISABLED

    @pytest.mark.parametrize("value", [None, "", "maybe", "2"])
    def test_everything_else_is_unspecified(self, value):
        policy = UpdatePolicy.from_label(value)
        assert policy is UpdatePolicy.UNSPECIFIED
        assert not policy.is_enabled
        assert not policy.is_disabled


class TestContainerLabels:

    def test_no_labels(self):
        labels = ContainerLabels.from_labels(None)
        assert not labels.opted_out
        assert not labels.is_stack_managed
        assert labels.auto_update is UpdatePolicy.UNSPECIFIED

    def test_opt_out(self):
        labels = ContainerLabels.from_labels({UPDATER_LABEL: "false"})
        assert labels.opted_out

    def test_auto_update_opt_in(self):
        labels = ContainerLabels.from_labels({AUTO_UPDATE_LABEL: "true"})
        assert labels.auto_update.is_enabled
        assert not labels.opted_out

    @pytest.mark.parametrize("label", [COMPOSE_PROJECT_LABEL, SWARM_NAMESPACE_LABEL])
    def test_stack_managed(self, label):
        labels = ContainerLabels.from_labels({label: "media"})
        assert labels.is_stack_managed


class TestParseServiceLabels:

    def test_list_form(self):
        assert parse_service_labels(["a=1", "b", " c = x=y "]) == {"a": "1", "b": "", "c": "x=y"}

    def test_mapping_form_keeps_yaml_values(self):
        assert parse_service_labels({"a": True}) == {"a": True}

    def test_other_types(self):
        assert parse_service_labels(None) == {}
        assert parse_service_labels(["ok=1", 42]) == {"ok": "1"}
