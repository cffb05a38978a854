"""
Unit tests for resource naming, labels and identity parsing.
"""

import pytest

from harbormaster.core import naming
from harbormaster.core.errors import InvalidSpecError
from harbormaster.core.models import ServiceSpec, VolumeMount


class TestNames:
    def test_container_network_volume_names(self):
        assert naming.container_name("demo", "web", 0) == "demo-web-0"
        assert naming.network_name("demo") == "demo_default"
        assert naming.network_name("demo", "backend") == "demo_backend"
        assert naming.volume_name("demo", "data") == "demo_data"

    @pytest.mark.parametrize("name", ["demo", "a", "myapp2", "0day"])
    def test_valid_project_names(self, name):
        assert naming.validate_name(name) == name

    @pytest.mark.parametrize("name", ["web", "my-app_2", "0day"])
    def test_valid_service_names(self, name):
        assert naming.validate_name(name, "service") == name

    @pytest.mark.parametrize("name", ["", "Demo", "-demo", "_x", "has space", "dots.bad", "x" * 64])
    def test_invalid_names(self, name):
        with pytest.raises(InvalidSpecError):
            naming.validate_name(name, "project")

    @pytest.mark.parametrize("name", ["a-b", "a_b", "my-app"])
    def test_project_names_reject_separators(self, name):
        with pytest.raises(InvalidSpecError):
            naming.validate_name(name, "project")

    def test_names_of_distinct_projects_never_collide(self):
        assert naming.container_name("ab", "c", 0) != naming.container_name("a", "b-c", 0)
        assert naming.network_name("ab") != naming.network_name("a", "b_default")
        assert naming.volume_name("ab", "data") != naming.volume_name("a", "b_data")

    def test_max_length_accepted(self):
        assert naming.validate_name("x" * 63) == "x" * 63


class TestLabels:
    def test_instance_labels_round_trip_identity(self):
        spec = ServiceSpec(name="web", image="nginx:alpine", replicas=3)
        labels = naming.instance_labels("demo", spec, 2)

        identity = naming.parse_identity(labels)

        assert isinstance(identity, naming.ServiceIdentity)
        assert (identity.project, identity.service, identity.index) == ("demo", "web", 2)
        assert labels[naming.LABEL_FINGERPRINT] == naming.fingerprint(spec)

    def test_spec_label_omits_replicas(self):
        spec = ServiceSpec(name="web", image="nginx:alpine", replicas=5)
        raw = naming.instance_labels("demo", spec, 0)[naming.LABEL_SPEC]

        assert "replicas" not in raw
        restored = ServiceSpec.model_validate_json(raw)
        assert restored.image == "nginx:alpine"
        assert restored.replicas == 1

    def test_project_labels_double_as_filter(self):
        assert naming.project_labels("demo") == {naming.LABEL_PROJECT: "demo"}
        assert naming.service_filter("demo", "web") == {
            naming.LABEL_PROJECT: "demo",
            naming.LABEL_SERVICE: "web",
        }


class TestFingerprint:
    def test_ignores_replicas_and_restart_policy(self):
        a = ServiceSpec(name="web", image="nginx", replicas=1)
        b = ServiceSpec(name="web", image="nginx", replicas=4, restart_policy="always")
        assert naming.fingerprint(a) == naming.fingerprint(b)

    def test_environment_order_does_not_matter(self):
        a = ServiceSpec(name="web", image="nginx", environment={"A": "1", "B": "2"})
        b = ServiceSpec(name="web", image="nginx", environment={"B": "2", "A": "1"})
        assert naming.fingerprint(a) == naming.fingerprint(b)

    @pytest.mark.parametrize("change", [
        {"image": "nginx:1.25"},
        {"environment": {"A": "2"}},
        {"ports": {"80/tcp": 8080}},
        {"volumes": [VolumeMount(source="data", target="/data")]},
    ])
    def test_creation_parameters_change_fingerprint(self, change):
        base = ServiceSpec(name="web", image="nginx", environment={"A": "1"})
        changed = base.model_copy(update=change)
        assert naming.fingerprint(base) != naming.fingerprint(changed)


class TestParseIdentity:
    def test_no_project_label(self):
        assert naming.parse_identity({}) is None
        assert naming.parse_identity(None) is None
        assert naming.parse_identity({"other": "x"}) is None

    def test_project_only(self):
        identity = naming.parse_identity({naming.LABEL_PROJECT: "demo"})
        assert isinstance(identity, naming.ProjectIdentity)
        assert identity.kind == "project"

    @pytest.mark.parametrize("labels", [
        {naming.LABEL_PROJECT: "demo", naming.LABEL_SERVICE: "web"},
        {naming.LABEL_PROJECT: "demo", naming.LABEL_SERVICE: "web", naming.LABEL_INDEX: "x1"},
        {naming.LABEL_PROJECT: "demo", naming.LABEL_SERVICE: "web", naming.LABEL_INDEX: "-1"},
        {naming.LABEL_PROJECT: "demo", naming.LABEL_SERVICE: "web", naming.LABEL_INDEX: "\u00b2"},
        {naming.LABEL_PROJECT: "demo", naming.LABEL_SERVICE: "web", naming.LABEL_INDEX: "\u0663"},
        {naming.LABEL_PROJECT: "demo", naming.LABEL_INDEX: "0"},
    ])
    def test_malformed_labels_are_orphans(self, labels):
        identity = naming.parse_identity(labels)
        assert isinstance(identity, naming.OrphanIdentity)
        assert identity.project == "demo"
        assert identity.reason

    def test_parse_index(self):
        assert naming.parse_index("7") == 7
        assert naming.parse_index(" 3 ") == 3
        assert naming.parse_index(None) is None
        assert naming.parse_index("") is None
        assert naming.parse_index("1.5") is None
        assert naming.parse_index("\u00b2") is None
        assert naming.parse_index("\uff11") is None
