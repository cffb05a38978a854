"""
Unit tests for the project state reader and index selection.
"""

import pytest

from harbormaster.core import naming
from harbormaster.core.errors import NotFoundError
from harbormaster.core.gateway import NetworkRecord
from harbormaster.core.models import InstanceStatus, ServiceSpec
from harbormaster.core.state import ProjectStateReader, free_indices, surplus_indices


def _plant(engine, project, service, index, **kwargs):
    spec = ServiceSpec(name=service, image="busybox")
    labels = naming.instance_labels(project, spec, index)
    return engine.add_container(naming.container_name(project, service, index), labels, **kwargs)


class TestIndexSelection:
    def test_free_indices_fill_gaps_first(self):
        assert free_indices({0, 2}, 1) == [1]
        assert free_indices({0, 2}, 3) == [1, 3, 4]
        assert free_indices([], 2) == [0, 1]
        assert free_indices({1, 2}, 0) == []

    def test_surplus_indices_highest_first(self):
        assert surplus_indices({0, 1, 2, 3}, 2) == [3, 2]
        assert surplus_indices({0, 5, 9}, 1) == [9, 5]
        assert surplus_indices({0, 1}, 2) == []
        assert surplus_indices({0, 1}, 0) == [1, 0]


class TestSnapshot:
    def test_empty_project_snapshot_and_read(self, engine):
        reader = ProjectStateReader(engine)
        view = reader.snapshot("ghost")
        assert view.is_empty
        with pytest.raises(NotFoundError):
            reader.read("ghost")

    def test_groups_instances_by_service_sorted_by_index(self, engine):
        _plant(engine, "demo", "web", 1)
        _plant(engine, "demo", "web", 0, status=InstanceStatus.STOPPED)
        _plant(engine, "demo", "db", 0)
        _plant(engine, "other", "web", 0)

        view = ProjectStateReader(engine).snapshot("demo")

        assert list(view.services) == ["db", "web"]
        assert view.indices("web") == [0, 1]
        assert view.instances("web")[0].status is InstanceStatus.STOPPED
        assert view.orphans == []

    def test_malformed_and_duplicate_containers_become_orphans(self, engine):
        _plant(engine, "demo", "web", 0)
        engine.add_container("demo-web-0-copy", naming.instance_labels("demo", ServiceSpec(name="web", image="x"), 0))
        engine.add_container("stray", {naming.LABEL_PROJECT: "demo", naming.LABEL_SERVICE: "web"})

        view = ProjectStateReader(engine).snapshot("demo")

        assert view.indices("web") == [0]
        assert sorted(o.name for o in view.orphans) == ["demo-web-0-copy", "stray"]
        assert len(view.warnings) == 2

    @pytest.mark.parametrize("raw_index", ["²", "٣", "１"])
    def test_non_ascii_digit_index_is_an_orphan(self, engine, raw_index):
        _plant(engine, "demo", "web", 0)
        labels = naming.instance_labels("demo", ServiceSpec(name="web", image="x"), 1)
        labels[naming.LABEL_INDEX] = raw_index
        engine.add_container("demo-web-odd", labels)

        view = ProjectStateReader(engine).read("demo")

        assert view.indices("web") == [0]
        assert [o.name for o in view.orphans] == ["demo-web-odd"]
        [summary] = ProjectStateReader(engine).list_projects()
        assert (summary.name, summary.orphans) == ("demo", 1)

    def test_removing_instances_are_not_live(self, engine):
        _plant(engine, "demo", "web", 0)
        _plant(engine, "demo", "web", 1, status=InstanceStatus.REMOVING)

        view = ProjectStateReader(engine).snapshot("demo")

        assert view.indices("web") == [0, 1]
        assert [i.index for i in view.live_instances("web")] == [0]

    def test_project_with_only_a_network_exists(self, engine):
        engine.networks["demo_default"] = NetworkRecord(
            id="n1", name="demo_default", labels=naming.project_labels("demo")
        )
        view = ProjectStateReader(engine).read("demo")
        assert view.networks == ["demo_default"]
        assert not view.services


class TestListProjects:
    def test_summaries_sorted_by_name(self, engine):
        _plant(engine, "zeta", "web", 0)
        _plant(engine, "alpha", "web", 0)
        _plant(engine, "alpha", "web", 1, status=InstanceStatus.STOPPED)
        _plant(engine, "alpha", "db", 0)
        engine.add_container("alpha-junk", {naming.LABEL_PROJECT: "alpha", naming.LABEL_INDEX: "0"})
        engine.add_container("unmanaged", {})

        summaries = ProjectStateReader(engine).list_projects()

        assert [s.name for s in summaries] == ["alpha", "zeta"]
        alpha = summaries[0]
        assert alpha.services == {"web": 2, "db": 1}
        assert alpha.running == 2
        assert alpha.orphans == 1
