"""
Unit tests for desired-state validation and result aggregation.
"""

import pytest
from pydantic import ValidationError

from harbormaster.core.errors import PartialFailureError
from harbormaster.core.models import (
    OperationResult,
    ProjectDescriptor,
    ResourceAction,
    ResourceType,
    ResultStatus,
    ServiceResult,
    ServiceSpec,
    SubOperation,
    VolumeMount,
)


def test_service_spec_defaults():
    spec = ServiceSpec(name="web", image="nginx")
    assert spec.replicas == 1
    assert spec.restart_policy == "unless-stopped"
    assert spec.environment == {}


def test_port_zero_means_ephemeral():
    spec = ServiceSpec(name="web", image="nginx", ports={"80/tcp": 0, "443/tcp": 8443})
    assert spec.ports == {"80/tcp": None, "443/tcp": 8443}


@pytest.mark.parametrize("kwargs", [
    {"name": "Web", "image": "nginx"},
    {"name": "web", "image": ""},
    {"name": "web", "image": "nginx", "replicas": -1},
    {"name": "web", "image": "nginx", "replicas": True},
    {"name": "web", "image": "nginx", "ports": {"80/tcp": 70000}},
    {"name": "web", "image": "nginx", "networks": ["Bad Net"]},
    {"name": "web", "image": "nginx", "restart_policy": "sometimes"},
])
def test_invalid_service_spec(kwargs):
    with pytest.raises(ValidationError):
        ServiceSpec(**kwargs)


def test_volume_mount_target_must_be_absolute():
    with pytest.raises(ValidationError):
        VolumeMount(source="data", target="relative/path")
    assert VolumeMount(source="data", target="/data").is_named
    assert not VolumeMount(source="/srv/data", target="/data").is_named


def test_descriptor_rejects_duplicate_services():
    with pytest.raises(ValidationError):
        ProjectDescriptor(name="demo", services=[
            ServiceSpec(name="web", image="nginx"),
            ServiceSpec(name="web", image="httpd"),
        ])


def test_descriptor_collects_volumes_and_networks():
    descriptor = ProjectDescriptor(name="demo", services=[
        ServiceSpec(name="web", image="nginx", networks=["front"],
                    volumes=[VolumeMount(source="static", target="/srv"),
                             VolumeMount(source="/etc/hosts", target="/etc/hosts", read_only=True)]),
        ServiceSpec(name="db", image="postgres", networks=["front", "back"],
                    volumes=[VolumeMount(source="static", target="/static")]),
    ])
    assert descriptor.named_volumes() == ["static"]
    assert descriptor.extra_networks() == ["front", "back"]


@pytest.mark.parametrize("statuses,expected", [
    ([], ResultStatus.APPLIED),
    ([ResultStatus.APPLIED, ResultStatus.APPLIED], ResultStatus.APPLIED),
    ([ResultStatus.FAILED, ResultStatus.FAILED], ResultStatus.FAILED),
    ([ResultStatus.APPLIED, ResultStatus.FAILED], ResultStatus.PARTIALLY_APPLIED),
    ([ResultStatus.PARTIALLY_APPLIED], ResultStatus.PARTIALLY_APPLIED),
])
def test_status_aggregate(statuses, expected):
    assert ResultStatus.aggregate(statuses) is expected


def test_raise_for_status_carries_partition():
    ok = SubOperation(resource=ResourceType.CONTAINER, action=ResourceAction.CREATED, name="demo-web-0")
    bad = SubOperation(resource=ResourceType.CONTAINER, action=ResourceAction.STARTED, name="demo-web-0",
                       error="boom")
    result = OperationResult(
        operation="up",
        project="demo",
        status=ResultStatus.PARTIALLY_APPLIED,
        services=[ServiceResult(service="web", status=ResultStatus.PARTIALLY_APPLIED, operations=[ok, bad])],
    )

    with pytest.raises(PartialFailureError) as info:
        result.raise_for_status()

    assert info.value.succeeded == [ok]
    assert info.value.failed == [bad]
    assert info.value.result is result


def test_raise_for_status_passes_applied():
    result = OperationResult(operation="down", project="demo")
    assert result.raise_for_status() is result
