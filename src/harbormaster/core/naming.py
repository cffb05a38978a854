"""
Resource naming and labeling scheme.

Pure functions mapping (project, service, index) to engine resource names and
label sets, and parsing labels read back from the engine into a typed
``ResourceIdentity``. The same functions are used to create resources and to
rediscover them, so a name or label produced here is the only identity a
resource ever has.
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import TYPE_CHECKING, Dict, Mapping, Optional, Union

from pydantic import BaseModel

from harbormaster.core.errors import InvalidSpecError

if TYPE_CHECKING:
    from harbormaster.core.models import ServiceSpec

LABEL_PREFIX = "io.harbormaster"
LABEL_PROJECT = f"{LABEL_PREFIX}.project"
LABEL_SERVICE = f"{LABEL_PREFIX}.service"
LABEL_INDEX = f"{LABEL_PREFIX}.index"
LABEL_FINGERPRINT = f"{LABEL_PREFIX}.fingerprint"
LABEL_SPEC = f"{LABEL_PREFIX}.spec"

DEFAULT_NETWORK = "default"

NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]*$")
# Project names are the prefix of every engine name, so they may not contain
# the '-' or '_' separators.
PROJECT_NAME_PATTERN = re.compile(r"^[a-z0-9]+$")
MAX_NAME_LENGTH = 63


def validate_name(value: str, kind: str = "project") -> str:
    if not isinstance(value, str) or not value:
        raise InvalidSpecError(f"{kind} name must be a non-empty string")
    if len(value) > MAX_NAME_LENGTH:
        raise InvalidSpecError(f"{kind} name '{value}' longer than {MAX_NAME_LENGTH} characters")
    if kind == "project":
        if not PROJECT_NAME_PATTERN.match(value):
            raise InvalidSpecError(f"invalid project name '{value}': use lowercase letters and digits")
    elif not NAME_PATTERN.match(value):
        raise InvalidSpecError(
            f"invalid {kind} name '{value}': use lowercase letters, digits, '-' and '_'"
        )
    return value


# -------- names --------

def container_name(project: str, service: str, index: int) -> str:
    return f"{project}-{service}-{index}"


def network_name(project: str, network: str = DEFAULT_NETWORK) -> str:
    return f"{project}_{network}"


def volume_name(project: str, volume: str) -> str:
    return f"{project}_{volume}"


# -------- labels --------

def project_labels(project: str) -> Dict[str, str]:
    """Labels for project-level resources (networks, volumes); also the project filter."""
    return {LABEL_PROJECT: project}


def service_filter(project: str, service: str) -> Dict[str, str]:
    return {LABEL_PROJECT: project, LABEL_SERVICE: service}


def instance_labels(project: str, spec: "ServiceSpec", index: int) -> Dict[str, str]:
    return {
        LABEL_PROJECT: project,
        LABEL_SERVICE: spec.name,
        LABEL_INDEX: str(index),
        LABEL_FINGERPRINT: fingerprint(spec),
        LABEL_SPEC: spec.model_dump_json(exclude={"replicas"}),
    }


def fingerprint(spec: "ServiceSpec") -> str:
    """Hash of the creation parameters whose change requires recreation."""
    payload = {
        "image": spec.image,
        "environment": dict(sorted(spec.environment.items())),
        "volumes": [m.model_dump() for m in spec.volumes],
        "ports": dict(sorted(spec.ports.items())),
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]


# -------- identity parsing --------

class ProjectIdentity(BaseModel):
    kind: str = "project"
    project: str


class ServiceIdentity(BaseModel):
    kind: str = "service"
    project: str
    service: str
    index: int


class OrphanIdentity(BaseModel):
    kind: str = "orphan"
    project: str
    reason: str


ResourceIdentity = Union[ProjectIdentity, ServiceIdentity, OrphanIdentity]


def parse_index(raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    raw = raw.strip()
    # str.isdigit() also accepts superscripts and other non-ASCII digits
    if not (raw.isascii() and raw.isdecimal()):
        return None
    return int(raw)


def parse_identity(labels: Optional[Mapping[str, str]]) -> Optional[ResourceIdentity]:
    """
    Recover the typed identity of a resource from its labels.

    Returns None when the resource carries no project label. A service label
    without a parseable non-negative index, or an index without a service,
    yields an ``OrphanIdentity``; malformed labels never raise.
    """
    labels = labels or {}
    project = labels.get(LABEL_PROJECT)
    if not project:
        return None

    service = labels.get(LABEL_SERVICE)
    raw_index = labels.get(LABEL_INDEX)

    if not service:
        if raw_index is not None:
            return OrphanIdentity(project=project, reason=f"index label {raw_index!r} without service label")
        return ProjectIdentity(project=project)

    index = parse_index(raw_index)
    if index is None:
        if raw_index is None:
            reason = f"service '{service}' has no index label"
        else:
            reason = f"service '{service}' has malformed index label {raw_index!r}"
        return OrphanIdentity(project=project, reason=reason)

    return ServiceIdentity(project=project, service=service, index=index)
