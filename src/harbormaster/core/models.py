"""
Data model of the orchestrator core.

``ProjectDescriptor``/``ServiceSpec`` describe desired state and are validated
on construction. ``ProjectView`` and its instances are snapshots rebuilt from
engine labels on every read; nothing here is ever persisted by the core.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator, model_validator

from harbormaster.core.errors import PartialFailureError
from harbormaster.core.naming import validate_name


class InstanceStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"
    REMOVING = "removing"


class ResourceType(str, Enum):
    CONTAINER = "container"
    NETWORK = "network"
    VOLUME = "volume"


class ResourceAction(str, Enum):
    CREATED = "created"
    STARTED = "started"
    STOPPED = "stopped"
    REMOVED = "removed"


class ResultStatus(str, Enum):
    APPLIED = "applied"
    PARTIALLY_APPLIED = "partially-applied"
    FAILED = "failed"

    @classmethod
    def aggregate(cls, statuses: Iterable["ResultStatus"]) -> "ResultStatus":
        seen = list(statuses)
        if all(s is cls.APPLIED for s in seen):
            return cls.APPLIED
        if all(s is cls.FAILED for s in seen):
            return cls.FAILED
        return cls.PARTIALLY_APPLIED


RestartPolicy = Literal["no", "always", "unless-stopped", "on-failure"]


# -------- desired state --------

class VolumeMount(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str = Field(..., min_length=1, description="Named volume, or host path for a bind mount")
    target: str = Field(..., min_length=1, description="Path inside the container")
    read_only: bool = False

    @property
    def is_named(self) -> bool:
        return "/" not in self.source

    @field_validator("target")
    @classmethod
    def _absolute_target(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"mount target must be an absolute path, got {v!r}")
        return v


class ServiceSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    image: str = Field(..., min_length=1)
    environment: Dict[str, str] = Field(default_factory=dict)
    ports: Dict[str, Optional[int]] = Field(
        default_factory=dict,
        description="container port (e.g. '80/tcp') -> host port, None for ephemeral",
    )
    volumes: List[VolumeMount] = Field(default_factory=list)
    networks: List[str] = Field(default_factory=list, description="Extra project networks")
    replicas: StrictInt = Field(default=1, ge=0)
    restart_policy: RestartPolicy = "unless-stopped"

    @field_validator("name")
    @classmethod
    def _valid_name(cls, v: str) -> str:
        return validate_name(v, "service")

    @field_validator("networks")
    @classmethod
    def _valid_networks(cls, v: List[str]) -> List[str]:
        return [validate_name(n, "network") for n in v]

    @field_validator("ports")
    @classmethod
    def _valid_ports(cls, v: Dict[str, Optional[int]]) -> Dict[str, Optional[int]]:
        fixed: Dict[str, Optional[int]] = {}
        for cport, host_port in v.items():
            if host_port is not None and not 0 <= host_port <= 65535:
                raise ValueError(f"host port for {cport} out of range: {host_port}")
            # 0 means "any free port", same as None
            fixed[cport] = None if host_port == 0 else host_port
        return fixed


class ProjectDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    services: List[ServiceSpec] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _valid_name(cls, v: str) -> str:
        return validate_name(v, "project")

    @model_validator(mode="after")
    def _unique_services(self) -> "ProjectDescriptor":
        seen = set()
        for spec in self.services:
            if spec.name in seen:
                raise ValueError(f"duplicate service name '{spec.name}'")
            seen.add(spec.name)
        return self

    def named_volumes(self) -> List[str]:
        out: List[str] = []
        for spec in self.services:
            for mount in spec.volumes:
                if mount.is_named and mount.source not in out:
                    out.append(mount.source)
        return out

    def extra_networks(self) -> List[str]:
        out: List[str] = []
        for spec in self.services:
            for net in spec.networks:
                if net not in out:
                    out.append(net)
        return out


# -------- observed state --------

class ServiceInstance(BaseModel):
    project: str
    service: str
    index: int = Field(..., ge=0)
    container_id: str
    name: str
    status: InstanceStatus
    image: Optional[str] = None
    fingerprint: Optional[str] = None
    created: Optional[datetime] = None
    labels: Dict[str, str] = Field(default_factory=dict)

    @property
    def live(self) -> bool:
        return self.status is not InstanceStatus.REMOVING


class OrphanResource(BaseModel):
    container_id: str
    name: str
    status: InstanceStatus
    reason: str


class ProjectView(BaseModel):
    name: str
    services: Dict[str, List[ServiceInstance]] = Field(default_factory=dict)
    orphans: List[OrphanResource] = Field(default_factory=list)
    networks: List[str] = Field(default_factory=list)
    volumes: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.services or self.orphans or self.networks or self.volumes)

    def instances(self, service: str) -> List[ServiceInstance]:
        return list(self.services.get(service, []))

    def live_instances(self, service: str) -> List[ServiceInstance]:
        return [i for i in self.instances(service) if i.live]

    def indices(self, service: str) -> List[int]:
        return [i.index for i in self.instances(service)]

    def all_instances(self) -> List[ServiceInstance]:
        return [i for items in self.services.values() for i in items]


class ProjectSummary(BaseModel):
    name: str
    services: Dict[str, int] = Field(default_factory=dict)
    running: int = 0
    orphans: int = 0
    networks: int = 0
    volumes: int = 0


# -------- operation results --------

class SubOperation(BaseModel):
    resource: ResourceType
    action: ResourceAction
    name: str
    service: Optional[str] = None
    index: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ServiceResult(BaseModel):
    service: str
    status: ResultStatus = ResultStatus.APPLIED
    requested: Optional[int] = Field(default=None, description="Requested replica delta (Scale)")
    succeeded: Optional[int] = Field(default=None, description="Delta actually applied (Scale)")
    operations: List[SubOperation] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class OperationResult(BaseModel):
    operation: Literal["up", "down", "scale"]
    project: str
    status: ResultStatus = ResultStatus.APPLIED
    services: List[ServiceResult] = Field(default_factory=list)
    operations: List[SubOperation] = Field(default_factory=list, description="Project-level sub-operations")
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    def all_operations(self) -> List[SubOperation]:
        ops = list(self.operations)
        for svc in self.services:
            ops.extend(svc.operations)
        return ops

    @property
    def succeeded(self) -> List[SubOperation]:
        return [op for op in self.all_operations() if op.ok]

    @property
    def failed(self) -> List[SubOperation]:
        return [op for op in self.all_operations() if not op.ok]

    @property
    def affected(self) -> List[SubOperation]:
        return self.succeeded

    def service(self, name: str) -> Optional[ServiceResult]:
        return next((s for s in self.services if s.service == name), None)

    def raise_for_status(self) -> "OperationResult":
        if self.status is not ResultStatus.APPLIED:
            raise PartialFailureError(self)
        return self


# -------- streams & notifications --------

class LogLine(BaseModel):
    service: str
    instance_index: int
    timestamp: Optional[datetime] = None
    text: str = ""
    final: bool = Field(default=False, description="End-of-stream marker for this instance")


class ChangeEvent(BaseModel):
    type: ResourceType
    project: str
    action: ResourceAction
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
