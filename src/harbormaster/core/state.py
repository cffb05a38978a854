"""
Project State Reader.

Rebuilds a ``ProjectView`` from live engine queries on every call. Nothing is
cached: the engine's labels are the system of record.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from harbormaster.core import naming
from harbormaster.core.context import OperationContext
from harbormaster.core.errors import NotFoundError
from harbormaster.core.gateway import ContainerRecord, EngineGateway
from harbormaster.core.models import (
    InstanceStatus,
    OrphanResource,
    ProjectSummary,
    ProjectView,
    ServiceInstance,
)
from harbormaster.utils.logger import logger


def free_indices(used: Iterable[int], count: int) -> List[int]:
    """The ``count`` lowest non-negative integers not in ``used`` (gap-filling)."""
    taken = set(used)
    out: List[int] = []
    candidate = 0
    while len(out) < count:
        if candidate not in taken:
            out.append(candidate)
        candidate += 1
    return out


def surplus_indices(used: Iterable[int], desired: int) -> List[int]:
    """Indices to remove to get down to ``desired``, highest first."""
    ordered = sorted(set(used), reverse=True)
    excess = len(ordered) - max(desired, 0)
    return ordered[:excess] if excess > 0 else []


def _to_instance(record: ContainerRecord, identity: naming.ServiceIdentity) -> ServiceInstance:
    return ServiceInstance(
        project=identity.project,
        service=identity.service,
        index=identity.index,
        container_id=record.id,
        name=record.name,
        status=record.status,
        image=record.image,
        fingerprint=record.labels.get(naming.LABEL_FINGERPRINT),
        created=record.created,
        labels=record.labels,
    )


class ProjectStateReader:
    def __init__(self, gateway: EngineGateway) -> None:
        self._gateway = gateway

    def snapshot(self, project: str, *, ctx: Optional[OperationContext] = None) -> ProjectView:
        """Current view of ``project``; empty (not an error) when nothing matches."""
        labels = naming.project_labels(project)
        containers = self._gateway.list_containers(labels, ctx=ctx)
        networks = self._gateway.list_networks(labels, ctx=ctx)
        volumes = self._gateway.list_volumes(labels, ctx=ctx)

        view = ProjectView(
            name=project,
            networks=sorted(n.name for n in networks),
            volumes=sorted(v.name for v in volumes),
        )

        services: Dict[str, List[ServiceInstance]] = {}
        seen: Dict[tuple, ServiceInstance] = {}
        for record in containers:
            identity = naming.parse_identity(record.labels)
            if identity is None or identity.project != project:
                continue
            if isinstance(identity, naming.ServiceIdentity):
                key = (identity.service, identity.index)
                if key in seen:
                    # Duplicate index: keep the first, surface the other as an orphan.
                    reason = f"duplicate index {identity.index} for service '{identity.service}'"
                    view.orphans.append(
                        OrphanResource(container_id=record.id, name=record.name, status=record.status, reason=reason)
                    )
                    continue
                instance = _to_instance(record, identity)
                seen[key] = instance
                services.setdefault(identity.service, []).append(instance)
            else:
                reason = getattr(identity, "reason", "container without service label")
                view.orphans.append(
                    OrphanResource(container_id=record.id, name=record.name, status=record.status, reason=reason)
                )

        view.services = {name: sorted(items, key=lambda i: i.index) for name, items in sorted(services.items())}
        for orphan in view.orphans:
            msg = f"orphan container {orphan.name} in project '{project}': {orphan.reason}"
            logger.warning(msg)
            view.warnings.append(msg)
        return view

    def read(self, project: str, *, ctx: Optional[OperationContext] = None) -> ProjectView:
        view = self.snapshot(project, ctx=ctx)
        if view.is_empty:
            raise NotFoundError(project)
        return view

    def list_projects(self, *, ctx: Optional[OperationContext] = None) -> List[ProjectSummary]:
        """Discover every project present on any labeled resource."""
        key = {naming.LABEL_PROJECT: None}
        summaries: Dict[str, ProjectSummary] = {}

        def summary(name: str) -> ProjectSummary:
            if name not in summaries:
                summaries[name] = ProjectSummary(name=name)
            return summaries[name]

        for record in self._gateway.list_containers(key, ctx=ctx):
            identity = naming.parse_identity(record.labels)
            if identity is None:
                continue
            s = summary(identity.project)
            if isinstance(identity, naming.ServiceIdentity):
                s.services[identity.service] = s.services.get(identity.service, 0) + 1
                if record.status is InstanceStatus.RUNNING:
                    s.running += 1
            else:
                s.orphans += 1

        for net in self._gateway.list_networks(key, ctx=ctx):
            project = net.labels.get(naming.LABEL_PROJECT)
            if project:
                summary(project).networks += 1

        for vol in self._gateway.list_volumes(key, ctx=ctx):
            project = vol.labels.get(naming.LABEL_PROJECT)
            if project:
                summary(project).volumes += 1

        return [summaries[name] for name in sorted(summaries)]
