"""
Project lifecycle orchestrator.

Turns a ``ProjectDescriptor`` into running containers, networks and volumes,
and scales, tears down and tails them. Holds no state between calls: every
mutating operation takes the project's lock, re-reads the engine, diffs
against the desired state and applies the difference through the gateway.

Sub-operation failures are recorded in the returned ``OperationResult``;
only pre-condition failures raise.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Set, Tuple, Union

from pydantic import ValidationError

from harbormaster.config import Settings, get_settings
from harbormaster.core import naming
from harbormaster.core.context import OperationContext
from harbormaster.core.errors import (
    EngineAlreadyExistsError,
    EngineConflictError,
    EngineNotFoundError,
    InvalidSpecError,
    NotFoundError,
    OperationCancelledError,
    OrchestratorError,
    SpecUnavailableError,
)
from harbormaster.core.gateway import ContainerRecord, EngineGateway
from harbormaster.core.logs import LogStream
from harbormaster.core.models import (
    InstanceStatus,
    OperationResult,
    ProjectDescriptor,
    ProjectSummary,
    ProjectView,
    ResourceAction,
    ResourceType,
    ResultStatus,
    ServiceInstance,
    ServiceResult,
    ServiceSpec,
    SubOperation,
    VolumeMount,
)
from harbormaster.core.notifier import ChangeNotifier
from harbormaster.core.serializer import ProjectLocks
from harbormaster.core.state import ProjectStateReader, free_indices, surplus_indices
from harbormaster.utils.logger import logger

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

_VERBS = {
    ResourceAction.CREATED: "create",
    ResourceAction.STARTED: "start",
    ResourceAction.STOPPED: "stop",
    ResourceAction.REMOVED: "remove",
}


class _ServiceAborted(Exception):
    """Internal: an engine call failed and the rest of the service is skipped."""


def _service_status(errors: Sequence[str], ready: int) -> ResultStatus:
    if not errors:
        return ResultStatus.APPLIED
    return ResultStatus.PARTIALLY_APPLIED if ready > 0 else ResultStatus.FAILED


class ProjectOrchestrator:
    def __init__(
        self,
        gateway: EngineGateway,
        *,
        notifier: Optional[ChangeNotifier] = None,
        locks: Optional[ProjectLocks] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.gateway = gateway
        self.reader = ProjectStateReader(gateway)
        self.notifier = notifier or ChangeNotifier()
        self.locks = locks or ProjectLocks()
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def list_projects(self, *, ctx: Optional[OperationContext] = None) -> List[ProjectSummary]:
        return self.reader.list_projects(ctx=ctx)

    def get_project(self, project: str, *, ctx: Optional[OperationContext] = None) -> ProjectView:
        naming.validate_name(project, "project")
        return self.reader.read(project, ctx=ctx)

    def logs(
        self,
        project: str,
        service: Optional[str] = None,
        *,
        follow: bool = True,
        tail: Optional[Union[int, str]] = None,
        since: Optional[Union[datetime, int]] = None,
        ctx: Optional[OperationContext] = None,
    ) -> LogStream:
        """
        Open a multiplexed log stream over the project's (or one service's) instances.

        No history is replayed unless ``tail`` or ``since`` asks the engine for it.
        The caller owns the returned stream and must close it (or cancel ``ctx``).
        """
        ctx = ctx or OperationContext.background()
        naming.validate_name(project, "project")
        view = self.reader.read(project, ctx=ctx)
        if service is not None:
            naming.validate_name(service, "service")
            instances = view.instances(service)
            if not instances:
                raise NotFoundError(project, service)
        else:
            instances = view.all_instances()

        # No history unless the caller asked the engine for it.
        replay = tail if tail is not None else ("all" if since is not None else 0)

        sources = []
        try:
            for instance in instances:
                try:
                    stream = self.gateway.stream_logs(
                        instance.container_id,
                        follow=follow,
                        tail=replay,
                        since=since,
                        ctx=ctx,
                    )
                except EngineNotFoundError:
                    logger.info(f"Skipping logs for {instance.name}: container is gone")
                    continue
                sources.append((instance, stream))
        except OrchestratorError:
            for _, stream in sources:
                stream.close()
            raise

        logger.info(f"Streaming logs for project '{project}' from {len(sources)} instance(s)")
        return LogStream(sources, ctx=ctx, close_grace=self.settings.log_close_grace)

    # ------------------------------------------------------------------
    # up
    # ------------------------------------------------------------------

    def up(self, descriptor: ProjectDescriptor, *, ctx: Optional[OperationContext] = None) -> OperationResult:
        ctx = ctx or OperationContext.background()
        project = naming.validate_name(descriptor.name, "project")

        with self.locks.hold(project, "up"):
            logger.info(f"Up project '{project}' with {len(descriptor.services)} service(s)")
            view = self.reader.snapshot(project, ctx=ctx)
            result = OperationResult(operation="up", project=project, warnings=list(view.warnings))

            failed = self._ensure_project_resources(project, descriptor.services, view, result, ctx)

            cancelled = False
            for spec in descriptor.services:
                svc = ServiceResult(service=spec.name)
                result.services.append(svc)
                if cancelled:
                    svc.errors.append("operation cancelled")
                    svc.status = ResultStatus.FAILED
                    continue
                blocked = self._blocked_by(project, spec, failed)
                if blocked:
                    svc.errors.append(f"required resource unavailable: {blocked}")
                    svc.status = ResultStatus.FAILED
                    continue
                cancelled = self._up_service(project, spec, svc, ctx)

            result.status = self._overall_status(result)
            self._publish(result)

        logger.info(f"Up project '{project}' finished: {result.status.value}")
        return result

    def _up_service(self, project: str, spec: ServiceSpec, svc: ServiceResult, ctx: OperationContext) -> bool:
        """Reconcile one service; returns True when the caller's context was cancelled."""
        desired = naming.fingerprint(spec)
        ready = 0
        cancelled = False
        try:
            view = self._read_for_service(project, svc, ctx)
            instances = view.live_instances(spec.name)
            by_index = {i.index: i for i in instances}
            used: Set[int] = set(view.indices(spec.name))

            for index in surplus_indices(by_index, spec.replicas):
                self._remove_instance(by_index.pop(index), svc.operations, ctx)
                used.discard(index)

            for instance in sorted(by_index.values(), key=lambda i: i.index):
                if instance.fingerprint == desired:
                    if instance.status is not InstanceStatus.RUNNING:
                        self._record(
                            svc.operations,
                            SubOperation(resource=ResourceType.CONTAINER, action=ResourceAction.STARTED,
                                         name=instance.name, service=spec.name, index=instance.index),
                            lambda inst=instance: self.gateway.start_container(inst.container_id, ctx=ctx),
                        )
                    ready += 1
                    continue

                logger.info(f"Spec drift on {instance.name}: recreating at index {instance.index}")
                self._remove_instance(instance, svc.operations, ctx)
                started, abort = self._create_and_start(project, spec, [instance.index], svc, ctx)
                ready += started
                if abort is not None:
                    raise abort

            missing = spec.replicas - len(by_index)
            if missing > 0:
                indices = free_indices(used, missing)
                logger.info(f"Service '{spec.name}': creating {missing} instance(s) at {indices}")
                started, abort = self._create_and_start(project, spec, indices, svc, ctx)
                ready += started
                if abort is not None:
                    raise abort
        except _ServiceAborted as e:
            cancelled = isinstance(e.__cause__, OperationCancelledError)
            svc.errors.append(str(e))
            logger.warning(f"Service '{spec.name}' of '{project}' aborted: {e}")

        svc.status = _service_status(svc.errors, ready)
        return cancelled

    # ------------------------------------------------------------------
    # scale
    # ------------------------------------------------------------------

    def scale(
        self, project: str, service: str, replicas: int, *, ctx: Optional[OperationContext] = None
    ) -> OperationResult:
        ctx = ctx or OperationContext.background()
        naming.validate_name(project, "project")
        naming.validate_name(service, "service")
        if isinstance(replicas, bool) or not isinstance(replicas, int) or replicas < 0:
            raise InvalidSpecError(f"replicas must be a non-negative integer, got {replicas!r}")

        with self.locks.hold(project, "scale"):
            view = self.reader.read(project, ctx=ctx)
            result = OperationResult(operation="scale", project=project, warnings=list(view.warnings))
            svc = ServiceResult(service=service)
            result.services.append(svc)

            instances = view.live_instances(service)
            current = len(instances)
            svc.requested = replicas - current
            svc.succeeded = 0

            if replicas == current:
                logger.info(f"Scale '{project}/{service}': already at {current} replica(s)")
            elif replicas > current:
                spec = self._recorded_spec(view, service)
                failed = self._ensure_project_resources(project, [spec], view, result, ctx)
                blocked = self._blocked_by(project, spec, failed)
                if blocked:
                    svc.errors.append(f"required resource unavailable: {blocked}")
                else:
                    indices = free_indices(view.indices(service), replicas - current)
                    logger.info(f"Scale '{project}/{service}' up {current} -> {replicas}: new indices {indices}")
                    svc.succeeded, abort = self._create_and_start(project, spec, indices, svc, ctx)
                    if abort is not None:
                        svc.errors.append(str(abort))
                        logger.warning(f"Scale '{project}/{service}' aborted: {abort}")
            else:
                by_index = {i.index: i for i in instances}
                doomed = surplus_indices(by_index, replicas)
                logger.info(f"Scale '{project}/{service}' down {current} -> {replicas}: removing {doomed}")
                for index in doomed:
                    try:
                        self._remove_instance(by_index[index], svc.operations, ctx)
                    except _ServiceAborted as e:
                        svc.errors.append(str(e))
                        logger.warning(f"Scale '{project}/{service}' aborted: {e}")
                        break
                    svc.succeeded -= 1

            if svc.succeeded == svc.requested:
                svc.status = ResultStatus.APPLIED
            elif svc.succeeded == 0:
                svc.status = ResultStatus.FAILED
            else:
                svc.status = ResultStatus.PARTIALLY_APPLIED
            if svc.status is not ResultStatus.APPLIED and not svc.errors:
                svc.errors.append(f"applied {svc.succeeded} of requested {svc.requested}")

            result.status = self._overall_status(result)
            self._publish(result)

        logger.info(f"Scale '{project}/{service}' finished: {result.status.value}")
        return result

    def _recorded_spec(self, view: ProjectView, service: str) -> ServiceSpec:
        """Spec recorded on the most recently created instance of ``service``."""
        candidates = sorted(view.instances(service), key=lambda i: i.created or _EPOCH, reverse=True)
        for instance in candidates:
            raw = instance.labels.get(naming.LABEL_SPEC)
            if not raw:
                continue
            try:
                spec = ServiceSpec.model_validate_json(raw)
            except ValidationError:
                logger.warning(f"Ignoring unparseable spec label on {instance.name}")
                continue
            if spec.name == service:
                return spec
        raise SpecUnavailableError(view.name, service)

    # ------------------------------------------------------------------
    # down
    # ------------------------------------------------------------------

    def down(
        self, project: str, *, keep_volumes: bool = False, ctx: Optional[OperationContext] = None
    ) -> OperationResult:
        ctx = ctx or OperationContext.background()
        naming.validate_name(project, "project")

        with self.locks.hold(project, "down"):
            view = self.reader.snapshot(project, ctx=ctx)
            result = OperationResult(operation="down", project=project, warnings=list(view.warnings))
            if view.is_empty:
                logger.info(f"Down project '{project}': nothing to remove")
                return result

            logger.info(
                f"Down project '{project}': {len(view.all_instances())} instance(s), {len(view.orphans)} orphan(s), "
                f"{len(view.networks)} network(s), {len(view.volumes)} volume(s) (keep_volumes={keep_volumes})"
            )
            containers: List[Tuple[str, str, InstanceStatus, Optional[str], Optional[int]]] = [
                (i.container_id, i.name, i.status, i.service, i.index) for i in view.all_instances()
            ]
            containers.extend((o.container_id, o.name, o.status, None, None) for o in view.orphans)

            try:
                for container_id, name, status, service, index in containers:
                    try:
                        self._remove_container(container_id, name, status, service, index, result.operations, ctx)
                    except _ServiceAborted as e:
                        result.errors.append(str(e))
                        if isinstance(e.__cause__, OperationCancelledError):
                            raise

                for net in view.networks:
                    self._best_effort(
                        result,
                        SubOperation(resource=ResourceType.NETWORK, action=ResourceAction.REMOVED, name=net),
                        lambda net=net: self.gateway.remove_network(net, ctx=ctx),
                    )

                if not keep_volumes:
                    for vol in view.volumes:
                        self._best_effort(
                            result,
                            SubOperation(resource=ResourceType.VOLUME, action=ResourceAction.REMOVED, name=vol),
                            lambda vol=vol: self.gateway.remove_volume(vol, ctx=ctx),
                        )
            except _ServiceAborted:
                logger.warning(f"Down project '{project}' cancelled by caller")

            if not result.failed:
                result.status = ResultStatus.APPLIED
            elif not result.succeeded:
                result.status = ResultStatus.FAILED
            else:
                result.status = ResultStatus.PARTIALLY_APPLIED
            self._publish(result)

        logger.info(f"Down project '{project}' finished: {result.status.value}")
        return result

    def _best_effort(self, result: OperationResult, op: SubOperation, fn: Callable[[], object]) -> None:
        try:
            self._record(result.operations, op, fn, missing_ok=True)
        except _ServiceAborted as e:
            result.errors.append(str(e))
            if isinstance(e.__cause__, OperationCancelledError):
                raise

    # ------------------------------------------------------------------
    # building blocks
    # ------------------------------------------------------------------

    def _read_for_service(self, project: str, svc: ServiceResult, ctx: OperationContext) -> ProjectView:
        try:
            return self.reader.snapshot(project, ctx=ctx)
        except OrchestratorError as e:
            raise _ServiceAborted(f"read state: {e}") from e

    def _record(
        self,
        ops: List[SubOperation],
        op: SubOperation,
        fn: Callable[[], object],
        *,
        missing_ok: bool = False,
    ) -> object:
        """Run one engine call, appending ``op`` (with its error, if any) to ``ops``."""
        try:
            out = fn()
        except EngineNotFoundError as e:
            if not missing_ok:
                op.error = str(e)
                ops.append(op)
                raise _ServiceAborted(str(e)) from e
            logger.info(f"{op.resource.value} {op.name} already gone")
            out = None
        except OrchestratorError as e:
            op.error = str(e)
            ops.append(op)
            logger.error(f"Failed to {_VERBS[op.action]} {op.resource.value} {op.name}: {e}")
            raise _ServiceAborted(str(e)) from e
        ops.append(op)
        return out

    def _remove_instance(self, instance: ServiceInstance, ops: List[SubOperation], ctx: OperationContext) -> None:
        self._remove_container(
            instance.container_id, instance.name, instance.status, instance.service, instance.index, ops, ctx
        )

    def _remove_container(
        self,
        container_id: str,
        name: str,
        status: InstanceStatus,
        service: Optional[str],
        index: Optional[int],
        ops: List[SubOperation],
        ctx: OperationContext,
    ) -> None:
        """Stop (if running) then remove; a container that is already gone counts as removed."""
        if status is InstanceStatus.RUNNING:
            self._record(
                ops,
                SubOperation(resource=ResourceType.CONTAINER, action=ResourceAction.STOPPED,
                             name=name, service=service, index=index),
                lambda: self.gateway.stop_container(container_id, ctx=ctx),
                missing_ok=True,
            )
        self._record(
            ops,
            SubOperation(resource=ResourceType.CONTAINER, action=ResourceAction.REMOVED,
                         name=name, service=service, index=index),
            lambda: self.gateway.remove_container(container_id, force=True, ctx=ctx),
            missing_ok=True,
        )

    def _create_and_start(
        self, project: str, spec: ServiceSpec, indices: Sequence[int], svc: ServiceResult, ctx: OperationContext
    ) -> Tuple[int, Optional[_ServiceAborted]]:
        """
        Create instances at ``indices`` sequentially, then attach and start them concurrently.

        Returns the number of instances started and, if any engine call failed,
        the abort to raise for the rest of the service. Instances created
        before a creation failure are still started.
        """
        created: List[Tuple[int, ContainerRecord]] = []
        abort: Optional[_ServiceAborted] = None
        for index in indices:
            name = naming.container_name(project, spec.name, index)
            try:
                record = self._record(
                    svc.operations,
                    SubOperation(resource=ResourceType.CONTAINER, action=ResourceAction.CREATED,
                                 name=name, service=spec.name, index=index),
                    lambda name=name, index=index: self._create_instance(project, spec, name, index, ctx),
                )
            except _ServiceAborted as e:
                abort = e
                break
            created.append((index, record))

        started, failures = self._start_many(project, spec, created, svc, ctx)
        if failures and abort is None:
            abort = _ServiceAborted("; ".join(failures))
        return started, abort

    def _create_instance(
        self, project: str, spec: ServiceSpec, name: str, index: int, ctx: OperationContext
    ) -> ContainerRecord:
        mounts = [
            VolumeMount(
                source=naming.volume_name(project, m.source) if m.is_named else m.source,
                target=m.target,
                read_only=m.read_only,
            )
            for m in spec.volumes
        ]
        return self.gateway.create_container(
            name,
            spec.image,
            labels=naming.instance_labels(project, spec, index),
            environment=dict(spec.environment),
            ports=dict(spec.ports),
            volumes=mounts,
            network=naming.network_name(project),
            restart_policy=spec.restart_policy,
            ctx=ctx,
        )

    def _start_many(
        self,
        project: str,
        spec: ServiceSpec,
        created: Sequence[Tuple[int, ContainerRecord]],
        svc: ServiceResult,
        ctx: OperationContext,
    ) -> Tuple[int, List[str]]:
        """Attach and start new instances on a bounded pool; failures are collected, not raised."""
        if not created:
            return 0, []

        def attach_and_start(index: int, record: ContainerRecord) -> SubOperation:
            op = SubOperation(resource=ResourceType.CONTAINER, action=ResourceAction.STARTED,
                              name=record.name, service=spec.name, index=index)
            try:
                for net in spec.networks:
                    self.gateway.connect_network(
                        naming.network_name(project, net), record.id, aliases=[spec.name], ctx=ctx
                    )
                self.gateway.start_container(record.id, ctx=ctx)
            except OrchestratorError as e:
                op.error = str(e)
                logger.error(f"Failed to start {record.name}: {e}")
            return op

        workers = min(self.settings.start_concurrency, len(created))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"start-{spec.name}") as pool:
            futures = [pool.submit(attach_and_start, index, record) for index, record in created]
            ops = [f.result() for f in futures]

        started = 0
        failures: List[str] = []
        for op in ops:
            svc.operations.append(op)
            if op.ok:
                started += 1
            else:
                failures.append(f"{op.name}: {op.error}")
        return started, failures

    def _ensure_project_resources(
        self,
        project: str,
        specs: Sequence[ServiceSpec],
        view: ProjectView,
        result: OperationResult,
        ctx: OperationContext,
    ) -> Set[str]:
        """Create missing project networks and named volumes; returns names that failed."""
        failed: Set[str] = set()
        networks = [naming.network_name(project)]
        volumes: List[str] = []
        for spec in specs:
            for net in spec.networks:
                name = naming.network_name(project, net)
                if name not in networks:
                    networks.append(name)
            for mount in spec.volumes:
                if mount.is_named:
                    name = naming.volume_name(project, mount.source)
                    if name not in volumes:
                        volumes.append(name)

        labels = naming.project_labels(project)
        for name in networks:
            if name in view.networks:
                continue
            op = SubOperation(resource=ResourceType.NETWORK, action=ResourceAction.CREATED, name=name)
            created = self._ensure(
                project, result, op, ctx, lambda name=name: self.gateway.create_network(name, labels=labels, ctx=ctx)
            )
            if not created:
                failed.add(name)
        for name in volumes:
            if name in view.volumes:
                continue
            op = SubOperation(resource=ResourceType.VOLUME, action=ResourceAction.CREATED, name=name)
            created = self._ensure(
                project, result, op, ctx, lambda name=name: self.gateway.create_volume(name, labels=labels, ctx=ctx)
            )
            if not created:
                failed.add(name)
        return failed

    def _ensure(
        self,
        project: str,
        result: OperationResult,
        op: SubOperation,
        ctx: OperationContext,
        create: Callable[[], object],
    ) -> bool:
        try:
            owner = self._owner_of(op.resource, op.name, ctx)
            if owner is not None and owner != project:
                raise EngineConflictError(f"name is taken by project '{owner}'", status_code=409)
            try:
                create()
            except EngineAlreadyExistsError:
                logger.warning(f"{op.resource.value} {op.name} already exists without project labels; reusing it")
                return True
        except OrchestratorError as e:
            op.error = str(e)
            result.operations.append(op)
            result.errors.append(f"{op.resource.value} {op.name}: {e}")
            logger.error(f"Failed to create {op.resource.value} {op.name}: {e}")
            return False
        result.operations.append(op)
        return True

    def _owner_of(self, resource: ResourceType, name: str, ctx: OperationContext) -> Optional[str]:
        """Project label of an existing network or volume called ``name``."""
        if resource is ResourceType.NETWORK:
            records = self.gateway.list_networks({naming.LABEL_PROJECT: None}, ctx=ctx)
        else:
            records = self.gateway.list_volumes({naming.LABEL_PROJECT: None}, ctx=ctx)
        for record in records:
            if record.name == name:
                return record.labels.get(naming.LABEL_PROJECT)
        return None

    @staticmethod
    def _blocked_by(project: str, spec: ServiceSpec, failed: Set[str]) -> Optional[str]:
        if not failed:
            return None
        needed = [naming.network_name(project)]
        needed.extend(naming.network_name(project, n) for n in spec.networks)
        needed.extend(naming.volume_name(project, m.source) for m in spec.volumes if m.is_named)
        for name in needed:
            if name in failed:
                return name
        return None

    @staticmethod
    def _overall_status(result: OperationResult) -> ResultStatus:
        statuses = [s.status for s in result.services]
        if result.errors:
            statuses.append(ResultStatus.FAILED)
        return ResultStatus.aggregate(statuses)

    def _publish(self, result: OperationResult) -> None:
        self.notifier.publish_result(result)
