"""
Engine Gateway: thin adapter over the Docker Engine API (docker SDK).

Every call checks the caller's ``OperationContext`` first and translates SDK
exceptions into the orchestrator's engine error family, so the core can tell
"not found", "conflict" and "already exists" apart without looking at HTTP
status codes.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

import docker
import requests
from docker.errors import APIError, DockerException, NotFound
from docker.models.containers import Container
from pydantic import BaseModel, Field

from harbormaster.config import Settings, get_settings
from harbormaster.core.context import OperationContext
from harbormaster.core.errors import (
    EngineAlreadyExistsError,
    EngineConflictError,
    EngineError,
    EngineNotFoundError,
    EngineUnavailableError,
)
from harbormaster.core.models import InstanceStatus, VolumeMount
from harbormaster.utils.logger import logger

_STATUS_MAP = {
    "created": InstanceStatus.CREATED,
    "running": InstanceStatus.RUNNING,
    "restarting": InstanceStatus.RUNNING,
    "paused": InstanceStatus.RUNNING,
    "removing": InstanceStatus.REMOVING,
    "exited": InstanceStatus.STOPPED,
    "dead": InstanceStatus.STOPPED,
}


def instance_status(engine_status: Optional[str]) -> InstanceStatus:
    return _STATUS_MAP.get((engine_status or "").lower(), InstanceStatus.STOPPED)


def parse_engine_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse RFC3339 timestamps with up to nanosecond precision."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    main, sep, rest = text.partition(".")
    if sep:
        digits = ""
        for i, ch in enumerate(rest):
            if not ch.isdigit():
                tz = rest[i:]
                break
            digits += ch
        else:
            tz = ""
        text = f"{main}.{digits[:6].ljust(6, '0')}{tz}"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# -------- records returned to the core --------

class ContainerRecord(BaseModel):
    id: str
    name: str
    status: InstanceStatus
    engine_status: str = ""
    image: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    created: Optional[datetime] = None


class NetworkRecord(BaseModel):
    id: str
    name: str
    labels: Dict[str, str] = Field(default_factory=dict)


class VolumeRecord(BaseModel):
    name: str
    labels: Dict[str, str] = Field(default_factory=dict)


def _label_filter(labels: Dict[str, Optional[str]]) -> Dict[str, List[str]]:
    return {"label": [f"{k}={v}" if v is not None else k for k, v in labels.items()]}


def _summarize_container(c: Container) -> ContainerRecord:
    attrs = c.attrs or {}
    config = attrs.get("Config") or {}
    engine_status = c.status or (attrs.get("State") or {}).get("Status", "")
    name = c.name or (attrs.get("Name") or "").lstrip("/")
    return ContainerRecord(
        id=c.id,
        name=name,
        status=instance_status(engine_status),
        engine_status=engine_status,
        image=config.get("Image"),
        labels=dict(c.labels or {}),
        created=parse_engine_timestamp(attrs.get("Created")),
    )


class EngineLogStream:
    """
    Closable iterator of ``(timestamp, text)`` tuples over one container's log.

    Wraps the SDK's cancellable byte stream; ``close()`` shuts the underlying
    socket so a blocked reader returns.
    """

    def __init__(self, raw: Any) -> None:
        self._raw = raw
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __iter__(self) -> Iterator[Tuple[Optional[datetime], str]]:
        buffer = b""
        for chunk in self._raw:
            if self._closed:
                return
            if isinstance(chunk, str):
                chunk = chunk.encode("utf-8")
            buffer += chunk
            while b"\n" in buffer:
                line, buffer = buffer.split(b"\n", 1)
                yield self._split(line)
        if buffer and not self._closed:
            yield self._split(buffer)

    @staticmethod
    def _split(line: bytes) -> Tuple[Optional[datetime], str]:
        text = line.decode("utf-8", errors="replace").rstrip("\r")
        stamp, sep, rest = text.partition(" ")
        ts = parse_engine_timestamp(stamp) if sep else None
        if ts is None:
            return None, text
        return ts, rest

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        close = getattr(self._raw, "close", None)
        if close is None:
            return
        try:
            close()
        except OSError as e:
            logger.debug(f"Error closing log stream: {e}")


class EngineGateway:
    """
    Capability-based access to the container engine.

    One docker client is shared by all callers; its HTTP connection pool is
    sized for the orchestrator's start concurrency. When the engine is
    unreachable the client is dropped and every later call tries to reconnect
    before raising ``EngineUnavailableError``.
    """

    def __init__(self, settings: Optional[Settings] = None, client: Optional[docker.DockerClient] = None) -> None:
        self.settings = settings or get_settings()
        self.client = client
        self._client_lock = threading.Lock()

    # -------- connection --------

    def connect(self) -> None:
        """Initialize Docker client with retry logic"""
        with self._client_lock:
            self._init_docker_client(self.settings.engine_connect_retries)

    def _init_docker_client(self, max_retries: int) -> None:
        for attempt in range(max_retries):
            try:
                client = docker.from_env(
                    timeout=self.settings.engine_timeout,
                    max_pool_size=max(10, self.settings.start_concurrency * 2),
                )
                client.ping()
                self.client = client
                logger.info("Docker client initialized successfully")
                return
            except (DockerException, requests.exceptions.RequestException) as e:
                logger.warning(f"Docker client initialization attempt {attempt + 1}/{max_retries} failed: {e}")
                if attempt < max_retries - 1:
                    time.sleep(2 ** attempt)  # Exponential backoff
                else:
                    logger.error(f"Failed to initialize Docker client after {max_retries} attempts: {e}")
                    self.client = None
                    raise EngineUnavailableError(f"Cannot connect to Docker daemon: {e}") from e

    def _ensure_docker_client(self) -> docker.DockerClient:
        client = self.client
        if client is not None:
            return client
        with self._client_lock:
            if self.client is None:
                logger.warning("Docker client is unavailable, attempting to reconnect...")
                self._init_docker_client(1)
            return self.client

    @property
    def available(self) -> bool:
        return self.client is not None

    @contextmanager
    def _engine_call(self, what: str, ctx: Optional[OperationContext]):
        if ctx is not None:
            ctx.check()
        logger.debug(f"engine: {what}")
        try:
            yield self._ensure_docker_client()
        except NotFound as e:
            raise EngineNotFoundError(f"{what}: {e.explanation or e}", status_code=404) from e
        except APIError as e:
            status = e.status_code
            detail = str(e.explanation or e)
            lowered = detail.lower()
            if status == 409 and ("already in use" in lowered or "already exists" in lowered):
                raise EngineAlreadyExistsError(f"{what}: {detail}", status_code=status) from e
            if status == 409 or (status == 403 and "active endpoints" in lowered):
                raise EngineConflictError(f"{what}: {detail}", status_code=status) from e
            raise EngineError(f"{what}: {detail}", status_code=status) from e
        except requests.exceptions.ConnectionError as e:
            logger.error(f"Docker client connection lost: {e}")
            self.client = None
            raise EngineUnavailableError(f"{what}: engine unreachable: {e}") from e
        except requests.exceptions.Timeout as e:
            raise EngineError(f"{what}: engine call timed out after {self.settings.engine_timeout}s") from e
        except DockerException as e:
            raise EngineError(f"{what}: {e}") from e

    def ping(self, *, ctx: Optional[OperationContext] = None) -> bool:
        with self._engine_call("ping", ctx) as client:
            return bool(client.ping())

    def info(self, *, ctx: Optional[OperationContext] = None) -> Dict[str, Any]:
        with self._engine_call("info", ctx) as client:
            return client.info()

    # -------- containers --------

    def list_containers(self, labels: Dict[str, Optional[str]], *, ctx: Optional[OperationContext] = None) -> List[ContainerRecord]:
        with self._engine_call(f"list containers {labels}", ctx) as client:
            items = client.containers.list(all=True, filters=_label_filter(labels))
            return [_summarize_container(c) for c in items]

    def _ensure_image(self, client: docker.DockerClient, image: str) -> None:
        try:
            client.images.get(image)
            logger.debug(f"Image {image} already exists locally")
        except NotFound:
            logger.info(f"Pulling image {image}...")
            client.images.pull(image)
            logger.info(f"Successfully pulled image {image}")

    def create_container(
        self,
        name: str,
        image: str,
        *,
        labels: Dict[str, str],
        environment: Optional[Dict[str, str]] = None,
        ports: Optional[Dict[str, Optional[int]]] = None,
        volumes: Optional[List[VolumeMount]] = None,
        network: Optional[str] = None,
        restart_policy: str = "unless-stopped",
        ctx: Optional[OperationContext] = None,
    ) -> ContainerRecord:
        binds = {
            m.source: {"bind": m.target, "mode": "ro" if m.read_only else "rw"}
            for m in (volumes or [])
        }
        with self._engine_call(f"create container {name}", ctx) as client:
            self._ensure_image(client, image)
            container = client.containers.create(
                image=image,
                name=name,
                detach=True,
                labels=labels,
                environment=environment or None,
                ports=ports or None,
                volumes=binds or None,
                network=network,
                restart_policy={"Name": restart_policy},
            )
            logger.info(f"Container created: {container.id[:12]} ({name})")
            return _summarize_container(container)

    def start_container(self, container_id: str, *, ctx: Optional[OperationContext] = None) -> None:
        with self._engine_call(f"start container {container_id[:12]}", ctx) as client:
            client.api.start(container_id)

    def stop_container(
        self, container_id: str, *, timeout: Optional[int] = None, ctx: Optional[OperationContext] = None
    ) -> None:
        if timeout is None:
            timeout = self.settings.stop_timeout
        with self._engine_call(f"stop container {container_id[:12]}", ctx) as client:
            client.api.stop(container_id, timeout=timeout)

    def remove_container(
        self, container_id: str, *, force: bool = False, ctx: Optional[OperationContext] = None
    ) -> None:
        with self._engine_call(f"remove container {container_id[:12]}", ctx) as client:
            client.api.remove_container(container_id, force=force)

    # -------- networks --------

    def list_networks(self, labels: Dict[str, Optional[str]], *, ctx: Optional[OperationContext] = None) -> List[NetworkRecord]:
        with self._engine_call(f"list networks {labels}", ctx) as client:
            return [
                NetworkRecord(id=n.id, name=n.name, labels=dict((n.attrs or {}).get("Labels") or {}))
                for n in client.networks.list(filters=_label_filter(labels))
            ]

    def create_network(
        self, name: str, *, labels: Dict[str, str], ctx: Optional[OperationContext] = None
    ) -> NetworkRecord:
        with self._engine_call(f"create network {name}", ctx) as client:
            net = client.networks.create(name, driver="bridge", labels=labels)
            logger.info(f"Network created: {name}")
            return NetworkRecord(id=net.id, name=name, labels=dict(labels))

    def connect_network(
        self,
        network: str,
        container_id: str,
        *,
        aliases: Optional[List[str]] = None,
        ctx: Optional[OperationContext] = None,
    ) -> None:
        with self._engine_call(f"connect {container_id[:12]} to {network}", ctx) as client:
            client.api.connect_container_to_network(container_id, network, aliases=aliases)

    def remove_network(self, name_or_id: str, *, ctx: Optional[OperationContext] = None) -> None:
        with self._engine_call(f"remove network {name_or_id}", ctx) as client:
            client.api.remove_network(name_or_id)

    # -------- volumes --------

    def list_volumes(self, labels: Dict[str, Optional[str]], *, ctx: Optional[OperationContext] = None) -> List[VolumeRecord]:
        with self._engine_call(f"list volumes {labels}", ctx) as client:
            return [
                VolumeRecord(name=v.name, labels=dict((v.attrs or {}).get("Labels") or {}))
                for v in client.volumes.list(filters=_label_filter(labels))
            ]

    def create_volume(
        self, name: str, *, labels: Dict[str, str], ctx: Optional[OperationContext] = None
    ) -> VolumeRecord:
        with self._engine_call(f"create volume {name}", ctx) as client:
            vol = client.volumes.create(name=name, labels=labels)
            logger.info(f"Volume created: {name}")
            return VolumeRecord(name=vol.name, labels=dict(labels))

    def remove_volume(self, name: str, *, ctx: Optional[OperationContext] = None) -> None:
        with self._engine_call(f"remove volume {name}", ctx) as client:
            client.api.remove_volume(name)

    # -------- logs --------

    def stream_logs(
        self,
        container_id: str,
        *,
        follow: bool = True,
        tail: Union[int, str] = 0,
        since: Optional[Union[datetime, int]] = None,
        ctx: Optional[OperationContext] = None,
    ) -> EngineLogStream:
        with self._engine_call(f"logs {container_id[:12]}", ctx) as client:
            raw = client.api.logs(
                container_id,
                stdout=True,
                stderr=True,
                stream=True,
                follow=follow,
                timestamps=True,
                tail=tail,
                since=since,
            )
            return EngineLogStream(raw)
