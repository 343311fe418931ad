"""Container runtime adapter over the Docker SDK.

Every call takes an explicit RuntimeContext naming the environment and Docker
host to talk to. Docker SDK calls are blocking, so they run in worker threads;
streaming SDK iterators (image pulls, container logs) are bridged to async
iterators.

Docker payloads are converted into typed dataclasses at this boundary. A
payload missing a required field raises UnexpectedPayloadError instead of
leaking half-populated dicts into the update pipeline.
"""

import asyncio
import logging
import os
from collections.abc import AsyncIterator, Callable, Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, TypeVar

import docker
from docker.errors import ImageNotFound, NotFound

from dockgate.exceptions import ContainerNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_DOCKER_HOST = os.getenv("DOCKER_HOST", "unix:///var/run/docker.sock")

T = TypeVar("T")


class UnexpectedPayloadError(ValueError):
    """Raised when Docker returns a payload without a required field."""
    pass


@dataclass(frozen=True)
class RuntimeContext:
    """Which environment (and Docker host) an adapter call targets."""

    environment_id: int | None = None
    docker_host: str = DEFAULT_DOCKER_HOST


@dataclass(frozen=True)
class ContainerSummary:
    id: str
    name: str
    image: str
    state: str


@dataclass(frozen=True)
class RestartPolicy:
    name: str = "no"
    maximum_retry_count: int = 0


@dataclass(frozen=True)
class PortBinding:
    host_ip: str = ""
    host_port: str = ""


def _require(data: Mapping[str, Any], key: str, where: str) -> Any:
    if not isinstance(data, Mapping) or key not in data or data[key] is None:
        raise UnexpectedPayloadError(f"Docker {where} payload is missing '{key}'")
    return data[key]


@dataclass(frozen=True)
class ContainerSnapshot:
    """Immutable capture of a container's definition before it is replaced."""

    id: str
    name: str
    running: bool
    image: str
    image_id: str
    env: tuple[str, ...] = ()
    labels: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    command: tuple[str, ...] | None = None
    port_bindings: Mapping[str, tuple[PortBinding, ...]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    binds: tuple[str, ...] = ()
    restart_policy: RestartPolicy = RestartPolicy()
    network_mode: str | None = None

    @classmethod
    def from_inspect(cls, data: Mapping[str, Any]) -> "ContainerSnapshot":
        """Build a snapshot from a ``docker inspect`` payload."""
        state = _require(data, "State", "inspect")
        config = _require(data, "Config", "inspect")
        host_config = data.get("HostConfig") or {}

        port_bindings: dict[str, tuple[PortBinding, ...]] = {}
        for container_port, bindings in (host_config.get("PortBindings") or {}).items():
            if not bindings:
                continue
            port_bindings[container_port] = tuple(
                PortBinding(
                    host_ip=binding.get("HostIp") or "",
                    host_port=binding.get("HostPort") or "",
                )
                for binding in bindings
            )

        restart = host_config.get("RestartPolicy") or {}
        command = config.get("Cmd")

        return cls(
            id=_require(data, "Id", "inspect"),
            name=str(_require(data, "Name", "inspect")).lstrip("/"),
            running=bool(state.get("Running", False)),
            image=_require(config, "Image", "inspect Config"),
            image_id=_require(data, "Image", "inspect"),
            env=tuple(config.get("Env") or ()),
            labels=MappingProxyType(dict(config.get("Labels") or {})),
            command=tuple(command) if command else None,
            port_bindings=MappingProxyType(port_bindings),
            binds=tuple(host_config.get("Binds") or ()),
            restart_policy=RestartPolicy(
                name=restart.get("Name") or "no",
                maximum_retry_count=int(restart.get("MaximumRetryCount") or 0),
            ),
            network_mode=host_config.get("NetworkMode") or None,
        )


@dataclass(frozen=True)
class PullProgress:
    """One line of ``docker pull`` progress."""

    status: str | None = None
    id: str | None = None
    progress: str | None = None

    @classmethod
    def from_stream(cls, item: Mapping[str, Any]) -> "PullProgress":
        return cls(status=item.get("status"), id=item.get("id"), progress=item.get("progress"))


@dataclass(frozen=True)
class ContainerCreateSpec:
    """Everything needed to recreate a container on a new image."""

    name: str
    image: str
    env: tuple[str, ...] = ()
    labels: Mapping[str, str] = field(default_factory=dict)
    command: tuple[str, ...] | None = None
    port_bindings: Mapping[str, tuple[PortBinding, ...]] = field(default_factory=dict)
    binds: tuple[str, ...] = ()
    restart_policy: RestartPolicy = RestartPolicy()
    network_mode: str | None = None

    @classmethod
    def from_snapshot(cls, snapshot: ContainerSnapshot) -> "ContainerCreateSpec":
        return cls(
            name=snapshot.name,
            image=snapshot.image,
            env=snapshot.env,
            labels=snapshot.labels,
            command=snapshot.command,
            port_bindings=snapshot.port_bindings,
            binds=snapshot.binds,
            restart_policy=snapshot.restart_policy,
            network_mode=snapshot.network_mode,
        )

    def docker_ports(self) -> dict[str, Any]:
        """Port bindings in the shape ``containers.create(ports=...)`` expects."""
        ports: dict[str, Any] = {}
        for container_port, bindings in self.port_bindings.items():
            converted = []
            for binding in bindings:
                host_port = int(binding.host_port) if binding.host_port else None
                if binding.host_ip:
                    converted.append(
                        (binding.host_ip, host_port) if host_port is not None else (binding.host_ip,)
                    )
                else:
                    converted.append(host_port)
            ports[container_port] = converted[0] if len(converted) == 1 else converted
        return ports

    def docker_restart_policy(self) -> dict[str, Any]:
        policy: dict[str, Any] = {"Name": self.restart_policy.name}
        if self.restart_policy.name == "on-failure":
            policy["MaximumRetryCount"] = self.restart_policy.maximum_retry_count
        return policy


@dataclass(frozen=True)
class ContainerOutput:
    """Output from a one-shot container.

    ``stream`` is ``stderr`` for live log lines and ``stdout`` for the final
    item, which carries the complete stdout and the exit code.
    """

    stream: str
    text: str
    exit_code: int | None = None


class CreatedContainer:
    """Handle to a container that has been created but not started."""

    def __init__(self, runtime: "DockerRuntime", ctx: RuntimeContext, container_id: str, name: str):
        self._runtime = runtime
        self._ctx = ctx
        self.id = container_id
        self.name = name

    async def start(self) -> None:
        await self._runtime.start_container(self._ctx, self.id)

    def __repr__(self):
        return f"<CreatedContainer(id={self.id[:12]}, name={self.name})>"


_DONE = object()


async def iterate_in_thread(produce: Callable[[], Iterator[T]]) -> AsyncIterator[T]:
    """Drive a blocking iterator in a worker thread and yield its items.

    Items are handed to the event loop through a queue, so ordering is
    preserved. An exception raised by the iterator is re-raised here after all
    items produced before it have been yielded.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def worker() -> None:
        try:
            for item in produce():
                loop.call_soon_threadsafe(queue.put_nowait, (item, None))
        except Exception as e:
            loop.call_soon_threadsafe(queue.put_nowait, (_DONE, e))
        else:
            loop.call_soon_threadsafe(queue.put_nowait, (_DONE, None))

    worker_task = asyncio.ensure_future(asyncio.to_thread(worker))
    try:
        while True:
            item, error = await queue.get()
            if item is _DONE:
                if error is not None:
                    raise error
                break
            yield item
    finally:
        if worker_task.done():
            worker_task.result()


class DockerRuntime:
    """Docker Engine operations used by the update pipeline and scanners."""

    def __init__(self, client_factory: Callable[[str], docker.DockerClient] | None = None) -> None:
        self._client_factory = client_factory or (lambda host: docker.DockerClient(base_url=host))
        self._clients: dict[str, docker.DockerClient] = {}

    def _client(self, ctx: RuntimeContext) -> docker.DockerClient:
        client = self._clients.get(ctx.docker_host)
        if client is None:
            client = self._client_factory(ctx.docker_host)
            self._clients[ctx.docker_host] = client
        return client

    def close(self) -> None:
        for client in self._clients.values():
            try:
                client.close()
            except Exception as e:
                logger.debug(f"Error closing Docker client: {e}")
        self._clients.clear()

    # Containers

    async def list_containers(self, ctx: RuntimeContext, all: bool = True) -> list[ContainerSummary]:
        client = self._client(ctx)
        raw = await asyncio.to_thread(client.api.containers, all=all)
        summaries = []
        for item in raw:
            names = item.get("Names") or []
            summaries.append(
                ContainerSummary(
                    id=_require(item, "Id", "container list"),
                    name=names[0].lstrip("/") if names else item["Id"][:12],
                    image=item.get("Image", ""),
                    state=item.get("State", "unknown"),
                )
            )
        return summaries

    async def inspect_container(self, ctx: RuntimeContext, container_id: str) -> ContainerSnapshot:
        client = self._client(ctx)
        try:
            data = await asyncio.to_thread(client.api.inspect_container, container_id)
        except NotFound:
            raise ContainerNotFoundError(container_id)
        return ContainerSnapshot.from_inspect(data)

    async def stop_container(self, ctx: RuntimeContext, container_id: str) -> None:
        client = self._client(ctx)
        await asyncio.to_thread(client.api.stop, container_id)

    async def remove_container(self, ctx: RuntimeContext, container_id: str, force: bool = True) -> None:
        client = self._client(ctx)
        await asyncio.to_thread(client.api.remove_container, container_id, force=force)

    async def start_container(self, ctx: RuntimeContext, container_id: str) -> None:
        client = self._client(ctx)
        await asyncio.to_thread(client.api.start, container_id)

    async def create_container(self, ctx: RuntimeContext, spec: ContainerCreateSpec) -> CreatedContainer:
        client = self._client(ctx)
        kwargs: dict[str, Any] = {
            "name": spec.name,
            "environment": list(spec.env),
            "labels": dict(spec.labels),
            "ports": spec.docker_ports(),
            "volumes": list(spec.binds),
            "restart_policy": spec.docker_restart_policy(),
        }
        if spec.command:
            kwargs["command"] = list(spec.command)
        if spec.network_mode:
            kwargs["network_mode"] = spec.network_mode

        container = await asyncio.to_thread(client.containers.create, spec.image, **kwargs)
        logger.info(f"Created container {spec.name} ({container.id[:12]}) from {spec.image}")
        return CreatedContainer(self, ctx, container.id, spec.name)

    # Images

    async def pull_image(self, ctx: RuntimeContext, image: str) -> AsyncIterator[PullProgress]:
        """Pull an image, yielding progress lines as Docker reports them."""
        client = self._client(ctx)

        def produce() -> Iterator[PullProgress]:
            for item in client.api.pull(image, stream=True, decode=True):
                if item.get("error"):
                    raise docker.errors.APIError(item["error"])
                yield PullProgress.from_stream(item)

        async for progress in iterate_in_thread(produce):
            yield progress

    async def tag_image(self, ctx: RuntimeContext, image_id: str, repo: str, tag: str) -> None:
        client = self._client(ctx)
        tagged = await asyncio.to_thread(client.api.tag, image_id, repo, tag, force=True)
        if not tagged:
            raise docker.errors.APIError(f"Docker refused to tag {image_id[:19]} as {repo}:{tag}")

    async def get_image_id_by_tag(self, ctx: RuntimeContext, reference: str) -> str | None:
        """Resolve an image reference to its id, or None when it does not exist."""
        client = self._client(ctx)
        try:
            data = await asyncio.to_thread(client.api.inspect_image, reference)
            image_id = data.get("Id")
            if image_id:
                return image_id
        except (ImageNotFound, NotFound):
            pass

        # Fall back to matching normalized tags in the image list
        wanted = normalize_image_reference(reference)
        for image in await asyncio.to_thread(client.api.images):
            for tag in image.get("RepoTags") or []:
                if normalize_image_reference(tag) == wanted:
                    return image.get("Id")
        return None

    async def image_exists(self, ctx: RuntimeContext, reference: str) -> bool:
        client = self._client(ctx)
        try:
            await asyncio.to_thread(client.api.inspect_image, reference)
            return True
        except (ImageNotFound, NotFound):
            return False

    async def get_repo_digests(self, ctx: RuntimeContext, image_id: str) -> list[str] | None:
        """Registry digests (``repo@sha256:...``) of a local image, None if it is gone."""
        client = self._client(ctx)
        try:
            data = await asyncio.to_thread(client.api.inspect_image, image_id)
        except (ImageNotFound, NotFound):
            return None
        return list(data.get("RepoDigests") or [])

    async def get_registry_digest(self, ctx: RuntimeContext, reference: str) -> str | None:
        """Manifest digest the registry currently serves for a reference.

        Returns None when the registry cannot be reached or does not know the
        image; the daemon's own registry credentials are used.
        """
        client = self._client(ctx)
        try:
            data = await asyncio.to_thread(client.api.inspect_distribution, reference)
        except docker.errors.APIError as e:
            logger.debug(f"Registry lookup for {reference} failed: {e}")
            return None
        return (data.get("Descriptor") or {}).get("digest")

    async def remove_image(self, ctx: RuntimeContext, reference: str, force: bool = False) -> None:
        """Remove an image reference. Removing one of several tags only untags."""
        client = self._client(ctx)
        await asyncio.to_thread(client.api.remove_image, reference, force=force)

    # One-shot containers (scanners)

    async def ensure_volume(self, ctx: RuntimeContext, name: str) -> None:
        client = self._client(ctx)
        try:
            await asyncio.to_thread(client.volumes.get, name)
            logger.debug(f"Using existing volume {name}")
        except NotFound:
            logger.info(f"Creating volume {name}")
            await asyncio.to_thread(client.volumes.create, name=name)

    async def run_container(
        self,
        ctx: RuntimeContext,
        image: str,
        command: list[str],
        binds: list[str],
        environment: list[str],
        name: str,
    ) -> AsyncIterator[ContainerOutput]:
        """Run a container to completion, streaming its stderr.

        The final item carries stdout and the exit code. The container is
        removed afterwards.
        """
        client = self._client(ctx)

        def produce() -> Iterator[ContainerOutput]:
            container = client.containers.run(
                image,
                command,
                volumes=binds,
                environment=environment,
                name=name,
                detach=True,
            )
            try:
                buffered = ""
                for chunk in container.logs(stream=True, follow=True, stdout=False, stderr=True):
                    buffered += chunk.decode("utf-8", errors="replace")
                    *lines, buffered = buffered.split("\n")
                    for line in lines:
                        if line.strip():
                            yield ContainerOutput("stderr", line)
                if buffered.strip():
                    yield ContainerOutput("stderr", buffered)

                status = container.wait()
                stdout = container.logs(stdout=True, stderr=False).decode("utf-8", errors="replace")
                yield ContainerOutput("stdout", stdout, exit_code=status.get("StatusCode"))
            finally:
                try:
                    container.remove(force=True)
                except Exception as e:
                    logger.warning(f"Failed to remove one-shot container {name}: {e}")

        async for output in iterate_in_thread(produce):
            yield output


def normalize_image_reference(reference: str) -> str:
    """Normalize a Docker Hub reference for comparison.

    ``docker.io/library/nginx`` and ``nginx:latest`` normalize to the same value.
    """
    normalized = reference
    if normalized.startswith("docker.io/"):
        normalized = normalized[len("docker.io/"):]
    if normalized.startswith("library/"):
        normalized = normalized[len("library/"):]
    last_segment = normalized.rsplit("/", 1)[-1]
    if ":" not in last_segment and "@" not in normalized:
        normalized = f"{normalized}:latest"
    return normalized.lower()
