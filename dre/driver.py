from __future__ import annotations

from dataclasses import dataclass

import docker
from docker.errors import DockerException, NotFound

from .db import log_event
from .runtime import ResolvedTemplate
from .settings import settings


@dataclass(frozen=True)
class InstanceRef:
    id: str
    address: str


class RuntimeDriver:
    """What the engine needs from whatever actually runs processes."""

    def create(self, workload: str, name: str, template: ResolvedTemplate) -> InstanceRef:
        raise NotImplementedError

    def terminate(self, runtime_id: str) -> None:
        raise NotImplementedError

    def is_running(self, runtime_id: str) -> bool:
        raise NotImplementedError

    def purge_volume(self, pool: str) -> None:
        raise NotImplementedError


class DockerDriver(RuntimeDriver):
    """Runs instances as containers on a shared bridge network."""

    def _client(self) -> docker.DockerClient:
        return docker.from_env()

    def available(self) -> bool:
        try:
            self._client().ping()
            return True
        except DockerException:
            return False

    def ensure_network(self) -> None:
        c = self._client()
        try:
            c.networks.get(settings.docker_network)
        except NotFound:
            c.networks.create(settings.docker_network, driver="bridge")
            log_event("INFO", f"Created docker network '{settings.docker_network}'.")

    def create(self, workload: str, name: str, template: ResolvedTemplate) -> InstanceRef:
        """Create and start a container for one instance.

        Containers are labeled so they can be re-discovered after restarts.
        """
        if not self.available():
            raise RuntimeError("Docker is not available. Start the docker daemon and try again.")
        self.ensure_network()

        labels = {f"dre.label.{k}": v for k, v in template.labels.items()}
        labels.update({"dre.workload": workload, "dre.instance": name})
        volumes = {}
        if template.volume_pool:
            volumes[f"dre-{template.volume_pool}"] = {"bind": settings.volume_mount_path, "mode": "rw"}

        container = self._client().containers.run(
            template.image,
            detach=True,
            name=name,
            environment=dict(template.env),
            network=settings.docker_network,
            labels=labels,
            volumes=volumes,
            # Self-healing is the engine's job; keep Docker's restart policy off.
            restart_policy={"Name": "no"},
        )
        log_event("INFO", f"Started container {name} from image {template.image}", resource=f"workload/{workload}")
        # Container name resolves on the user-defined bridge network.
        return InstanceRef(id=container.id, address=name)

    def terminate(self, runtime_id: str) -> None:
        try:
            self._client().containers.get(runtime_id).remove(force=True)
        except NotFound:
            return

    def is_running(self, runtime_id: str) -> bool:
        try:
            cont = self._client().containers.get(runtime_id)
            cont.reload()
            return cont.status == "running"
        except NotFound:
            return False

    def purge_volume(self, pool: str) -> None:
        try:
            self._client().volumes.get(f"dre-{pool}").remove(force=True)
        except NotFound:
            return
