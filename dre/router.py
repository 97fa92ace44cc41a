from __future__ import annotations

from threading import Lock

from . import db
from .api_models import ServiceSpec
from .errors import NoHealthyBackends, ResourceUnavailableError
from .runtime import READY, Endpoint, ResolvedTemplate, RuntimeState
from .settings import settings


def selector_matches(selector: dict[str, str], labels: dict[str, str]) -> bool:
    return all(labels.get(k) == v for k, v in selector.items())


class ServiceRouter:
    """Maintains the Ready endpoint set behind every declared Service.

    Endpoint sets are derived: each refresh recomputes them from a snapshot
    of the instance table, so an instance is routable exactly while it is
    Ready.
    """

    def __init__(self, runtime: RuntimeState, port_min: int | None = None, port_max: int | None = None):
        self.runtime = runtime
        self.port_min = port_min if port_min is not None else settings.node_port_min
        self.port_max = port_max if port_max is not None else settings.node_port_max
        self._services: dict[str, ServiceSpec] = {}
        self._lock = Lock()

    def set_services(self, services: dict[str, ServiceSpec]) -> list[str]:
        """Adopt the declared services; publish or withdraw external ports."""
        actions: list[str] = []
        with self._lock:
            for name in [n for n in self._services if n not in services]:
                self.runtime.drop_service(name)
                actions.append(f"drop service/{name}")
            for name, spec in services.items():
                published = self.runtime.node_ports.get(name)
                if spec.scope == "external" and published is None:
                    port = self._allocate_node_port()
                    self.runtime.node_ports[name] = port
                    db.log_event("INFO", f"Published external port {port} -> {spec.target_port}", resource=f"service/{name}")
                    actions.append(f"publish service/{name}:{port}")
                elif spec.scope == "internal" and published is not None:
                    del self.runtime.node_ports[name]
                    actions.append(f"unpublish service/{name}")
            self._services = dict(services)
        return actions

    def _allocate_node_port(self) -> int:
        used = set(self.runtime.node_ports.values())
        for port in range(self.port_min, self.port_max + 1):
            if port not in used:
                return port
        raise ResourceUnavailableError("No free external ports")

    def refresh(self) -> None:
        """Recompute every endpoint set from the current instance snapshot."""
        with self._lock:
            ready = [i for i in db.list_instances() if i.state == READY and i.address]
            labelled = [(i, ResolvedTemplate.from_dict(i.template).labels) for i in ready]
            for name, spec in self._services.items():
                eps = [
                    Endpoint(service=name, workload=i.workload, instance_id=i.instance_id, address=i.address, port=spec.target_port)
                    for i, labels in labelled
                    if selector_matches(spec.selector, labels)
                ]
                self.runtime.set_endpoints(name, eps)

    def service(self, name: str) -> ServiceSpec:
        with self._lock:
            if name not in self._services:
                raise KeyError(name)
            return self._services[name]

    def resolve(self, name: str) -> list[tuple[str, int]]:
        self.service(name)
        return [(e.address, e.port) for e in self.runtime.get_endpoints(name)]

    def external_port(self, name: str) -> int | None:
        return self.runtime.node_ports.get(name)

    def published_ports(self) -> dict[str, int]:
        with self._lock:
            return dict(self.runtime.node_ports)

    def select_backend(self, name: str) -> Endpoint:
        """Round-robin across the service's Ready endpoints."""
        eps = self.runtime.get_endpoints(name)
        if not eps:
            raise NoHealthyBackends(f"No ready endpoints for service '{name}'.")
        return eps[self.runtime.next_index(f"svc:{name}", len(eps))]
