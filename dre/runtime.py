from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any

# Instance lifecycle states
PENDING = "Pending"
RUNNING = "Running"
READY = "Ready"
UNHEALTHY = "Unhealthy"
TERMINATING = "Terminating"
TERMINATED = "Terminated"

# Rollout states
IDLE = "Idle"
ROLLING_OUT = "RollingOut"
CONVERGED = "Converged"
ROLLED_BACK = "RolledBack"

ROLLOUT_STALLED = "RolloutStalled"


def utc_now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class ProbeTarget:
    path: str
    initial_delay_s: float
    period_s: float
    timeout_s: float
    failure_threshold: int


@dataclass(frozen=True)
class ResolvedTemplate:
    """Everything the runtime driver needs to start one instance."""

    image: str
    port: int
    env: dict[str, str]
    liveness: ProbeTarget
    readiness: ProbeTarget
    labels: dict[str, str]
    config_ref: str | None = None
    volume_claim: str | None = None
    volume_pool: str | None = None

    def template_hash(self) -> str:
        # The bound pool is an outcome of binding, not part of the declared template.
        d = asdict(self)
        d.pop("volume_pool")
        return hashlib.sha256(json.dumps(d, sort_keys=True).encode()).hexdigest()[:16]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "ResolvedTemplate":
        d = dict(d)
        d["liveness"] = ProbeTarget(**d["liveness"])
        d["readiness"] = ProbeTarget(**d["readiness"])
        return cls(**d)


@dataclass(frozen=True)
class Endpoint:
    service: str
    workload: str
    instance_id: str
    address: str
    port: int

    @property
    def base_url(self) -> str:
        return f"http://{self.address}:{int(self.port)}"


@dataclass(frozen=True)
class HealthEvent:
    kind: str  # Fatal|NotReady|Ready
    workload: str
    instance_id: str
    message: str
    ts: str = field(default_factory=utc_now)


@dataclass
class RolloutStatus:
    workload: str
    state: str = IDLE
    target_hash: str | None = None
    converged_hash: str | None = None
    condition: str | None = None
    message: str = ""
    started_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    # monotonic bookkeeping for stall detection
    last_progress_at: float = 0.0
    progress_marker: tuple[int, int] = (0, 0)


class RuntimeState:
    """In-memory state for reconciliation and routing."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.endpoints: dict[str, list[Endpoint]] = {}  # service -> Ready endpoints
        self.node_ports: dict[str, int] = {}  # external service -> published port
        self.rr_index: dict[str, int] = {}  # key -> idx
        self.rollouts: dict[str, RolloutStatus] = {}
        self.conditions: dict[str, str] = {}  # resource -> last reported condition
        self.health_events: list[HealthEvent] = []

    def set_endpoints(self, service: str, endpoints: list[Endpoint]) -> None:
        with self.lock:
            self.endpoints[service] = endpoints

    def get_endpoints(self, service: str) -> list[Endpoint]:
        with self.lock:
            return list(self.endpoints.get(service, []))

    def drop_service(self, service: str) -> None:
        with self.lock:
            self.endpoints.pop(service, None)
            self.node_ports.pop(service, None)

    def next_index(self, key: str, n: int) -> int:
        with self.lock:
            if n <= 0:
                return 0
            i = self.rr_index.get(key, 0) % n
            self.rr_index[key] = (i + 1) % n
            return i

    def note_condition(self, resource: str, condition: str | None) -> bool:
        """Record the current condition of a resource.

        Returns True only when it differs from what was last recorded, so
        callers log a condition once instead of on every pass.
        """
        with self.lock:
            prev = self.conditions.get(resource)
            if condition is None:
                self.conditions.pop(resource, None)
            else:
                self.conditions[resource] = condition
            return prev != condition

    def push_health_events(self, events: list[HealthEvent]) -> None:
        with self.lock:
            self.health_events.extend(events)

    def drain_health_events(self) -> list[HealthEvent]:
        with self.lock:
            out, self.health_events = self.health_events, []
            return out

    def upsert_rollout(self, st: RolloutStatus) -> None:
        with self.lock:
            st.updated_at = utc_now()
            self.rollouts[st.workload] = st

    def get_rollout(self, workload: str) -> RolloutStatus | None:
        with self.lock:
            return self.rollouts.get(workload)

    def drop_rollout(self, workload: str) -> None:
        with self.lock:
            self.rollouts.pop(workload, None)

    def list_rollouts(self) -> list[RolloutStatus]:
        with self.lock:
            return list(self.rollouts.values())
