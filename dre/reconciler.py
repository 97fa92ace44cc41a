from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from threading import Event, Lock, Thread
from typing import Callable

import pydantic

from . import db
from .api_models import (
    SPEC_MODELS,
    ConfigSetSpec,
    ServiceSpec,
    VolumeClaimSpec,
    VolumePoolSpec,
    WorkloadSpec,
)
from .config import ResolvedConfig, resolve_all, workload_environment
from .driver import RuntimeDriver
from .errors import ReconcileError, ResourceUnavailableError, ValidationError
from .health import check_health
from .ingress import ExternalIngress
from .probes import FATAL, ProbeManager, Transport
from .rollouts import RolloutController
from .router import ServiceRouter
from .runtime import READY, ROLLING_OUT, RUNNING, UNHEALTHY, ProbeTarget, ResolvedTemplate, RuntimeState
from .settings import settings
from .volumes import VolumeBinder


@dataclass
class DesiredState:
    """Snapshot of the manifest store taken at the start of a pass."""

    workloads: dict[str, WorkloadSpec] = field(default_factory=dict)
    services: dict[str, ServiceSpec] = field(default_factory=dict)
    config_sets: dict[str, ConfigSetSpec] = field(default_factory=dict)
    claims: dict[str, VolumeClaimSpec] = field(default_factory=dict)
    pools: dict[str, VolumePoolSpec] = field(default_factory=dict)


_KIND_FIELDS = {
    "Workload": "workloads",
    "Service": "services",
    "ConfigSet": "config_sets",
    "VolumeClaim": "claims",
    "VolumePool": "pools",
}


def load_desired() -> DesiredState:
    desired = DesiredState()
    for kind, attr in _KIND_FIELDS.items():
        bucket = getattr(desired, attr)
        for doc in db.list_documents(kind):
            try:
                bucket[doc.name] = SPEC_MODELS[kind].model_validate(doc.spec)
            except pydantic.ValidationError as e:
                db.log_event("ERROR", f"Stored document is invalid: {e}", resource=f"{kind.lower()}/{doc.name}")
    return desired


@dataclass
class PassResult:
    actions: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)  # resource -> reason
    aborted: bool = False


class Reconciler:
    """Continuously reconciles desired state with actual state.

    A pass runs every poll interval, or sooner after notify(). Passes never
    overlap; within a pass each workload's rollout step runs on the worker
    pool, so independent workloads progress concurrently.
    """

    def __init__(
        self,
        runtime: RuntimeState,
        driver: RuntimeDriver,
        transport: Transport = check_health,
        stall_threshold_s: float | None = None,
        strict_config: bool | None = None,
        workers: int | None = None,
        clock: Callable[[], float] = time.monotonic,
        serve_external: bool | None = None,
    ):
        self.runtime = runtime
        self.driver = driver
        self.clock = clock
        self.strict_config = settings.strict_config if strict_config is None else strict_config
        self.router = ServiceRouter(runtime)
        serve = settings.serve_external if serve_external is None else serve_external
        self.ingress = ExternalIngress(self.router) if serve else None
        self.binder = VolumeBinder(driver)
        self.rollouts = RolloutController(
            runtime, driver, on_lifecycle=self.router.refresh, stall_threshold_s=stall_threshold_s, clock=clock
        )
        self.probes = ProbeManager(
            runtime, on_readiness=self.router.refresh, on_events=lambda _: self.notify(), transport=transport, clock=clock
        )
        self._pool = ThreadPoolExecutor(max_workers=max(1, workers or settings.rollout_workers))
        self._pass_lock = Lock()
        self._cancel_lock = Lock()
        self._cancels: set[str] = set()
        self._wake = Event()
        self._stop = Event()
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, daemon=True)
        self._thr.start()
        self.probes.start()

    def stop(self) -> None:
        self._stop.set()
        self._wake.set()
        self.probes.stop()
        if self.ingress:
            self.ingress.stop()

    def notify(self) -> None:
        """Desired state changed (or health moved); run a pass soon."""
        self._wake.set()

    def request_cancel(self, workload: str) -> None:
        # Applied by the next pass; rollout state has a single writer.
        with self._cancel_lock:
            self._cancels.add(workload)
        self.notify()

    def _loop(self) -> None:
        db.log_event("INFO", "Reconciler started")
        while not self._stop.is_set():
            try:
                self.reconcile_once()
            except Exception as e:
                db.log_event("ERROR", f"Reconcile pass failed: {type(e).__name__}: {e}")
            self._wake.wait(timeout=max(1, settings.poll_interval_s))
            self._wake.clear()

    def reconcile_once(self, now: float | None = None) -> PassResult:
        with self._pass_lock:
            return self._pass(self.clock() if now is None else now)

    def _pass(self, now: float) -> PassResult:
        result = PassResult()
        desired = load_desired()

        with self._cancel_lock:
            cancels, self._cancels = self._cancels, set()
        for name in sorted(cancels):
            if self.rollouts.status(name).state == ROLLING_OUT:
                self.rollouts.cancel(name)
                result.actions.append(f"cancel {name}")

        result.actions += self._heal(desired)

        # 1. configuration
        resolved, cfg_errors = resolve_all(desired.config_sets)
        for name in resolved:
            self._clear(f"configset/{name}")
        for name, err in cfg_errors.items():
            self._report(result, f"configset/{name}", str(err))
        if cfg_errors and self.strict_config:
            result.aborted = True
            return result

        # 2. storage
        result.actions += self.binder.sync_pools(desired.pools)
        result.actions += self._release_claims(desired, result)
        for name, claim in desired.claims.items():
            try:
                self.binder.bind(name, claim)
                self._clear(f"claim/{name}")
            except ResourceUnavailableError as e:
                self._report(result, f"claim/{name}", str(e), level="WARN")

        # 3. services; endpoints reflect every readiness change before retirements
        result.actions += self.router.set_services(desired.services)
        if self.ingress:
            result.actions += self.ingress.sync(self.router.published_ports())
        self.router.refresh()

        # 4. workloads
        known = {i.workload for i in db.list_instances()} | {r.workload for r in self.runtime.list_rollouts()}
        for gone in sorted(known - set(desired.workloads)):
            result.actions += self.rollouts.remove_workload(gone)

        jobs = []
        for name, spec in desired.workloads.items():
            try:
                template = self.resolve_template(name, spec, resolved, cfg_errors, desired.claims)
            except ReconcileError as e:
                level = "WARN" if isinstance(e, ResourceUnavailableError) else "ERROR"
                self._report(result, f"workload/{name}", str(e), level=level)
                continue
            self._clear(f"workload/{name}")
            jobs.append((name, self._pool.submit(self.rollouts.step, name, spec, template, now)))
        for name, fut in jobs:
            try:
                result.actions += fut.result()
            except Exception as e:
                self._report(result, f"workload/{name}", f"Rollout step failed: {type(e).__name__}: {e}")

        # 5. endpoints
        self.router.refresh()
        return result

    def _heal(self, desired: DesiredState) -> list[str]:
        """Replace instances that failed liveness or whose process is gone."""
        actions = []
        for ev in self.runtime.drain_health_events():
            if ev.kind == FATAL and ev.workload in desired.workloads:
                actions += self.rollouts.replace(ev.instance_id, ev.message)
        for inst in db.list_instances():
            if inst.workload not in desired.workloads or not inst.runtime_id:
                continue
            if inst.state in (RUNNING, READY, UNHEALTHY) and not self.driver.is_running(inst.runtime_id):
                actions += self.rollouts.replace(inst.instance_id, "process not running")
        return actions

    def _release_claims(self, desired: DesiredState, result: PassResult) -> list[str]:
        actions = []
        in_use = {i.template.get("volume_claim") for i in db.list_instances()}
        for b in db.list_bindings():
            if b.claim in desired.claims:
                continue
            if b.claim in in_use:
                self._report(result, f"claim/{b.claim}", "Claim deleted but still mounted; release deferred", level="WARN")
                continue
            self.binder.release(b.claim)
            self._clear(f"claim/{b.claim}")
            actions.append(f"release claim/{b.claim}")
        return actions

    def resolve_template(
        self,
        name: str,
        spec: WorkloadSpec,
        resolved: dict[str, ResolvedConfig],
        cfg_errors: dict[str, ValidationError],
        claims: dict[str, VolumeClaimSpec],
    ) -> ResolvedTemplate:
        t = spec.template
        config = None
        if t.config_ref:
            if t.config_ref in cfg_errors:
                raise ValidationError(f"Blocked by invalid ConfigSet: {cfg_errors[t.config_ref]}")
            config = resolved.get(t.config_ref)
            if config is None:
                raise ResourceUnavailableError(f"ConfigSet '{t.config_ref}' is not declared")
        env = workload_environment(name, t, config)

        pool = None
        if t.volume_claim:
            if t.volume_claim not in claims:
                raise ResourceUnavailableError(f"VolumeClaim '{t.volume_claim}' is not declared")
            pool = self.binder.pool_for(t.volume_claim)

        return ResolvedTemplate(
            image=t.image,
            port=t.port,
            env=env,
            liveness=ProbeTarget(**t.liveness.model_dump()),
            readiness=ProbeTarget(**t.readiness.model_dump()),
            labels={"app": name, **t.labels},
            config_ref=t.config_ref,
            volume_claim=t.volume_claim,
            volume_pool=pool,
        )

    def _report(self, result: PassResult, resource: str, message: str, level: str = "ERROR") -> None:
        result.errors[resource] = message
        if self.runtime.note_condition(resource, message):
            db.log_event(level, message, resource=resource)

    def _clear(self, resource: str) -> None:
        if self.runtime.note_condition(resource, None):
            db.log_event("INFO", "Condition cleared", resource=resource)

    def delete_pool(self, name: str, confirm: str | None) -> None:
        """Operator-only erase of a pool; never part of a normal pass."""
        with self._pass_lock:
            self.binder.delete_pool(name, confirm)
