from __future__ import annotations

import concurrent.futures
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from threading import Event, Thread
from typing import Callable

from . import db
from .db import InstanceRow
from .health import check_health
from .runtime import (
    READY,
    RUNNING,
    UNHEALTHY,
    HealthEvent,
    ProbeTarget,
    ResolvedTemplate,
    RuntimeState,
    utc_now,
)
from .settings import settings

LIVENESS = "liveness"
READINESS = "readiness"

FATAL = "Fatal"
NOT_READY = "NotReady"
BECAME_READY = "Ready"

PROBED_STATES = (RUNNING, READY, UNHEALTHY)

Transport = Callable[[str, float], tuple[bool, str, float | None]]


@dataclass
class _Track:
    next_due: float
    failures: int = 0


class ProbeManager:
    """Runs liveness and readiness checks against every started instance.

    Each instance gets two independent schedules. Checks that are due in the
    same tick run concurrently, each bounded by its own timeout, so one
    unresponsive instance cannot hold up the others.
    """

    def __init__(
        self,
        runtime: RuntimeState,
        on_readiness: Callable[[], None] | None = None,
        on_events: Callable[[list[HealthEvent]], None] | None = None,
        transport: Transport = check_health,
        workers: int | None = None,
        tick_s: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.runtime = runtime
        self.on_readiness = on_readiness
        self.on_events = on_events
        self.transport = transport
        self.tick_s = max(0.1, float(tick_s if tick_s is not None else settings.probe_tick_s))
        self.clock = clock
        self._pool = ThreadPoolExecutor(max_workers=max(1, workers or settings.probe_workers))
        self._tracks: dict[tuple[str, str], _Track] = {}
        self._stop = Event()
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception as e:
                db.log_event("ERROR", f"Probe tick failed: {type(e).__name__}: {e}")
            self._stop.wait(self.tick_s)

    def run_once(self, now: float | None = None) -> list[HealthEvent]:
        """Issue every probe that is due and apply the results."""
        now = self.clock() if now is None else now
        instances = [i for i in db.list_instances() if i.state in PROBED_STATES and i.address]

        live = {i.instance_id for i in instances}
        for key in [k for k in self._tracks if k[0] not in live]:
            del self._tracks[key]

        due: list[tuple[InstanceRow, str, ProbeTarget]] = []
        for inst in instances:
            tmpl = ResolvedTemplate.from_dict(inst.template)
            for kind, probe in ((LIVENESS, tmpl.liveness), (READINESS, tmpl.readiness)):
                track = self._tracks.setdefault((inst.instance_id, kind), _Track(next_due=now + probe.initial_delay_s))
                if now >= track.next_due:
                    track.next_due = now + probe.period_s
                    due.append((inst, kind, probe))

        futures = []
        for inst, kind, probe in due:
            url = f"http://{inst.address}:{int(inst.template['port'])}{probe.path}"
            futures.append(self._pool.submit(self.transport, url, probe.timeout_s))

        events: list[HealthEvent] = []
        for fut, (inst, kind, probe) in zip(futures, due):
            try:
                ok, msg, _ = fut.result(timeout=probe.timeout_s + 1.0)
            except concurrent.futures.TimeoutError:
                ok, msg = False, "Timeout"
            except Exception as e:
                ok, msg = False, f"Error: {type(e).__name__}: {e}"
            events.extend(self._apply(inst, kind, probe, ok, msg))

        for ev in events:
            level = "INFO" if ev.kind == BECAME_READY else "WARN"
            db.log_event(level, f"{ev.kind}: {ev.instance_id} {ev.message}", resource=f"workload/{ev.workload}")
        if events:
            self.runtime.push_health_events(events)
            if self.on_readiness and any(e.kind in (NOT_READY, BECAME_READY) for e in events):
                self.on_readiness()
            if self.on_events:
                self.on_events(events)
        return events

    def _apply(self, inst: InstanceRow, kind: str, probe: ProbeTarget, ok: bool, msg: str) -> list[HealthEvent]:
        track = self._tracks[(inst.instance_id, kind)]
        track.failures = 0 if ok else track.failures + 1
        db.set_instance_probe(inst.instance_id, f"{kind} {'ok' if ok else 'failed'}: {msg} @ {utc_now()}")

        if kind == LIVENESS:
            if ok or track.failures < probe.failure_threshold:
                return []
            track.failures = 0
            return [
                HealthEvent(
                    FATAL,
                    inst.workload,
                    inst.instance_id,
                    f"liveness failed {probe.failure_threshold}x on {probe.path}: {msg}",
                )
            ]

        if ok:
            if db.transition_instance(inst.instance_id, (RUNNING, UNHEALTHY), READY):
                return [HealthEvent(BECAME_READY, inst.workload, inst.instance_id, "readiness ok")]
            return []
        if track.failures >= probe.failure_threshold:
            if db.transition_instance(inst.instance_id, (READY,), UNHEALTHY):
                return [HealthEvent(NOT_READY, inst.workload, inst.instance_id, f"readiness failed: {msg}")]
        return []
