from __future__ import annotations

import secrets
import time
from typing import Callable

from . import db
from .alerts import send_email
from .api_models import WorkloadSpec
from .db import InstanceRow
from .driver import RuntimeDriver
from .runtime import (
    CONVERGED,
    PENDING,
    READY,
    ROLLED_BACK,
    ROLLING_OUT,
    ROLLOUT_STALLED,
    RUNNING,
    TERMINATED,
    TERMINATING,
    ResolvedTemplate,
    RolloutStatus,
    RuntimeState,
    utc_now,
)
from .settings import settings


class RolloutController:
    """Drives each workload from its current instances to its desired template.

    Idle -> RollingOut -> Converged, or RollingOut -> RolledBack on operator
    cancellation. A rollout whose new instances never become Ready stays
    RollingOut with the RolloutStalled condition; the old generation keeps
    serving.

    Capacity rule while rolling: (Ready new + old) never drops below the
    desired replica count, and (new + old) never exceeds replicas + surge.
    """

    def __init__(
        self,
        runtime: RuntimeState,
        driver: RuntimeDriver,
        on_lifecycle: Callable[[], None] | None = None,
        stall_threshold_s: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.runtime = runtime
        self.driver = driver
        self.on_lifecycle = on_lifecycle
        self.stall_threshold_s = float(stall_threshold_s if stall_threshold_s is not None else settings.stall_threshold_s)
        self.clock = clock

    def status(self, workload: str) -> RolloutStatus:
        st = self.runtime.get_rollout(workload)
        if st is None:
            st = RolloutStatus(workload=workload)
            self.runtime.upsert_rollout(st)
        return st

    # --- instance lifecycle ---

    def _create(self, workload: str, template: ResolvedTemplate, restart_count: int = 0) -> str:
        instance_id = f"{workload}-{secrets.token_hex(3)}"
        db.insert_instance(
            instance_id, workload, template.template_hash(), template.to_dict(), PENDING, restart_count=restart_count
        )
        self._launch(instance_id, workload, template)
        return instance_id

    def _launch(self, instance_id: str, workload: str, template: ResolvedTemplate) -> bool:
        if template.volume_claim and not template.volume_pool:
            return False
        try:
            ref = self.driver.create(workload, instance_id, template)
        except Exception as e:
            db.log_event("ERROR", f"Could not start {instance_id}: {type(e).__name__}: {e}", resource=f"workload/{workload}")
            return False
        db.set_instance_runtime(instance_id, ref.id, ref.address, RUNNING, template.to_dict())
        return True

    def _retire(self, inst: InstanceRow, reason: str) -> None:
        db.set_instance_state(inst.instance_id, TERMINATING)
        # Withdraw from routing before the process goes away.
        if self.on_lifecycle:
            self.on_lifecycle()
        if inst.runtime_id:
            self.driver.terminate(inst.runtime_id)
        db.delete_instance(inst.instance_id)
        db.log_event("INFO", f"Instance {inst.instance_id} terminated ({reason})", resource=f"workload/{inst.workload}")

    def _start_pending(self, workload: str, template: ResolvedTemplate, target: str) -> list[str]:
        actions = []
        for inst in db.list_instances(workload):
            if inst.state != PENDING:
                continue
            tmpl = template if inst.template_hash == target else ResolvedTemplate.from_dict(inst.template)
            if self._launch(inst.instance_id, workload, tmpl):
                actions.append(f"start {inst.instance_id}")
        return actions

    def replace(self, instance_id: str, reason: str) -> list[str]:
        """Terminate an instance and start a fresh copy of the same template."""
        inst = db.get_instance(instance_id)
        if inst is None or inst.state in (TERMINATING, TERMINATED):
            return []
        tmpl = ResolvedTemplate.from_dict(inst.template)
        self._retire(inst, reason)
        new_id = self._create(inst.workload, tmpl, restart_count=inst.restart_count + 1)
        db.log_event("WARN", f"Replaced {instance_id} with {new_id}: {reason}", resource=f"workload/{inst.workload}")
        return [f"replace {instance_id}"]

    def remove_workload(self, workload: str) -> list[str]:
        actions = []
        for inst in db.list_instances(workload):
            self._retire(inst, "workload deleted")
            actions.append(f"retire {inst.instance_id}")
        self.runtime.drop_rollout(workload)
        return actions

    # --- state machine ---

    def cancel(self, workload: str) -> RolloutStatus:
        st = self.status(workload)
        if st.state != ROLLING_OUT:
            return st
        st.state = ROLLED_BACK
        st.condition = "Cancelled"
        st.message = "Rollout cancelled by operator; completed steps are kept."
        self.runtime.upsert_rollout(st)
        db.log_event("WARN", st.message, resource=f"workload/{workload}")
        return st

    def step(self, workload: str, spec: WorkloadSpec, template: ResolvedTemplate, now: float | None = None) -> list[str]:
        """Advance one workload by at most one surge step."""
        now = self.clock() if now is None else now
        st = self.status(workload)
        target = template.template_hash()
        actions = self._start_pending(workload, template, target)

        if st.state == ROLLED_BACK and st.target_hash == target:
            return actions
        if st.state != ROLLING_OUT and st.converged_hash == target and not self._off_template(workload, target):
            return actions + self._maintain(workload, spec, template)

        if st.state != ROLLING_OUT or st.target_hash != target:
            restarted = st.state == ROLLING_OUT
            st.state = ROLLING_OUT
            st.target_hash = target
            st.condition = None
            st.started_at = utc_now()
            st.last_progress_at = now
            st.progress_marker = (-1, -1)
            st.message = f"Rolling out template {target}"
            db.log_event("INFO", ("Rollout retargeted: " if restarted else "Rollout started: ") + target, resource=f"workload/{workload}")
            actions.append(f"rollout {workload}")

        actions += self._roll(workload, spec, template, target)
        self._track_progress(st, workload, target, spec, now)
        self.runtime.upsert_rollout(st)
        return actions

    def _off_template(self, workload: str, target: str) -> bool:
        return any(i.template_hash != target for i in db.list_instances(workload) if i.state != TERMINATING)

    def _maintain(self, workload: str, spec: WorkloadSpec, template: ResolvedTemplate) -> list[str]:
        """Converged: keep exactly `replicas` instances of the current template."""
        actions = []
        live = [i for i in db.list_instances(workload) if i.state != TERMINATING]
        for _ in range(spec.replicas - len(live)):
            actions.append(f"create {self._create(workload, template)}")
        if len(live) > spec.replicas:
            # Non-ready first, newest first.
            extra = sorted(live, key=lambda i: (i.state == READY, -i.id))[: len(live) - spec.replicas]
            for inst in extra:
                self._retire(inst, "scaled down")
                actions.append(f"retire {inst.instance_id}")
        return actions

    def _roll(self, workload: str, spec: WorkloadSpec, template: ResolvedTemplate, target: str) -> list[str]:
        actions = []
        n, surge = spec.replicas, spec.surge
        live = [i for i in db.list_instances(workload) if i.state != TERMINATING]
        new = [i for i in live if i.template_hash == target]
        old = [i for i in live if i.template_hash != target]
        ready_new = [i for i in new if i.state == READY]

        # One old instance goes per new Ready instance, never below n available.
        removable = min(len(old), len(ready_new) + len(old) - n)
        if removable > 0:
            for inst in sorted(old, key=lambda i: (i.state == READY, i.id))[:removable]:
                self._retire(inst, "replaced by new template")
                actions.append(f"retire {inst.instance_id}")
                old.remove(inst)

        # Surplus new instances (replicas lowered mid-rollout); unready ones carry no capacity.
        if len(new) > n:
            for inst in sorted(new, key=lambda i: (i.state == READY, -i.id))[: len(new) - n]:
                if inst.state == READY and len(ready_new) - 1 + len(old) < n:
                    break
                self._retire(inst, "scaled down")
                actions.append(f"retire {inst.instance_id}")
                new.remove(inst)
                if inst in ready_new:
                    ready_new.remove(inst)

        room = min(n - len(new), n + surge - len(new) - len(old))
        for _ in range(max(0, room)):
            actions.append(f"create {self._create(workload, template)}")
        return actions

    def _track_progress(self, st: RolloutStatus, workload: str, target: str, spec: WorkloadSpec, now: float) -> None:
        live = [i for i in db.list_instances(workload) if i.state != TERMINATING]
        new = [i for i in live if i.template_hash == target]
        old_count = len(live) - len(new)
        ready_new = sum(1 for i in new if i.state == READY)

        if old_count == 0 and len(new) == spec.replicas and ready_new == spec.replicas:
            st.state = CONVERGED
            st.converged_hash = target
            st.condition = None
            st.message = f"Converged on template {target}"
            db.log_event("INFO", st.message, resource=f"workload/{workload}")
            return

        marker = (ready_new, old_count)
        if marker != st.progress_marker:
            if st.condition == ROLLOUT_STALLED:
                db.log_event("INFO", "Rollout progressing again", resource=f"workload/{workload}")
            st.progress_marker = marker
            st.last_progress_at = now
            st.condition = None
            st.message = f"{ready_new}/{spec.replicas} new instances ready, {old_count} old remaining"
            return

        if st.condition != ROLLOUT_STALLED and now - st.last_progress_at >= self.stall_threshold_s:
            st.condition = ROLLOUT_STALLED
            st.message = (
                f"No progress for {int(now - st.last_progress_at)}s: {ready_new}/{spec.replicas} new instances ready, "
                f"{old_count} old instances still serving"
            )
            db.log_event("WARN", f"{ROLLOUT_STALLED}: {st.message}", resource=f"workload/{workload}")
            self._maybe_email(workload, st.message)

    def _maybe_email(self, workload: str, msg: str) -> None:
        if not settings.enable_email:
            return
        send_email(f"STALLED rollout: {workload}", f"Workload: {workload}\nCondition: {ROLLOUT_STALLED}\nDetail: {msg}")

