from __future__ import annotations

from . import db
from .api_models import VolumeClaimSpec, VolumePoolSpec
from .driver import RuntimeDriver
from .errors import DataLossRefused, NoMatchingPoolError

AVAILABLE = "Available"
BOUND = "Bound"
RELEASED = "Released"

SINGLE_WRITER = "ReadWriteOnce"


class VolumeBinder:
    """Binds VolumeClaims to VolumePools and tracks pool availability.

    Only the reconciliation pass calls into this class, so pool state has a
    single writer.
    """

    def __init__(self, driver: RuntimeDriver):
        self.driver = driver

    def sync_pools(self, pools: dict[str, VolumePoolSpec]) -> list[str]:
        """Register newly declared pools and drop undeclared ones that hold no data.

        ``pools`` must be in declaration order; that order breaks ties in ``bind``.
        """
        actions: list[str] = []
        existing = {p.name: p for p in db.list_pools()}
        for seq, (name, spec) in enumerate(pools.items()):
            cur = existing.get(name)
            if cur is None:
                db.insert_pool(name, seq, spec.capacity, spec.access_mode, spec.reclaim_policy)
                db.log_event("INFO", f"Volume pool registered ({spec.capacity} bytes, {spec.access_mode})", resource=f"pool/{name}")
                actions.append(f"register pool/{name}")
                continue
            if cur.seq != seq:
                db.update_pool(name, seq=seq)
            if cur.reclaim_policy != spec.reclaim_policy:
                db.update_pool(name, reclaim_policy=spec.reclaim_policy)
                actions.append(f"update pool/{name}")
            resized = cur.capacity != spec.capacity or cur.access_mode != spec.access_mode
            if resized and cur.phase == AVAILABLE and not db.list_bindings(name):
                db.update_pool(name, capacity=spec.capacity, available=spec.capacity, access_mode=spec.access_mode)
                actions.append(f"update pool/{name}")

        for name, cur in existing.items():
            if name in pools:
                continue
            holds_data = bool(db.list_bindings(name)) or (cur.reclaim_policy == "Retain" and cur.phase == RELEASED)
            if holds_data:
                # Removing the document never erases data; only delete_pool(confirm=...) does.
                continue
            if cur.reclaim_policy == "Delete" and cur.phase != AVAILABLE:
                self.driver.purge_volume(name)
            db.delete_pool(name)
            db.log_event("INFO", "Volume pool removed", resource=f"pool/{name}")
            actions.append(f"remove pool/{name}")
        return actions

    def pool_for(self, claim: str) -> str | None:
        b = db.get_binding(claim)
        return b.pool if b else None

    def bind(self, claim: str, spec: VolumeClaimSpec) -> str:
        """Bind a claim to the smallest sufficient pool; idempotent for bound claims."""
        existing = db.get_binding(claim)
        if existing:
            return existing.pool

        candidates = []
        for p in db.list_pools():
            if p.access_mode != spec.access_mode or p.phase == RELEASED:
                continue
            if p.available < spec.capacity:
                continue
            if p.access_mode == SINGLE_WRITER and p.phase != AVAILABLE:
                continue
            candidates.append(p)
        if not candidates:
            raise NoMatchingPoolError(claim, spec.capacity, spec.access_mode)

        best = min(candidates, key=lambda p: (p.available, p.seq))
        remaining = 0 if best.access_mode == SINGLE_WRITER else best.available - spec.capacity
        db.insert_binding(claim, best.name, spec.capacity)
        db.update_pool(best.name, available=remaining, phase=BOUND)
        db.log_event("INFO", f"Claim bound to pool '{best.name}'", resource=f"claim/{claim}")
        return best.name

    def release(self, claim: str) -> str | None:
        """Drop a claim's binding. Retain pools keep their data and capacity."""
        b = db.get_binding(claim)
        if not b:
            return None
        pool = db.get_pool(b.pool)
        db.delete_binding(claim)
        if pool is None:
            return b.pool
        still_bound = db.list_bindings(pool.name)
        if pool.reclaim_policy == "Retain":
            if not still_bound:
                db.update_pool(pool.name, phase=RELEASED)
            db.log_event("INFO", f"Claim '{claim}' released; data retained", resource=f"pool/{pool.name}")
        elif still_bound:
            db.update_pool(pool.name, available=pool.available + b.capacity)
            db.log_event("INFO", f"Claim '{claim}' released", resource=f"pool/{pool.name}")
        else:
            self.driver.purge_volume(pool.name)
            db.update_pool(pool.name, available=pool.capacity, phase=AVAILABLE)
            db.log_event("INFO", f"Claim '{claim}' released; pool purged", resource=f"pool/{pool.name}")
        return pool.name

    def delete_pool(self, name: str, confirm: str | None) -> None:
        """Erase a pool and its data. The operator must repeat the pool name."""
        pool = db.get_pool(name)
        if pool is None:
            raise KeyError(name)
        if db.list_bindings(name):
            raise DataLossRefused(f"Pool '{name}' is still bound; delete its claims first.")
        if confirm != name:
            raise DataLossRefused(f"Deleting pool '{name}' erases its data; confirm with the pool name.")
        self.driver.purge_volume(name)
        db.delete_pool(name)
        db.log_event("WARN", "Volume pool deleted and data erased by operator", resource=f"pool/{name}")
