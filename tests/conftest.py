import sys
import threading

import httpx
import pytest

# Ensure project root is importable (so `import main` / `import examples...` work reliably across environments)
import os as _os
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from dre import db  # noqa: E402
from dre.api_models import Document  # noqa: E402
from dre.driver import InstanceRef, RuntimeDriver  # noqa: E402
from dre.reconciler import Reconciler  # noqa: E402
from dre.runtime import RUNNING, ProbeTarget, ResolvedTemplate, RuntimeState  # noqa: E402
from dre.settings import Settings  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite file."""
    monkeypatch.setattr(db, "settings", Settings(db_path=str(tmp_path / "dre.db")))
    db.init_db()


class FakeDriver(RuntimeDriver):
    """In-memory runtime: instances 'run' until terminated or crashed."""

    def __init__(self):
        self.lock = threading.Lock()
        self.running: dict[str, str] = {}  # runtime id -> instance name
        self.templates: dict[str, ResolvedTemplate] = {}  # instance name -> template
        self.terminated: list[str] = []
        self.purged: list[str] = []
        self.fail_create = False

    def create(self, workload, name, template):
        if self.fail_create:
            raise RuntimeError("runtime unavailable")
        with self.lock:
            self.running[f"c-{name}"] = name
            self.templates[name] = template
        return InstanceRef(id=f"c-{name}", address=name)

    def terminate(self, runtime_id):
        with self.lock:
            self.running.pop(runtime_id, None)
            self.terminated.append(runtime_id)

    def is_running(self, runtime_id):
        with self.lock:
            return runtime_id in self.running

    def purge_volume(self, pool):
        self.purged.append(pool)

    def crash(self, name):
        with self.lock:
            self.running.pop(f"c-{name}", None)


class ScriptedTransport:
    """Probe transport that answers according to what each image serves.

    Paths an image does not serve answer 404; hosts in ``refused`` never
    answer at all; ``broken`` maps a host to paths answering 503.
    """

    def __init__(self, driver: FakeDriver):
        self.driver = driver
        self.serves: dict[str, set[str]] = {}
        self.default_paths = {"/health"}
        self.refused: set[str] = set()
        self.broken: dict[str, set[str]] = {}
        self.calls: list[str] = []

    def __call__(self, url, timeout_s):
        u = httpx.URL(url)
        self.calls.append(url)
        if u.host in self.refused:
            return False, "No response", None
        if u.path in self.broken.get(u.host, set()):
            return False, "HTTP 503", 1.0
        tmpl = self.driver.templates.get(u.host)
        paths = self.serves.get(tmpl.image, self.default_paths) if tmpl else set()
        if u.path not in paths:
            return False, "HTTP 404", 1.0
        return True, "Healthy", 1.0


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, dt: float) -> None:
        self.t += dt


@pytest.fixture
def driver():
    return FakeDriver()


@pytest.fixture
def transport(driver):
    return ScriptedTransport(driver)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def runtime():
    return RuntimeState()


@pytest.fixture
def reconciler(runtime, driver, transport, clock):
    return Reconciler(
        runtime, driver, transport=transport, stall_threshold_s=30, strict_config=False, workers=2, clock=clock, serve_external=False
    )


def apply(kind, name, spec):
    """Validate and store a document the way PUT /documents does."""
    parsed = Document(kind=kind, name=name, spec=spec).parsed()
    return db.upsert_document(kind, name, parsed.model_dump())


def workload_spec(image="api:v1", replicas=2, surge=1, path="/health", **template):
    t = {
        "image": image,
        "port": 3001,
        "liveness": {"path": path, "period_s": 5, "failure_threshold": 3},
        "readiness": {"path": path, "period_s": 5, "failure_threshold": 1},
    }
    t.update(template)
    return {"replicas": replicas, "surge": surge, "template": t}


def make_template(image="api:v1", labels=None, path="/health", initial_delay_s=0.0, failure_threshold=3, **kw):
    probe = ProbeTarget(path=path, initial_delay_s=initial_delay_s, period_s=5, timeout_s=2, failure_threshold=failure_threshold)
    return ResolvedTemplate(
        image=image,
        port=3001,
        env=kw.pop("env", {}),
        liveness=probe,
        readiness=probe,
        labels=labels if labels is not None else {"app": "api"},
        **kw,
    )


def started_instance(driver, instance_id, workload="api", template=None, state=RUNNING):
    """Insert an instance record and 'start' it on the fake driver."""
    template = template or make_template()
    db.insert_instance(instance_id, workload, template.template_hash(), template.to_dict(), "Pending")
    ref = driver.create(workload, instance_id, template)
    db.set_instance_runtime(instance_id, ref.id, ref.address, state, template.to_dict())
    return db.get_instance(instance_id)


def settle(rec, clock, rounds=1, step_s=5):
    """Alternate probe ticks and reconcile passes, advancing the clock."""
    results = []
    for _ in range(rounds):
        rec.probes.run_once()
        results.append(rec.reconcile_once())
        clock.advance(step_s)
    return results
