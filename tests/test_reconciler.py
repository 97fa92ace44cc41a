from dre import db
from dre.reconciler import Reconciler, load_desired
from dre.runtime import CONVERGED, PENDING, READY, ROLLING_OUT, RUNNING

from conftest import apply, settle, workload_spec

PLATFORM = {
    "fragments": [
        {"name": "auth", "data": {"AUTH_PORT": "3001", "AUTH_DATABASE_HOST": "auth-db"}},
        {"name": "orders", "data": {"ORDERS_PORT": "3003", "ORDERS_DATABASE_HOST": "orders-db"}},
    ]
}


def _event_count():
    return len(db.latest_events(limit=100000))


def _deploy(reconciler, clock, name="api", **kw):
    apply("Workload", name, workload_spec(**kw))
    settle(reconciler, clock, rounds=3)
    assert reconciler.rollouts.status(name).state == CONVERGED


def test_pass_on_converged_state_is_a_no_op(reconciler, clock):
    apply("Service", "api", {"selector": {"app": "api"}, "port": 80, "target_port": 3001, "scope": "external"})
    _deploy(reconciler, clock)
    before = _event_count()
    result = reconciler.reconcile_once()
    assert result.actions == []
    assert result.errors == {}
    assert _event_count() == before


def test_invalid_config_set_blocks_only_dependent_workloads(reconciler, clock):
    apply("ConfigSet", "bad", {"fragments": [{"name": "a", "data": {"PORT": "1"}}, {"name": "b", "data": {"PORT": "2"}}]})
    apply("Workload", "uses-bad", workload_spec(config_ref="bad"))
    apply("Workload", "plain", workload_spec())

    result = reconciler.reconcile_once()
    assert "PORT" in result.errors["configset/bad"]
    assert "workload/uses-bad" in result.errors
    assert db.list_instances("uses-bad") == []
    assert len(db.list_instances("plain")) == 2

    errors_logged = [e for e in db.latest_events(resource="configset/bad") if e["level"] == "ERROR"]
    reconciler.reconcile_once()
    assert [e for e in db.latest_events(resource="configset/bad") if e["level"] == "ERROR"] == errors_logged


def test_strict_config_aborts_the_whole_pass(runtime, driver, transport, clock):
    rec = Reconciler(
        runtime, driver, transport=transport, stall_threshold_s=30, strict_config=True, workers=1, clock=clock, serve_external=False
    )
    apply("ConfigSet", "bad", {"fragments": [{"name": "a", "data": {"PORT": "1"}}, {"name": "b", "data": {"PORT": "2"}}]})
    apply("Workload", "plain", workload_spec())
    result = rec.reconcile_once()
    assert result.aborted is True
    assert db.list_instances() == []


def test_fixed_config_set_unblocks_workload(reconciler):
    apply("ConfigSet", "platform", {"fragments": [{"name": "a", "data": {"PORT": "1"}}, {"name": "b", "data": {"PORT": "2"}}]})
    apply("Workload", "api", workload_spec(config_ref="platform"))
    assert "workload/api" in reconciler.reconcile_once().errors
    apply("ConfigSet", "platform", PLATFORM)
    result = reconciler.reconcile_once()
    assert result.errors == {}
    assert len(db.list_instances("api")) == 2


def test_aliases_inject_workload_specific_values(reconciler, driver):
    apply("ConfigSet", "platform", PLATFORM)
    for name, prefix in (("auth", "AUTH"), ("orders", "ORDERS")):
        apply(
            "Workload",
            name,
            workload_spec(
                replicas=1,
                config_ref="platform",
                config_aliases={"PORT": f"{prefix}_PORT", "DATABASE_HOST": f"{prefix}_DATABASE_HOST"},
            ),
        )
    reconciler.reconcile_once()
    envs = {i.workload: driver.templates[i.instance_id].env for i in db.list_instances()}
    assert envs["auth"]["PORT"] == "3001"
    assert envs["auth"]["DATABASE_HOST"] == "auth-db"
    assert envs["orders"]["PORT"] == "3003"
    assert envs["orders"]["DATABASE_HOST"] == "orders-db"


def test_missing_config_set_is_reported(reconciler):
    apply("Workload", "api", workload_spec(config_ref="nowhere"))
    result = reconciler.reconcile_once()
    assert "nowhere" in result.errors["workload/api"]
    assert db.list_instances() == []


def test_config_content_change_rolls_the_workload(reconciler, clock):
    apply("ConfigSet", "platform", PLATFORM)
    _deploy(reconciler, clock, name="auth", config_ref="platform", config_aliases={"PORT": "AUTH_PORT"})
    old_hash = db.list_instances("auth")[0].template_hash

    changed = {"fragments": [dict(PLATFORM["fragments"][0], data={"AUTH_PORT": "4001", "AUTH_DATABASE_HOST": "auth-db"}), PLATFORM["fragments"][1]]}
    apply("ConfigSet", "platform", changed)
    result = reconciler.reconcile_once()
    assert "rollout auth" in result.actions
    assert reconciler.rollouts.status("auth").state == ROLLING_OUT
    new = [i for i in db.list_instances("auth") if i.template_hash != old_hash]
    assert len(new) == 1
    assert new[0].template["env"]["PORT"] == "4001"


def test_claim_waits_for_a_pool(reconciler, driver):
    apply("VolumeClaim", "data", {"capacity": "1Gi", "access_mode": "ReadWriteOnce"})
    apply("Workload", "db", workload_spec(replicas=1, volume_claim="data"))

    result = reconciler.reconcile_once()
    assert "claim/data" in result.errors
    [inst] = db.list_instances("db")
    assert inst.state == PENDING
    assert driver.running == {}

    apply("VolumePool", "disk", {"capacity": "2Gi", "access_mode": "ReadWriteOnce", "reclaim_policy": "Retain"})
    result = reconciler.reconcile_once()
    assert f"start {inst.instance_id}" in result.actions
    assert db.get_instance(inst.instance_id).state == RUNNING
    assert driver.templates[inst.instance_id].volume_pool == "disk"


def test_claim_release_waits_until_unmounted(reconciler, clock):
    apply("VolumePool", "disk", {"capacity": "2Gi", "access_mode": "ReadWriteOnce", "reclaim_policy": "Delete"})
    apply("VolumeClaim", "data", {"capacity": "1Gi", "access_mode": "ReadWriteOnce"})
    _deploy(reconciler, clock, name="db", replicas=1, volume_claim="data")

    db.delete_document("VolumeClaim", "data")
    result = reconciler.reconcile_once()
    assert "still mounted" in result.errors["claim/data"]
    assert db.get_binding("data") is not None

    db.delete_document("Workload", "db")
    reconciler.reconcile_once()  # retires the instance holding the mount
    result = reconciler.reconcile_once()
    assert "release claim/data" in result.actions
    assert db.get_binding("data") is None


def test_crashed_process_is_replaced(reconciler, driver, clock):
    _deploy(reconciler, clock)
    victim = db.list_instances("api")[0]
    driver.crash(victim.instance_id)
    result = reconciler.reconcile_once()
    assert f"replace {victim.instance_id}" in result.actions
    assert db.get_instance(victim.instance_id) is None
    assert max(i.restart_count for i in db.list_instances("api")) == 1

    settle(reconciler, clock, rounds=2)
    assert [i.state for i in db.list_instances("api")] == [READY, READY]


def test_deleting_a_workload_retires_its_instances(reconciler, driver, clock):
    _deploy(reconciler, clock)
    ids = {i.runtime_id for i in db.list_instances("api")}
    db.delete_document("Workload", "api")
    result = reconciler.reconcile_once()
    assert len([a for a in result.actions if a.startswith("retire ")]) == 2
    assert db.list_instances() == []
    assert set(driver.terminated) == ids
    assert reconciler.runtime.get_rollout("api") is None


def test_start_failure_leaves_instance_pending(reconciler, driver):
    driver.fail_create = True
    apply("Workload", "api", workload_spec(replicas=1))
    reconciler.reconcile_once()
    assert [i.state for i in db.list_instances("api")] == [PENDING]
    driver.fail_create = False
    reconciler.reconcile_once()
    assert [i.state for i in db.list_instances("api")] == [RUNNING]


def test_invalid_stored_document_is_skipped():
    db.upsert_document("Workload", "broken", {"replicas": -1})
    assert load_desired().workloads == {}
    assert any("invalid" in e["message"] for e in db.latest_events(resource="workload/broken"))
