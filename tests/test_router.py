import pytest

from dre import db
from dre.api_models import ServiceSpec
from dre.errors import NoHealthyBackends, ResourceUnavailableError
from dre.router import ServiceRouter, selector_matches
from dre.runtime import READY, RUNNING, UNHEALTHY

from conftest import make_template, started_instance


def _svc(selector, scope="internal"):
    return ServiceSpec(selector=selector, port=80, target_port=3001, scope=scope)


@pytest.fixture
def router(runtime):
    return ServiceRouter(runtime, port_min=30000, port_max=30001)


def test_selector_matching():
    assert selector_matches({"app": "auth"}, {"app": "auth", "tier": "web"})
    assert not selector_matches({"app": "auth", "tier": "db"}, {"app": "auth", "tier": "web"})
    assert not selector_matches({"app": "auth"}, {})


def test_endpoints_are_exactly_ready_matching_instances(router, runtime, driver):
    started_instance(driver, "auth-1", "auth", make_template(labels={"app": "auth"}), state=READY)
    started_instance(driver, "auth-2", "auth", make_template(labels={"app": "auth"}), state=RUNNING)
    started_instance(driver, "auth-3", "auth", make_template(labels={"app": "auth"}), state=UNHEALTHY)
    started_instance(driver, "orders-1", "orders", make_template(labels={"app": "orders"}), state=READY)
    router.set_services({"auth": _svc({"app": "auth"})})
    router.refresh()
    assert [e.instance_id for e in runtime.get_endpoints("auth")] == ["auth-1"]
    assert router.resolve("auth") == [("auth-1", 3001)]

    db.set_instance_state("auth-2", READY)
    db.set_instance_state("auth-1", UNHEALTHY)
    router.refresh()
    assert [e.instance_id for e in runtime.get_endpoints("auth")] == ["auth-2"]


def test_external_services_get_a_stable_port(router):
    actions = router.set_services({"auth": _svc({"app": "auth"}, scope="external"), "orders": _svc({"app": "orders"})})
    assert actions == ["publish service/auth:30000"]
    assert router.external_port("auth") == 30000
    assert router.external_port("orders") is None
    assert router.set_services({"auth": _svc({"app": "auth"}, scope="external"), "orders": _svc({"app": "orders"})}) == []
    assert router.external_port("auth") == 30000


def test_port_range_exhaustion(router):
    router.set_services({"a": _svc({"app": "a"}, "external"), "b": _svc({"app": "b"}, "external")})
    with pytest.raises(ResourceUnavailableError):
        router.set_services(
            {
                "a": _svc({"app": "a"}, "external"),
                "b": _svc({"app": "b"}, "external"),
                "c": _svc({"app": "c"}, "external"),
            }
        )


def test_dropped_service_releases_its_port(router, runtime):
    router.set_services({"auth": _svc({"app": "auth"}, scope="external")})
    assert router.set_services({}) == ["drop service/auth"]
    assert runtime.node_ports == {}
    with pytest.raises(KeyError):
        router.resolve("auth")


def test_round_robin_selection(router, driver):
    for i in (1, 2):
        started_instance(driver, f"auth-{i}", "auth", make_template(labels={"app": "auth"}), state=READY)
    router.set_services({"auth": _svc({"app": "auth"})})
    router.refresh()
    picks = [router.select_backend("auth").instance_id for _ in range(4)]
    assert picks == ["auth-1", "auth-2", "auth-1", "auth-2"]


def test_no_ready_endpoints(router, driver):
    started_instance(driver, "auth-1", "auth", make_template(labels={"app": "auth"}), state=RUNNING)
    router.set_services({"auth": _svc({"app": "auth"})})
    router.refresh()
    with pytest.raises(NoHealthyBackends):
        router.select_backend("auth")
