import threading

import pytest

from bgd import db
from bgd.gateway import PRODUCTION, TEST, NoHealthyBackends, SwapConflict, TrafficRouter

ENVS = {"shop-blue": "shop-tg-blue", "shop-green": "shop-tg-green"}


@pytest.fixture
def router(clock):
    db.create_service("shop", 8081, 18081)
    r = TrafficRouter(clock=clock)
    r.register("shop", 8081, 18081, ENVS)
    return r


def test_new_service_starts_unbound(router):
    prod, test = router.bindings("shop")
    assert (prod.listener_port, test.listener_port) == (8081, 18081)
    assert prod.target_group is None and test.target_group is None
    assert router.state("shop").production_environment is None


def test_register_rejects_shared_ports(clock):
    with pytest.raises(ValueError):
        TrafficRouter(clock=clock).register("shop", 8081, 8081, ENVS)


def test_swap_moves_only_target_groups(router, clock):
    prod_before, test_before = router.bindings("shop")
    router.swap("shop", "shop-blue")
    ack = router.swap("shop", "shop-green")
    prod, test = router.bindings("shop")
    assert ack.previous_environment == "shop-blue"
    assert ack.swapped_at == clock()
    assert prod.target_group == "shop-tg-green"
    assert test.target_group == "shop-tg-blue"
    assert (prod.listener_port, prod.rule_id) == (prod_before.listener_port, prod_before.rule_id)
    assert (test.listener_port, test.rule_id) == (test_before.listener_port, test_before.rule_id)


def test_swap_to_current_production_is_a_no_op(router):
    router.swap("shop", "shop-blue")
    ack = router.swap("shop", "shop-blue")
    assert ack.changed is False
    assert router.resolve("shop", PRODUCTION) == "shop-tg-blue"


def test_swap_is_persisted_and_reloaded(router, clock):
    router.swap("shop", "shop-blue")
    assert db.get_traffic("shop").production_environment == "shop-blue"
    reloaded = TrafficRouter(clock=clock)
    reloaded.register("shop", 8081, 18081, ENVS)
    assert reloaded.resolve("shop", PRODUCTION) == "shop-tg-blue"
    events = [e["message"] for e in db.latest_events(10, service_name="shop")]
    assert any("swapped" in m for m in events)


def test_readers_never_see_both_bindings_on_one_group(router):
    router.swap("shop", "shop-blue")
    stop = threading.Event()
    bad = []

    def reader():
        while not stop.is_set():
            prod, test = router.bindings("shop")
            if prod.target_group is None or prod.target_group == test.target_group:
                bad.append((prod, test))

    threads = [threading.Thread(target=reader) for _ in range(4)]
    for t in threads:
        t.start()
    for i in range(200):
        router.swap("shop", "shop-green" if i % 2 == 0 else "shop-blue")
    stop.set()
    for t in threads:
        t.join()
    assert bad == []


def test_concurrent_swap_is_rejected(router, monkeypatch):
    entered = threading.Event()
    release = threading.Event()
    real_save = db.save_traffic

    def slow_save(state):
        entered.set()
        release.wait(5)
        real_save(state)

    monkeypatch.setattr(db, "save_traffic", slow_save)
    first = threading.Thread(target=router.swap, args=("shop", "shop-blue"))
    first.start()
    assert entered.wait(5)
    with pytest.raises(SwapConflict):
        router.swap("shop", "shop-green")
    release.set()
    first.join()
    assert router.resolve("shop", PRODUCTION) == "shop-tg-blue"
    # the flight is over, a later swap goes through
    router.swap("shop", "shop-green")
    assert router.resolve("shop", PRODUCTION) == "shop-tg-green"


def test_test_binding_cannot_target_production(router):
    router.swap("shop", "shop-blue")
    with pytest.raises(ValueError):
        router.attach_test("shop", "shop-blue")
    router.attach_test("shop", "shop-green")
    assert router.resolve("shop", TEST) == "shop-tg-green"
    router.release_test("shop")
    assert router.resolve("shop", TEST) is None


def test_unknown_service_and_environment(router):
    with pytest.raises(KeyError):
        router.state("nope")
    with pytest.raises(KeyError):
        router.swap("shop", "shop-purple")


def test_select_target_round_robin(router):
    router.swap("shop", "shop-blue")
    router.register_targets("shop-tg-blue", ["http://a", "http://b"])
    picks = [router.select_target("shop") for _ in range(4)]
    assert picks == ["http://a", "http://b", "http://a", "http://b"]


def test_select_target_without_backends(router):
    with pytest.raises(NoHealthyBackends):
        router.select_target("shop")
    router.swap("shop", "shop-blue")
    with pytest.raises(NoHealthyBackends):
        router.select_target("shop")
    router.register_targets("shop-tg-blue", ["http://a"])
    router.clear_targets("shop-tg-blue")
    with pytest.raises(NoHealthyBackends):
        router.select_target("shop")
