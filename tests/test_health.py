import httpx
import pytest

from bgd import health
from bgd.health import HealthGate, HealthPolicy, HealthVerdict, HttpProbe, ProbeResult, check_health
from bgd.runtime import Color, Environment, EnvironmentState, TaskRecord

PASS = ProbeResult(True, "ok")
FAIL = ProbeResult(False, "HTTP 503")


def gate(**kw):
    policy = HealthPolicy(interval_s=5, timeout_s=1, **kw)
    return HealthGate(policy, probe=lambda env: PASS, started_at=0.0)


def test_healthy_only_after_consecutive_passes():
    g = gate(healthy_threshold=3, failure_threshold=3)
    assert g.observe(PASS, 0) == HealthVerdict.UNHEALTHY
    assert g.observe(PASS, 5) == HealthVerdict.UNHEALTHY
    assert g.observe(PASS, 10) == HealthVerdict.HEALTHY


def test_a_failure_resets_the_pass_count():
    g = gate(healthy_threshold=2, failure_threshold=5)
    g.observe(PASS, 0)
    g.observe(FAIL, 5)
    g.observe(PASS, 10)
    assert not g.healthy
    g.observe(PASS, 15)
    assert g.healthy


def test_breaker_trips_on_consecutive_failures_only():
    g = gate(healthy_threshold=3, failure_threshold=3)
    for t, r in enumerate([FAIL, FAIL, PASS, FAIL, FAIL]):
        g.observe(r, t)
    assert not g.tripped
    g.observe(FAIL, 6)
    assert g.tripped
    assert g.last is FAIL


def test_failures_in_start_period_do_not_count():
    g = gate(healthy_threshold=1, failure_threshold=2, start_period_s=30)
    g.observe(FAIL, 0)
    g.observe(FAIL, 10)
    g.observe(FAIL, 20)
    assert g.consecutive_failures == 0
    g.observe(FAIL, 30)
    g.observe(FAIL, 35)
    assert g.tripped


def test_a_pass_ends_the_start_period():
    g = gate(healthy_threshold=5, failure_threshold=2, start_period_s=300)
    g.observe(PASS, 0)
    g.observe(FAIL, 5)
    g.observe(FAIL, 10)
    assert g.tripped


def test_sample_uses_the_probe():
    policy = HealthPolicy(healthy_threshold=1)
    g = HealthGate(policy, probe=lambda env: PASS, started_at=0.0)
    assert g.sample(None, 0) == HealthVerdict.HEALTHY
    assert g.checks == 1


def _env(*endpoints):
    return Environment(
        id="shop-blue",
        service="shop",
        color=Color.BLUE,
        target_group="shop-tg-blue",
        state=EnvironmentState.CANDIDATE,
        tasks=[TaskRecord(f"t{i}", {"app": f"c{i}"}, ep) for i, ep in enumerate(endpoints)],
    )


def test_http_probe_requires_every_task_to_pass():
    seen = []

    def fake_check(url, timeout_s):
        seen.append(url)
        return ("10.0.0.2" not in url, "HTTP 500" if "10.0.0.2" in url else "Healthy", 3.0)

    probe = HttpProbe("/health", 1.0, check=fake_check)
    assert probe(_env("http://10.0.0.1:8080")).ok
    result = probe(_env("http://10.0.0.1:8080", "http://10.0.0.2:8080"))
    assert not result.ok
    assert "t1" in result.message
    assert seen[0] == "http://10.0.0.1:8080/health"


def test_http_probe_without_tasks_fails():
    assert not HttpProbe("/health", 1.0, check=lambda url, timeout_s: (True, "", 1.0))(_env()).ok


@pytest.fixture
def transport(monkeypatch):
    handlers = {}
    real_client = httpx.Client

    def handler(request):
        return handlers["fn"](request)

    def client(**kw):
        return real_client(transport=httpx.MockTransport(handler), **kw)

    monkeypatch.setattr(health.httpx, "Client", client)
    return handlers


@pytest.mark.parametrize("status,ok", [(200, True), (204, True), (301, False), (503, False)])
def test_check_health_status_codes(transport, status, ok):
    transport["fn"] = lambda request: httpx.Response(status)
    healthy, message, latency = check_health("http://svc/health")
    assert healthy is ok
    assert latency is not None
    if not ok:
        assert message == f"HTTP {status}"


def test_check_health_connection_error(transport):
    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    transport["fn"] = refuse
    assert check_health("http://svc/health")[:2] == (False, "No response")
