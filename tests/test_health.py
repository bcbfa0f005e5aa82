import pytest
import requests

from stackdeploy.config import HealthStrategy, ServiceDescriptor
from stackdeploy.errors import HealthTimeout, ServiceFailed
from stackdeploy.health import HealthCheckResult, HealthProber, HealthStatus, poll_until
from stackdeploy.services import ServiceStatus


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


class Probe:
    def __init__(self, *statuses):
        self.statuses = list(statuses)
        self.calls = 0

    def __call__(self) -> HealthCheckResult:
        self.calls += 1
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return HealthCheckResult(service="svc", status=status)


class StatusManager:
    def __init__(self, *statuses):
        self.statuses = list(statuses)

    def get_status(self, unit):
        return self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code
        self.ok = status_code < 400


def test_poll_returns_when_healthy():
    clock = FakeClock()
    probe = Probe(HealthStatus.UNHEALTHY, HealthStatus.UNHEALTHY, HealthStatus.HEALTHY)

    result = poll_until(probe, interval=2, timeout=30, clock=clock, sleep=clock.sleep)

    assert result.status == HealthStatus.HEALTHY
    assert result.attempts == 3
    assert clock.sleeps == [2, 2]


def test_poll_timeout_is_bounded():
    clock = FakeClock()
    probe = Probe(HealthStatus.UNHEALTHY)

    with pytest.raises(HealthTimeout) as exc:
        poll_until(probe, interval=3, timeout=10, clock=clock, sleep=clock.sleep)

    assert exc.value.service == "svc"
    assert clock.now <= 10 + 3
    assert max(clock.sleeps) <= 3
    assert clock.sleeps[-1] == 1


def test_poll_stops_on_terminal_failure():
    clock = FakeClock()
    probe = Probe(HealthStatus.FAILED)

    with pytest.raises(ServiceFailed):
        poll_until(probe, interval=2, timeout=30, clock=clock, sleep=clock.sleep)

    assert probe.calls == 1
    assert clock.sleeps == []


def test_poll_with_zero_timeout_probes_once():
    clock = FakeClock()
    probe = Probe(HealthStatus.UNHEALTHY)

    with pytest.raises(HealthTimeout):
        poll_until(probe, interval=2, timeout=0, clock=clock, sleep=clock.sleep)

    assert probe.calls == 1


def make_prober(manager) -> HealthProber:
    clock = FakeClock()
    return HealthProber(manager, clock=clock, sleep=clock.sleep)


@pytest.mark.parametrize(
    "status,expected",
    [
        (ServiceStatus.RUNNING, HealthStatus.HEALTHY),
        (ServiceStatus.STARTING, HealthStatus.UNHEALTHY),
        (ServiceStatus.UNKNOWN, HealthStatus.UNHEALTHY),
        (ServiceStatus.FAILED, HealthStatus.FAILED),
        (ServiceStatus.STOPPED, HealthStatus.FAILED),
    ],
)
def test_process_status_probe(status, expected):
    prober = make_prober(StatusManager(status))
    result = prober.check(ServiceDescriptor(name="redis-server", unit="redis-server"))
    assert result.status == expected


def test_wait_healthy_process():
    prober = make_prober(StatusManager(ServiceStatus.STARTING, ServiceStatus.RUNNING))
    result = prober.wait_healthy(ServiceDescriptor(name="postgresql", unit="postgresql"))
    assert result.attempts == 2


def test_wait_healthy_failed_unit():
    prober = make_prober(StatusManager(ServiceStatus.FAILED))
    with pytest.raises(ServiceFailed) as exc:
        prober.wait_healthy(ServiceDescriptor(name="sub2api", unit="sub2api"))
    assert exc.value.service == "sub2api"


ENDPOINT = ServiceDescriptor(
    name="sub2api-endpoint",
    unit="sub2api",
    strategy=HealthStrategy.HTTP_ENDPOINT,
    timeout=10,
    interval=2,
    endpoint="http://127.0.0.1:8080/health",
)


def test_http_probe_until_ok(monkeypatch):
    responses = [FakeResponse(503), FakeResponse(200)]
    seen = []

    def fake_get(url, timeout):
        seen.append((url, timeout))
        return responses.pop(0)

    monkeypatch.setattr(requests, "get", fake_get)
    result = make_prober(StatusManager(ServiceStatus.RUNNING)).wait_healthy(ENDPOINT)

    assert result.status == HealthStatus.HEALTHY
    assert result.attempts == 2
    assert seen[0] == ("http://127.0.0.1:8080/health", 5.0)


def test_http_probe_connection_errors_are_not_ready(monkeypatch):
    def refused(url, timeout):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(requests, "get", refused)
    prober = make_prober(StatusManager(ServiceStatus.RUNNING))

    assert prober.check(ENDPOINT).status == HealthStatus.UNHEALTHY
    with pytest.raises(HealthTimeout):
        prober.wait_healthy(ENDPOINT)


def test_http_probe_timeout_is_not_ready(monkeypatch):
    def slow(url, timeout):
        raise requests.Timeout()

    monkeypatch.setattr(requests, "get", slow)
    result = make_prober(StatusManager(ServiceStatus.RUNNING)).check(ENDPOINT)
    assert result.status == HealthStatus.UNHEALTHY
    assert result.message == "Request timed out"
