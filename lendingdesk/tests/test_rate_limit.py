import pytest

from lendingdesk import rate_limit
from lendingdesk.rate_limit import RequestThrottle
from conftest import DEFAULT_PASSWORD


@pytest.fixture
def tight_throttle(monkeypatch):
    throttle = RequestThrottle("100 per minute", "3 per 15 minutes")
    monkeypatch.setattr(rate_limit, "throttle", throttle)
    return throttle


def _login(client, password):
    return client.post("/api/auth/login", json={"email": "ana@example.com", "password": password})


def test_failed_logins_are_throttled(client, seed, tight_throttle):
    seed.user(seed.tenant(), email="ana@example.com")

    codes = [_login(client, "wrong-password").status_code for _ in range(3)]
    blocked = _login(client, DEFAULT_PASSWORD)

    assert codes == [401, 401, 401]
    assert blocked.status_code == 429
    assert blocked.json()["success"] is False
    assert blocked.json()["message"] == rate_limit.TOO_MANY_LOGINS
    assert blocked.json()["details"]["retryAfter"] >= 1


def test_successful_logins_do_not_count(client, seed, tight_throttle):
    seed.user(seed.tenant(), email="ana@example.com")

    codes = [_login(client, DEFAULT_PASSWORD).status_code for _ in range(5)]

    assert codes == [200] * 5
    assert _login(client, "wrong-password").status_code == 401


def test_api_requests_share_a_budget(client, monkeypatch):
    monkeypatch.setattr(rate_limit, "throttle", RequestThrottle("6 per minute", "3 per 15 minutes"))

    codes = [client.get("/api/health").status_code for _ in range(7)]

    assert codes == [200] * 6 + [429]
    response = client.get("/api/health")
    assert response.json() == {"success": False, "message": rate_limit.TOO_MANY_REQUESTS}
    assert int(response.headers["Retry-After"]) >= 1


def test_disabled_throttle_never_blocks(client, monkeypatch):
    monkeypatch.setattr(rate_limit, "throttle", RequestThrottle("1 per minute", "1 per minute", enabled=False))

    assert [client.get("/api/health").status_code for _ in range(3)] == [200, 200, 200]
