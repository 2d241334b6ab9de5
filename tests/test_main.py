import asyncio
import json
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry, Gauge

from fieldbook import __version__
from fieldbook.errors import IllegalTransition, TokenExpired
from fieldbook.main import app, booking_error_handler, get_queue_monitor, refresh_queue_metrics
from fieldbook.services.queue_monitor import STATS_ERROR_MESSAGE, QueueMonitor

from .test_queue_monitor import FakeBackend

ADMIN_HEADERS = {"X-Admin-Key": "test-admin-key"}


@pytest.fixture
def client():
    # No context manager: the lifespan (create_all, redis probe) is not run
    yield TestClient(app)
    app.dependency_overrides.clear()


def use_backend(backend):
    app.dependency_overrides[get_queue_monitor] = lambda: QueueMonitor(backend, backlog_threshold=100)


def test_root(client):
    assert client.get("/").json() == {"name": "Fieldbook API", "version": __version__}


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_queue_health_public_view(client):
    use_backend(FakeBackend(waiting=3))

    response = client.get("/health/queue")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_queue_health_details_for_admin(client):
    use_backend(FakeBackend(waiting=3, completed=4))

    body = client.get("/health/queue", headers=ADMIN_HEADERS).json()

    assert body["status"] == "healthy"
    assert body["memoryUsage"]["used"] == 7 * 150
    assert "usagePercent" in body["memoryUsage"]


def test_queue_health_wrong_key_gets_public_view(client):
    use_backend(FakeBackend(waiting=3))

    body = client.get("/health/queue", headers={"X-Admin-Key": "nope"}).json()

    assert body == {"status": "healthy"}


def test_queue_error_is_503_without_leaking_details(client):
    use_backend(FakeBackend(broken={"waiting": ConnectionError("redis://10.0.0.5:6379 refused")}))

    public = client.get("/health/queue")
    admin = client.get("/health/queue", headers=ADMIN_HEADERS)

    assert public.status_code == 503
    assert public.json() == {"status": "error"}
    assert admin.status_code == 503
    assert admin.json()["message"] == STATS_ERROR_MESSAGE
    assert "refused" in admin.json()["details"]


def test_disconnected_pool_reports_error(client):
    # Lifespan never ran, so app.state has no queue pool
    response = client.get("/health/queue", headers=ADMIN_HEADERS)

    assert response.status_code == 503
    assert response.json()["details"] == "Queue connection not initialised"


def handle(exc):
    request = SimpleNamespace(url=SimpleNamespace(path="/appointments/a1/confirm"))
    response = asyncio.run(booking_error_handler(request, exc))
    return response.status_code, json.loads(response.body)


def test_booking_error_handler_maps_status():
    status, body = handle(IllegalTransition("COMPLETED", "CANCELLED"))

    assert status == 409
    assert body == {"error": "illegal_transition", "detail": "Cannot move from COMPLETED to CANCELLED"}


def test_token_errors_share_one_public_message():
    status, body = handle(TokenExpired("Token has expired"))

    assert status == 403
    assert body["detail"] == "Invalid or expired link"


def test_metrics_endpoint_exposes_queue_gauge(client):
    response = client.get("/metrics/")

    assert response.status_code == 200
    assert "arq_reminders_waiting" in response.text


def test_refresh_loop_updates_gauge_until_cancelled():
    registry = CollectorRegistry()
    gauge = Gauge("loop_reminders_waiting", "Waiting reminders", registry=registry)
    monitor = QueueMonitor(FakeBackend(waiting=4), waiting_gauge=gauge)

    async def run_briefly():
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(refresh_queue_metrics(lambda: monitor, interval=0.01), timeout=0.05)

    asyncio.run(run_briefly())

    assert registry.get_sample_value("loop_reminders_waiting") == 4
