import pytest

from netrounds.settings import settings


@pytest.mark.asyncio
async def test_liveness(api_client):
    res = await api_client.get("/health/live")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_readiness_with_fake_redis(api_client):
    res = await api_client.get("/health/ready")
    assert res.status_code == 200
    assert res.json()["checks"]["redis"]["ok"] is True


@pytest.mark.asyncio
async def test_metrics_require_admin_token(api_client, monkeypatch):
    monkeypatch.setattr(settings, "obs_metrics_public", False)
    denied = await api_client.get("/metrics")
    assert denied.status_code == 403

    monkeypatch.setattr(settings, "obs_admin_token", "ops-secret")
    allowed = await api_client.get("/metrics", headers={"Authorization": "Bearer ops-secret"})
    assert allowed.status_code == 200
    assert "netrounds_driver_ticks_total" in allowed.text


@pytest.mark.asyncio
async def test_public_metrics(api_client, monkeypatch):
    monkeypatch.setattr(settings, "obs_metrics_public", True)
    res = await api_client.get("/metrics")
    assert res.status_code == 200


@pytest.mark.asyncio
async def test_driver_tick_requires_admin(api_client, monkeypatch):
    monkeypatch.setattr(settings, "obs_admin_token", "ops-secret")
    denied = await api_client.post("/ops/driver/tick", headers={"X-Admin-Token": "wrong"})
    assert denied.status_code == 403

    res = await api_client.post(
        "/ops/driver/tick",
        headers={"X-Admin-Token": "ops-secret", "X-Test-Time": "2030-05-14T12:00:00Z"},
    )
    assert res.status_code == 200
    assert res.json()["now"].startswith("2030-05-14T12:00:00")
