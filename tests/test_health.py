import pytest
from httpx import AsyncClient, ASGITransport
from app import main as main_module
from app.main import app


@pytest.mark.asyncio
async def test_liveness_endpoint():
    """Test liveness endpoint."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/api/v1/live")
        assert response.status_code == 200
        data = response.json()
        assert data["alive"] is True


@pytest.mark.asyncio
async def test_readiness_without_mongo():
    """Readiness fails while MongoDB is not connected."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/api/v1/ready")
        assert response.status_code == 503
        data = response.json()
        assert data["ready"] is False
        assert data["checks"]["mongodb"].startswith("not ready")


@pytest.mark.asyncio
async def test_health_reports_dependencies():
    """Health lists every dependency and breaker, degraded without MongoDB."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/api/v1/health")
        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "degraded"
        assert data["checks"]["redis"]["status"] == "disabled"
        assert set(data["circuit_breakers"]) == {"mongo", "redis"}


@pytest.mark.asyncio
async def test_queries_unavailable_before_startup():
    """Without a registry the query endpoints answer 503, not 500."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/api/v1/queries")
        assert response.status_code == 503
        assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_metrics_endpoint():
    """Metrics report dependency status even when nothing is connected."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/api/v1/metrics")
        assert response.status_code == 200
        data = response.json()
        assert data["dependencies"]["mongodb"]["status"] == "unavailable"
        assert data["dependencies"]["redis"]["status"] == "disabled"


@pytest.mark.asyncio
async def test_lifespan_runs_startup_and_shutdown(monkeypatch):
    """The lifespan context connects on entry and disconnects on exit."""
    calls = []

    async def fake_startup():
        calls.append("startup")

    async def fake_shutdown():
        calls.append("shutdown")

    monkeypatch.setattr(main_module, "startup_handler", fake_startup)
    monkeypatch.setattr(main_module, "shutdown_handler", fake_shutdown)

    async with main_module.lifespan(app):
        assert calls == ["startup"]
    assert calls == ["startup", "shutdown"]
