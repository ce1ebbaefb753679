"""Tests for API key authentication."""

import pytest
from fastapi import Depends, FastAPI
from httpx import ASGITransport, AsyncClient

from app.auth import verify_api_key
from app.config import settings


@pytest.fixture
def protected_app(monkeypatch):
    """Create a test app with a protected endpoint and a known API key."""
    monkeypatch.setattr(settings, "api_key", "secret-key")
    app = FastAPI()

    @app.get("/protected")
    async def protected_endpoint(api_key: str = Depends(verify_api_key)):
        return {"message": "success"}

    return app


@pytest.fixture
async def protected_client(protected_app):
    """Async test client for protected app."""
    async with AsyncClient(
        transport=ASGITransport(app=protected_app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.mark.asyncio
async def test_valid_key(protected_client):
    """Test that a matching X-API-Key is accepted."""
    response = await protected_client.get("/protected", headers={"X-API-Key": "secret-key"})
    assert response.status_code == 200
    assert response.json() == {"message": "success"}


@pytest.mark.asyncio
async def test_missing_key(protected_client):
    """Test that a request without X-API-Key is rejected."""
    response = await protected_client.get("/protected")
    assert response.status_code == 401
    assert response.json()["detail"] == "Missing API key"


@pytest.mark.asyncio
async def test_invalid_key(protected_client):
    """Test that a wrong X-API-Key is rejected."""
    response = await protected_client.get("/protected", headers={"X-API-Key": "wrong-key"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid API key"


@pytest.mark.asyncio
async def test_routes_require_key():
    """The real application routes reject requests without a key."""
    from app.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        response = await ac.get("/api/users/u1/fhir/Observation")
    assert response.status_code == 401
