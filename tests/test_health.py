import pytest


@pytest.mark.asyncio
async def test_health_reports_database(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["database"] == "healthy"
    assert "X-Request-ID" in response.headers


@pytest.mark.asyncio
async def test_request_id_is_echoed_in_errors(client):
    response = await client.get("/v1/credits/balance", headers={"X-Request-ID": "abc123"})

    assert response.status_code == 401
    assert response.headers["X-Request-ID"] == "abc123"
    assert response.json()["request_id"] == "abc123"
