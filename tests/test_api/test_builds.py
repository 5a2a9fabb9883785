"""Tests for build job API endpoints."""

import uuid

import pytest
from httpx import AsyncClient

pytestmark = pytest.mark.asyncio


class TestRequestBuild:
    """Tests for POST /api/apps/{app_id}/builds."""

    async def test_queues_build(self, client: AsyncClient, app_factory):
        """Test a build request is accepted and queued."""
        app = await app_factory()

        response = await client.post(f"/api/apps/{app.id}/builds", json={"platform": "android"})

        assert response.status_code == 202
        data = response.json()
        assert data["app_id"] == app.id
        assert data["platform"] == "android"
        assert data["status"] == "queued"
        assert data["attempts"] == 1

    async def test_platform_defaults_to_android(self, client: AsyncClient, app_factory):
        app = await app_factory()
        response = await client.post(f"/api/apps/{app.id}/builds", json={})
        assert response.json()["platform"] == "android"

    async def test_idempotent_while_pending(self, client: AsyncClient, app_factory):
        """Test repeated requests return the same pending job."""
        app = await app_factory()

        first = await client.post(f"/api/apps/{app.id}/builds", json={"platform": "ios"})
        second = await client.post(f"/api/apps/{app.id}/builds", json={"platform": "ios"})

        assert first.json()["id"] == second.json()["id"]
        assert second.json()["attempts"] == 1

    async def test_unknown_app(self, client: AsyncClient):
        response = await client.post(f"/api/apps/{uuid.uuid4()}/builds", json={})
        assert response.status_code == 404

    async def test_invalid_platform(self, client: AsyncClient, app_factory):
        app = await app_factory()
        response = await client.post(f"/api/apps/{app.id}/builds", json={"platform": "windows"})
        assert response.status_code == 422


class TestReadBuilds:
    """Tests for listing and reading build jobs."""

    async def test_list_builds(self, client: AsyncClient, app_factory):
        app = await app_factory()
        await client.post(f"/api/apps/{app.id}/builds", json={"platform": "android"})
        await client.post(f"/api/apps/{app.id}/builds", json={"platform": "ios"})

        response = await client.get(f"/api/apps/{app.id}/builds")

        assert response.status_code == 200
        assert {job["platform"] for job in response.json()} == {"android", "ios"}

    async def test_list_is_scoped_to_app(self, client: AsyncClient, app_factory):
        app = await app_factory()
        other = await app_factory(name="Other")
        await client.post(f"/api/apps/{other.id}/builds", json={})

        response = await client.get(f"/api/apps/{app.id}/builds")
        assert response.json() == []

    async def test_get_build(self, client: AsyncClient, app_factory):
        app = await app_factory()
        created = (await client.post(f"/api/apps/{app.id}/builds", json={})).json()

        response = await client.get(f"/api/builds/{created['id']}")

        assert response.status_code == 200
        assert response.json()["id"] == created["id"]
        assert response.json()["validation_json"] is None

    async def test_get_unknown_build(self, client: AsyncClient):
        response = await client.get(f"/api/builds/{uuid.uuid4()}")
        assert response.status_code == 404
