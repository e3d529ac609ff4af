"""Tests for the video record endpoints, health check and HTTP middleware."""

import uuid
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from api.app import create_app
from fixtures.media import FakeProbe, FakeRewriter


class TestCreateVideo:
    def test_create_returns_201_and_record(self, client, auth_headers, user_id):
        response = client.post(
            "/api/videos", json={"title": "  My Video  ", "description": "desc"}, headers=auth_headers
        )

        assert response.status_code == 201
        data = response.json()
        uuid.UUID(data["id"])
        assert data["user_id"] == user_id
        assert data["title"] == "My Video"
        assert data["description"] == "desc"
        assert data["thumbnail_url"] is None
        assert data["video_url"] is None
        assert data["created_at"] == data["updated_at"]

    def test_blank_title_rejected(self, client, auth_headers):
        response = client.post("/api/videos", json={"title": "   "}, headers=auth_headers)
        assert response.status_code == 422

    def test_requires_auth(self, client):
        response = client.post("/api/videos", json={"title": "x"})
        assert response.status_code == 401


class TestListAndGetVideos:
    def test_list_only_returns_own_videos(self, client, auth_headers, other_auth_headers, sample_video):
        client.post("/api/videos", json={"title": "someone else's"}, headers=other_auth_headers)

        response = client.get("/api/videos", headers=auth_headers)

        assert response.status_code == 200
        assert [v["id"] for v in response.json()] == [sample_video["id"]]

    def test_get_own_video(self, client, auth_headers, sample_video):
        response = client.get(f"/api/videos/{sample_video['id']}", headers=auth_headers)
        assert response.status_code == 200
        assert response.json() == sample_video

    def test_get_other_users_video_is_403(self, client, other_auth_headers, sample_video):
        response = client.get(f"/api/videos/{sample_video['id']}", headers=other_auth_headers)
        assert response.status_code == 403

    def test_get_invalid_id(self, client, auth_headers):
        response = client.get("/api/videos/123", headers=auth_headers)
        assert response.status_code == 400
        assert response.json() == {"detail": "Invalid ID"}

    def test_get_unknown_video(self, client, auth_headers):
        response = client.get(f"/api/videos/{uuid.uuid4()}", headers=auth_headers)
        assert response.status_code == 404


class TestDeleteVideo:
    def test_delete_removes_record(self, client, auth_headers, sample_video):
        response = client.delete(f"/api/videos/{sample_video['id']}", headers=auth_headers)
        assert response.status_code == 204

        response = client.get(f"/api/videos/{sample_video['id']}", headers=auth_headers)
        assert response.status_code == 404

    def test_non_owner_cannot_delete(self, client, auth_headers, other_auth_headers, sample_video):
        response = client.delete(f"/api/videos/{sample_video['id']}", headers=other_auth_headers)
        assert response.status_code == 403
        assert client.get(f"/api/videos/{sample_video['id']}", headers=auth_headers).status_code == 200


class TestHealth:
    def test_healthy(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "checks": {"database": True, "storage": True}}


class TestMiddleware:
    def test_request_id_generated(self, client):
        response = client.get("/health")
        uuid.UUID(response.headers["X-Request-ID"])

    def test_request_id_preserved(self, client):
        response = client.get("/health", headers={"X-Request-ID": "trace-abc-123"})
        assert response.headers["X-Request-ID"] == "trace-abc-123"

    def test_unsafe_request_id_replaced(self, client):
        response = client.get("/health", headers={"X-Request-ID": "bad id with spaces"})
        assert response.headers["X-Request-ID"] != "bad id with spaces"
        uuid.UUID(response.headers["X-Request-ID"])

    def test_security_headers(self, client):
        response = client.get("/health")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "SAMEORIGIN"

    def test_error_responses_carry_request_id(self, client):
        response = client.get("/api/videos/not-a-uuid", headers={"X-Request-ID": "err-1"})
        assert response.status_code == 400
        assert response.headers["X-Request-ID"] == "err-1"


class TestRateLimiting:
    @pytest.fixture
    def limited_client(self, app_config):
        config = replace(app_config, rate_limit_enabled=True, rate_limit_default="2/minute")
        with TestClient(create_app(config, probe=FakeProbe(), rewriter=FakeRewriter())) as client:
            yield client

    def test_exceeding_limit_returns_429(self, limited_client, auth_headers):
        assert limited_client.get("/api/videos", headers=auth_headers).status_code == 200
        assert limited_client.get("/api/videos", headers=auth_headers).status_code == 200

        response = limited_client.get("/api/videos", headers=auth_headers)

        assert response.status_code == 429
        assert response.json()["detail"] == "Rate limit exceeded"
