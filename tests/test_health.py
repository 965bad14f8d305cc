"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status and version
  - No authentication required
"""

from __future__ import annotations

from api.main import __version__


def test_health_returns_status_and_version(api_client):
    resp = api_client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "version": __version__}


def test_health_no_auth_required(api_client):
    """Health endpoint is accessible without any authentication headers."""
    resp = api_client.get("/api/v1/health", headers={})
    assert resp.status_code == 200


def test_health_ignores_bad_credentials(api_client):
    resp = api_client.get("/api/v1/health", headers={"Authorization": "Bearer nonsense"})
    assert resp.status_code == 200
