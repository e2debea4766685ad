"""Liveness and readiness endpoints."""

import pytest

from tokenwise_api import __version__
from tokenwise_api.routers import health


@pytest.fixture
def dependencies_up(monkeypatch):
    monkeypatch.setattr(health, "check_database", lambda: "up")
    monkeypatch.setattr(health, "check_redis", lambda: "up")


def test_health_reports_services(test_client, dependencies_up):
    response = test_client.get("/health")

    assert response.status_code == 200
    assert response.json() == {
        "status": "healthy",
        "version": __version__,
        "services": {"api": "up", "database": "up", "redis": "up"},
    }


def test_health_is_200_even_when_redis_down(test_client, monkeypatch):
    monkeypatch.setattr(health, "check_database", lambda: "up")
    monkeypatch.setattr(health, "check_redis", lambda: "down: ConnectionError")

    response = test_client.get("/health")

    assert response.status_code == 200
    assert response.json()["services"]["redis"] == "down: ConnectionError"


def test_readyz_ready(test_client, dependencies_up):
    response = test_client.get("/readyz")

    assert response.status_code == 200
    assert response.json()["status"] == "ready"


@pytest.mark.parametrize("service", ["check_database", "check_redis"])
def test_readyz_503_when_dependency_down(test_client, dependencies_up, monkeypatch, service):
    monkeypatch.setattr(health, service, lambda: "down: OperationalError")

    response = test_client.get("/readyz")

    assert response.status_code == 503
    assert response.json()["status"] == "not_ready"


def test_check_database_against_sqlite():
    # Module engine points at DATABASE_URL=sqlite:///:memory: under test
    assert health.check_database() == "up"


def test_root(test_client):
    assert test_client.get("/").json() == {"service": "Tokenwise API", "version": __version__, "status": "running"}
