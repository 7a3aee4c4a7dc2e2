"""HTTP surface, driven through the app lifespan with a fake target connector."""

from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from config import Settings
from errors import ConnectionCategory, TargetConnectionError
from main import create_app
from conftest import FakeConnector, FakeLiveConnection

NEW_TARGET = {
    "name": "primary", "host": "db1.internal", "port": 5432,
    "database": "app", "username": "monitor", "password": "pw",
}

SESSION_ROWS = [
    {"pid": 101, "username": "app", "application_name": "api", "database_name": "app",
     "client_addr": None, "backend_start": None, "query_start": None, "state": "active"},
]


def _settings(tmp_path: Path, **overrides) -> Settings:
    values = dict(
        metrics_database_url=f"sqlite+aiosqlite:///{tmp_path / 'metrics.db'}",
        secret_key="api-test-secret",
        log_dir=tmp_path / "logs",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector(lambda params: FakeLiveConnection({"sessions": SESSION_ROWS}))


@pytest.fixture
def client(tmp_path, connector):
    app = create_app(_settings(tmp_path), connector=connector, start_scheduler=False, setup_logging=False)
    with TestClient(app) as c:
        yield c


def _register(client: TestClient, **overrides) -> int:
    res = client.post("/api/connections", json={**NEW_TARGET, **overrides})
    assert res.status_code == 201, res.text
    return res.json()["id"]


# ---------------------------------------------------------- connections


def test_register_and_list(client) -> None:
    res = client.post("/api/connections", json=NEW_TARGET)

    assert res.status_code == 201
    body = res.json()
    assert body["name"] == "primary"
    assert "password" not in body

    listed = client.get("/api/connections").json()
    assert [c["id"] for c in listed] == [body["id"]]
    assert listed[0]["live"] is True


def test_register_requires_password(client) -> None:
    res = client.post("/api/connections", json={**NEW_TARGET, "password": ""})

    assert res.status_code == 400


def test_register_invalid_port_is_rejected(client) -> None:
    res = client.post("/api/connections", json={**NEW_TARGET, "port": 70000})

    assert res.status_code == 422


def test_register_failure_reports_category(client, connector) -> None:
    connector.refuse["db1.internal"] = TargetConnectionError(ConnectionCategory.AUTH_FAILED, "bad password")

    res = client.post("/api/connections", json=NEW_TARGET)

    assert res.status_code == 400
    assert res.json()["category"] == "auth_failed"
    assert client.get("/api/connections").json() == []


def test_list_with_check(client) -> None:
    _register(client)

    listed = client.get("/api/connections", params={"check": "true"}).json()

    assert listed[0]["status"] == "Connected"


def test_update_connection(client) -> None:
    connection_id = _register(client)

    res = client.put(f"/api/connections/{connection_id}", json={**NEW_TARGET, "name": "renamed", "password": ""})

    assert res.status_code == 200
    assert res.json()["name"] == "renamed"


def test_update_unknown_connection(client) -> None:
    res = client.put("/api/connections/999", json=NEW_TARGET)

    assert res.status_code == 404


def test_delete_connection(client) -> None:
    connection_id = _register(client)

    assert client.delete(f"/api/connections/{connection_id}").status_code == 204
    assert client.get("/api/connections").json() == []
    assert client.delete(f"/api/connections/{connection_id}").status_code == 404


def test_connection_test_success(client, connector) -> None:
    res = client.post("/api/connections/test", json=NEW_TARGET)

    assert res.status_code == 200
    assert res.json()["success"] is True
    assert res.json()["version"].startswith("PostgreSQL")
    assert connector.open_handles == []


def test_connection_test_failure(client, connector) -> None:
    connector.refuse["nowhere.internal"] = TargetConnectionError(ConnectionCategory.HOST_UNREACHABLE, "no route")

    res = client.post("/api/connections/test", json={**NEW_TARGET, "host": "nowhere.internal"})

    assert res.status_code == 400
    body = res.json()
    assert body["success"] is False
    assert body["category"] == "host_unreachable"


def test_connection_test_with_stored_password(client, connector) -> None:
    connection_id = _register(client, password="stored-pw")

    res = client.post("/api/connections/test", json={
        **NEW_TARGET, "password": "", "id": connection_id, "useExistingPassword": True,
    })

    assert res.status_code == 200
    params, _ = connector.calls[-1]
    assert params.password == "stored-pw"


def test_extensions(client) -> None:
    connection_id = _register(client)

    assert client.get(f"/api/connections/{connection_id}/extensions").json() == []
    assert client.get("/api/extensions").json()[0]["connection_name"] == "primary"
    assert client.get("/api/connections/999/extensions").status_code == 404


# -------------------------------------------------------------- metrics


def test_refresh_then_read_metrics(client) -> None:
    connection_id = _register(client)

    res = client.post(f"/api/connections/{connection_id}/refresh")

    assert res.status_code == 200
    assert res.json()["stored"]["sessions"] == 1
    sessions = client.get(f"/api/connections/{connection_id}/sessions").json()
    assert [s["pid"] for s in sessions] == [101]
    assert client.get("/api/sessions").json()[0]["connection_name"] == "primary"
    assert client.get("/api/sessions/top").json()[0]["cpu_usage"] == 100.0
    assert client.get(f"/api/connections/{connection_id}/history/sessions").json()[0]["pid"] == 101


def test_refresh_unknown_connection(client) -> None:
    assert client.post("/api/connections/4242/refresh").status_code == 404


def test_refresh_all(client) -> None:
    first = _register(client)
    second = _register(client, name="standby", host="db2.internal")

    res = client.post("/api/refresh")

    assert sorted(t["connection_id"] for t in res.json()["targets"]) == sorted([first, second])


def test_version_collected_on_demand(client) -> None:
    connection_id = _register(client)

    res = client.get(f"/api/connections/{connection_id}/version")

    assert res.json()["version"].startswith("PostgreSQL 16")
    assert [v["connection_id"] for v in client.get("/api/version").json()] == [connection_id]


def test_composite_stats(client) -> None:
    connection_id = _register(client)
    client.post(f"/api/connections/{connection_id}/refresh")

    res = client.get(f"/api/connections/{connection_id}/stats")

    assert res.status_code == 200
    stats = res.json()["stats"]
    assert stats["version"].startswith("PostgreSQL")
    assert stats["databaseSize"] == "42 MB"
    assert [s["pid"] for s in stats["sessions"]] == [101]
    assert stats["queryStats"] == []
    assert stats["blockingSessions"] == []


def test_composite_stats_falls_back_per_part(client, connector) -> None:
    connector.factory = lambda params: FakeLiveConnection(failures={"db_size": RuntimeError("permission denied")})
    connection_id = _register(client)

    stats = client.get(f"/api/connections/{connection_id}/stats").json()["stats"]

    assert stats["databaseSize"] == "Unknown"
    assert stats["version"].startswith("PostgreSQL")


def test_stats_alias_redirects(client) -> None:
    res = client.get("/api/stats/7", follow_redirects=False)

    assert res.status_code == 307
    assert res.headers["location"] == "/api/connections/7/stats"


def test_history_hours_must_be_positive(client) -> None:
    assert client.get("/api/history/sessions", params={"hours": 0}).status_code == 422


def test_empty_reads(client) -> None:
    for path in ("/api/waits", "/api/locks/blocking", "/api/temp/usage", "/api/temp/timeline", "/api/queries/stats"):
        res = client.get(path)
        assert res.status_code == 200, path
        assert res.json() == []


# -------------------------------------------------------------- startup


def test_startup_seeds_targets(tmp_path, connector) -> None:
    seed = tmp_path / "targets.toml"
    seed.write_text(
        '[[targets]]\n'
        'name = "seeded"\nhost = "seed.internal"\ndatabase = "app"\nusername = "monitor"\npassword = "pw"\n'
    )
    app = create_app(_settings(tmp_path, seed_targets_file=seed), connector=connector,
                     start_scheduler=False, setup_logging=False)

    with TestClient(app) as c:
        assert [t["name"] for t in c.get("/api/connections").json()] == ["seeded"]

    # a restart reopens the stored registration instead of seeding it twice
    with TestClient(app) as c:
        listed = c.get("/api/connections").json()
        assert [t["name"] for t in listed] == ["seeded"]
        assert listed[0]["live"] is True


def test_startup_requires_secret(tmp_path, connector) -> None:
    app = create_app(_settings(tmp_path, secret_key=None), connector=connector,
                     start_scheduler=False, setup_logging=False)

    with pytest.raises(RuntimeError):
        with TestClient(app):
            pass


def test_module_level_app_for_uvicorn() -> None:
    import main

    paths = {route.path for route in main.app.routes}
    assert "/api/connections" in paths
    assert "/api/connections/{connection_id}/stats" in paths
