"""Tests for the REST API, against a stack built from test doubles."""

import pytest
from fastapi.testclient import TestClient

from appstack.api.app import create_app
from appstack.core.stack import Stack


@pytest.fixture
def stack(settings, registry, allocator, service_manager, installer, fake_db, backups):
    return Stack(
        settings=settings,
        registry=registry,
        allocator=allocator,
        services=service_manager,
        installer=installer,
        database=fake_db,
        backups=backups,
    )


@pytest.fixture
def client(stack):
    with TestClient(create_app(stack)) as c:
        yield c


class TestHealth:
    def test_health(self, client):
        """Test the manager reports itself and its services."""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["services_healthy"] == "0/1"


class TestServices:
    """Service endpoints."""

    def test_list(self, client):
        """Test the catalog is listed with state."""
        data = client.get("/services").json()
        assert [s["name"] for s in data["services"]] == ["sleeper"]
        assert data["services"][0]["state"] == "stopped"

    def test_unknown_service(self, client):
        """Test unknown services map to 404."""
        response = client.get("/services/nope/status")
        assert response.status_code == 404
        assert response.json()["error"] == "ServiceNotFound"

    def test_unknown_action(self, client):
        """Test unknown actions map to 404."""
        assert client.post("/services/sleeper/explode").status_code == 404

    def test_start_and_stop(self, client):
        """Test start and stop round trip through the API."""
        started = client.post("/services/sleeper/start").json()
        assert started["success"]
        assert started["service"]["running"]

        stopped = client.post("/services/sleeper/stop").json()
        assert stopped["success"]
        assert not stopped["service"]["running"]

    def test_logs(self, client, service_manager):
        """Test log lines are returned."""
        service_manager.log_file("sleeper").write_text("ready\n")
        data = client.get("/services/sleeper/logs", params={"lines": 5}).json()
        assert data == {"service": "sleeper", "lines": ["ready\n"]}


class TestPorts:
    """Port endpoints."""

    def test_allocate_and_release(self, client):
        """Test allocation reserves ports that can be released one by one."""
        response = client.post(
            "/ports/allocate", json={"owner": "tool", "requirements": {"web": 1, "cache": 1}}
        )
        assert response.status_code == 200
        allocation = response.json()
        assert allocation["web"] == [8000]
        assert allocation["cache"] == [8001]

        assert client.get("/ports").json()["reserved"] == [8000, 8001]
        assert client.get("/ports/8000").json()["owner"] == "tool"

        assert client.delete("/ports/8000").json() == {"port": 8000, "released": True}
        assert client.get("/ports").json()["reserved"] == [8001]

    def test_exhausted(self, client):
        """Test an unsatisfiable request maps to 503."""
        response = client.post(
            "/ports/allocate", json={"owner": "greedy", "requirements": {"web": 5000}}
        )
        assert response.status_code == 503
        assert response.json()["error"] == "NoPortsAvailable"
        assert client.get("/ports").json()["reserved"] == []

    def test_system_reserved_listed(self, client):
        """Test the deny-list is exposed."""
        assert 5432 in client.get("/ports").json()["system_reserved"]


class TestApps:
    """Package and application endpoints."""

    def test_install_lifecycle(self, client, make_package):
        """Test install, fetch, duplicate and uninstall."""
        pkg = make_package(install_config={"databaseRequired": True})
        assert [p["filename"] for p in client.get("/packages").json()] == [pkg.name]

        response = client.post("/apps", json={"filename": pkg.name})
        assert response.status_code == 201
        assert response.json()["app_id"] == "my_test_app"

        assert client.get("/apps/my_test_app").json()["port"] == 8000
        assert [a["app_id"] for a in client.get("/apps").json()["apps"]] == ["my_test_app"]

        duplicate = client.post("/apps", json={"filename": pkg.name})
        assert duplicate.status_code == 409

        assert client.delete("/apps/my_test_app").json()["success"]
        assert client.get("/apps/my_test_app").status_code == 404

    def test_failed_install(self, client, make_package, fake_runner):
        """Test a failed install maps to 500 and names the step."""
        fake_runner.fail_on = ["migrate"]
        pkg = make_package(install_config={"migrations": True})
        response = client.post("/apps", json={"filename": pkg.name})
        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "InstallationFailed"
        assert "provision:migrations" in body["detail"]

    def test_uninstall_unknown(self, client):
        """Test removing a missing app is a 404."""
        assert client.delete("/apps/ghost").status_code == 404

    def test_invalid_name_is_bad_request(self, client, make_package):
        """Test a package whose name yields no application id maps to 400."""
        pkg = make_package(name="???")
        response = client.post("/apps", json={"filename": pkg.name})
        assert response.status_code == 400
        assert response.json()["error"] == "ArchiveError"


class TestRecovery:
    """Startup reload and explicit recovery."""

    def test_startup_keeps_reservations(self, stack, registry):
        """Test starting the API leaves ports reserved by other tools in place."""
        registry.add_reserved_port(8100, "tool")
        registry.add_reserved_port(8101)
        with TestClient(create_app(stack)) as client:
            assert client.get("/ports").json()["reserved"] == [8100, 8101]
        assert registry.get_port_owners() == {8100: "tool", 8101: None}

    def test_recover_endpoint(self, client, stack, settings):
        """Test recovery releases the ports of an abandoned install."""
        (settings.apps_path / "half_done").mkdir()
        stack.allocator.reserve(8200, "half_done")
        stack.allocator.reserve(8201, "tool")

        report = client.post("/recover").json()

        assert report["released_ports"] == [8200]
        assert client.get("/ports").json()["reserved"] == [8201]


class TestPortQueries:
    """Scans, suggestions and owner-checked release."""

    def test_scan_and_suggestions(self, client):
        """Test free-port listings reserve nothing."""
        assert client.get("/ports/scan", params={"start": 8000, "end": 8002}).json() == [
            8000,
            8001,
            8002,
        ]
        assert client.get("/ports/suggestions", params={"count": 2}).json() == [8000, 8080]
        assert client.get("/ports").json()["reserved"] == []

    def test_release_for_wrong_owner(self, client, stack):
        """Test a release naming another owner leaves the port reserved."""
        stack.allocator.reserve(8300, "blog")
        response = client.delete("/ports/8300", params={"owner": "shop"})
        assert response.json() == {"port": 8300, "released": False}
        assert client.get("/ports/8300").json()["owner"] == "blog"


class TestBackups:
    """Database and backup endpoints."""

    def test_backup_lifecycle(self, client, make_package, fake_db):
        """Test backup, list, restore and delete of an app database."""
        pkg = make_package(install_config={"databaseRequired": True})
        client.post("/apps", json={"filename": pkg.name})

        created = client.post("/apps/my_test_app/backups")
        assert created.status_code == 201
        filename = created.json()["filename"]
        assert [b["filename"] for b in client.get("/backups").json()] == [filename]

        restored = client.post(
            "/apps/my_test_app/restore", json={"filename": filename, "drop_first": True}
        )
        assert restored.status_code == 200
        assert fake_db.restored == [("my_test_app_db", filename, True)]

        assert client.delete(f"/backups/{filename}").json()["success"]
        assert client.get("/backups").json() == []
        assert client.delete(f"/backups/{filename}").status_code == 404

    def test_backup_app_without_database(self, client, make_package):
        """Test an app without a database maps to 404."""
        client.post("/apps", json={"filename": make_package(install_config={}).name})
        response = client.post("/apps/my_test_app/backups")
        assert response.status_code == 404
        assert response.json()["error"] == "DatabaseNotFound"

    def test_cleanup_and_connection(self, client):
        """Test cleanup reports deletions and the connection check is exposed."""
        assert client.post("/backups/cleanup", json={}).json() == {"deleted": []}
        assert client.get("/database/connection").json()["success"] is True
