"""
Integration tests for the FastAPI app.

Runs the real orchestrator against an in-memory workshop and a fake
process runner.
"""

import threading

import pytest
from fastapi.testclient import TestClient

from reforger_launcher.api import create_app
from reforger_launcher.orchestrator import Orchestrator

from conftest import wait_for, wid

ROOT = wid(0xA0)
A, B, C, D = (wid(n) for n in (1, 2, 3, 4))
URL = f"https://reforger.armaplatform.com/workshop/{ROOT}-Conflict"


@pytest.fixture
def orch(settings, fetcher, runner):
    fetcher.add(ROOT, deps=[A, B, C], name="Conflict", scenarios=["s1"])
    fetcher.add(A).add(B).add(C).add(D)
    return Orchestrator(settings, fetcher=fetcher, runner=runner)


@pytest.fixture
def client(settings, orch):
    return TestClient(create_app(settings, orch))


@pytest.fixture
def profile_id(client):
    r = client.post("/profiles", json={"name": "Conflict", "workshop": URL, "resolve": True})
    assert r.status_code == 201
    return r.json()["id"]


class TestBasics:
    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["ok"] is True
        assert r.json()["profiles"] == 0

    def test_routes_registered(self, settings, orch):
        app = create_app(settings, orch)
        paths = {r.path for r in app.routes if hasattr(r, "path")}
        for expected in ("/workshop/resolve", "/profiles", "/profiles/{profile_id}/drift",
                         "/profiles/{profile_id}/logs/stream", "/baseline", "/mods",
                         "/packages/{package_id}"):
            assert expected in paths

    def test_resolve(self, client):
        r = client.post("/workshop/resolve", json={"workshop": URL, "max_depth": 2})
        assert r.status_code == 200
        body = r.json()
        assert body["root_id"] == ROOT
        assert body["dependency_ids"] == [A, B, C]
        assert body["digest"]

    def test_resolve_bad_input(self, client):
        r = client.post("/workshop/resolve", json={"workshop": "nonsense"})
        assert r.status_code == 422
        assert r.json()["detail"]["error"] == "InvalidResolveRequest"

    def test_resolve_not_found(self, client):
        r = client.post("/workshop/resolve", json={"workshop": D[:-1] + "F"})
        assert r.status_code == 404

    def test_resolve_unreachable(self, client, fetcher):
        fetcher.unreachable.add(ROOT)
        r = client.post("/workshop/resolve", json={"workshop": ROOT})
        assert r.status_code == 502


class TestProfiles:
    def test_create_with_resolve_selects_only_scenario(self, client, profile_id):
        body = client.get(f"/profiles/{profile_id}").json()
        assert body["selected_scenario"] == "s1"
        assert body["snapshot"]["dependency_ids"] == [A, B, C]

    def test_list_and_delete(self, client, profile_id):
        assert [p["id"] for p in client.get("/profiles").json()] == [profile_id]

        assert client.delete(f"/profiles/{profile_id}").json()["ok"] is True
        assert client.get(f"/profiles/{profile_id}").status_code == 404

    def test_patch_with_version(self, client, profile_id):
        r = client.patch(f"/profiles/{profile_id}?expected_version=3", json={"name": "Renamed"})
        assert r.status_code == 200
        assert r.json()["version"] == 4

        r = client.patch(f"/profiles/{profile_id}?expected_version=3", json={"name": "Again"})
        assert r.status_code == 409

    def test_patch_unknown_override(self, client, profile_id):
        r = client.patch(f"/profiles/{profile_id}", json={"settings_overrides": {"game.colour": "red"}})
        assert r.status_code == 422
        assert r.json()["detail"]["error"] == "InvalidOverride"

    def test_patch_unknown_active_preset(self, client, profile_id):
        client.patch(f"/profiles/{profile_id}", json={"presets": [{"name": "lite", "mod_ids": [A]}]})

        r = client.patch(f"/profiles/{profile_id}", json={"active_preset": "litee"})

        assert r.status_code == 422
        assert client.get(f"/profiles/{profile_id}").json()["active_preset"] is None

    def test_drift(self, client, profile_id, fetcher):
        fetcher.add(ROOT, deps=[A, B, D], scenarios=["s1"])
        body = client.get(f"/profiles/{profile_id}/drift").json()
        assert body["added"] == [D]
        assert body["removed"] == [C]
        assert body["has_drift"] is True

        refreshed = client.post(f"/profiles/{profile_id}/refresh").json()
        assert refreshed["dependency_ids"] == [A, B, D]

    def test_config_preview_and_write(self, client, profile_id, orch):
        preview = client.get(f"/profiles/{profile_id}/config").json()
        assert [m["modId"] for m in preview["document"]["game"]["mods"]] == [A, B, C]
        assert not orch.store.config_path(profile_id).exists()

        written = client.post(f"/profiles/{profile_id}/config").json()
        assert written["digest"] == preview["digest"]
        assert orch.store.config_path(profile_id).exists()

    def test_missing_scenario(self, client, profile_id):
        client.patch(f"/profiles/{profile_id}", json={"selected_scenario": "s3"})
        r = client.get(f"/profiles/{profile_id}/config")
        assert r.status_code == 422
        assert r.json()["detail"]["available"] == ["s1"]

    def test_baseline(self, client, profile_id):
        baseline = client.get("/baseline").json()
        baseline["game"]["maxPlayers"] = 24
        assert client.put("/baseline", json=baseline).status_code == 200

        preview = client.get(f"/profiles/{profile_id}/config").json()
        assert preview["document"]["game"]["maxPlayers"] == 24

        assert client.put("/baseline", json={"game": {"unknown": 1}}).status_code == 422


class TestRun:
    def test_start_status_stop(self, client, profile_id, runner):
        r = client.post(f"/profiles/{profile_id}/start")
        assert r.status_code == 200
        assert r.json()["state"]["phase"] == "running"

        assert client.post(f"/profiles/{profile_id}/start").json()["state"]["phase"] == "running"
        assert len(runner.calls) == 1

        assert client.post(f"/profiles/{profile_id}/stop").json()["state"]["phase"] == "stopped"
        assert client.post(f"/profiles/{profile_id}/stop").status_code == 409

    def test_drift_blocked_start(self, client, profile_id, fetcher):
        client.patch(f"/profiles/{profile_id}", json={"block_on_drift": True})
        fetcher.add(ROOT, deps=[A, B, D], scenarios=["s1"])

        r = client.post(f"/profiles/{profile_id}/start")

        assert r.status_code == 409
        detail = r.json()["detail"]
        assert detail["error"] == "DriftBlocked"
        assert detail["added"] == [D]
        assert detail["removed"] == [C]
        assert detail["root_changed"] is False
        assert client.get(f"/profiles/{profile_id}/status").json()["state"]["phase"] == "stopped"

    def test_status_unknown_profile(self, client):
        assert client.get("/profiles/" + "0" * 32 + "/status").status_code == 404

    def test_logs_tail(self, client, profile_id, orch, runner):
        client.post(f"/profiles/{profile_id}/start")
        runner.last.emit("a", "b", "c")
        assert wait_for(lambda: len(orch.supervisor.tail(profile_id, 10)) == 3)

        body = client.get(f"/profiles/{profile_id}/logs?tail=2").json()
        assert [e["line"] for e in body["entries"]] == ["b", "c"]

    def test_logs_stream(self, client, profile_id, orch, runner):
        client.post(f"/profiles/{profile_id}/start")
        runner.last.emit("1", "2")
        assert wait_for(lambda: len(orch.supervisor.tail(profile_id, 10)) == 2)

        broadcaster = orch.supervisor._slots[profile_id].broadcaster

        def close_when_attached():
            wait_for(lambda: broadcaster.subscriber_count > 0, timeout=5)
            orch.supervisor.discard(profile_id)

        closer = threading.Thread(target=close_when_attached)
        closer.start()
        r = client.get(f"/profiles/{profile_id}/logs/stream?backlog=5")
        closer.join()

        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/event-stream")
        assert "data: 1\n\ndata: 2\n\n" in r.text


class TestLibrary:
    E = wid(0xE0)

    def test_mod_crud(self, client):
        r = client.post("/mods", json={"mod": self.E, "name": "Extra"})
        assert r.status_code == 201
        assert r.json() == {"mod_id": self.E, "name": "Extra"}

        assert client.post("/mods", json={"mod": self.E, "name": "Extra"}).status_code == 409
        assert client.post("/mods", json={"mod": "nonsense", "name": "Extra"}).status_code == 422
        assert client.patch(f"/mods/{self.E}", json={"name": "Extra v2"}).json()["name"] == "Extra v2"
        assert client.get("/mods").json() == [{"mod_id": self.E, "name": "Extra v2"}]

        assert client.delete(f"/mods/{self.E}").json()["ok"] is True
        assert client.delete(f"/mods/{self.E}").status_code == 404

    def test_package_crud(self, client):
        client.post("/mods", json={"mod": self.E, "name": "Extra"})

        r = client.post("/packages", json={"name": "QoL", "mod_ids": [self.E]})
        assert r.status_code == 201
        package_id = r.json()["id"]

        assert client.get(f"/packages/{package_id}").json()["mod_ids"] == [self.E]
        assert client.delete(f"/mods/{self.E}").status_code == 409
        assert client.post("/packages", json={"name": "Bad", "mod_ids": [D]}).status_code == 422

        r = client.patch(f"/packages/{package_id}", json={"name": "QoL+"})
        assert r.json()["name"] == "QoL+"
        assert r.json()["mod_ids"] == [self.E]

        assert client.delete(f"/packages/{package_id}").json()["ok"] is True
        assert client.get(f"/packages/{package_id}").status_code == 404
        assert client.get("/packages").json() == []

    def test_selected_package_reaches_config(self, client, profile_id):
        client.post("/mods", json={"mod": self.E, "name": "Extra"})
        package_id = client.post("/packages", json={"name": "QoL", "mod_ids": [self.E]}).json()["id"]

        r = client.patch(f"/profiles/{profile_id}", json={"optional_package_ids": [package_id]})
        assert r.status_code == 200

        mods = client.get(f"/profiles/{profile_id}/config").json()["document"]["game"]["mods"]
        assert mods[-1] == {"modId": self.E, "name": "Extra"}
        assert [m["modId"] for m in mods] == [A, B, C, self.E]
        assert client.delete(f"/packages/{package_id}").status_code == 409

    def test_unknown_package_selection(self, client, profile_id):
        r = client.patch(f"/profiles/{profile_id}", json={"optional_package_ids": ["nope"]})
        assert r.status_code == 422
