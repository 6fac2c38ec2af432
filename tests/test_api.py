"""
tests/test_api.py

HTTP surface for scans, changes, entities and stats. The routers are mounted
on a bare FastAPI app with the monitor service overridden; workers are
driven synchronously through ``run_until_idle``.
"""

from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.api.routers import changes_router, scans_router
from app.domain.monitoring import ChangeType, ScanStatus
from app.services.monitoring_service import get_monitor_service
from conftest import ScriptedExtractor

ALPHA = {"title": "Alpha", "price": "$100,000", "category": "saas", "url": "https://example.com/a"}
ALPHA_REPRICED = {**ALPHA, "price": "$110,000"}
BRAVO = {"title": "Bravo", "price": "$40,000", "category": "content", "url": "https://example.com/b"}


@pytest.fixture()
def primary() -> ScriptedExtractor:
    return ScriptedExtractor(
        scripts={
            "page:1": [[("A", ALPHA), ("B", BRAVO)], [("A", ALPHA_REPRICED), ("B", BRAVO)]],
            "entity:A": [[("A", ALPHA_REPRICED)]],
        }
    )


@pytest.fixture()
def service(build_service, primary):
    return build_service(primary=primary)


@pytest.fixture()
def client(service) -> TestClient:
    application = FastAPI()
    application.include_router(scans_router)
    application.include_router(changes_router)
    application.dependency_overrides[get_monitor_service] = lambda: service
    return TestClient(application)


# ---------------------------------------------------------------------------
# POST /scans
# ---------------------------------------------------------------------------


class TestCreateScan:
    def test_page_scan_accepted(self, client) -> None:
        response = client.post("/scans", json={"pages": 3, "triggered_by": "api-test"})

        assert response.status_code == 202
        body = response.json()
        assert body["jobs_total"] == 3
        assert body["status"] == ScanStatus.PENDING
        assert body["scan_id"] >= 1

    def test_default_pages(self, client, monitor_settings) -> None:
        response = client.post("/scans", json={})
        assert response.json()["jobs_total"] == monitor_settings.scan.default_pages

    def test_explicit_targets(self, client) -> None:
        response = client.post(
            "/scans",
            json={"targets": [{"kind": "entity", "value": " A "}, {"kind": "page", "value": "1"}]},
        )
        assert response.status_code == 202
        assert response.json()["jobs_total"] == 2

    def test_pages_and_targets_conflict(self, client) -> None:
        response = client.post(
            "/scans",
            json={"pages": 1, "targets": [{"kind": "entity", "value": "A"}]},
        )
        assert response.status_code == 422

    def test_empty_targets_rejected(self, client) -> None:
        assert client.post("/scans", json={"targets": []}).status_code == 422

    def test_unknown_priority_rejected(self, client) -> None:
        assert client.post("/scans", json={"pages": 1, "priority": "urgent"}).status_code == 422

    def test_blank_target_is_bad_request(self, client) -> None:
        response = client.post("/scans", json={"targets": [{"kind": "entity", "value": "   "}]})
        assert response.status_code == 400


# ---------------------------------------------------------------------------
# Progress, listing and cancellation
# ---------------------------------------------------------------------------


class TestScanLifecycle:
    def test_progress_after_run(self, client, service) -> None:
        scan_id = client.post("/scans", json={"pages": 1}).json()["scan_id"]
        service.run_until_idle()

        body = client.get(f"/scans/{scan_id}/progress").json()
        assert body["status"] == ScanStatus.COMPLETED
        assert body["percent"] == pytest.approx(100.0)
        assert body["new_count"] == 2
        assert body["jobs_done"] == 1

    def test_progress_unknown_scan(self, client) -> None:
        assert client.get("/scans/999/progress").status_code == 404

    def test_progress_rejects_non_positive_id(self, client) -> None:
        assert client.get("/scans/0/progress").status_code == 422

    def test_list_scans_newest_first(self, client) -> None:
        first = client.post("/scans", json={"pages": 1}).json()["scan_id"]
        second = client.post("/scans", json={"pages": 1}).json()["scan_id"]

        scans = client.get("/scans").json()["scans"]
        assert [scan["scan_id"] for scan in scans] == [second, first]

    def test_list_scans_status_filter(self, client, service) -> None:
        client.post("/scans", json={"pages": 1})
        service.run_until_idle()
        pending = client.post("/scans", json={"pages": 1}).json()["scan_id"]

        scans = client.get("/scans", params={"status": "pending"}).json()["scans"]
        assert [scan["scan_id"] for scan in scans] == [pending]

    def test_list_scans_unknown_status(self, client) -> None:
        assert client.get("/scans", params={"status": "paused"}).status_code == 400

    def test_cancel(self, client) -> None:
        scan_id = client.post("/scans", json={"pages": 2}).json()["scan_id"]

        response = client.post(f"/scans/{scan_id}/cancel")

        assert response.status_code == 200
        assert response.json()["cancel_requested"] is True

    def test_cancel_unknown_scan(self, client) -> None:
        assert client.post("/scans/404/cancel").status_code == 404


# ---------------------------------------------------------------------------
# Changes, entities and stats
# ---------------------------------------------------------------------------


class TestChanges:
    def _run_two_scans(self, client, service) -> tuple[int, int]:
        first = client.post("/scans", json={"pages": 1}).json()["scan_id"]
        service.run_until_idle()
        second = client.post("/scans", json={"pages": 1}).json()["scan_id"]
        service.run_until_idle()
        return first, second

    def test_filter_by_scan(self, client, service) -> None:
        first, second = self._run_two_scans(client, service)

        body = client.get("/changes", params={"scan_id": first}).json()
        assert body["count"] == 2
        assert {change["change_type"] for change in body["changes"]} == {ChangeType.NEW}

        updates = client.get("/changes", params={"scan_id": second}).json()["changes"]
        assert len(updates) == 1
        assert updates[0]["entity_id"] == "A"
        assert updates[0]["field_name"] == "price"
        assert updates[0]["change_percentage"] == pytest.approx(10.0)

    def test_repeatable_change_type_filter(self, client, service) -> None:
        self._run_two_scans(client, service)

        response = client.get("/changes", params=[("change_type", "updated"), ("change_type", "deleted")])
        assert {change["change_type"] for change in response.json()["changes"]} == {ChangeType.UPDATED}

        comma = client.get("/changes", params={"change_type": "new,updated"}).json()
        assert comma["count"] == 3

    def test_unknown_change_type(self, client) -> None:
        response = client.get("/changes", params={"change_type": "renamed"})
        assert response.status_code == 400
        assert "renamed" in response.json()["detail"]

    def test_min_score(self, client, service) -> None:
        self._run_two_scans(client, service)
        body = client.get("/changes", params={"min_score": 1.05}).json()
        assert [change["change_type"] for change in body["changes"]] == [ChangeType.UPDATED]

    def test_entity_with_history(self, client, service) -> None:
        self._run_two_scans(client, service)

        body = client.get("/entities/A").json()
        assert body["active"] is True
        assert body["fields"]["price"] == 110000
        assert [change["change_type"] for change in body["history"]] == [
            ChangeType.NEW,
            ChangeType.UPDATED,
        ]

    def test_entity_without_history(self, client, service) -> None:
        self._run_two_scans(client, service)
        assert client.get("/entities/A", params={"history_limit": 0}).json()["history"] == []

    def test_unknown_entity(self, client) -> None:
        assert client.get("/entities/missing").status_code == 404

    def test_stats(self, client, service) -> None:
        self._run_two_scans(client, service)

        body = client.get("/stats").json()
        assert body["entities"] == {"total": 2, "active": 2}
        assert body["changes"][ChangeType.NEW] == 2
        assert body["changes"][ChangeType.UPDATED] == 1
        assert body["active_scans"] == 0
        assert body["workers_running"] is False
