from __future__ import annotations

import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from starlette.testclient import TestClient

from logsource_retire.app import build_app_context
from logsource_retire.config import JobSettings, RollbackSettings, ServerSettings, Settings
from logsource_retire.domain.errors import BackupError
from logsource_retire.transport.http_server import create_http_app


@pytest.fixture
def siem(fake_siem, make_item):
    return fake_siem(
        [
            make_item("1", host_id="10", host_name="web-01"),
            make_item("2", host_id="10", host_name="web-01"),
            make_item("3", host_id="20", host_name="db-01"),
        ]
    )


@pytest.fixture
def backup() -> MagicMock:
    runner = MagicMock()
    runner.perform_backup = AsyncMock(return_value="D:\\Backups\\LogRhythmEMDB_backup.bak")
    return runner


@pytest.fixture
def context(tmp_path, siem, backup):
    settings = Settings(
        rollback=RollbackSettings(sqlite_path=str(tmp_path / "rollback.sqlite"), auto_cleanup=False)
    )
    ctx = build_app_context(settings, collaborator=siem, backup=backup)
    yield ctx
    ctx.store.close()


@pytest.fixture
def client(context):
    with TestClient(create_http_app(context)) as test_client:
        yield test_client


def _wait_for_job(client: TestClient, job_id: str) -> dict:
    for _ in range(500):
        body = client.get(f"/api/jobs/{job_id}").json()
        if body["status"] in ("completed", "failed"):
            return body
        time.sleep(0.01)
    raise AssertionError(f"job {job_id} did not finish")


def _apply(client: TestClient, **overrides) -> dict:
    payload = {"hostIds": [], "itemIds": ["1", "3"], "backupAcknowledged": True, "user": "ops"}
    payload.update(overrides)
    resp = client.post("/api/jobs/apply", json=payload)
    assert resp.status_code == 202
    return _wait_for_job(client, resp.json()["jobId"])


def test_health(client) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


def test_analyze_job_lifecycle(client) -> None:
    resp = client.post("/api/jobs/analyze", json={"date": "2024-01-01", "sessionId": "tab-1"})
    assert resp.status_code == 202
    assert resp.json()["status"] == "pending"
    job_id = resp.json()["jobId"]

    job = _wait_for_job(client, job_id)
    assert job["status"] == "completed"
    assert job["progress"] == 100
    assert {row["id"] for row in job["results"]} == {"1", "2", "3"}

    assert client.get("/api/sessions/tab-1/job").json()["id"] == job_id
    assert [entry["id"] for entry in client.get("/api/jobs").json()] == [job_id]

    csv_resp = client.get(f"/api/jobs/{job_id}/export.csv")
    assert csv_resp.status_code == 200
    assert csv_resp.headers["content-type"].startswith("text/csv")
    assert csv_resp.text.splitlines()[0].startswith("LogSourceID,HostID")

    report = client.get(f"/api/jobs/{job_id}/report.txt")
    assert report.status_code == 200
    assert "Log Source Retirement Report" in report.text


def test_invalid_requests_are_rejected(client) -> None:
    resp = client.post("/api/jobs/analyze", json={})
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_parameters"

    resp = client.post("/api/jobs/analyze", content=b"not json")
    assert resp.status_code == 400

    resp = client.post("/api/jobs/apply", json={"backupAcknowledged": True})
    assert resp.status_code == 400
    assert resp.json()["error"] == "empty_selection"

    resp = client.post("/api/jobs/apply", json={"itemIds": ["1"]})
    assert resp.status_code == 409
    assert resp.json()["error"] == "backup_not_acknowledged"

    assert client.get("/api/jobs").json() == []


def test_unknown_resources_return_404(client) -> None:
    for path in ("/api/jobs/missing", "/api/sessions/none/job", "/api/rollback/rollback_x"):
        resp = client.get(path)
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"


def test_selection_preview(client) -> None:
    resp = client.post("/api/selection/preview", json={"hostIds": ["10"]})
    assert resp.status_code == 404

    _wait_for_job(client, client.post("/api/jobs/analyze", json={"date": "2024-01-01"}).json()["jobId"])
    resp = client.post(
        "/api/selection/preview", json={"hostIds": ["10"], "itemIds": ["2", "3", "99"]}
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["totalItems"] == 3
    assert body["itemsFromHosts"] == 2
    assert body["unknownItemIds"] == ["99"]


def test_apply_and_rollback_round_trip(client, siem) -> None:
    job = _apply(client)
    assert job["status"] == "completed"
    rollback_id = job["rollbackId"]
    assert rollback_id
    assert len(job["retirementRecords"]) == 2

    (summary,) = client.get("/api/rollback").json()
    assert summary["id"] == rollback_id
    assert summary["user"] == "ops"
    assert summary["logSources"] == 2
    assert summary["hosts"] == 1

    point = client.get(f"/api/rollback/{rollback_id}").json()
    assert point["executions"] == []
    assert point["checksum"]

    preview = client.get(f"/api/rollback/{rollback_id}/preview", params={"limit": 1}).json()
    assert len(preview["logSourceChanges"]) == 1
    assert preview["moreLogSources"] == 1

    resp = client.post(f"/api/rollback/{rollback_id}/execute", json={"user": "ops"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "success"
    assert siem.items["1"].status == "Active"
    assert siem.host_status["20"] == "Active"

    executions = client.get(f"/api/rollback/{rollback_id}").json()["executions"]
    assert [entry["user"] for entry in executions] == ["ops"]

    assert client.delete(f"/api/rollback/{rollback_id}").json() == {
        "id": rollback_id,
        "deleted": True,
    }
    assert client.delete(f"/api/rollback/{rollback_id}").status_code == 404


def test_partial_revert_returns_report(client, siem) -> None:
    rollback_id = _apply(client)["rollbackId"]
    siem.fail_items.add("1")

    resp = client.post(f"/api/rollback/{rollback_id}/execute")

    assert resp.status_code == 502
    body = resp.json()
    assert body["error"] == "partial_revert_failure"
    assert [entry["id"] for entry in body["report"]["failed"]] == ["1"]
    assert client.get(f"/api/rollback/{rollback_id}").status_code == 200


def test_cleanup_endpoint(client) -> None:
    first = _apply(client, itemIds=["1"])["rollbackId"]
    second = _apply(client, itemIds=["2"])["rollbackId"]

    resp = client.post("/api/rollback/cleanup", json={"maxPoints": 1})

    assert resp.status_code == 200
    assert resp.json() == {"deleted": [first], "count": 1}
    assert [entry["id"] for entry in client.get("/api/rollback").json()] == [second]

    resp = client.post("/api/rollback/cleanup", json={"maxPoints": 0})
    assert resp.status_code == 400


def test_backup_endpoint(client, backup) -> None:
    resp = client.post("/api/backup", json={"location": "D:\\Backups"})
    assert resp.status_code == 400

    resp = client.post("/api/backup", json={"password": "s3cret", "location": "D:\\Backups"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "completed"
    backup.perform_backup.assert_awaited_once_with("s3cret", "D:\\Backups")

    backup.perform_backup.side_effect = BackupError("Backup failed (exit 1): login failed")
    resp = client.post("/api/backup", json={"password": "bad", "location": "D:\\Backups"})
    assert resp.status_code == 502
    assert resp.json()["error"] == "backup_error"


def test_cors_is_opt_in(tmp_path, siem, backup) -> None:
    settings = Settings(
        server=ServerSettings(enable_cors=True, allowed_origins=("https://console.local",)),
        rollback=RollbackSettings(sqlite_path=str(tmp_path / "cors.sqlite")),
    )
    ctx = build_app_context(settings, collaborator=siem, backup=backup)
    try:
        with TestClient(create_http_app(ctx)) as client:
            resp = client.get("/health", headers={"Origin": "https://console.local"})
    finally:
        ctx.store.close()

    assert resp.headers["access-control-allow-origin"] == "https://console.local"


def test_job_retention_setting_reaches_orchestrator(tmp_path, siem, backup) -> None:
    settings = Settings(
        rollback=RollbackSettings(sqlite_path=str(tmp_path / "rollback.sqlite")),
        jobs=JobSettings(max_retained=7),
    )
    ctx = build_app_context(settings, collaborator=siem, backup=backup)
    try:
        assert ctx.orchestrator.jobs.max_retained == 7
    finally:
        ctx.store.close()
