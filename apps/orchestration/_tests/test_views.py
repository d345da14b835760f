"""Tests for the orchestration JSON endpoints."""

import shutil
import tempfile
from unittest.mock import patch

from django.test import Client, TestCase, override_settings

from apps.orchestration._tests.factories import make_run
from apps.orchestration.models import RunStatus, TriageRun


class TriageActionViewTests(TestCase):
    def setUp(self):
        self.client = Client()

    @override_settings(TRIAGE_ENABLED=True)
    def test_trigger_run_queues_tick(self):
        with patch("apps.orchestration.tasks.scheduler_tick_task.delay") as delay:
            response = self.client.post("/triage/run/")
        assert response.status_code == 202
        assert response.json() == {"queued": True}
        delay.assert_called_once_with()

    @override_settings(TRIAGE_ENABLED=False)
    def test_trigger_run_disabled(self):
        response = self.client.post("/triage/run/")
        assert response.status_code == 409
        assert response.json()["reason"] == "disabled"

    def test_continue_unknown_run(self):
        response = self.client.post("/triage/continue/nope/")
        assert response.status_code == 404
        assert response.json() == {"error": "Run not found"}

    @override_settings(TRIAGE_PROVIDER="mock")
    def test_rerun(self):
        run = make_run(status=RunStatus.FAILED)
        with patch("apps.orchestration.tasks.run_triage_task.delay"):
            response = self.client.post(f"/triage/rerun/{run.run_id}/")
        assert response.status_code == 200
        new_run = TriageRun.objects.get(run_id=response.json()["runId"])
        assert new_run.parent_run_id == run.pk

    @override_settings(TRIAGE_ENABLED=True)
    def test_trigger_run_broker_down(self):
        with patch("apps.orchestration.tasks.scheduler_tick_task.delay", side_effect=ConnectionError("broker down")):
            response = self.client.post("/triage/run/")
        assert response.status_code == 503
        assert response.json()["queued"] is False

    @override_settings(TRIAGE_PROVIDER="mock")
    def test_rerun_broker_down(self):
        run = make_run(status=RunStatus.FAILED)
        with patch("apps.orchestration.tasks.run_triage_task.delay", side_effect=ConnectionError("broker down")):
            response = self.client.post(f"/triage/rerun/{run.run_id}/")
        assert response.status_code == 503
        new_run = TriageRun.objects.get(run_id=response.json()["runId"])
        assert new_run.status == RunStatus.FAILED

    @override_settings(ALERT_TEAM="")
    def test_reprocess_without_team(self):
        response = self.client.post("/triage/reprocess-last-error/")
        assert response.status_code == 404
        assert response.json() == {"error": "No matching alerts found in Datadog."}

    def test_clear_running(self):
        make_run()
        response = self.client.post("/triage/clear-running/")
        assert response.status_code == 200
        assert response.json() == {"ok": True, "cleared": 1}

    def test_suggest_branch(self):
        run = make_run(report_markdown="see values.yaml")
        response = self.client.get(f"/triage/suggest-branch/{run.run_id}/")
        assert response.status_code == 200
        assert response.json()["files"] == ["values.yaml"]
        assert self.client.get("/triage/suggest-branch/nope/").status_code == 404

    def test_open_codex(self):
        run = make_run(session_id="cx-1")
        response = self.client.get(f"/triage/open-codex/{run.run_id}/")
        assert response.status_code == 200
        assert "resume cx-1" in response.json()["command"]
        assert self.client.post("/triage/open-codex/nope/").status_code == 404


class ReportViewTests(TestCase):
    def setUp(self):
        self.client = Client()

    def test_list(self):
        make_run(status=RunStatus.COMPLETE, report_markdown="# Report")
        response = self.client.get("/reports/", {"limit": "500"})
        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["runs"][0]["reportMarkdown"] == "# Report"
        assert "evidence" not in data["runs"][0]

    def test_list_filters_by_status(self):
        make_run(status=RunStatus.COMPLETE)
        assert self.client.get("/reports/", {"status": "failed"}).json()["count"] == 0

    def test_list_rejects_bad_limit(self):
        response = self.client.get("/reports/", {"limit": "many"})
        assert response.status_code == 400

    def test_detail(self):
        run = make_run(evidence={"steps": []})
        response = self.client.get(f"/reports/{run.run_id}/")
        assert response.status_code == 200
        assert response.json()["evidence"] == {"steps": []}

        response = self.client.get("/reports/nope/")
        assert response.status_code == 404
        assert response.json() == {"error": "Run not found: nope"}

    def test_inputs_missing(self):
        runs_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, runs_dir, ignore_errors=True)
        with override_settings(RUNS_DIR=runs_dir):
            response = self.client.get("/reports/nope/inputs/")
        assert response.status_code == 404
        assert response.json() == {"error": "Run directory not found."}

    def test_health(self):
        response = self.client.get("/health/")
        assert response.status_code == 200
        data = response.json()
        assert data["ok"]
        assert data["scheduler"]["stale"]
