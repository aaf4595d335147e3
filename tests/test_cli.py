"""Tests for CLI commands"""

from unittest.mock import Mock, patch

import httpx
import pytest
from typer.testing import CliRunner

from cli.client.base import DutyJobsAPIError
from cli.client.endpoints import DutyJobsClient
from cli.main import app
from cli.utils.config_manager import ConfigManager


@pytest.fixture
def runner():
    """CLI test runner"""
    return CliRunner()


@pytest.fixture
def mock_client():
    """Mock API client"""
    client = Mock()
    client.__enter__ = Mock(return_value=client)
    client.__exit__ = Mock(return_value=None)
    client.api.base_url = "http://localhost:8000"
    return client


def sample_job(**overrides):
    job = {
        "id": "0f8c2b1e-1111-2222-3333-444455556666",
        "type": "bulk_classification",
        "workspace_id": "DEV_WORKSPACE",
        "status": "completed",
        "priority": "medium",
        "progress": {"total": 2, "completed": 2, "failed": 0, "percentage": 100.0},
        "metadata": {"retry_count": 0, "max_retries": 3},
        "timestamps": {"created": "2024-06-01T12:00:00+00:00"},
        "error": None,
        "cancel_requested": False,
    }
    job.update(overrides)
    return job


class TestMainCommands:
    """Test main CLI commands"""

    def test_version(self, runner):
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert "Duty Jobs CLI v1.0.0" in result.stdout

    @patch("cli.commands.jobs.get_client")
    def test_status_success(self, mock_get_client, runner, mock_client):
        """Test status command with a running engine"""
        mock_client.health_check.return_value = {
            "version": "1.0.0",
            "environment": "development",
            "engine": {
                "running": True,
                "registered_handlers": ["bulk_classification"],
                "queue": {"pending": 2, "delayed": 1, "running": 1, "max_concurrency": 3},
            },
        }
        mock_get_client.return_value = mock_client

        result = runner.invoke(app, ["status"])

        assert result.exit_code == 0
        assert "Engine running" in result.stdout
        assert "Running: 1/3" in result.stdout

    @patch("cli.commands.jobs.get_client")
    def test_status_failure(self, mock_get_client, runner, mock_client):
        """Test status command with connection failure"""
        mock_client.health_check.side_effect = DutyJobsAPIError("Connection failed")
        mock_get_client.return_value = mock_client

        result = runner.invoke(app, ["status"])

        assert result.exit_code == 1
        assert "Connection Failed" in result.stdout


class TestJobCommands:
    """Test jobs commands"""

    @patch("cli.commands.jobs.get_client")
    def test_list_jobs(self, mock_get_client, runner, mock_client):
        mock_client.list_jobs.return_value = {
            "jobs": [sample_job()],
            "total": 1,
            "limit": 20,
            "offset": 0,
        }
        mock_get_client.return_value = mock_client

        result = runner.invoke(app, ["jobs", "list", "--status", "completed"])

        assert result.exit_code == 0
        assert "Showing 1 of 1 jobs" in result.stdout
        mock_client.list_jobs.assert_called_once_with(
            status=["completed"], type=None, limit=20, offset=0
        )

    @patch("cli.commands.jobs.get_client")
    def test_list_jobs_empty(self, mock_get_client, runner, mock_client):
        mock_client.list_jobs.return_value = {"jobs": [], "total": 0}
        mock_get_client.return_value = mock_client

        result = runner.invoke(app, ["jobs", "list"])

        assert result.exit_code == 0
        assert "No jobs found" in result.stdout

    @patch("cli.commands.jobs.get_client")
    def test_show_job_with_error(self, mock_get_client, runner, mock_client):
        mock_client.get_job.return_value = sample_job(
            status="dead_letter",
            error={"code": "TIMEOUT", "message": "Job exceeded its timeout"},
        )
        mock_get_client.return_value = mock_client

        result = runner.invoke(app, ["jobs", "show", "job-1"])

        assert result.exit_code == 0
        assert "dead_letter" in result.stdout
        assert "TIMEOUT" in result.stdout

    @patch("cli.commands.jobs.get_client")
    def test_show_missing_job(self, mock_get_client, runner, mock_client):
        mock_client.get_job.side_effect = DutyJobsAPIError(
            "API Error 404: Job not found", 404
        )
        mock_get_client.return_value = mock_client

        result = runner.invoke(app, ["jobs", "show", "missing"])

        assert result.exit_code == 1
        assert "Job not found" in result.stdout

    @patch("cli.commands.jobs.get_client")
    def test_stats(self, mock_get_client, runner, mock_client):
        mock_client.job_stats.return_value = {
            "total_jobs": 4,
            "by_status": {"completed": 3, "dead_letter": 1},
            "queue_depth": 0,
            "dead_letter": 1,
            "avg_runtime_seconds": 1.5,
        }
        mock_client.queue_status.return_value = {
            "running": 0,
            "paused": 0,
            "max_concurrency": 3,
        }
        mock_get_client.return_value = mock_client

        result = runner.invoke(app, ["jobs", "stats"])

        assert result.exit_code == 0
        assert "Total jobs: 4" in result.stdout
        assert "1.50s" in result.stdout

    @patch("cli.commands.jobs.get_client")
    def test_retry_with_priority(self, mock_get_client, runner, mock_client):
        mock_client.retry_job.return_value = sample_job(status="pending")
        mock_get_client.return_value = mock_client

        result = runner.invoke(app, ["jobs", "retry", "job-1", "--priority", "urgent"])

        assert result.exit_code == 0
        assert "Job job-1 is now pending" in result.stdout
        mock_client.retry_job.assert_called_once_with("job-1", "urgent")

    @patch("cli.commands.jobs.get_client")
    def test_cancel_running_job(self, mock_get_client, runner, mock_client):
        mock_client.cancel_job.return_value = sample_job(
            status="running", cancel_requested=True
        )
        mock_get_client.return_value = mock_client

        result = runner.invoke(app, ["jobs", "cancel", "job-1"])

        assert result.exit_code == 0
        assert "Job job-1 is now running" in result.stdout
        assert "next checkpoint" in result.stdout

    @patch("cli.commands.jobs.get_client")
    def test_resume_conflict(self, mock_get_client, runner, mock_client):
        mock_client.resume_job.side_effect = DutyJobsAPIError(
            "API Error 409: Cannot resume a completed job", 409
        )
        mock_get_client.return_value = mock_client

        result = runner.invoke(app, ["jobs", "resume", "job-1"])

        assert result.exit_code == 1
        assert "Failed to resume job" in result.stdout


class TestConfigCommands:
    """Test config commands"""

    @pytest.fixture
    def manager(self, tmp_path):
        manager = ConfigManager(config_dir=tmp_path)
        with patch("cli.commands.config.config", manager):
            yield manager

    def test_set_and_get(self, runner, manager):
        result = runner.invoke(app, ["config", "set", "api.base_url", "http://jobs:9000"])
        assert result.exit_code == 0
        assert manager.get("api.base_url") == "http://jobs:9000"

        result = runner.invoke(app, ["config", "get", "api.base_url"])
        assert result.exit_code == 0
        assert "http://jobs:9000" in result.stdout

    def test_set_rejects_bad_url(self, runner, manager):
        result = runner.invoke(app, ["config", "set", "api.base_url", "jobs:9000"])

        assert result.exit_code == 1
        assert not manager.config_file.exists()

    def test_get_missing_key(self, runner, manager):
        result = runner.invoke(app, ["config", "get", "api.nope"])

        assert result.exit_code == 1
        assert "not found" in result.stdout

    def test_reset(self, runner, manager):
        manager.set("api.timeout", "5")

        result = runner.invoke(app, ["config", "reset", "--yes"])

        assert result.exit_code == 0
        assert manager.get("api.timeout") == 30


class TestHTTPClient:
    """Test the HTTP client against a mock transport"""

    def test_unwraps_success_envelope(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/jobs/job-1"
            return httpx.Response(200, json={"ok": True, "data": {"id": "job-1"}})

        with DutyJobsClient(
            base_url="http://test", transport=httpx.MockTransport(handler)
        ) as client:
            assert client.get_job("job-1") == {"id": "job-1"}

    def test_raises_on_error_envelope(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                409,
                json={"ok": False, "error": {"message": "Cannot retry a completed job"}},
            )

        with DutyJobsClient(
            base_url="http://test", transport=httpx.MockTransport(handler)
        ) as client:
            with pytest.raises(DutyJobsAPIError) as exc_info:
                client.retry_job("job-1")

        assert exc_info.value.status_code == 409
        assert "Cannot retry a completed job" in str(exc_info.value)

    def test_list_sends_repeated_status(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["status"] = request.url.params.get_list("status")
            return httpx.Response(200, json={"ok": True, "data": {"jobs": []}})

        with DutyJobsClient(
            base_url="http://test", transport=httpx.MockTransport(handler)
        ) as client:
            client.list_jobs(status=["failed", "dead_letter"])

        assert seen["status"] == ["failed", "dead_letter"]
