"""Tests for the CLI module."""

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from conftest import write_config
from tokligence.chat.session import ChatHttpError
from tokligence.cli import main
from tokligence.consent import ConsentDenied
from tokligence.gateway.release import NoReleaseFound
from tokligence.gateway.supervisor import BinaryNotInstalled
from tokligence.schemas import ConsentAction, HealthResult, HealthState, InstalledBinary


@pytest.fixture
def runner():
    """Create CLI test runner."""
    return CliRunner()


@pytest.fixture
def invoke(runner, config_path):
    """Invoke the CLI against the test config file."""

    def _invoke(*args, **kwargs):
        return runner.invoke(main, ["--config", str(config_path), *args], **kwargs)

    return _invoke


def _probe(result: HealthResult) -> MagicMock:
    probe = MagicMock()
    probe.check = AsyncMock(return_value=result)
    return probe


class TestCLI:
    """Test top-level behaviour."""

    def test_main_help(self, runner):
        """Main command shows help."""
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "Tokligence" in result.output
        for command in ("run", "status", "health", "download", "models", "chat", "consent"):
            assert command in result.output

    def test_version(self, runner):
        """Version flag works."""
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_invalid_config(self, runner, tmp_path):
        """A broken config file is reported as an error."""
        path = tmp_path / "config.json"
        path.write_text("{not json")
        result = runner.invoke(main, ["--config", str(path), "config", "show"])
        assert result.exit_code == 1
        assert "Cannot read config file" in result.output


class TestRunCommand:
    """Test run command."""

    @patch("tokligence.gateway.supervisor.ProcessSupervisor")
    def test_run_until_exit(self, mock_supervisor_cls, invoke):
        """The gateway runs until it exits cleanly."""
        supervisor = mock_supervisor_cls.return_value
        supervisor.start = AsyncMock(return_value=True)
        supervisor.wait = AsyncMock(return_value=0)

        result = invoke("run")

        assert result.exit_code == 0
        assert "Tokligence Gateway started on port 8081" in result.output
        supervisor.wait.assert_awaited_once()

    @patch("tokligence.gateway.supervisor.ProcessSupervisor")
    def test_run_nonzero_exit(self, mock_supervisor_cls, invoke):
        """A failing gateway makes the command fail."""
        supervisor = mock_supervisor_cls.return_value
        supervisor.start = AsyncMock(return_value=True)
        supervisor.wait = AsyncMock(return_value=2)

        result = invoke("run")

        assert result.exit_code == 1
        assert "Gateway exited with code 2" in result.output

    @patch("tokligence.gateway.supervisor.ProcessSupervisor")
    def test_run_declined(self, mock_supervisor_cls, invoke):
        """Declining consent exits quietly."""
        mock_supervisor_cls.return_value.start = AsyncMock(return_value=False)

        result = invoke("run")

        assert result.exit_code == 0
        assert "Gateway start cancelled." in result.output

    @patch("tokligence.gateway.supervisor.ProcessSupervisor")
    def test_run_missing_binary(self, mock_supervisor_cls, invoke):
        """Start failures are reported."""
        mock_supervisor_cls.return_value.start = AsyncMock(
            side_effect=BinaryNotInstalled(Path("/opt/gw"))
        )

        result = invoke("run")

        assert result.exit_code == 1
        assert "tokligence download" in result.output


class TestStatusCommand:
    """Test status command."""

    @patch("tokligence.gateway.supervisor.HealthProbe")
    def test_status_not_running(self, mock_probe_cls, runner, tmp_path):
        """An unhealthy gateway shows as not running."""
        path = write_config(tmp_path / "config.json", anthropic_api_key="sk-a", pii_firewall_mode="enforce")
        mock_probe_cls.return_value = _probe(HealthResult(state=HealthState.DEGRADED, status_code=503))

        result = runner.invoke(main, ["--config", str(path), "status"])

        assert result.exit_code == 0
        assert "Running:   no" in result.output
        assert "Port:      8081" in result.output
        assert "PII:       enforce" in result.output
        assert "Providers: Anthropic" in result.output
        assert "Health:    degraded (503)" in result.output

    @patch("tokligence.gateway.supervisor.HealthProbe")
    def test_status_raw(self, mock_probe_cls, invoke):
        """--raw prints the status as JSON."""
        mock_probe_cls.return_value = _probe(HealthResult(state=HealthState.HEALTHY, status_code=200))

        result = invoke("status", "--raw")

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["running"] is True
        assert data["providers"] == []
        assert data["health"]["state"] == "healthy"


class TestHealthCommand:
    """Test health command."""

    @patch("tokligence.gateway.health.HealthProbe")
    def test_healthy(self, mock_probe_cls, invoke):
        """A healthy gateway exits 0."""
        mock_probe_cls.return_value = _probe(
            HealthResult(state=HealthState.HEALTHY, status_code=200, details={"status": "ok"})
        )

        result = invoke("health")

        assert result.exit_code == 0
        assert "Gateway OK: ok" in result.output
        mock_probe_cls.return_value.check.assert_awaited_once_with(
            "http://gateway.test", timeout=5.0, path="/health"
        )

    @patch("tokligence.gateway.health.HealthProbe")
    def test_unreachable(self, mock_probe_cls, invoke):
        """An unreachable gateway exits 1."""
        mock_probe_cls.return_value = _probe(
            HealthResult(state=HealthState.UNREACHABLE, error="connection refused")
        )

        result = invoke("health", "--timeout", "1")

        assert result.exit_code == 1
        assert "Gateway not reachable: connection refused" in result.output

    @patch("tokligence.gateway.health.HealthProbe")
    def test_url_override(self, mock_probe_cls, runner, config_path):
        """--url overrides the configured base URL."""
        mock_probe_cls.return_value = _probe(HealthResult(state=HealthState.HEALTHY))

        result = runner.invoke(main, ["--config", str(config_path), "--url", "http://other.test", "health"])

        assert result.exit_code == 0
        assert mock_probe_cls.return_value.check.await_args[0][0] == "http://other.test"


class TestDownloadCommand:
    """Test download command."""

    @patch("tokligence.gateway.installer.BinaryProvisioner")
    def test_download(self, mock_provisioner_cls, invoke):
        """The requested tag is provisioned."""
        provisioner = mock_provisioner_cls.return_value
        provisioner.provision = AsyncMock(
            return_value=InstalledBinary(path="/opt/tokligence/gw", executable=True)
        )

        result = invoke("download", "--tag", "v1.2.3")

        assert result.exit_code == 0
        assert "Gateway v1.2.3 downloaded to /opt/tokligence/gw" in result.output
        assert provisioner.provision.await_args[0][0] == "v1.2.3"

    @patch("tokligence.gateway.installer.BinaryProvisioner")
    def test_download_declined(self, mock_provisioner_cls, invoke):
        """Declining consent is not an error."""
        mock_provisioner_cls.return_value.provision = AsyncMock(
            side_effect=ConsentDenied(ConsentAction.DOWNLOAD)
        )

        result = invoke("download")

        assert result.exit_code == 0
        assert "Download cancelled." in result.output

    @patch("tokligence.gateway.installer.BinaryProvisioner")
    def test_download_failure(self, mock_provisioner_cls, invoke):
        """Provisioning errors fail the command."""
        mock_provisioner_cls.return_value.provision = AsyncMock(side_effect=NoReleaseFound("v9"))

        result = invoke("download", "-t", "v9")

        assert result.exit_code == 1
        assert "Download failed: No release found for tag 'v9'" in result.output


class TestModelsCommand:
    """Test models command."""

    @patch("tokligence.chat.models.list_models", new_callable=AsyncMock)
    def test_list(self, mock_list, invoke):
        """The current model is marked."""
        mock_list.return_value = ["gpt-4o", "test-model"]

        result = invoke("models")

        assert result.exit_code == 0
        assert "   gpt-4o" in result.output
        assert " * test-model" in result.output

    @patch("tokligence.chat.models.list_models", new_callable=AsyncMock)
    def test_list_raw(self, mock_list, invoke):
        mock_list.return_value = ["gpt-4o"]
        result = invoke("models", "--raw")
        assert json.loads(result.output) == ["gpt-4o"]

    @patch("tokligence.chat.models.list_models", new_callable=AsyncMock)
    def test_select_saves_model(self, mock_list, invoke, config_path):
        """--select writes the chosen model to the config file."""
        mock_list.return_value = ["gpt-4o", "test-model"]

        result = invoke("models", "--select", input="gpt-4o\n")

        assert result.exit_code == 0
        assert "Model set to gpt-4o" in result.output
        assert json.loads(config_path.read_text())["model"] == "gpt-4o"

    @patch("tokligence.chat.models.list_models", new_callable=AsyncMock)
    def test_list_failure(self, mock_list, invoke):
        from tokligence.chat.models import ModelListError

        mock_list.side_effect = ModelListError("Models endpoint returned HTTP 401")
        result = invoke("models")
        assert result.exit_code == 1
        assert "HTTP 401" in result.output


class FakeSession:
    """Stands in for ChatSession in CLI tests."""

    instances: list["FakeSession"] = []

    def __init__(self, config_view, api_key=None):
        self.config_view = config_view
        self.api_key = api_key
        self.sent = []
        self.cleared = 0
        FakeSession.instances.append(self)

    def send(self, text):
        self.sent.append(text)

        async def reply():
            if text == "fail":
                raise ChatHttpError(500)
            yield "Hel"
            yield "lo"

        return reply()

    def clear(self):
        self.cleared += 1

    def cancel(self):
        pass


class TestChatCommand:
    """Test chat command."""

    @pytest.fixture(autouse=True)
    def fake_session(self):
        FakeSession.instances = []
        with patch("tokligence.chat.session.ChatSession", FakeSession):
            yield

    def test_one_shot(self, invoke):
        """-m sends one message and prints the reply."""
        result = invoke("chat", "-m", "hi", "--model", "other-model", "--api-key", "sk-test")

        assert result.exit_code == 0
        assert "Hello" in result.output
        session = FakeSession.instances[0]
        assert session.sent == ["hi"]
        assert session.api_key == "sk-test"
        assert session.config_view.get().model == "other-model"

    def test_no_stream_flag(self, invoke):
        """--no-stream switches the session to buffered replies."""
        invoke("chat", "-m", "hi", "--no-stream")
        assert FakeSession.instances[0].config_view.get().use_streaming is False

    def test_one_shot_error(self, invoke):
        """Chat errors fail a one-shot message."""
        result = invoke("chat", "-m", "fail")
        assert result.exit_code == 1
        assert "HTTP 500" in result.output

    def test_interactive(self, invoke):
        """The REPL handles messages, /clear and /exit."""
        result = invoke("chat", input="hi\n/clear\nfail\n/exit\n")

        assert result.exit_code == 0
        session = FakeSession.instances[0]
        assert session.sent == ["hi", "fail"]
        assert session.cleared == 1
        assert "Conversation cleared." in result.output
        assert "Error: HTTP 500" in result.output


class TestConsentCommand:
    """Test consent commands."""

    def test_show_empty(self, invoke):
        result = invoke("consent", "show")
        assert result.exit_code == 0
        assert "No remembered consent decisions." in result.output

    def test_show_and_revoke(self, invoke, config_path):
        """Remembered decisions are listed and can be revoked."""
        store = config_path.parent / "consent.json"
        store.write_text(json.dumps({"start": True, "download": True}))

        shown = invoke("consent", "show")
        assert "- start" in shown.output
        assert "- download" in shown.output

        revoked = invoke("consent", "revoke", "download")
        assert revoked.exit_code == 0
        assert "Revoked: download" in revoked.output
        assert json.loads(store.read_text()) == {"start": True}

        again = invoke("consent", "revoke", "download")
        assert "Nothing to revoke." in again.output


class TestConfigCommand:
    """Test config show."""

    def test_secrets_masked(self, runner, tmp_path):
        path = write_config(tmp_path / "config.json", openai_api_key="sk-secret", api_key="")
        result = runner.invoke(main, ["--config", str(path), "config", "show"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["openai_api_key"] == "***"
        assert data["api_key"] == ""
        assert "sk-secret" not in result.output
