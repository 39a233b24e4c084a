"""
Tests for the command-line interface.
"""
import json
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from upnp_daemon import cli
from upnp_daemon.daemon import Daemon
from upnp_daemon.interfaces import StaticInterfaceEnumerator

from conftest import FakeGatewayClient


PORTS = (
    "address;port;protocol;duration;comment\n"
    "192.168.0.10;12345;UDP;60;Test 1\n"
    ";12346;TCP;60;Test 2\n"
)


@pytest.fixture
def rules_file(tmp_path):
    path = tmp_path / "ports.csv"
    path.write_text(PORTS)
    return str(path)


@pytest.fixture
def runner():
    return CliRunner()


def fake_daemon_factory(gateways, metrics):
    def factory(config):
        return Daemon(
            config,
            gateway_client=FakeGatewayClient(gateways=gateways),
            interface_enumerator=StaticInterfaceEnumerator(["10.0.0.5"]),
            metrics=metrics,
        )
    return factory


def invoke_oneshot(runner, rules_file, tmp_path, gateways, metrics, extra=()):
    with patch.object(cli, "Daemon", side_effect=fake_daemon_factory(gateways, metrics)), \
            patch.object(cli, "setup_logging"), \
            patch.object(cli, "install_signal_handlers"):
        return runner.invoke(cli.main, [
            "run", "--foreground", "--oneshot",
            "--file", rules_file,
            "--pid-file", str(tmp_path / "test.pid"),
            *extra,
        ])


class TestRunCommand:
    """Tests for `upnp-daemon run`."""

    def test_oneshot_all_applied(self, runner, rules_file, tmp_path, metrics):
        gateways = {"192.168.0.10": "gw-a", "10.0.0.5": "gw-b"}

        result = invoke_oneshot(runner, rules_file, tmp_path, gateways, metrics)

        assert result.exit_code == cli.EXIT_OK, result.output
        assert "applied" in result.output
        assert metrics.get_summary()["rules"]["applied"] == 2
        assert not (tmp_path / "test.pid").exists()

    def test_oneshot_with_failures(self, runner, rules_file, tmp_path, metrics):
        result = invoke_oneshot(runner, rules_file, tmp_path, {"10.0.0.5": "gw-b"}, metrics)

        assert result.exit_code == cli.EXIT_RULES_FAILED
        assert "failed" in result.output

    def test_oneshot_report_saved(self, runner, rules_file, tmp_path, metrics):
        report_path = tmp_path / "report.json"

        result = invoke_oneshot(
            runner, rules_file, tmp_path, {"10.0.0.5": "gw-b"}, metrics,
            extra=("--output", str(report_path)),
        )

        assert result.exit_code == cli.EXIT_RULES_FAILED
        report = json.loads(report_path.read_text())
        assert report["applied"] == 1
        assert report["failed"] == 1
        statuses = {outcome["rule"]: outcome["status"] for outcome in report["outcomes"]}
        assert statuses == {"12345/UDP -> 192.168.0.10": "failed", "12346/TCP -> *": "applied"}

    def test_oneshot_missing_file(self, runner, tmp_path, metrics):
        result = invoke_oneshot(runner, str(tmp_path / "missing.csv"), tmp_path, {}, metrics)

        assert result.exit_code == cli.EXIT_CONFIG_ERROR
        assert "Could not load" in result.output

    def test_requires_rules_file(self, runner):
        result = runner.invoke(cli.main, ["run", "--foreground", "--oneshot"])

        assert result.exit_code == cli.EXIT_CONFIG_ERROR

    def test_invalid_interval(self, runner, rules_file):
        result = runner.invoke(cli.main, ["run", "--foreground", "--file", rules_file, "--interval", "0"])

        assert result.exit_code == cli.EXIT_CONFIG_ERROR
        assert "interval" in result.output


class TestBuildConfig:
    """Tests for merging the config file and command-line flags."""

    def test_flags_override_file(self, tmp_path):
        path = tmp_path / "daemon.json"
        path.write_text(json.dumps({"rules_file": "a.csv", "interval": 30.0, "pid_file": "/run/a.pid"}))

        config = cli._build_config(str(path), "b.csv", True, False, 15.0, None, "debug", None, False)

        assert config.rules_file.endswith("b.csv")
        assert config.interval == 15.0
        assert config.pid_file == str(Path("/run/a.pid").resolve())
        assert config.foreground
        assert config.log_level == "DEBUG"

    def test_relative_paths_pinned_before_daemonizing(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        config = cli._build_config(None, "ports.csv", False, False, None, "run/upnp.pid", None, "daemon.log", False)

        assert config.rules_file == str(tmp_path.resolve() / "ports.csv")
        assert config.pid_file == str(tmp_path.resolve() / "run" / "upnp.pid")
        assert config.log_file == str(tmp_path.resolve() / "daemon.log")


class TestCheckCommand:
    """Tests for `upnp-daemon check`."""

    def test_valid_file(self, runner, rules_file):
        result = runner.invoke(cli.main, ["check", "--file", rules_file])

        assert result.exit_code == 0
        assert "2 rule(s) OK" in result.output

    def test_rejected_rows(self, runner, tmp_path):
        path = tmp_path / "ports.csv"
        path.write_text("address;port;protocol;duration;comment\n;80;TCP;0;web\n;99999;TCP;0;bad\n")

        result = runner.invoke(cli.main, ["check", "--file", str(path)])

        assert result.exit_code == cli.EXIT_CONFIG_ERROR
        assert "Rejected Rows" in result.output

    def test_rules_saved_as_json(self, runner, rules_file, tmp_path):
        output = tmp_path / "rules.json"

        result = runner.invoke(cli.main, ["check", "--file", rules_file, "--output", str(output)])

        assert result.exit_code == 0
        saved = json.loads(output.read_text())
        assert saved["rejected"] == []
        assert saved["rules"][1] == {
            "address": None, "port": 12346, "protocol": "TCP", "duration": 60, "comment": "Test 2",
        }


class TestMiscCommands:
    """Tests for the small helper commands."""

    def test_generate_config(self, runner, tmp_path):
        output = tmp_path / "daemon.json"

        result = runner.invoke(cli.main, ["generate-config", str(output), "--interval", "120"])

        assert result.exit_code == 0
        assert json.loads(output.read_text())["interval"] == 120.0

    def test_version(self, runner):
        result = runner.invoke(cli.main, ["version"])

        assert result.exit_code == 0
        assert "upnp-daemon v" in result.output
