"""
Tests for the dictator command-line interface.
"""
import json
import sys

import pytest

from dictator.cli import (
    EXIT_ERROR,
    EXIT_INVARIANT,
    EXIT_OK,
    EXIT_REVERTED,
    EXIT_TIMEOUT,
    EXIT_TRANSPORT,
    DictatorCLI,
    OutputFormat,
    exit_code_for,
    format_output,
)
from dictator.observability import configure_logging
from dictator.plans import ADDRESS_MANAGER, BRIDGE, DICTATOR, MESSENGER, PROXY_ADMIN
from dictator.resilience import TimeoutError, TransportError
from dictator.resources import OperationReverted
from dictator.verification import InvariantViolation
from support import addr


@pytest.fixture(autouse=True)
def _restore_log_stream():
    yield
    configure_logging("info", stream=sys.__stderr__, fmt="json")


@pytest.fixture
def cli():
    return DictatorCLI()


def _run(cli, capsys, *args):
    code = cli.run(list(args))
    captured = capsys.readouterr()
    return code, captured.out, captured.err


def _write_deployment(path, deployer=addr(0xDE), controller=addr(0xDE), bridge=addr(5)):
    path.write_text(
        f'deployer: "{deployer}"\n'
        f'controller: "{controller}"\n'
        f'final_system_owner: "{addr(0xF0)}"\n'
        "addresses:\n"
        f'  {DICTATOR}: "{addr(1)}"\n'
        f'  {PROXY_ADMIN}: "{addr(2)}"\n'
        f'  {ADDRESS_MANAGER}: "{addr(3)}"\n'
        f'  {MESSENGER}: "{addr(4)}"\n'
        f'  {BRIDGE}: "{bridge}"\n'
    )
    return path


class TestPlanCommands:

    def test_plan_show(self, cli, capsys):
        code, out, _ = _run(cli, capsys, "plan", "show")
        assert code == EXIT_OK
        plan = json.loads(out)
        assert plan["size"] == 6
        assert [s["operation"] for s in plan["steps"]] == [f"step{i}" for i in range(1, 7)]
        assert len(plan["steps"][0]["prerequisites"]) == 4

    def test_plan_show_as_table(self, cli, capsys):
        code, out, _ = _run(cli, capsys, "--format", "table", "plan", "show")
        assert code == EXIT_OK
        assert out.splitlines()[0].startswith("index")
        assert "step6" in out


class TestConfigCommands:

    def test_get(self, cli, capsys):
        code, out, _ = _run(cli, capsys, "config", "get", "polling.timeout_seconds")
        assert code == EXIT_OK
        assert json.loads(out) == {"path": "polling.timeout_seconds", "value": 600.0}

    def test_get_unknown_path(self, cli, capsys):
        code, _, err = _run(cli, capsys, "config", "get", "polling.bogus")
        assert code == EXIT_ERROR
        assert "Invalid config path" in err

    def test_get_section_is_refused(self, cli, capsys):
        code, _, _ = _run(cli, capsys, "config", "get", "polling")
        assert code == EXIT_ERROR

    def test_show_as_yaml(self, cli, capsys):
        code, out, _ = _run(cli, capsys, "--format", "yaml", "config", "show")
        assert code == EXIT_OK
        assert "interval_seconds: 2.0" in out

    def test_validate(self, cli, capsys, monkeypatch):
        code, out, _ = _run(cli, capsys, "config", "validate")
        assert code == EXIT_OK
        assert json.loads(out)["valid"] is True

        monkeypatch.setenv("DICTATOR_LOG_FORMAT", "xml")
        code, out, _ = _run(cli, capsys, "config", "validate")
        assert code == EXIT_ERROR
        assert json.loads(out)["valid"] is False

    def test_config_file_option(self, cli, capsys, tmp_path):
        path = tmp_path / "dictator.yaml"
        path.write_text("polling:\n  timeout_seconds: 45\n")
        code, out, _ = _run(cli, capsys, "--config", str(path), "config", "get", "polling.timeout_seconds")
        assert code == EXIT_OK
        assert json.loads(out)["value"] == 45.0

    def test_bad_config_file(self, cli, capsys, tmp_path):
        code, _, err = _run(cli, capsys, "--config", str(tmp_path / "missing.yaml"), "config", "show")
        assert code == EXIT_ERROR
        assert "not found" in err


class TestDeploymentCommands:

    def test_validate_valid_document(self, cli, capsys, tmp_path):
        path = _write_deployment(tmp_path / "deployment.yaml", controller=addr(0xC0))
        code, out, _ = _run(cli, capsys, "deployment", "validate", str(path))
        assert code == EXIT_OK
        result = json.loads(out)
        assert result["valid"] is True
        assert result["live"] is False
        assert result["addresses"][BRIDGE] == addr(5)

    def test_validate_invalid_document(self, cli, capsys, tmp_path):
        path = _write_deployment(tmp_path / "deployment.yaml", bridge="0xnot-an-address")
        code, out, err = _run(cli, capsys, "deployment", "validate", str(path))
        assert code == EXIT_ERROR
        result = json.loads(out)
        assert result["valid"] is False
        assert any(BRIDGE in e for e in result["errors"])
        assert "Invalid deployment document" in err


class TestSimulate:

    def test_live_simulation_reaches_terminal(self, cli, capsys):
        code, out, _ = _run(cli, capsys, "--quiet", "simulate", "--poll-interval", "0.01")
        assert code == EXIT_OK
        report = json.loads(out)
        assert report["terminal"] is True
        assert report["final_step"] == 7
        assert report["authority"]["is_live"] is True
        assert [r["operation"] for r in report["invoked"]] == [f"step{i}" for i in range(1, 7)]

    def test_non_live_simulation_relies_on_operator(self, cli, capsys):
        code, out, _ = _run(
            cli, capsys, "--quiet", "simulate", "--non-live", "--poll-interval", "0.01", "--timeout", "30",
        )
        assert code == EXIT_OK
        report = json.loads(out)
        assert report["terminal"] is True
        assert report["authority"]["is_live"] is False
        assert report["invoked"] == []
        assert report["actions_required"]

    def test_start_at_terminal_step(self, cli, capsys):
        code, out, _ = _run(cli, capsys, "--quiet", "simulate", "--start-step", "7")
        assert code == EXIT_OK
        report = json.loads(out)
        assert report["initial_step"] == 7
        assert report["invoked"] == []

    def test_start_step_out_of_range(self, cli, capsys):
        code, _, err = _run(cli, capsys, "simulate", "--start-step", "9")
        assert code == EXIT_ERROR
        assert "--start-step" in err

    def test_simulate_from_deployment(self, cli, capsys, tmp_path):
        path = _write_deployment(tmp_path / "deployment.yaml")
        code, out, _ = _run(cli, capsys, "--quiet", "simulate", "--deployment", str(path), "--poll-interval", "0.01")
        assert code == EXIT_OK
        report = json.loads(out)
        assert report["authority"]["identity"] == addr(0xDE)
        assert report["terminal"] is True


def test_exit_codes():
    assert exit_code_for(InvariantViolation(2, "Messenger.paused == True", True, False)) == EXIT_INVARIANT
    assert exit_code_for(TimeoutError("wait", 10.0)) == EXIT_TIMEOUT
    assert exit_code_for(TransportError("ProxyAdmin", "owner")) == EXIT_TRANSPORT
    assert exit_code_for(OperationReverted("MigrationSystemDictator", "step1", "not owner")) == EXIT_REVERTED
    assert exit_code_for(RuntimeError("boom")) == EXIT_ERROR


def test_format_output_text():
    assert format_output({"a": 1}, OutputFormat.TEXT) == "{'a': 1}"


def test_version_matches_package(cli, capsys):
    import dictator

    with pytest.raises(SystemExit) as exc_info:
        cli.run(["--version"])
    assert exc_info.value.code == 0
    assert capsys.readouterr().out.strip() == f"dictator {dictator.__version__}"
