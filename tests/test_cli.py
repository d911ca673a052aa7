"""CLI tests for anytlsctl."""
from __future__ import annotations

import io
import json
import os
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
from rich.console import Console
from typer.testing import CliRunner

from anytlsctl import __version__, cli, config, network
from anytlsctl.cli import app
from anytlsctl.network import PublicIPResult
from anytlsctl.providers import docker as docker_module

if TYPE_CHECKING:
    from conftest import FakeDocker

runner = CliRunner()


@pytest.fixture
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Environment pointing every path at ``tmp_path``.

    Legacy and prefixed variables inherited from the host are cleared first
    because ``CliRunner`` layers ``env`` over ``os.environ``.
    """
    for key in config.LEGACY_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    for key in list(os.environ):
        if key.startswith(config.ENV_PREFIX):
            monkeypatch.delenv(key, raising=False)
    return {
        "ANYTLSCTL_CONFIG_FILE": str(tmp_path / "missing.yml"),
        "WORKDIR": str(tmp_path / "work"),
        "ANYTLSCTL_LOGS_DIR": str(tmp_path / "logs"),
        "ANYTLSCTL_STARTUP_DELAY": "0",
    }


@pytest.fixture
def detected_ip(monkeypatch: pytest.MonkeyPatch) -> str:
    """Make every public IP lookup answer with a documentation address."""
    address = "203.0.113.7"

    def fake_lookup(self: network.PublicIPProber) -> PublicIPResult:
        return PublicIPResult(address=address, source="https://lookup.test/")

    monkeypatch.setattr(network.PublicIPProber, "probe", fake_lookup)
    return address


def _read_records(log_dir: Path) -> list[dict[str, object]]:
    path = log_dir / "operations.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_version_flag() -> None:
    """--version prints the package version."""
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_no_command_shows_help() -> None:
    """Invoking without a subcommand prints help and exits cleanly."""
    result = runner.invoke(app, [])

    assert result.exit_code == 0
    assert "deploy" in result.stdout


def test_deploy_with_yes_prints_link(
    tmp_path: Path,
    cli_env: dict[str, str],
    fake_docker: FakeDocker,
    detected_ip: str,
) -> None:
    """A confirmed deploy prints the link and the management commands."""
    result = runner.invoke(app, ["deploy", "--yes", "--host-port", "8443"], env=cli_env)

    assert result.exit_code == 0, result.stdout
    secret = (tmp_path / "work" / "uuid.txt").read_text(encoding="utf-8").strip()
    assert f"anytls://{secret}@{detected_ip}:8443?security=tls" in result.stdout
    assert "docker logs -f sing-box-anytls" in result.stdout
    assert "docker rm -f sing-box-anytls" in result.stdout
    records = _read_records(tmp_path / "logs")
    assert records[-1]["command"] == "deploy"
    assert records[-1]["result"]["status"] == "success"  # type: ignore[index]
    assert secret not in json.dumps(records[-1]["result"])


def test_deploy_prompt_continues_on_enter(
    tmp_path: Path,
    cli_env: dict[str, str],
    fake_docker: FakeDocker,
    detected_ip: str,
) -> None:
    """Any answer other than ``n`` proceeds with the deployment."""
    result = runner.invoke(app, ["deploy"], env=cli_env, input="\n")

    assert result.exit_code == 0, result.stdout
    assert "run" in fake_docker.subcommands()
    assert (tmp_path / "work" / "config.json").exists()


def test_deploy_prompt_cancel_exits_cleanly(
    tmp_path: Path,
    cli_env: dict[str, str],
    fake_docker: FakeDocker,
    detected_ip: str,
) -> None:
    """Answering ``n`` cancels with exit status 0 and writes nothing."""
    result = runner.invoke(app, ["deploy"], env=cli_env, input="n\n")

    assert result.exit_code == 0
    assert "Cancelled." in result.stdout
    assert fake_docker.calls == []
    assert not (tmp_path / "work" / "uuid.txt").exists()


def test_deploy_without_docker_fails(
    tmp_path: Path,
    cli_env: dict[str, str],
    monkeypatch: pytest.MonkeyPatch,
    detected_ip: str,
) -> None:
    """A host without docker exits 1 with an install hint."""
    monkeypatch.setattr(docker_module.shutil, "which", lambda name: None)

    result = runner.invoke(app, ["deploy", "--yes"], env=cli_env)

    assert result.exit_code == 1
    assert "Docker is not installed" in result.stdout
    assert "get.docker.com" in result.stdout
    assert not (tmp_path / "work" / "uuid.txt").exists()
    records = _read_records(tmp_path / "logs")
    assert records[-1]["result"]["status"] == "error"  # type: ignore[index]
    assert records[-1]["result"]["context"]["stage"] == "environment"  # type: ignore[index]


def test_failed_deploy_with_default_logs_dir_leaves_no_workdir(
    tmp_path: Path,
    cli_env: dict[str, str],
    monkeypatch: pytest.MonkeyPatch,
    detected_ip: str,
) -> None:
    """Logs live outside the workdir, so a docker-less run creates nothing there."""
    default_logs = tmp_path / "var-log"
    monkeypatch.setitem(config.DEFAULTS, "logs_dir", str(default_logs))
    monkeypatch.setattr(docker_module.shutil, "which", lambda name: None)
    env = {key: value for key, value in cli_env.items() if key != "ANYTLSCTL_LOGS_DIR"}

    result = runner.invoke(app, ["deploy", "--yes"], env=env)

    assert result.exit_code == 1
    assert not (tmp_path / "work").exists()
    records = _read_records(default_logs)
    assert records[-1]["result"]["status"] == "error"  # type: ignore[index]


def test_deploy_json_output(
    cli_env: dict[str, str],
    fake_docker: FakeDocker,
    detected_ip: str,
) -> None:
    """--json emits the report as a single JSON document."""
    result = runner.invoke(
        app,
        ["deploy", "--yes", "--json", "--transport", "tcp", "--transport", "udp"],
        env=cli_env,
    )

    assert result.exit_code == 0, result.stdout
    payload = json.loads(result.stdout)
    assert payload["public_ip"]["address"] == detected_ip
    assert payload["descriptor"].startswith("anytls://")
    run_call = next(call for call in fake_docker.calls if call[1] == "run")
    assert "2053:2053/tcp" in run_call
    assert "2053:2053/udp" in run_call


def test_deploy_json_prompt_keeps_stdout_parseable(
    cli_env: dict[str, str],
    fake_docker: FakeDocker,
    detected_ip: str,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Without --yes the confirmation is written to stderr, not into the JSON."""
    prompt_output = io.StringIO()
    monkeypatch.setattr(cli, "err_console", Console(file=prompt_output, width=200))

    result = runner.invoke(app, ["deploy", "--json"], env=cli_env, input="\n")

    assert result.exit_code == 0, result.stdout
    payload = json.loads(result.stdout)
    assert payload["descriptor"].startswith("anytls://")
    assert "Press Enter to continue" in prompt_output.getvalue()
    assert "Press Enter" not in result.stdout


def test_deploy_regenerate_tls_flag_replaces_invalid_pair(
    tmp_path: Path,
    cli_env: dict[str, str],
    fake_docker: FakeDocker,
    detected_ip: str,
) -> None:
    """--regenerate-tls replaces TLS files that cannot be parsed."""
    workdir = tmp_path / "work"
    workdir.mkdir()
    (workdir / "cert.pem").write_bytes(b"existing-cert")
    (workdir / "private.key").write_bytes(b"existing-key")

    kept = runner.invoke(app, ["deploy", "--yes"], env=cli_env)

    assert kept.exit_code == 0, kept.stdout
    assert (workdir / "cert.pem").read_bytes() == b"existing-cert"

    replaced = runner.invoke(app, ["deploy", "--yes", "--regenerate-tls"], env=cli_env)

    assert replaced.exit_code == 0, replaced.stdout
    assert (workdir / "cert.pem").read_bytes().startswith(b"-----BEGIN CERTIFICATE-----")


def test_invalid_port_is_a_configuration_error(
    cli_env: dict[str, str],
    fake_docker: FakeDocker,
) -> None:
    """Out-of-range legacy environment values exit with status 1."""
    env = {**cli_env, "HOST_PORT": "70000"}

    result = runner.invoke(app, ["deploy", "--yes"], env=env)

    assert result.exit_code == 1
    assert "Configuration error" in result.stdout
    assert fake_docker.calls == []


def test_link_requires_saved_secret(cli_env: dict[str, str]) -> None:
    """link fails when no deployment has saved a secret yet."""
    result = runner.invoke(app, ["link", "--host", "vpn.example.test"], env=cli_env)

    assert result.exit_code == 1
    assert "No saved secret" in result.stdout


def test_link_uses_saved_secret(tmp_path: Path, cli_env: dict[str, str]) -> None:
    """link rebuilds the descriptor from the saved secret."""
    workdir = tmp_path / "work"
    workdir.mkdir()
    (workdir / "uuid.txt").write_text("0f8e2b7c-1d2a-4c5b-9e8f-112233445566\n", encoding="utf-8")

    result = runner.invoke(app, ["link", "--host", "vpn.example.test"], env=cli_env)

    assert result.exit_code == 0
    assert result.stdout.strip() == (
        "anytls://0f8e2b7c-1d2a-4c5b-9e8f-112233445566@vpn.example.test:2053"
        "?security=tls&sni=www.w3schools.com&allowInsecure=1&type=tcp#anytls-server"
    )


def test_remove_reports_absent_container(
    cli_env: dict[str, str],
    fake_docker: FakeDocker,
) -> None:
    """remove succeeds when nothing holds the reserved name."""
    result = runner.invoke(app, ["remove"], env=cli_env)

    assert result.exit_code == 0
    assert "No container named sing-box-anytls." in result.stdout
    assert "rm" not in fake_docker.subcommands()


def test_remove_deletes_existing_container(
    cli_env: dict[str, str],
    fake_docker: FakeDocker,
) -> None:
    """remove force-removes an existing container."""
    fake_docker.responses["ps -a"] = (0, "sing-box-anytls\n", "")

    result = runner.invoke(app, ["remove"], env=cli_env)

    assert result.exit_code == 0
    assert ["docker", "rm", "-f", "sing-box-anytls"] in fake_docker.calls


def test_status_prints_docker_ps(
    cli_env: dict[str, str],
    fake_docker: FakeDocker,
) -> None:
    """status shows the filtered docker ps listing."""
    fake_docker.responses["ps --filter"] = (0, "CONTAINER ID   NAMES\nabc   sing-box-anytls\n", "")

    result = runner.invoke(app, ["status"], env=cli_env)

    assert result.exit_code == 0
    assert "sing-box-anytls" in result.stdout


def test_config_show_json_reflects_overrides(tmp_path: Path, cli_env: dict[str, str]) -> None:
    """Legacy and prefixed environment variables appear in the effective config."""
    env = {
        **cli_env,
        "CN": "cdn.example.test",
        "ANYTLSCTL_DOCKER__RESTART_POLICY": "unless-stopped",
    }

    result = runner.invoke(app, ["config", "show", "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    payload = json.loads(result.stdout)
    assert payload["common_name"] == "cdn.example.test"
    assert payload["workdir"] == str(tmp_path / "work")
    assert payload["docker"]["restart_policy"] == "unless-stopped"


def test_config_file_option(tmp_path: Path, cli_env: dict[str, str]) -> None:
    """--config-file selects the YAML file to merge."""
    config_path = tmp_path / "custom.yml"
    config_path.write_text("days: 30\ncontainer_name: edge-anytls\n", encoding="utf-8")

    result = runner.invoke(
        app,
        ["--config-file", str(config_path), "config", "show", "--json"],
        env=cli_env,
    )

    assert result.exit_code == 0, result.stdout
    payload = json.loads(result.stdout)
    assert payload["days"] == 30
    assert payload["container_name"] == "edge-anytls"
    assert payload["config_file"] == str(config_path)
