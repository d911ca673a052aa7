"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import subprocess
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest

from anytlsctl.config import AppConfig, load_config
from anytlsctl.logging import OperationScope
from anytlsctl.providers import docker as docker_module


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., AppConfig]:
    """Return a factory building configs rooted under ``tmp_path``."""

    def _make(**overrides: object) -> AppConfig:
        values: dict[str, object] = {
            "workdir": str(tmp_path / "work"),
            "logs_dir": str(tmp_path / "logs"),
            "startup_delay": 0,
        }
        values.update(overrides)
        return load_config(tmp_path / "missing.yml", env={}, overrides=values)

    return _make


@pytest.fixture
def op() -> OperationScope:
    """Return an operation scope that is never persisted."""
    return OperationScope("test")


class FakeDocker:
    """Record docker invocations and answer from a scripted table.

    Responses are keyed on the first two arguments after the binary
    (``"ps -a"``) and fall back to the bare subcommand (``"pull"``).
    """

    def __init__(self) -> None:
        """Start with an empty response table."""
        self.responses: dict[str, tuple[int, str, str]] = {}
        self.calls: list[list[str]] = []

    def __call__(self, args: Sequence[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        command = list(args)
        self.calls.append(command)
        key = " ".join(command[1:3])
        rc, stdout, stderr = self.responses.get(
            key,
            self.responses.get(command[1], (0, "", "")),
        )
        return subprocess.CompletedProcess(command, returncode=rc, stdout=stdout, stderr=stderr)

    def subcommands(self) -> list[str]:
        """Return the docker subcommands invoked so far."""
        return [call[1] for call in self.calls]


@pytest.fixture
def fake_docker(monkeypatch: pytest.MonkeyPatch) -> FakeDocker:
    """Install a fake ``subprocess.run`` and a present docker binary.

    Only ``docker`` resolves on ``PATH`` so secrets fall back to the random
    source instead of running ``uuidgen`` through the fake.
    """
    runner = FakeDocker()
    monkeypatch.setattr(docker_module.subprocess, "run", runner)
    monkeypatch.setattr(
        docker_module.shutil,
        "which",
        lambda name: f"/usr/bin/{name}" if name == "docker" else None,
    )
    return runner
