"""Shared test fixtures."""

from __future__ import annotations

import json
import os

import pytest

from rosetta_builder.config import BuilderConfig


@pytest.fixture
def working_dir(tmp_path, monkeypatch):
    path = tmp_path / "work"
    path.mkdir()
    monkeypatch.setenv("ROSETTA_BUILDER_WORKING_DIRECTORY", str(path))
    return path


@pytest.fixture
def config_values(tmp_path) -> dict:
    """Return a minimal valid configuration."""
    return {"image": str(tmp_path / "nixos.img")}


@pytest.fixture
def make_config(working_dir, config_values):
    """Build a BuilderConfig from the default values plus overrides."""

    def _make(**overrides) -> BuilderConfig:
        values = dict(config_values)
        values.update(overrides)
        return BuilderConfig.from_dict(values)

    return _make


@pytest.fixture
def config_file(tmp_path, config_values):
    def _write(**overrides):
        values = dict(config_values)
        values.update(overrides)
        path = tmp_path / "config.json"
        path.write_text(json.dumps(values))
        return path

    return _write


@pytest.fixture(autouse=True)
def restore_umask():
    """HostBootstrap changes the process umask; keep it from leaking between tests."""
    previous = os.umask(0o022)
    os.umask(previous)
    yield
    os.umask(previous)
