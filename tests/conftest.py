"""
Shared fixtures.

Settings are cached per (config file, overrides) and pydantic-settings reads
.env / config files from the working directory, so every test that builds
settings runs in an empty temporary directory with a cleared cache.
"""
from __future__ import annotations

import logging
import os

import pytest

from roundtrip.config import GrpcSettings, clear_settings_cache
from roundtrip.telemetry import RecordingTelemetry


@pytest.fixture
def telemetry() -> RecordingTelemetry:
    return RecordingTelemetry()


@pytest.fixture
def isolated_settings(tmp_path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.startswith("ROUNDTRIP_"):
            monkeypatch.delenv(key, raising=False)
    clear_settings_cache()
    yield tmp_path
    clear_settings_cache()


@pytest.fixture
def grpc_settings() -> GrpcSettings:
    return GrpcSettings(max_workers=4, grace_s=0.5)


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    # pytest re-installs its own capture handlers per phase; only drop ours.
    for h in list(root.handlers):
        if h not in handlers:
            root.removeHandler(h)
    root.setLevel(level)
