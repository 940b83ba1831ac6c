# tests/conftest.py

from __future__ import annotations

from types import SimpleNamespace

import pytest

ENV_VARS = [
    "VCENTER_HOSTS", "VCENTER_USER", "VCENTER_PASSWORD", "VCENTER_PORT", "VMWARE_DISABLE_SSL_VERIFICATION",
    "VCD_HOST", "VCD_USER", "VCD_PASSWORD", "VCD_ORG", "VCD_API_VERSION", "VCD_DISABLE_SSL_VERIFICATION",
    "MAX_THREADS", "OUTPUT_DIR",
]


@pytest.fixture()
def clean_env(monkeypatch, tmp_path):
    """Isolate tests from the caller's environment and any ./.env file."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture()
def fake_task():
    """A finished vSphere task whose result is the given value."""

    def _make(result):
        return SimpleNamespace(info=SimpleNamespace(result=result, state="success"))

    return _make
