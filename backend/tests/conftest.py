"""
Pytest config.

The package lives under backend/ and is not necessarily installed when tests
run, so backend/ is put on sys.path here.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest


def _ensure_backend_on_syspath() -> None:
    backend = Path(__file__).resolve().parents[1]
    backend_str = str(backend)
    if backend_str not in sys.path:
        sys.path.insert(0, backend_str)


_ensure_backend_on_syspath()


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch):
    """Keep a developer's environment from leaking into Settings()."""
    for name in (
        "APP_ENV",
        "SKIP_AUTHORIZATION",
        "GLOBAL_SERVICE_ACCOUNT_NAMESPACES",
        "REST_MAPPING",
        "HOST",
        "KUBECONFIG",
        "KUBE_CONFIG_PATH",
    ):
        monkeypatch.delenv(name, raising=False)
    from kargo_server.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
