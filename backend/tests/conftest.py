from __future__ import annotations

import pytest

from routegraph.metrics_store import reset_metrics
from routegraph.settings import settings


@pytest.fixture(autouse=True)
def _isolated_runtime(tmp_path, monkeypatch):  # noqa: ANN001
    monkeypatch.setattr(settings, "out_dir", str(tmp_path / "out"))
    monkeypatch.setattr(settings, "redis_url", "")
    reset_metrics()
    yield
    reset_metrics()
