"""Test bootstrap.

Ensures `src/` is importable and keeps config paths, logs and the rule
warning registry isolated per test.
"""

from __future__ import annotations

import sys
import tempfile
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if SRC.exists() and str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def _config_manager():
    from iiif_random_core.config_manager import get_config_manager

    return get_config_manager()


def pytest_configure():
    """Redirect session logging to a temporary folder before test collection."""
    cm = _config_manager()
    session_logs_dir = Path(tempfile.mkdtemp(prefix="iiif-random-pytest-logs-")) / "logs"
    cm.set_logs_dir(str(session_logs_dir))


@pytest.fixture(autouse=True)
def _isolate_local_state(tmp_path, tmp_path_factory):
    """Point logs and the database at `tmp_path` and forget logged rule warnings."""
    from iiif_random_core.logger import reset_logging, setup_logging
    from iiif_random_core.selection_rules import rule_warnings

    cm = _config_manager()
    original_logs = cm.resolve_path("logs_dir", "data/local/logs")
    original_db = cm.resolve_path("database", "data/local/iiif_random.db")
    logs_dir = tmp_path_factory.mktemp("logs")
    cm.set_logs_dir(str(logs_dir))
    cm.set_database_path(str(tmp_path / "iiif_random.db"))

    reset_logging()
    setup_logging(logs_dir)
    rule_warnings.clear()

    yield

    rule_warnings.clear()
    reset_logging()
    cm.set_logs_dir(str(original_logs))
    cm.set_database_path(str(original_db))


@pytest.fixture
def store(tmp_path):
    """A DisplayStore backed by a fresh SQLite file."""
    from iiif_random_core.services.storage.display_store import DisplayStore

    return DisplayStore(tmp_path / "display.db")


def make_v2_manifest(label="Book of Hours", service="https://images.example.org/iiif/page", pages=1, **extra):
    """Build a minimal IIIF Presentation v2 manifest."""
    canvases = [
        {
            "@id": f"https://example.org/canvas/{i + 1}",
            "images": [{"resource": {"service": {"@id": f"{service}{i + 1}"}}}],
        }
        for i in range(pages)
    ]
    manifest = {
        "@context": "http://iiif.io/api/presentation/2/context.json",
        "label": label,
        "sequences": [{"canvases": canvases}],
    }
    manifest.update(extra)
    return manifest


def make_v3_manifest(label=None, service="https://images.example.org/iiif/page", pages=1, **extra):
    """Build a minimal IIIF Presentation v3 manifest."""
    canvases = [
        {
            "id": f"https://example.org/canvas/{i + 1}",
            "items": [
                {
                    "items": [
                        {
                            "body": {
                                "service": [
                                    {"type": "ImageService2", "@id": "https://legacy.example.org/ignored"},
                                    {"type": "ImageService3", "id": f"{service}{i + 1}"},
                                ]
                            }
                        }
                    ]
                }
            ],
        }
        for i in range(pages)
    ]
    manifest = {
        "@context": "http://iiif.io/api/presentation/3/context.json",
        "label": label if label is not None else {"en": ["Book of Hours"]},
        "items": canvases,
    }
    manifest.update(extra)
    return manifest


@pytest.fixture
def v2_manifest():
    """Factory for IIIF v2 manifests."""
    return make_v2_manifest


@pytest.fixture
def v3_manifest():
    """Factory for IIIF v3 manifests."""
    return make_v3_manifest
