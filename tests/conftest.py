import os
import pathlib
import sys
from datetime import datetime, timedelta, timezone

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import webvh`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from webvh.builder import create  # noqa: E402
from webvh.document import default_did, document_template, verification_method  # noqa: E402
from webvh.keys import LocalKeyRegistry  # noqa: E402
from webvh.log import DidLog  # noqa: E402
from webvh.proof import attach  # noqa: E402

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def at(minutes: int) -> datetime:
    """Deterministic version time ``minutes`` after T0."""
    return T0 + timedelta(minutes=minutes)


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: long log replays (skipped unless WEBVH_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    run_slow = _env_flag('WEBVH_RUN_SLOW')
    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set WEBVH_RUN_SLOW=1 to enable'))


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("WEBVH_") and name != "WEBVH_RUN_SLOW":
            monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("SOURCE_DATE_EPOCH", raising=False)


@pytest.fixture
def registry() -> LocalKeyRegistry:
    """Registry with one update key and one reserved pre-rotation key."""
    return LocalKeyRegistry.generate(update=1, next=1)


@pytest.fixture
def document():
    did = default_did("https://example.com/dids/issuer")
    return document_template(did)


@pytest.fixture
def signed_document(registry, document):
    doc = dict(document)
    mk = registry.current_update_keys()[0]
    doc["verificationMethod"] = [verification_method(doc["id"], mk, fragment="key-1")]
    doc["assertionMethod"] = [f"{doc['id']}#key-1"]
    return doc


@pytest.fixture
def genesis(registry, signed_document):
    entry = create(signed_document, registry, version_time=at(0))
    return attach(entry, registry, created=at(0))


@pytest.fixture
def genesis_log(genesis) -> DidLog:
    return DidLog([genesis])
