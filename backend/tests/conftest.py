"""
Shared fixtures: temp stores, a fake renderer, seeded users and a wired executor.
"""

import sys
from pathlib import Path

import django
import pytest
from django.conf import settings

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

if not settings.configured:
    settings.configure(
        DEBUG=True,
        SECRET_KEY="lams-tests",
        ALLOWED_HOSTS=["*"],
        ROOT_URLCONF="config.urls",
        INSTALLED_APPS=["apps.api"],
        USE_TZ=True,
        BASE_DIR=BACKEND_DIR,
        LAMS_STORE_BACKEND="json",
        LAMS_PUBLIC_BASE_URL="https://lams.test",
        LAMS_OBJECTION_WINDOW_DAYS=30,
        LAMS_REF_PADDING=3,
    )
    django.setup()

from apps.api.services.document_integrity import DocumentVault  # noqa: E402
from apps.api.services.documents import register_default_documents  # noqa: E402
from apps.api.services.guards import register_default_guards  # noqa: E402
from apps.api.services.notifier import StoreNotifier  # noqa: E402
from apps.api.services.sql_store import SqliteStore  # noqa: E402
from apps.api.services.store import JsonFileStore  # noqa: E402
from apps.api.services.transition_executor import TransitionExecutor  # noqa: E402
from apps.api.services.workflow_registry import Role  # noqa: E402


class FakeRenderer:
    """Stands in for PdfRenderer: deterministic bytes, records every call."""

    def __init__(self):
        self.calls = []

    def render(self, title, lines, verification_url=None):
        lines = list(lines)
        self.calls.append({"title": title, "lines": lines, "url": verification_url})
        body = "\n".join([title] + [str(line) for line in lines] + [str(verification_url)])
        return ("%PDF-1.7 fake\n" + body).encode("utf-8")


class FailingRenderer:
    def render(self, title, lines, verification_url=None):
        raise RuntimeError("renderer exploded")


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, user_id, title, message, event_type="status_update", related_type=None, related_id=None):
        self.sent.append({"user_id": user_id, "title": title, "related_type": related_type, "related_id": related_id})


@pytest.fixture
def store(tmp_path):
    return JsonFileStore(str(tmp_path / "lams_db.json"))


@pytest.fixture(params=["json", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "sqlite":
        return SqliteStore(str(tmp_path / "lams.sqlite3"))
    return JsonFileStore(str(tmp_path / "lams_db.json"))


@pytest.fixture
def users(store):
    ids = {}
    for role in (Role.ADMIN, Role.LEGAL_OFFICER, Role.FINANCE_OFFICER, Role.CASE_OFFICER, Role.CITIZEN):
        ids[role] = store.create_entity("user", {"name": role.replace("_", " ").title(), "role": role})["id"]
    return ids


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
def vault(store, tmp_path):
    return DocumentVault(store, str(tmp_path / "documents"), "https://lams.test")


@pytest.fixture
def executor(store, vault, renderer):
    executor = TransitionExecutor(store, vault=vault, notifier=StoreNotifier(store))
    register_default_guards(executor)
    return register_default_documents(executor, renderer)
