# apps/api/services/__init__.py
"""
Factories wiring the workflow core from Django settings.

    store    = get_store()
    executor = get_executor()
    vault    = get_vault(store)
    services = get_services(executor)
"""

import os

from django.conf import settings


def _setting(name, default):
    return getattr(settings, name, default)


def get_store():
    """JSON file store by default; ``LAMS_STORE_BACKEND = "sqlite"`` for the SQLite one."""
    backend = (_setting("LAMS_STORE_BACKEND", "json") or "json").lower()
    path = _setting("LAMS_DB_PATH", None)
    if backend == "sqlite":
        path = path or os.path.join(str(settings.BASE_DIR), "lams.sqlite3")
        from .sql_store import SqliteStore
        return SqliteStore(path)
    if backend != "json":
        raise ValueError(f"Unknown LAMS_STORE_BACKEND: {backend}")
    from .store import JsonFileStore
    return JsonFileStore(path or os.path.join(str(settings.BASE_DIR), "lams_db.json"))


def get_vault(store):
    from .document_integrity import DocumentVault
    documents_dir = _setting("LAMS_DOCUMENTS_DIR", None) or os.path.join(str(settings.BASE_DIR), "documents")
    return DocumentVault(store, documents_dir, _setting("LAMS_PUBLIC_BASE_URL", "https://bhuarjan.com/bhuarjan"))


def get_renderer():
    from .pdf_renderer import PdfRenderer
    return PdfRenderer(_setting("LAMS_ORGANISATION", "Land Acquisition Management System"))


def get_executor(store=None, renderer=None):
    """Executor with the vault, the in-app notifier, the default guards and document hooks."""
    from .documents import register_default_documents
    from .guards import register_default_guards
    from .notifier import StoreNotifier
    from .transition_executor import TransitionExecutor

    store = store or get_store()
    executor = TransitionExecutor(store, vault=get_vault(store), notifier=StoreNotifier(store))
    register_default_guards(executor, int(_setting("LAMS_OBJECTION_WINDOW_DAYS", 30)))
    return register_default_documents(executor, renderer or get_renderer())


def get_services(executor=None):
    """Route-facing services sharing one executor, keyed by workflow."""
    from .compensation_service import CompensationService
    from .land_notification_service import LandNotificationService
    from .objection_service import ObjectionService
    from .possession_service import PossessionService
    from .sia_service import SiaService

    renderer = get_renderer()
    executor = executor or get_executor(renderer=renderer)
    padding = int(_setting("LAMS_REF_PADDING", 3))
    return {
        "sia": SiaService(executor, ref_padding=padding),
        "land_notification": LandNotificationService(
            executor,
            objection_window_days=int(_setting("LAMS_OBJECTION_WINDOW_DAYS", 30)),
            ref_padding=padding,
        ),
        "objection": ObjectionService(executor),
        "award": CompensationService(executor, renderer=renderer, ref_padding=padding),
        "possession": PossessionService(executor, ref_padding=padding),
    }
