"""Persistence layer for stepwright step records."""

from __future__ import annotations

import os
from typing import Optional

from ..config import StepwrightConfig, load_config
from .inmemory import InMemoryStepRecordStore
from .jsonfile import JsonFileStepRecordStore
from .models import ControllerConfig, StepRecord, WorkflowRecord
from .sqlite import SQLiteStepRecordStore
from .store import StepRecordStore

_store_instance: StepRecordStore | None = None


def get_store(
    store_url: Optional[str] = None, config: Optional[StepwrightConfig] = None
) -> StepRecordStore:
    """Factory function to obtain a step record store.

    The backend is selected from ``store_url`` which can be provided
    explicitly, via the ``STEPWRIGHT_STORE_URL`` environment variable, or
    from the loaded configuration. Supported urls are ``memory://``,
    ``json://<path>`` and ``sqlite://<path>``.
    """

    global _store_instance
    if _store_instance is not None and store_url is None and config is None:
        return _store_instance

    store_url = store_url or os.getenv("STEPWRIGHT_STORE_URL")
    if not store_url:
        config = config or load_config()
        backend = config.store.backend
        if backend == "inmemory":
            store_url = "memory://"
        else:
            store_url = f"{backend}://{config.store_path()}"

    if store_url.startswith("memory://"):
        _store_instance = InMemoryStepRecordStore()
    elif store_url.startswith("json://"):
        _store_instance = JsonFileStepRecordStore(store_url.replace("json://", "", 1))
    elif store_url.startswith("sqlite://"):
        _store_instance = SQLiteStepRecordStore(store_url.replace("sqlite://", "", 1))
    else:
        raise ValueError(f"Unsupported store backend: {store_url}")

    return _store_instance


__all__ = [
    "ControllerConfig",
    "StepRecord",
    "WorkflowRecord",
    "StepRecordStore",
    "InMemoryStepRecordStore",
    "JsonFileStepRecordStore",
    "SQLiteStepRecordStore",
    "get_store",
]
