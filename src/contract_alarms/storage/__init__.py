"""Persistence layer - SQLAlchemy schema and repositories."""

from contract_alarms.storage.database import create_engine, create_session_factory, init_models
from contract_alarms.storage.repos import (
    AlarmRepository,
    ReceiptRepository,
    SyncStateRepository,
)

__all__ = [
    "AlarmRepository",
    "ReceiptRepository",
    "SyncStateRepository",
    "create_engine",
    "create_session_factory",
    "init_models",
]
