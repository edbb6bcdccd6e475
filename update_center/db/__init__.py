"""Database module for Update Center state management and persistence."""

from update_center.db.connection import (
    configure,
    create_db_engine,
    create_session_factory,
    get_session_factory,
    init_db,
    session_scope,
)
from update_center.db.models import (
    TERMINAL_BATCH_STATES,
    ActivityLogEntry,
    ActivityPhase,
    ActivityType,
    BatchItem,
    BatchRequest,
    BatchState,
    ItemState,
    RiskLevel,
    UpdateLevel,
)

__all__ = [
    # Models
    "BatchRequest",
    "BatchItem",
    "ActivityLogEntry",
    # Enums
    "BatchState",
    "ItemState",
    "UpdateLevel",
    "RiskLevel",
    "ActivityType",
    "ActivityPhase",
    "TERMINAL_BATCH_STATES",
    # Connection
    "configure",
    "create_db_engine",
    "create_session_factory",
    "get_session_factory",
    "session_scope",
    "init_db",
]
