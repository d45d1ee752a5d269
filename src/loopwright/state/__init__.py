from loopwright.state.records import (
    JsonFileRecordStore,
    MemoryRecordStore,
    RecordStore,
    StateError,
)
from loopwright.state.store import (
    TERMINAL_STATUSES,
    SessionState,
    SessionStatus,
    StateStore,
)

__all__ = [
    "JsonFileRecordStore",
    "MemoryRecordStore",
    "RecordStore",
    "SessionState",
    "SessionStatus",
    "StateError",
    "StateStore",
    "TERMINAL_STATUSES",
]
