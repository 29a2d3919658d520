from schemaflow.models.history import (
    DriftAcknowledgement,
    MigrationLock,
    MigrationRecordEntry,
    MigrationResolution,
    utcnow,
)

__all__ = [
    "DriftAcknowledgement",
    "MigrationLock",
    "MigrationRecordEntry",
    "MigrationResolution",
    "utcnow",
]
