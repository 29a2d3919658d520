from schemaflow.services.migration_applier import BackfillEvidence, MigrationApplier
from schemaflow.services.migration_engine import MigrationEngine, MigrationPlan, ResultCode
from schemaflow.services.migration_history import MigrationHistoryStore, UnitStatus
from schemaflow.services.migration_planner import MigrationPlanner, MigrationUnit
from schemaflow.services.schema_differ import diff
from schemaflow.services.schema_source import parse, serialize

__all__ = [
	"BackfillEvidence",
	"MigrationApplier",
	"MigrationEngine",
	"MigrationHistoryStore",
	"MigrationPlan",
	"MigrationPlanner",
	"MigrationUnit",
	"ResultCode",
	"UnitStatus",
	"diff",
	"parse",
	"serialize",
]
