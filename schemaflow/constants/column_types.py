SCALAR_TYPE_NAMES = (
    "integer",
    "bigint",
    "float",
    "boolean",
    "text",
    "timestamp",
    "uuid",
    "json",
)

# (from, to) pairs that never lose information. Enum-ref columns widen to text.
WIDENING_CONVERSIONS = frozenset(
    {
        ("integer", "bigint"),
        ("integer", "float"),
        ("integer", "text"),
        ("bigint", "text"),
        ("float", "text"),
        ("boolean", "text"),
        ("timestamp", "text"),
        ("uuid", "text"),
        ("json", "text"),
        ("enum", "text"),
    }
)

POSTGRES_TYPE_MAPPING = {
    "integer": "INTEGER",
    "bigint": "BIGINT",
    "float": "DOUBLE PRECISION",
    "boolean": "BOOLEAN",
    "text": "TEXT",
    "timestamp": "TIMESTAMP",
    "uuid": "UUID",
    "json": "JSONB",
}

SQLITE_TYPE_MAPPING = {
    "integer": "INTEGER",
    "bigint": "BIGINT",
    "float": "REAL",
    "boolean": "BOOLEAN",
    "text": "TEXT",
    "timestamp": "TIMESTAMP",
    "uuid": "TEXT",
    "json": "TEXT",
    "enum": "TEXT",
}

# Postgres truncates identifiers beyond this many bytes.
MAX_IDENTIFIER_LENGTH = 63
