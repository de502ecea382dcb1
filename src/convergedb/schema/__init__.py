"""
Declarative schema management for convergedb.
"""

from .definitions import (
    IndexKind,
    IndexSpec,
    PRIMARY_KEY_FIELD,
    TableSchema,
    load_table_schemas,
    resolve_index_spec,
)
from .fields import FieldSpec, canonicalize_field_spec, parse_field_spec
from .reconciler import (
    ChangeType,
    OperationMode,
    ReconciliationResult,
    ReconciliationStatus,
    SchemaChange,
    SchemaReconciler,
)

__all__ = [
    "ChangeType",
    "FieldSpec",
    "IndexKind",
    "IndexSpec",
    "OperationMode",
    "PRIMARY_KEY_FIELD",
    "ReconciliationResult",
    "ReconciliationStatus",
    "SchemaChange",
    "SchemaReconciler",
    "TableSchema",
    "canonicalize_field_spec",
    "load_table_schemas",
    "parse_field_spec",
]
