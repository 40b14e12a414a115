from __future__ import annotations

import argparse
import json
from typing import Any, Dict, List, Type

from .models.base import DBSerializableModel
from .models.checkout import CheckoutSession
from .models.ledger import CreditAccount, LedgerEntry
from .models.system_event import SystemEvent


MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    CreditAccount,
    LedgerEntry,
    CheckoutSession,
    SystemEvent,
]

# Indexes the stores rely on; `where` marks a partial index.
INDEX_REGISTRY: Dict[str, List[Dict[str, Any]]] = {
    LedgerEntry.collection_name: [
        {"name": "ledger_user_recent", "fields": ["user_id", "created_at", "sequence"]},
        {
            "name": "ledger_purchase_order_unique",
            "fields": ["order_id"],
            "unique": True,
            "where": {"reason": "purchase"},
        },
    ],
    CheckoutSession.collection_name: [
        {"name": "checkout_status_created", "fields": ["status", "created_at"]},
    ],
    SystemEvent.collection_name: [
        {"name": "system_events_created", "fields": ["created_at"]},
    ],
}


def generate_logical_schema() -> Dict[str, Any]:
    """
    Backend-agnostic schema for every registered model, with the indexes
    each collection needs. SQL and NoSQL renderers both start from this.
    """
    schema: Dict[str, Any] = {}
    for model in MODEL_REGISTRY:
        spec = model.db_schema()
        spec["indexes"] = INDEX_REGISTRY.get(model.collection_name, [])
        schema[model.collection_name] = spec
    return schema


def render_sql_ddl(schema: Dict[str, Any], dialect: str = "postgres") -> str:
    lines: List[str] = []
    for table_name, spec in schema.items():
        props = spec["properties"]
        pk = spec.get("primary_key") or "id"
        columns: List[str] = []
        for field_name, meta in props.items():
            sql_type = _map_logical_to_sql(meta["type"], dialect=dialect)
            nullable = "NOT NULL" if field_name in spec.get("required", []) or field_name == pk else "NULL"
            columns.append(f'    "{field_name}" {sql_type} {nullable}')
        columns.append(f'    PRIMARY KEY ("{pk}")')
        lines.append(f'CREATE TABLE IF NOT EXISTS "{table_name}" (\n' + ",\n".join(columns) + "\n);")
        for index in spec.get("indexes", []):
            lines.append(_render_index(table_name, index, dialect))
        lines.append("")
    return "\n".join(lines)


def _render_index(table_name: str, index: Dict[str, Any], dialect: str) -> str:
    unique = "UNIQUE " if index.get("unique") else ""
    cols = ", ".join(f'"{c}"' for c in index["fields"])
    stmt = f'CREATE {unique}INDEX IF NOT EXISTS "{index["name"]}" ON "{table_name}" ({cols})'
    where = index.get("where")
    if where and dialect == "postgres":
        cond = " AND ".join(f"\"{k}\" = '{v}'" for k, v in where.items())
        stmt += f" WHERE {cond}"
    return stmt + ";"


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    """JSON suitable for configuring MongoDB validators and indexes."""
    return json.dumps(schema, indent=2, default=str)


def _map_logical_to_sql(logical_type: str, dialect: str) -> str:
    logical_type = logical_type.lower()
    if logical_type == "integer":
        return "BIGINT"
    if logical_type == "number":
        return "DOUBLE PRECISION"
    if logical_type == "boolean":
        return "BOOLEAN"
    if logical_type == "string":
        return "TEXT"
    if logical_type in {"datetime", "date"}:
        return "TIMESTAMPTZ" if dialect == "postgres" else "TIMESTAMP"
    if logical_type == "object":
        return "JSONB" if dialect == "postgres" else "JSON"
    return "TEXT"


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate DB schemas for the credit ledger.")
    parser.add_argument("--backend", choices=["sql", "nosql"], required=True)
    parser.add_argument("--dialect", default="postgres", help="SQL dialect hint (postgres, mysql).")
    args = parser.parse_args()

    schema = generate_logical_schema()
    if args.backend == "sql":
        print(render_sql_ddl(schema, dialect=args.dialect))
    else:
        print(render_nosql_schema(schema))


if __name__ == "__main__":
    main()
