from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Mapping, Optional

from pydantic import BaseModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DBSerializableModel(BaseModel):
    """
    Persisted record. Stores call `serialize_for_db()` to write it, and the
    schema generator reads `db_schema()` to render DDL and validators
    offline; nothing here touches a database.
    """

    collection_name: ClassVar[str]

    # Key field for the generated schema
    primary_key: ClassVar[Optional[str]] = "id"

    def serialize_for_db(self) -> Dict[str, Any]:
        # Datetimes and enums stay native; the drivers handle them.
        return self.model_dump(mode="python", by_alias=True, exclude_none=True)

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """Logical description of the record: field types, nullability, defaults."""
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in fields.items():
            field_type = cls._map_type(field.annotation)

            properties[name] = {
                "type": field_type,
                "nullable": not field.is_required(),
                "default": None if field.is_required() else field.get_default(call_default_factory=False),
                "description": field.description,
            }

            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "properties": properties,
            "required": required,
        }

    @staticmethod
    def _map_type(annotation: Any) -> str:
        args = getattr(annotation, "__args__", None)
        origin: Any = getattr(annotation, "__origin__", None)
        if origin is list or origin is tuple or origin is set:
            return "array"
        if origin is dict:
            return "object"
        # Optional[X] -> X
        if args and type(None) in args:
            inner = [a for a in args if a is not type(None)]
            if len(inner) == 1:
                return DBSerializableModel._map_type(inner[0])

        if annotation is bool:
            return "boolean"
        if annotation is int:
            return "integer"
        if annotation is float:
            return "number"
        if annotation is str:
            return "string"
        if isinstance(annotation, type) and issubclass(annotation, str):
            # str-valued enums
            return "string"

        # datetime -> "datetime", anything else by class name
        name = getattr(annotation, "__name__", "object")
        return name.lower()
