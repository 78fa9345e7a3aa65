"""Shared base for persisted entities."""

import time

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    """Current Unix time in milliseconds."""
    return int(time.time() * 1000)


class WireModel(BaseModel):
    """Entity whose field names on the wire are camelCase.

    Attributes stay snake_case in Python; `to_wire()` produces the
    camelCase document shared by every storage backend.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self, exclude_none: bool = False) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=exclude_none)


class UpdateModel(WireModel):
    """Partial update: only fields that are not None are applied."""

    def changes(self) -> dict:
        """Changed fields keyed by Python attribute name."""
        return {
            name: getattr(self, name)
            for name in type(self).model_fields
            if getattr(self, name) is not None
        }

    def is_empty(self) -> bool:
        return not self.changes()
