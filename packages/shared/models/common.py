from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    """Base for wire models: snake_case attributes, camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


@dataclass(frozen=True)
class RequestContext:
    """Caller identity threaded explicitly through every core operation."""

    tenant_id: str
    actor_id: str | None = None
    correlation_id: str | None = None


def iso_utc(value: datetime | date | None) -> str | None:
    """ISO-8601 text for a stored timestamp. Naive values are treated as UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    return value.isoformat()
