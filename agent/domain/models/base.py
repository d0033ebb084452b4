from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    """Timezone-aware current time used for all entity timestamps"""
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model: snake_case attributes, camelCase wire shape"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        """Serialize to the JSON wire shape"""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
