from uuid import UUID

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class IDModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID


class CamelModel(BaseModel):
    """Serializes with camelCase keys for consumers outside the core."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

