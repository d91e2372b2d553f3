# file: app/schema.py
from typing import Any, ClassVar, List, Optional
from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator, model_validator
from pydantic.alias_generators import to_camel

class CamelModel(BaseModel):
    """Wire models use camelCase keys; Python code uses snake_case attributes."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

class Contact(CamelModel):
    id: StrictInt = Field(gt=0)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    company: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    website: Optional[str] = None
    phone: Optional[str] = None
    metadata: Any = None

class Identity(CamelModel):
    name: str = Field(min_length=1)
    band_name: Optional[str] = None
    genre: Optional[str] = None
    area: Optional[str] = None
    bio: Optional[str] = None
    website: Optional[str] = None

class GenerationRequest(CamelModel):
    operation_id: str = Field(min_length=1)
    campaign_id: Optional[StrictInt] = Field(default=None, gt=0)
    prompt: str = Field(min_length=1)
    booking_for: Optional[str] = None
    identity: Identity
    contact_ids: Optional[List[StrictInt]] = Field(default=None, min_length=1)
    contacts: Optional[List[Contact]] = Field(default=None, min_length=1)
    models: Optional[List[str]] = None
    concurrency: Optional[StrictInt] = Field(default=None, ge=1, le=20)

    @field_validator("contact_ids")
    @classmethod
    def _positive_ids(cls, v: Optional[List[int]]) -> Optional[List[int]]:
        if v is not None and any(i <= 0 for i in v):
            raise ValueError("contact ids must be positive integers")
        return v

    @field_validator("models")
    @classmethod
    def _non_empty_models(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is not None and any(not m for m in v):
            raise ValueError("model identifiers must be non-empty")
        return v

    @field_validator("contacts")
    @classmethod
    def _unique_contact_ids(cls, v: Optional[List[Contact]]) -> Optional[List[Contact]]:
        if v is not None and len({c.id for c in v}) != len(v):
            raise ValueError("contact ids must be unique within a request")
        return v

    @model_validator(mode="after")
    def _require_contacts(self) -> "GenerationRequest":
        if not self.contact_ids and not self.contacts:
            raise ValueError("Must provide either contactIds or contacts")
        return self

# ---- streamed events ----

class StreamEvent(CamelModel):
    event: ClassVar[str] = ""
    operation_id: str

    def payload(self) -> dict:
        return self.model_dump(by_alias=True)

class ProgressEvent(StreamEvent):
    event: ClassVar[str] = "progress"
    completed: int
    total: int
    succeeded: int
    failed: int

class DraftEvent(StreamEvent):
    event: ClassVar[str] = "draft"
    contact_id: int
    draft_index: int
    model: str
    subject: str
    message: str

class ErrorEvent(StreamEvent):
    event: ClassVar[str] = "error"
    contact_id: int
    draft_index: int
    model: str
    code: str
    message: str
    retry_count: int

class DoneEvent(StreamEvent):
    event: ClassVar[str] = "done"
    total: int
    succeeded: int
    failed: int
    duration_ms: int
