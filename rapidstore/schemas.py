"""
Pydantic schemas for insert payload validation.

One model per insertable resource kind. Each model:
- rejects payloads missing a hard-required field
- injects defaults for soft-required fields
- passes unknown keys through unchanged (extra="allow")

Updates are partial and never go through these models.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from rapidstore.models import utcnow


_PAYLOAD_CONFIG = ConfigDict(extra="allow", use_enum_values=True)


class Direction(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class TimestampedPayload(BaseModel):
    """Base for payloads whose time defaults to now, also when sent as null."""
    model_config = _PAYLOAD_CONFIG

    time: datetime = Field(default_factory=utcnow, description="Row timestamp (UTC)")

    @field_validator("time", mode="before")
    @classmethod
    def default_time_when_null(cls, v: Any) -> Any:
        return utcnow() if v is None else v


# =============================================================================
# Messaging Payloads
# =============================================================================

class MessagePayload(TimestampedPayload):
    """
    Payload for inserting a message.

    Validates:
    - message: text body, required
    - monitor_id: sending/receiving monitor, required
    - direction: incoming or outgoing, required
    - time: defaults to the current UTC time
    - is_virtual: defaults to False
    """
    model_config = _PAYLOAD_CONFIG

    message: str = Field(..., description="Message text")
    monitor_id: int = Field(..., description="Monitor the message belongs to")
    direction: Direction = Field(..., description="incoming or outgoing")
    is_virtual: bool = Field(default=False, description="True for messages not sent over SMS")


class MonitorPayload(BaseModel):
    """
    Payload for inserting a monitor.

    Only phone is required. Alias falls back to the phone number,
    names and email to empty strings.
    """
    model_config = _PAYLOAD_CONFIG

    phone: str = Field(..., min_length=1, description="Phone number, the monitor's natural key")
    alias: Optional[str] = Field(default=None, description="Display name, defaults to phone")
    email: Optional[str] = ""
    first_name: Optional[str] = ""
    last_name: Optional[str] = ""
    incoming_messages: int = 0

    @model_validator(mode="before")
    @classmethod
    def default_alias_to_phone(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("alias") is None and "phone" in data:
            data = {**data, "alias": data["phone"]}
        return data

    @field_validator("email", "first_name", "last_name", mode="before")
    @classmethod
    def empty_string_when_null(cls, v: Any) -> Any:
        return "" if v is None else v


# =============================================================================
# Project / Survey Payloads
# =============================================================================

class ProjectPayload(TimestampedPayload):
    model_config = _PAYLOAD_CONFIG

    name: str = Field(..., description="Project name")
    is_active: bool = True


class SurveyPayload(TimestampedPayload):
    model_config = _PAYLOAD_CONFIG

    surveyname: Optional[str] = None


# =============================================================================
# Form Definition Payloads
# =============================================================================

class FormPayload(BaseModel):
    """Payload for inserting a form definition."""
    model_config = _PAYLOAD_CONFIG

    formname: str = Field(..., description="Form name")
    description: str = Field(..., description="Form description")
    parsemethod: str = Field(..., description="How incoming messages are parsed for this form")
    prefix: Optional[str] = Field(default=None, description="Keyword naming the form's data table")


class FieldPayload(BaseModel):
    """Payload for inserting a field. All five attributes are required."""
    model_config = _PAYLOAD_CONFIG

    form_id: int
    name: str
    fieldtype_id: int
    prompt: str
    sequence: int


class FieldTypePayload(BaseModel):
    """Payload for inserting a field type. The id is caller supplied."""
    model_config = _PAYLOAD_CONFIG

    id: int
    name: str
    regex: str
    datatype: str


class FormDataPayload(BaseModel):
    """
    Payload for inserting one form response.

    Only the response message reference is fixed; the col_<field> values
    depend on the form and are passed through as extras.
    """
    model_config = _PAYLOAD_CONFIG

    message_id: int = Field(..., description="Message this response was parsed from")
