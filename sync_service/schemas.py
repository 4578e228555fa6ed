from datetime import datetime
from enum import Enum
import re
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

USER_CREATED = "clerk/user.created"
USER_UPDATED = "clerk/user.updated"
USER_DELETED = "clerk/user.deleted"
ORDER_CREATED = "order/created"


class MalformedEvent(Exception):
    """Raised when an envelope carries no data payload or the payload does not match its schema.
    """


class SyncOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    NOT_FOUND = "not_found"
    SKIPPED = "skipped"


class EventEnvelope(BaseModel):
    """Outer event object delivered by the dispatcher.
    """
    id: Optional[str] = None
    name: str = ""
    data: Optional[dict[str, Any]] = None
    ts: Optional[int] = None


class EmailAddress(BaseModel):
    email_address: Optional[str] = None


class UserEventData(BaseModel):
    """Payload of clerk/user.created and clerk/user.updated.
    """
    id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email_addresses: Optional[list[EmailAddress]] = None
    image_url: Optional[str] = None

    @property
    def display_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    @property
    def primary_email(self) -> Optional[str]:
        if not self.email_addresses:
            return None
        return self.email_addresses[0].email_address

    def to_record(self) -> dict:
        """Identity-derived columns of the users table. Cart contents are not included.
        """
        return {
            "email": self.primary_email,
            "name": self.display_name,
            "image_url": self.image_url,
        }


class UserDeletedData(BaseModel):
    """Payload of clerk/user.deleted.
    """
    id: str


class BatchResult(BaseModel):
    success: bool
    processed: int


def parse_event(envelope: Optional[EventEnvelope], schema: type[BaseModel]):
    """Validate the data payload of an envelope against the schema of its event kind.

    :param envelope: envelope delivered by the dispatcher
    :type envelope: EventEnvelope
    :param schema: pydantic model of the expected payload
    :type schema: type[BaseModel]
    :raises MalformedEvent: if the data payload is missing or does not validate
    :return: the validated payload
    :rtype: BaseModel
    """
    if envelope is None or envelope.data is None:
        raise MalformedEvent(f"Missing event.data: {envelope}")
    try:
        return schema.model_validate(envelope.data)
    except ValidationError as e:
        raise MalformedEvent(f"Invalid event.data for {schema.__name__}: {e}") from e


_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}


def parse_duration(value: Union[str, int, float]) -> float:
    """Convert '5s', '500ms', '1m' or a plain number of seconds to seconds."""
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_RE.match(value)
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return float(amount) * _DURATION_UNITS[unit or "s"]


class BatchConfig(BaseModel):
    max_size: int = Field(25, gt=0)
    timeout: float = 5.0

    @field_validator("timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, value):
        seconds = parse_duration(value)
        if seconds <= 0:
            raise ValueError("timeout must be positive")
        return seconds


class Trigger(BaseModel):
    event: str
    batch: Optional[BatchConfig] = None


class FunctionOut(BaseModel):
    """Registration metadata of a function as served to operators.
    """
    id: str
    trigger: Trigger
    retries: int


class FailedRunOut(BaseModel):
    id: int
    function_id: str
    event_name: str
    events: list[dict[str, Any]]
    error: str
    attempts: int
    failed_at: Optional[datetime] = None

    class Config:
        from_attributes = True
