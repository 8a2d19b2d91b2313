from datetime import datetime
from enum import Enum
from typing import Any, List, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field


# --- subscriptions ---

class SubscriptionCriteria(BaseModel):
    """What to watch. Required fields are checked by the store so callers get a ValidationError."""
    institution_key: Optional[str] = None
    course_key: Optional[str] = None
    section_key: Optional[str] = None
    term_key: Optional[str] = None


class SubscriptionUpdate(BaseModel):
    """Partial update; only fields that were explicitly set are written."""
    institution_key: Optional[str] = None
    course_key: Optional[str] = None
    section_key: Optional[str] = None
    term_key: Optional[str] = None
    contact: Optional[str] = None
    enabled: Optional[bool] = None
    verified: Optional[bool] = None

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True)


class Subscription(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    access_key: str
    institution_key: str
    course_key: str
    section_key: Optional[str] = None
    term_key: str
    contact: str
    enabled: bool = True
    verified: bool = False
    last_run_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# --- run ledger ---

class RunCreate(BaseModel):
    subscription_id: Optional[int] = None
    notification_sent: Optional[bool] = None
    error: Optional[str] = None
    source_data: Optional[Any] = None


class Run(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    subscription_id: int
    error: Optional[str] = None
    source_data: Optional[Any] = None
    timestamp: datetime
    notification_sent: bool


class ActiveSubscription(BaseModel):
    """A due subscription joined with its latest run; lives for one worker cycle."""
    model_config = ConfigDict(frozen=True)

    subscription: Subscription
    last_run: Optional[Run] = None

    @property
    def notification_sent(self) -> bool:
        return bool(self.last_run and self.last_run.notification_sent)


# --- course data (external source) ---

class Meeting(BaseModel):
    id: Optional[str] = None
    type: Optional[str] = None
    name: Optional[str] = None
    available: Optional[int] = None
    capacity: Optional[int] = None


class Section(BaseModel):
    id: Optional[str] = None
    available: Optional[int] = None
    capacity: Optional[int] = None
    meetings: Optional[List[Meeting]] = Field(default_factory=list)


class CourseData(BaseModel):
    sections: Optional[List[Section]] = None


class CourseKey(NamedTuple):
    institution_key: str
    course_key: str
    term_key: str


class SlotEvent(BaseModel):
    available_slots: int = 0
    total_slots: int = 0


# --- delivery ---

class ContactKind(str, Enum):
    SMS = "sms"
    EMAIL = "email"
    UNKNOWN = "unknown"


class ResolvedContact(NamedTuple):
    kind: ContactKind
    normalized: str


class DeliveryReceipt(BaseModel):
    channel: str
    destination: str
    sid: Optional[str] = None
    status: Optional[str] = None
    delivered: bool = True


# --- worker ---

class CycleSummary(BaseModel):
    total: int = 0
    sent: int = 0
