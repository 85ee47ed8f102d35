"""
Database Schemas for EventHorizon

Each Pydantic model corresponds to a document collection.
Collection name = lowercase plural of the class name (events, registrations, ...).
Documents are stored as JSON (timestamps as ISO-8601 UTC strings) so that the
same shape works for MongoDB, Firestore and the local JSON store.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


Role = Literal["organizer", "attendee"]
LocationType = Literal["online", "offline"]
QuestionType = Literal["text", "select", "boolean"]
ParticipationMode = Literal["individual", "team", "both"]
ParticipationType = Literal["individual", "team"]


class RegistrationStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    WAITLISTED = "WAITLISTED"


# Core users and roles
class User(BaseModel):
    id: Optional[str] = None
    name: str
    email: EmailStr
    role: Role = "attendee"
    # Only populated when auth is not delegated to Firebase
    password_hash: Optional[str] = None


class CustomQuestion(BaseModel):
    id: str
    question: str
    type: QuestionType = "text"
    required: bool = False
    options: Optional[List[str]] = None


class Event(BaseModel):
    id: Optional[str] = None
    title: str
    description: str = ""
    start: datetime
    end: datetime
    location: str = ""
    location_type: LocationType = "offline"
    capacity: int = Field(ge=0)
    image_url: Optional[str] = None
    organizer_id: str
    is_registration_open: bool = True
    custom_questions: List[CustomQuestion] = Field(default_factory=list)
    collaborator_emails: List[str] = Field(default_factory=list)
    participation_mode: ParticipationMode = "individual"
    max_team_size: Optional[int] = Field(default=None, ge=1)

    @field_validator("start", "end")
    @classmethod
    def ensure_utc(cls, value):
        return as_utc(value)


class Registration(BaseModel):
    id: Optional[str] = None
    event_id: str
    participant_id: Optional[str] = None
    participant_name: str
    participant_email: EmailStr
    status: RegistrationStatus = RegistrationStatus.PENDING
    attended: bool = False
    attendance_time: Optional[datetime] = None
    registered_at: datetime = Field(default_factory=utcnow)
    answers: Dict[str, Any] = Field(default_factory=dict, description="question id -> answer")
    team_id: Optional[str] = None
    team_name: Optional[str] = None
    is_team_leader: bool = False
    participation_type: ParticipationType = "individual"

    @field_validator("registered_at", "attendance_time")
    @classmethod
    def ensure_utc(cls, value):
        return as_utc(value)


class TeamMember(BaseModel):
    user_id: str
    user_name: str
    email: EmailStr


class Team(BaseModel):
    id: Optional[str] = None
    name: str
    event_id: str
    leader_id: str
    members: List[TeamMember] = Field(default_factory=list)
    invite_code: str
    created_at: datetime = Field(default_factory=utcnow)


class Notification(BaseModel):
    id: Optional[str] = None
    user_id: str
    type: Literal["registration", "reminder", "waitlist", "system"] = "system"
    title: str
    body: str
    event_id: Optional[str] = None
    read: bool = False
    created_at: datetime = Field(default_factory=utcnow)


# Event discussion board
class Message(BaseModel):
    id: Optional[str] = None
    event_id: str
    user_id: str
    user_name: str
    text: str = Field(min_length=1, max_length=2000)
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at")
    @classmethod
    def ensure_utc(cls, value):
        return as_utc(value)


class Review(BaseModel):
    id: Optional[str] = None
    event_id: str
    user_id: str
    user_name: str
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
