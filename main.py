import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, EmailStr, Field

import proxy
from ai import AIService
from auth import create_access_token, decode_access_token, resolve_auth_provider
from changes import ChangeFeed
from database import resolve_repository
from locks import make_locks
from logging_config import setup_logging
from schemas import (
    CustomQuestion,
    Event as EventSchema,
    LocationType,
    Message as MessageSchema,
    Notification as NotificationSchema,
    ParticipationMode,
    ParticipationType,
    Registration as RegistrationSchema,
    RegistrationStatus,
    Review as ReviewSchema,
    Role,
    User as UserSchema,
)
from settings import get_settings
from storage import ServiceError, StorageService
from tickets import ScanResult, render_ticket_png, scan_ticket

settings = get_settings()
setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
logger = logging.getLogger(__name__)

feed = ChangeFeed()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Backends are resolved once; routes only see the injected service
    storage = StorageService(resolve_repository(settings), locks=make_locks(settings), feed=feed)
    app.state.storage = storage
    app.state.auth = resolve_auth_provider(settings, storage)
    app.state.ai = AIService(settings.gemini_key, settings.GEMINI_MODEL)
    logger.info(f"🚀 EventHorizon API started (storage={storage.backend}, auth={app.state.auth.name})")
    yield
    logger.info("👋 Shutting down...")


app = FastAPI(title=settings.PROJECT_NAME, version=settings.VERSION, lifespan=lifespan)
proxy.add_cors(app)

if settings.MONGODB_URI:
    app.include_router(proxy.router, tags=["proxy"])


def get_storage(request: Request) -> StorageService:
    return request.app.state.storage


def get_auth(request: Request):
    return request.app.state.auth


def get_ai(request: Request) -> AIService:
    return request.app.state.ai


def raise_service_error(e: ServiceError):
    raise HTTPException(status_code=e.status_code, detail=str(e))


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class UserOut(BaseModel):
    id: str
    name: str
    email: EmailStr
    role: Role


class SignupPayload(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)
    name: str = Field(min_length=1)
    role: Role = "attendee"


class LoginPayload(BaseModel):
    email: EmailStr
    password: str


class ProfilePayload(BaseModel):
    name: str = Field(min_length=1)


def public_user(user: UserSchema) -> UserOut:
    return UserOut(id=user.id, name=user.name, email=user.email, role=user.role)


# Auth dependencies
def get_current_user(
    authorization: Optional[str] = Header(None),
    storage: StorageService = Depends(get_storage),
) -> UserSchema:
    if not authorization:
        raise HTTPException(status_code=401, detail="Not authenticated")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization header")
    payload = decode_access_token(token, settings)
    if not payload or not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token")
    user = storage.get_user(payload["sub"])
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def require_organizer(current: UserSchema = Depends(get_current_user)) -> UserSchema:
    if current.role != "organizer":
        raise HTTPException(status_code=403, detail="Only organizers can do this")
    return current


def can_manage(event: EventSchema, user: UserSchema) -> bool:
    collaborators = {e.strip().lower() for e in event.collaborator_emails}
    return event.organizer_id == user.id or user.email.lower() in collaborators


def managed_event(event_id: str, storage: StorageService, user: UserSchema) -> EventSchema:
    event = storage.get_event(event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    if not can_manage(event, user):
        raise HTTPException(status_code=403, detail="Only the organizer or collaborators can manage this event")
    return event


@app.get("/")
def root():
    return {"message": "EventHorizon API running"}


@app.get("/test")
def test_backends(storage: StorageService = Depends(get_storage), auth=Depends(get_auth)):
    return {
        "backend": "✅ Running",
        "storage": storage.backend,
        "auth": auth.name,
        "document_proxy": "✅ Mounted" if settings.MONGODB_URI else "❌ Not Set",
        "ai": "✅ Set" if settings.gemini_key else "❌ Not Set",
        "change_subscribers": feed.subscriber_count,
    }


# Auth endpoints
@app.post("/auth/signup", response_model=Token)
def signup(payload: SignupPayload, auth=Depends(get_auth)):
    user = auth.sign_up(payload.name, payload.email, payload.password, payload.role)
    if not user:
        raise HTTPException(status_code=400, detail="Email already registered")
    return Token(access_token=create_access_token(user, settings))


@app.post("/auth/login", response_model=Token)
def login(payload: LoginPayload, auth=Depends(get_auth)):
    user = auth.log_in(payload.email, payload.password)
    if not user:
        raise HTTPException(status_code=400, detail="Invalid credentials")
    return Token(access_token=create_access_token(user, settings))


@app.get("/me", response_model=UserOut)
def me(current: UserSchema = Depends(get_current_user)):
    return public_user(current)


@app.patch("/me", response_model=UserOut)
def update_me(payload: ProfilePayload, current: UserSchema = Depends(get_current_user), storage: StorageService = Depends(get_storage)):
    updated = current.model_copy(update={"name": payload.name})
    if not storage.save_user(updated):
        raise HTTPException(status_code=503, detail="Could not update profile")
    return public_user(updated)


@app.delete("/me")
def delete_me(current: UserSchema = Depends(get_current_user), auth=Depends(get_auth)):
    if not auth.delete_account(current.id):
        raise HTTPException(status_code=503, detail="Could not delete account")
    return {"ok": True}


# Events
class EventPayload(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    start: datetime
    end: datetime
    location: str = ""
    location_type: LocationType = "offline"
    capacity: int = Field(ge=0)
    image_url: Optional[str] = None
    is_registration_open: bool = True
    custom_questions: List[CustomQuestion] = []
    collaborator_emails: List[EmailStr] = []
    participation_mode: ParticipationMode = "individual"
    max_team_size: Optional[int] = Field(default=None, ge=1)


class RegistrationOpenPayload(BaseModel):
    is_registration_open: bool


@app.post("/events", response_model=EventSchema)
def create_event(payload: EventPayload, current: UserSchema = Depends(require_organizer), storage: StorageService = Depends(get_storage)):
    try:
        event = storage.save_event(EventSchema(organizer_id=current.id, **payload.model_dump()))
    except ServiceError as e:
        raise_service_error(e)
    if not event:
        raise HTTPException(status_code=503, detail="Failed to create event")
    return event


@app.get("/events", response_model=List[EventSchema])
def list_events(open_only: bool = False, storage: StorageService = Depends(get_storage)):
    events = storage.get_events()
    if open_only:
        events = [e for e in events if e.is_registration_open]
    return sorted(events, key=lambda e: e.start)


@app.get("/events/{event_id}", response_model=EventSchema)
def get_event(event_id: str, storage: StorageService = Depends(get_storage)):
    event = storage.get_event(event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    return event


@app.put("/events/{event_id}", response_model=EventSchema)
def update_event(event_id: str, payload: EventPayload, current: UserSchema = Depends(get_current_user), storage: StorageService = Depends(get_storage)):
    existing = managed_event(event_id, storage, current)
    data = payload.model_dump()
    # Opening and closing registration goes through PATCH /events/{id}/registration
    if "is_registration_open" not in payload.model_fields_set:
        data["is_registration_open"] = existing.is_registration_open
    event = EventSchema(id=event_id, organizer_id=existing.organizer_id, **data)
    try:
        updated = storage.update_event(event)
    except ServiceError as e:
        raise_service_error(e)
    if not updated:
        raise HTTPException(status_code=503, detail="Failed to update event")
    return event


@app.patch("/events/{event_id}/registration")
def set_registration_open(
    event_id: str,
    payload: RegistrationOpenPayload,
    current: UserSchema = Depends(get_current_user),
    storage: StorageService = Depends(get_storage),
):
    managed_event(event_id, storage, current)
    if not storage.set_registration_open(event_id, payload.is_registration_open):
        raise HTTPException(status_code=503, detail="Failed to update event")
    return {"ok": True, "is_registration_open": payload.is_registration_open}


@app.delete("/events/{event_id}")
def delete_event(event_id: str, current: UserSchema = Depends(get_current_user), storage: StorageService = Depends(get_storage)):
    event = managed_event(event_id, storage, current)
    if event.organizer_id != current.id:
        raise HTTPException(status_code=403, detail="Only the organizer can delete this event")
    if not storage.delete_event(event_id):
        raise HTTPException(status_code=503, detail="Failed to delete event")
    return {"ok": True}


# Registration
class RegisterPayload(BaseModel):
    answers: Dict[str, Any] = {}
    participation_type: ParticipationType = "individual"
    team_name: Optional[str] = None
    invite_code: Optional[str] = None


class StatusPayload(BaseModel):
    status: Literal["PENDING", "APPROVED", "REJECTED"]


class ScanPayload(BaseModel):
    data: str
    event_id: Optional[str] = None


@app.post("/events/{event_id}/register", response_model=RegistrationSchema)
def register_event(event_id: str, payload: RegisterPayload, current: UserSchema = Depends(get_current_user), storage: StorageService = Depends(get_storage)):
    reg = RegistrationSchema(
        event_id=event_id,
        participant_id=current.id,
        participant_name=current.name,
        participant_email=current.email,
        answers=payload.answers,
        participation_type=payload.participation_type,
    )
    try:
        created = storage.add_registration(reg, team_name=payload.team_name, invite_code=payload.invite_code)
    except ServiceError as e:
        raise_service_error(e)
    if not created:
        raise HTTPException(status_code=503, detail="Registration failed, please try again")

    event = storage.get_event(event_id)
    if event:
        storage.add_notification(
            NotificationSchema(
                user_id=event.organizer_id,
                type="registration",
                title="New Registration",
                body=f"{current.name} registered for {event.title} ({created.status.value})",
                event_id=event_id,
            )
        )
    return created


@app.get("/events/{event_id}/registrations", response_model=List[RegistrationSchema])
def event_registrations(event_id: str, current: UserSchema = Depends(get_current_user), storage: StorageService = Depends(get_storage)):
    managed_event(event_id, storage, current)
    return sorted(storage.get_registrations(event_id=event_id), key=lambda r: r.registered_at)


@app.get("/my/registrations", response_model=List[RegistrationSchema])
def my_registrations(current: UserSchema = Depends(get_current_user), storage: StorageService = Depends(get_storage)):
    return storage.get_registrations(participant_id=current.id)


def owned_or_managed_registration(registration_id: str, storage: StorageService, user: UserSchema) -> RegistrationSchema:
    reg = storage.get_registration(registration_id)
    if not reg:
        raise HTTPException(status_code=404, detail="Registration not found")
    if reg.participant_id == user.id:
        return reg
    managed_event(reg.event_id, storage, user)
    return reg


@app.patch("/registrations/{registration_id}/status")
def update_registration_status(
    registration_id: str,
    payload: StatusPayload,
    current: UserSchema = Depends(get_current_user),
    storage: StorageService = Depends(get_storage),
):
    reg = storage.get_registration(registration_id)
    if not reg:
        raise HTTPException(status_code=404, detail="Registration not found")
    event = managed_event(reg.event_id, storage, current)
    status = RegistrationStatus(payload.status)
    try:
        updated = storage.update_registration_status(registration_id, status)
    except ServiceError as e:
        raise_service_error(e)
    if not updated:
        raise HTTPException(status_code=503, detail="Failed to update status")
    if reg.participant_id:
        storage.add_notification(
            NotificationSchema(
                user_id=reg.participant_id,
                type="registration",
                title=f"Registration {status.value.lower()}",
                body=f"Your registration for {event.title} is now {status.value.lower()}.",
                event_id=event.id,
            )
        )
    return {"ok": True, "status": status.value}


@app.delete("/registrations/{registration_id}")
def cancel_registration(registration_id: str, current: UserSchema = Depends(get_current_user), storage: StorageService = Depends(get_storage)):
    owned_or_managed_registration(registration_id, storage, current)
    if not storage.delete_registration(registration_id):
        raise HTTPException(status_code=503, detail="Failed to cancel registration")
    return {"ok": True}


@app.post("/registrations/{registration_id}/attendance")
def mark_attendance(registration_id: str, current: UserSchema = Depends(get_current_user), storage: StorageService = Depends(get_storage)):
    reg = storage.get_registration(registration_id)
    if not reg:
        raise HTTPException(status_code=404, detail="Registration not found")
    managed_event(reg.event_id, storage, current)
    if not storage.mark_attendance(registration_id):
        raise HTTPException(status_code=400, detail="Failed to mark attendance. Ensure participant is approved.")
    return {"ok": True}


@app.get("/registrations/{registration_id}/ticket")
def ticket(registration_id: str, current: UserSchema = Depends(get_current_user), storage: StorageService = Depends(get_storage)):
    reg = owned_or_managed_registration(registration_id, storage, current)
    return Response(content=render_ticket_png(reg), media_type="image/png")


@app.post("/scan", response_model=ScanResult)
def scan(payload: ScanPayload, current: UserSchema = Depends(require_organizer), storage: StorageService = Depends(get_storage)):
    if payload.event_id:
        managed_event(payload.event_id, storage, current)
    return scan_ticket(storage, payload.data, event_id=payload.event_id)


@app.post("/events/{event_id}/reminders")
def send_reminders(event_id: str, current: UserSchema = Depends(get_current_user), storage: StorageService = Depends(get_storage)):
    managed_event(event_id, storage, current)
    return {"sent": storage.send_reminders(event_id)}


# Teams
@app.get("/events/{event_id}/teams")
def event_teams(event_id: str, current: UserSchema = Depends(get_current_user), storage: StorageService = Depends(get_storage)):
    managed_event(event_id, storage, current)
    return {"results": [t.model_dump(mode="json") for t in storage.get_teams(event_id)]}


@app.get("/teams/{invite_code}")
def team_by_invite_code(invite_code: str, current: UserSchema = Depends(get_current_user), storage: StorageService = Depends(get_storage)):
    team = storage.get_team_by_invite_code(invite_code)
    if not team:
        raise HTTPException(status_code=404, detail="Team not found")
    event = storage.get_event(team.event_id)
    return {
        "id": team.id,
        "name": team.name,
        "event_id": team.event_id,
        "member_count": len(team.members),
        "max_team_size": event.max_team_size if event else None,
    }


# Discussion and reviews
class MessagePayload(BaseModel):
    text: str = Field(min_length=1, max_length=2000)


class ReviewPayload(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None


@app.get("/events/{event_id}/messages", response_model=List[MessageSchema])
def event_messages(event_id: str, storage: StorageService = Depends(get_storage)):
    return storage.get_messages(event_id)


@app.post("/events/{event_id}/messages", response_model=MessageSchema)
def post_message(event_id: str, payload: MessagePayload, current: UserSchema = Depends(get_current_user), storage: StorageService = Depends(get_storage)):
    try:
        message = storage.add_message(MessageSchema(event_id=event_id, user_id=current.id, user_name=current.name, text=payload.text))
    except ServiceError as e:
        raise_service_error(e)
    if not message:
        raise HTTPException(status_code=503, detail="Failed to post message")
    return message


@app.get("/events/{event_id}/reviews", response_model=List[ReviewSchema])
def event_reviews(event_id: str, storage: StorageService = Depends(get_storage)):
    return storage.get_reviews(event_id)


@app.post("/events/{event_id}/reviews", response_model=ReviewSchema)
def post_review(event_id: str, payload: ReviewPayload, current: UserSchema = Depends(get_current_user), storage: StorageService = Depends(get_storage)):
    try:
        review = storage.add_review(
            ReviewSchema(event_id=event_id, user_id=current.id, user_name=current.name, rating=payload.rating, comment=payload.comment)
        )
    except ServiceError as e:
        raise_service_error(e)
    if not review:
        raise HTTPException(status_code=503, detail="Failed to save review")
    return review


# Notifications
@app.get("/notifications")
def my_notifications(current: UserSchema = Depends(get_current_user), storage: StorageService = Depends(get_storage)):
    return {"results": [n.model_dump(mode="json") for n in storage.get_notifications(current.id)]}


@app.post("/notifications/{notif_id}/read")
def mark_read(notif_id: str, current: UserSchema = Depends(get_current_user), storage: StorageService = Depends(get_storage)):
    if not storage.mark_notification_read(notif_id, current.id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"ok": True}


# AI
class DescriptionPayload(BaseModel):
    title: str = Field(min_length=1)
    start: datetime
    location: str = ""


@app.post("/ai/description")
def ai_description(payload: DescriptionPayload, current: UserSchema = Depends(require_organizer), ai: AIService = Depends(get_ai)):
    return {"description": ai.generate_event_description(payload.title, payload.start, payload.location)}


@app.get("/ai/recommendations", response_model=List[EventSchema])
def ai_recommendations(
    limit: int = 3,
    current: UserSchema = Depends(get_current_user),
    storage: StorageService = Depends(get_storage),
    ai: AIService = Depends(get_ai),
):
    return ai.recommend_events(current, storage.get_events(), storage.get_registrations(participant_id=current.id), limit=limit)


# Live updates
@app.get("/changes")
async def changes(current: UserSchema = Depends(get_current_user)):
    return StreamingResponse(feed.stream(), media_type="text/event-stream", headers={"Cache-Control": "no-cache"})
