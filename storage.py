"""
Storage service: typed CRUD plus the registration, waitlist and team rules.

One implementation serves every backend; the Repository passed in decides
where documents live. Backend failures (StorageError) are logged and turned
into zero values (empty list, None, False). Rule violations raise a
ServiceError subclass so the HTTP layer can report them.
"""
import functools
import logging
import secrets
import string
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from changes import ChangeFeed
from database import Repository, StorageError, new_id
from locks import LocalLocks, LockTimeout
from schemas import (
    CustomQuestion,
    Event,
    Message,
    Notification,
    Registration,
    RegistrationStatus,
    Review,
    Team,
    TeamMember,
    User,
)

logger = logging.getLogger(__name__)

EVENTS = "events"
REGISTRATIONS = "registrations"
TEAMS = "teams"
USERS = "users"
NOTIFICATIONS = "notifications"
MESSAGES = "messages"
REVIEWS = "reviews"

# Statuses that occupy a seat
CAPACITY_STATUSES = (RegistrationStatus.PENDING, RegistrationStatus.APPROVED)

INVITE_CODE_ALPHABET = string.ascii_uppercase + string.digits
INVITE_CODE_LENGTH = 6
INVITE_CODE_ATTEMPTS = 10


class ServiceError(Exception):
    status_code = 400


class EventValidationError(ServiceError):
    pass


class RegistrationError(ServiceError):
    pass


class EventNotFoundError(RegistrationError):
    status_code = 404


class RegistrationClosedError(RegistrationError):
    pass


class DuplicateRegistrationError(RegistrationError):
    status_code = 409


class TeamError(RegistrationError):
    pass


class ReviewError(ServiceError):
    status_code = 409


def fallback(default):
    """Log backend failures and return ``default`` (called when it is a factory)."""

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except (StorageError, LockTimeout) as e:
                logger.error(f"{fn.__name__} failed: {e}")
                return default() if callable(default) else default

        return wrapper

    return decorator


def generate_invite_code(length: int = INVITE_CODE_LENGTH) -> str:
    return "".join(secrets.choice(INVITE_CODE_ALPHABET) for _ in range(length))


def normalize_email(email: str) -> str:
    return email.strip().lower()


def validate_event(event: Event):
    if event.end <= event.start:
        raise EventValidationError("End date must be after start date")
    seen = set()
    for question in event.custom_questions:
        if question.id in seen:
            raise EventValidationError(f"Duplicate question id: {question.id}")
        seen.add(question.id)
        if question.type == "select" and not question.options:
            raise EventValidationError(f'Question "{question.question}" needs at least one option')


def missing_required_answer(questions: List[CustomQuestion], answers: Dict[str, Any]) -> Optional[CustomQuestion]:
    for question in questions:
        if not question.required:
            continue
        answer = answers.get(question.id)
        if answer is None or (isinstance(answer, str) and not answer.strip()):
            return question
    return None


class StorageService:
    def __init__(self, repository: Repository, locks=None, feed: Optional[ChangeFeed] = None):
        self.repo = repository
        self.locks = locks or LocalLocks()
        self.feed = feed

    @property
    def backend(self) -> str:
        return self.repo.name

    def _publish(self, collection: str, action: str, doc_id: Optional[str] = None, event_id: Optional[str] = None):
        if self.feed is not None:
            self.feed.publish(collection, action, doc_id, event_id)

    # -----------------------------
    # Events
    # -----------------------------
    @fallback(list)
    def get_events(self) -> List[Event]:
        return [Event.model_validate(doc) for doc in self.repo.find(EVENTS)]

    @fallback(None)
    def get_event(self, event_id: str) -> Optional[Event]:
        doc = self.repo.find_one(EVENTS, {"id": event_id})
        return Event.model_validate(doc) if doc else None

    @fallback(None)
    def save_event(self, event: Event) -> Optional[Event]:
        validate_event(event)
        event = event.model_copy(update={"id": new_id()})
        self.repo.insert_one(EVENTS, event.model_dump(mode="json"))
        logger.info(f"Created event {event.id} ({event.title})")
        self._publish(EVENTS, "insert", event.id, event.id)
        return event

    @fallback(False)
    def update_event(self, event: Event) -> bool:
        validate_event(event)
        changes = event.model_dump(mode="json", exclude={"id"})
        updated = self.repo.update_one(EVENTS, {"id": event.id}, changes)
        if updated:
            self._publish(EVENTS, "update", event.id, event.id)
        return updated

    @fallback(False)
    def set_registration_open(self, event_id: str, is_open: bool) -> bool:
        updated = self.repo.update_one(EVENTS, {"id": event_id}, {"is_registration_open": is_open})
        if updated:
            self._publish(EVENTS, "update", event_id, event_id)
        return updated

    @fallback(False)
    def delete_event(self, event_id: str) -> bool:
        if not self.repo.delete_one(EVENTS, {"id": event_id}):
            return False
        for collection in (REGISTRATIONS, TEAMS, MESSAGES, REVIEWS):
            self.repo.delete_many(collection, {"event_id": event_id})
        logger.info(f"Deleted event {event_id} and its registrations")
        self._publish(EVENTS, "delete", event_id, event_id)
        return True

    def _require_event(self, event_id: str) -> Event:
        doc = self.repo.find_one(EVENTS, {"id": event_id})
        if not doc:
            raise EventNotFoundError("Event not found")
        return Event.model_validate(doc)

    # -----------------------------
    # Registrations
    # -----------------------------
    @fallback(list)
    def get_registrations(self, event_id: Optional[str] = None, participant_id: Optional[str] = None) -> List[Registration]:
        query: Dict[str, Any] = {}
        if event_id:
            query["event_id"] = event_id
        if participant_id:
            query["participant_id"] = participant_id
        return [Registration.model_validate(doc) for doc in self.repo.find(REGISTRATIONS, query or None)]

    @fallback(None)
    def get_registration(self, registration_id: str) -> Optional[Registration]:
        doc = self.repo.find_one(REGISTRATIONS, {"id": registration_id})
        return Registration.model_validate(doc) if doc else None

    def _event_registrations(self, event_id: str) -> List[Registration]:
        return [Registration.model_validate(doc) for doc in self.repo.find(REGISTRATIONS, {"event_id": event_id})]

    @staticmethod
    def _same_participant(a: Registration, b: Registration) -> bool:
        if a.participant_id and b.participant_id:
            return a.participant_id == b.participant_id
        return normalize_email(a.participant_email) == normalize_email(b.participant_email)

    def add_registration(
        self,
        reg: Registration,
        team_name: Optional[str] = None,
        invite_code: Optional[str] = None,
    ) -> Optional[Registration]:
        """
        Register a participant for an event.

        The seat count and the insert run under the event's lock, so two
        sequential or concurrent calls cannot both take the last seat.
        Registrations past capacity are WAITLISTED. Team registrations either
        create a team (``team_name``) or join one (``invite_code``).
        Returns None when the backend fails.
        """
        try:
            with self.locks.hold(f"event:{reg.event_id}"):
                return self._add_registration(reg, team_name, invite_code)
        except LockTimeout as e:
            raise RegistrationError("Registration is busy, please try again.") from e
        except StorageError as e:
            logger.error(f"add_registration failed: {e}")
            return None

    def _add_registration(self, reg: Registration, team_name: Optional[str], invite_code: Optional[str]) -> Registration:
        event = self._require_event(reg.event_id)
        if not event.is_registration_open:
            raise RegistrationClosedError("Registration is no longer open for this event")

        peers = self._event_registrations(event.id)
        if any(self._same_participant(p, reg) and p.status != RegistrationStatus.REJECTED for p in peers):
            raise DuplicateRegistrationError("You are already registered for this event")

        missing = missing_required_answer(event.custom_questions, reg.answers)
        if missing is not None:
            raise RegistrationError(f'Please answer the required question: "{missing.question}"')

        taken = sum(1 for p in peers if p.status in CAPACITY_STATUSES)
        status = RegistrationStatus.WAITLISTED if taken >= event.capacity else RegistrationStatus.PENDING
        reg = reg.model_copy(update={"id": new_id(), "status": status, "attended": False, "attendance_time": None})

        team, created = None, False
        if reg.participation_type == "team":
            team, created = self._resolve_team(event, reg, team_name, invite_code)
            reg = reg.model_copy(update={"team_id": team.id, "team_name": team.name, "is_team_leader": created})
        elif event.participation_mode == "team":
            raise TeamError("This event only accepts team registrations")

        try:
            self.repo.insert_one(REGISTRATIONS, reg.model_dump(mode="json"))
        except StorageError:
            if team is not None:
                self._undo_team_entry(reg)
            raise

        logger.info(f"Registration {reg.id} for event {event.id}: {reg.status.value}")
        self._publish(REGISTRATIONS, "insert", reg.id, event.id)
        return reg

    @fallback(False)
    def update_registration_status(self, registration_id: str, status: RegistrationStatus) -> bool:
        status = RegistrationStatus(status)
        if status == RegistrationStatus.WAITLISTED:
            raise RegistrationError("Registrations only enter the waitlist at sign-up")
        doc = self.repo.find_one(REGISTRATIONS, {"id": registration_id})
        if not doc:
            return False
        # Waitlisted registrations leave the waitlist only by promotion, in order
        if doc.get("status") == RegistrationStatus.WAITLISTED.value and status != RegistrationStatus.REJECTED:
            raise RegistrationError("Waitlisted registrations are promoted automatically")
        self.repo.update_one(REGISTRATIONS, {"id": registration_id}, {"status": status.value})
        self._publish(REGISTRATIONS, "update", registration_id, doc.get("event_id"))
        return True

    @fallback(False)
    def mark_attendance(self, registration_id: str) -> bool:
        with self.locks.hold(f"registration:{registration_id}"):
            doc = self.repo.find_one(REGISTRATIONS, {"id": registration_id})
            if not doc:
                return False
            reg = Registration.model_validate(doc)
            if reg.status != RegistrationStatus.APPROVED or reg.attended:
                return False
            now = datetime.now(timezone.utc)
            self.repo.update_one(REGISTRATIONS, {"id": registration_id}, {"attended": True, "attendance_time": now.isoformat()})
        logger.info(f"✅ Checked in registration {registration_id}")
        self._publish(REGISTRATIONS, "update", registration_id, reg.event_id)
        return True

    @fallback(False)
    def delete_registration(self, registration_id: str) -> bool:
        doc = self.repo.find_one(REGISTRATIONS, {"id": registration_id})
        if not doc:
            return False
        reg = Registration.model_validate(doc)
        with self.locks.hold(f"event:{reg.event_id}"):
            if not self.repo.delete_one(REGISTRATIONS, {"id": registration_id}):
                return False
            self._publish(REGISTRATIONS, "delete", registration_id, reg.event_id)
            if reg.team_id:
                self._leave_team(reg)
            self._promote_waitlisted(reg.event_id)
        return True

    def _promote_waitlisted(self, event_id: str) -> Optional[Registration]:
        """Move the oldest WAITLISTED registration to PENDING if a seat is free."""
        doc = self.repo.find_one(EVENTS, {"id": event_id})
        if not doc:
            return None
        event = Event.model_validate(doc)
        regs = self._event_registrations(event_id)
        if sum(1 for r in regs if r.status in CAPACITY_STATUSES) >= event.capacity:
            return None
        # sorted() is stable: equal timestamps keep storage order
        waitlisted = sorted((r for r in regs if r.status == RegistrationStatus.WAITLISTED), key=lambda r: r.registered_at)
        if not waitlisted:
            return None

        promoted = waitlisted[0]
        self.repo.update_one(REGISTRATIONS, {"id": promoted.id}, {"status": RegistrationStatus.PENDING.value})
        logger.info(f"⬆️ Promoted waitlisted registration {promoted.id} for event {event_id}")
        self._publish(REGISTRATIONS, "update", promoted.id, event_id)
        if promoted.participant_id:
            self._notify(
                Notification(
                    user_id=promoted.participant_id,
                    type="waitlist",
                    title="You're off the waitlist",
                    body=f"A spot opened up for {event.title}. Your registration is now pending approval.",
                    event_id=event_id,
                )
            )
        return promoted.model_copy(update={"status": RegistrationStatus.PENDING})

    # -----------------------------
    # Teams
    # -----------------------------
    @staticmethod
    def _member_for(reg: Registration) -> TeamMember:
        return TeamMember(
            user_id=reg.participant_id or normalize_email(reg.participant_email),
            user_name=reg.participant_name,
            email=reg.participant_email,
        )

    def _resolve_team(self, event: Event, reg: Registration, team_name: Optional[str], invite_code: Optional[str]) -> Tuple[Team, bool]:
        if event.participation_mode == "individual":
            raise TeamError("This event does not accept team registrations")
        member = self._member_for(reg)
        if invite_code:
            with self.locks.hold(f"team:{invite_code.strip().upper()}"):
                return self._join_team(invite_code, event, member), False
        if team_name and team_name.strip():
            return self._create_team(team_name.strip(), event, member), True
        raise TeamError("Provide a team name to create a team or an invite code to join one")

    @fallback(None)
    def get_team(self, team_id: str) -> Optional[Team]:
        doc = self.repo.find_one(TEAMS, {"id": team_id})
        return Team.model_validate(doc) if doc else None

    @fallback(list)
    def get_teams(self, event_id: str) -> List[Team]:
        return [Team.model_validate(doc) for doc in self.repo.find(TEAMS, {"event_id": event_id})]

    @fallback(None)
    def get_team_by_invite_code(self, invite_code: str) -> Optional[Team]:
        return self._find_team_by_code(invite_code)

    def _find_team_by_code(self, invite_code: str) -> Optional[Team]:
        doc = self.repo.find_one(TEAMS, {"invite_code": invite_code.strip().upper()})
        return Team.model_validate(doc) if doc else None

    @fallback(None)
    def create_team(self, name: str, event_id: str, leader: TeamMember) -> Optional[Team]:
        event = self._require_event(event_id)
        return self._create_team(name, event, leader)

    def _create_team(self, name: str, event: Event, leader: TeamMember) -> Team:
        team = Team(
            id=new_id(),
            name=name,
            event_id=event.id,
            leader_id=leader.user_id,
            members=[leader],
            invite_code=self._unique_invite_code(),
        )
        self.repo.insert_one(TEAMS, team.model_dump(mode="json"))
        logger.info(f"Created team {team.id} ({team.name}) for event {event.id}")
        self._publish(TEAMS, "insert", team.id, event.id)
        return team

    def _unique_invite_code(self) -> str:
        for _ in range(INVITE_CODE_ATTEMPTS):
            code = generate_invite_code()
            if self.repo.find_one(TEAMS, {"invite_code": code}) is None:
                return code
        raise TeamError("Could not generate a unique invite code, please try again")

    @fallback(None)
    def join_team(self, invite_code: str, event_id: str, member: TeamMember) -> Optional[Team]:
        """Add ``member`` to the team holding ``invite_code``; raises TeamError when not allowed."""
        event = self._require_event(event_id)
        with self.locks.hold(f"team:{invite_code.strip().upper()}"):
            return self._join_team(invite_code, event, member)

    def _join_team(self, invite_code: str, event: Event, member: TeamMember) -> Team:
        team = self._find_team_by_code(invite_code)
        if team is None:
            raise TeamError("Invalid invite code")
        if team.event_id != event.id:
            raise TeamError("This invite code belongs to a different event")
        if any(m.user_id == member.user_id for m in team.members):
            raise TeamError("You are already a member of this team")
        if event.max_team_size is not None and len(team.members) >= event.max_team_size:
            raise TeamError("Team is full")

        members = team.members + [member]
        self.repo.update_one(TEAMS, {"id": team.id}, {"members": [m.model_dump(mode="json") for m in members]})
        logger.info(f"{member.user_name} joined team {team.id}")
        self._publish(TEAMS, "update", team.id, event.id)
        return team.model_copy(update={"members": members})

    def _leave_team(self, reg: Registration):
        doc = self.repo.find_one(TEAMS, {"id": reg.team_id})
        if not doc:
            return
        team = Team.model_validate(doc)
        leaving = self._member_for(reg).user_id
        members = [m for m in team.members if m.user_id != leaving]
        if not members:
            self.repo.delete_one(TEAMS, {"id": team.id})
            self._publish(TEAMS, "delete", team.id, team.event_id)
            return
        changes: Dict[str, Any] = {"members": [m.model_dump(mode="json") for m in members]}
        if team.leader_id == leaving:
            changes["leader_id"] = members[0].user_id
        self.repo.update_one(TEAMS, {"id": team.id}, changes)
        self._publish(TEAMS, "update", team.id, team.event_id)

    def _undo_team_entry(self, reg: Registration):
        # Drops the member again; a team created for this registration goes with it
        try:
            self._leave_team(reg)
        except StorageError as e:
            logger.error(f"Could not roll back team {reg.team_id} for {reg.participant_email}: {e}")

    # -----------------------------
    # Users
    # -----------------------------
    @fallback(None)
    def get_user(self, user_id: str) -> Optional[User]:
        doc = self.repo.find_one(USERS, {"id": user_id})
        return User.model_validate(doc) if doc else None

    @fallback(None)
    def get_user_by_email(self, email: str) -> Optional[User]:
        doc = self.repo.find_one(USERS, {"email": normalize_email(email)})
        return User.model_validate(doc) if doc else None

    @fallback(False)
    def save_user(self, user: User) -> bool:
        data = user.model_copy(update={"email": normalize_email(user.email)}).model_dump(mode="json")
        if self.repo.find_one(USERS, {"id": user.id}):
            self.repo.update_one(USERS, {"id": user.id}, data)
        else:
            self.repo.insert_one(USERS, data)
        return True

    @fallback(False)
    def delete_user(self, user_id: str) -> bool:
        for doc in self.repo.find(REGISTRATIONS, {"participant_id": user_id}):
            self.delete_registration(doc["id"])
        self.repo.delete_many(NOTIFICATIONS, {"user_id": user_id})
        deleted = self.repo.delete_one(USERS, {"id": user_id})
        if deleted:
            logger.info(f"Deleted account {user_id}")
        return deleted

    # -----------------------------
    # Notifications, messages, reviews
    # -----------------------------
    def _notify(self, notification: Notification) -> Notification:
        notification = notification.model_copy(update={"id": new_id()})
        self.repo.insert_one(NOTIFICATIONS, notification.model_dump(mode="json"))
        self._publish(NOTIFICATIONS, "insert", notification.id, notification.event_id)
        return notification

    @fallback(None)
    def add_notification(self, notification: Notification) -> Optional[Notification]:
        return self._notify(notification)

    @fallback(list)
    def get_notifications(self, user_id: str) -> List[Notification]:
        notifications = [Notification.model_validate(d) for d in self.repo.find(NOTIFICATIONS, {"user_id": user_id})]
        return sorted(notifications, key=lambda n: n.created_at, reverse=True)

    @fallback(False)
    def mark_notification_read(self, notification_id: str, user_id: str) -> bool:
        return self.repo.update_one(NOTIFICATIONS, {"id": notification_id, "user_id": user_id}, {"read": True})

    @fallback(None)
    def add_message(self, message: Message) -> Optional[Message]:
        self._require_event(message.event_id)
        message = message.model_copy(update={"id": new_id()})
        self.repo.insert_one(MESSAGES, message.model_dump(mode="json"))
        self._publish(MESSAGES, "insert", message.id, message.event_id)
        return message

    @fallback(list)
    def get_messages(self, event_id: str) -> List[Message]:
        messages = [Message.model_validate(d) for d in self.repo.find(MESSAGES, {"event_id": event_id})]
        return sorted(messages, key=lambda m: m.created_at)

    @fallback(None)
    def add_review(self, review: Review) -> Optional[Review]:
        self._require_event(review.event_id)
        if self.repo.find_one(REVIEWS, {"event_id": review.event_id, "user_id": review.user_id}):
            raise ReviewError("You have already reviewed this event")
        review = review.model_copy(update={"id": new_id()})
        self.repo.insert_one(REVIEWS, review.model_dump(mode="json"))
        self._publish(REVIEWS, "insert", review.id, review.event_id)
        return review

    @fallback(list)
    def get_reviews(self, event_id: str) -> List[Review]:
        return [Review.model_validate(d) for d in self.repo.find(REVIEWS, {"event_id": event_id})]

    @fallback(0)
    def send_reminders(self, event_id: str) -> int:
        event = self._require_event(event_id)
        when = event.start.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
        sent = 0
        for reg in self._event_registrations(event_id):
            if reg.status != RegistrationStatus.APPROVED or not reg.participant_id:
                continue
            self._notify(
                Notification(
                    user_id=reg.participant_id,
                    type="reminder",
                    title=f"Reminder: {event.title}",
                    body=f"{event.title} starts {when} at {event.location or 'the announced location'}.",
                    event_id=event_id,
                )
            )
            sent += 1
        logger.info(f"Sent {sent} reminders for event {event_id}")
        return sent
