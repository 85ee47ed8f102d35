import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
from firebase_admin import auth as firebase_auth
from firebase_admin import exceptions as firebase_exceptions
from jose import JWTError, jwt
from passlib.context import CryptContext

from database import get_firebase_app, new_id
from settings import Settings
from storage import StorageService, normalize_email
from schemas import Role, User

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

FIREBASE_SIGN_IN_URL = "https://identitytoolkit.googleapis.com/v1/accounts:signInWithPassword"


# Utility helpers
def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)


def create_access_token(user: User, settings: Settings, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {"sub": user.id, "email": user.email, "role": user.role, "exp": expire}
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.ALGORITHM)


def decode_access_token(token: str, settings: Settings) -> Optional[dict]:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None


class LocalAuthProvider:
    """User table kept in the active storage backend, bcrypt password hashes."""

    name = "local"

    def __init__(self, storage: StorageService):
        self.storage = storage

    def sign_up(self, name: str, email: str, password: str, role: Role = "attendee") -> Optional[User]:
        if self.storage.get_user_by_email(email):
            return None
        user = User(id=new_id(), name=name, email=normalize_email(email), role=role, password_hash=hash_password(password))
        if not self.storage.save_user(user):
            return None
        logger.info(f"New {role} account {user.id}")
        return user

    def log_in(self, email: str, password: str) -> Optional[User]:
        user = self.storage.get_user_by_email(email)
        if not user or not user.password_hash or not verify_password(password, user.password_hash):
            return None
        return user

    def delete_account(self, user_id: str) -> bool:
        return self.storage.delete_user(user_id)


class FirebaseAuthProvider:
    """Firebase Authentication holds credentials; profiles live in storage."""

    name = "firebase"

    def __init__(self, storage: StorageService, api_key: str, app=None, http: Optional[httpx.Client] = None):
        self.storage = storage
        self.api_key = api_key
        self.app = app
        self.http = http or httpx.Client(timeout=10.0)

    def sign_up(self, name: str, email: str, password: str, role: Role = "attendee") -> Optional[User]:
        try:
            record = firebase_auth.create_user(email=email, password=password, display_name=name, app=self.app)
        except (firebase_exceptions.FirebaseError, ValueError) as e:
            logger.error(f"Firebase registration error: {e}")
            return None
        user = User(id=record.uid, name=name, email=normalize_email(email), role=role)
        if not self.storage.save_user(user):
            return None
        return user

    def log_in(self, email: str, password: str) -> Optional[User]:
        try:
            response = self.http.post(
                FIREBASE_SIGN_IN_URL,
                params={"key": self.api_key},
                json={"email": email, "password": password, "returnSecureToken": True},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Firebase login error: {e}")
            return None
        uid = response.json().get("localId")
        return self.storage.get_user(uid) if uid else None

    def delete_account(self, user_id: str) -> bool:
        try:
            firebase_auth.delete_user(user_id, app=self.app)
        except (firebase_exceptions.FirebaseError, ValueError) as e:
            logger.error(f"Firebase account deletion error: {e}")
            return False
        return self.storage.delete_user(user_id)


def resolve_auth_provider(settings: Settings, storage: StorageService):
    if settings.use_firebase_auth:
        logger.info("🔑 Auth provider: Firebase Authentication")
        return FirebaseAuthProvider(storage, settings.FIREBASE_API_KEY, app=get_firebase_app(settings))
    logger.info("🔑 Auth provider: local user table")
    return LocalAuthProvider(storage)
