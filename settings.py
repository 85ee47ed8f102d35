from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

DUMMY_FIREBASE_KEY = "AIzaSyDOCAbC123dEfG456hIj789-DUMMY-KEY"


class Settings(BaseSettings):
    # Application
    PROJECT_NAME: str = "EventHorizon API"
    VERSION: str = "0.2.0"
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    # MongoDB (server side of the document proxy)
    MONGODB_URI: Optional[str] = None
    MONGODB_DB_NAME: str = "event_horizon"
    MONGO_TIMEOUT_MS: int = 5000

    # Where the storage layer reaches the document proxy
    MONGO_PROXY_URL: Optional[str] = None
    MONGO_PROXY_TIMEOUT: float = 10.0

    # Firebase
    FIREBASE_API_KEY: str = ""
    FIREBASE_AUTH_DOMAIN: str = ""
    FIREBASE_PROJECT_ID: str = ""
    FIREBASE_STORAGE_BUCKET: str = ""
    FIREBASE_MESSAGING_SENDER_ID: str = ""
    FIREBASE_APP_ID: str = ""

    # Local store (browser local storage stand-in)
    LOCAL_STORAGE_PATH: Optional[str] = None

    # Generative AI
    GEMINI_API_KEY: Optional[str] = None
    API_KEY: Optional[str] = None
    GEMINI_MODEL: str = "gemini-2.5-flash"

    # Security
    JWT_SECRET: str = "dev-secret-key-change"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24

    # Locking
    REDIS_URL: Optional[str] = None
    LOCK_TIMEOUT: int = 10
    LOCK_BLOCKING_TIMEOUT: int = 5

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    @property
    def firebase_configured(self) -> bool:
        return bool(
            self.FIREBASE_API_KEY
            and self.FIREBASE_AUTH_DOMAIN
            and self.FIREBASE_PROJECT_ID
            and self.FIREBASE_API_KEY != DUMMY_FIREBASE_KEY
        )

    # Hierarchy: MongoDB > Firebase > local store
    @property
    def use_mongo(self) -> bool:
        return bool(self.MONGO_PROXY_URL)

    @property
    def use_firebase_storage(self) -> bool:
        return self.firebase_configured and not self.use_mongo

    @property
    def use_firebase_auth(self) -> bool:
        return self.firebase_configured

    @property
    def gemini_key(self) -> Optional[str]:
        return self.GEMINI_API_KEY or self.API_KEY


@lru_cache
def get_settings() -> Settings:
    return Settings()
