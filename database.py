"""
Document storage backends.

Every backend implements the same small Repository contract over named
collections. Documents carry an application level ``id`` string field and
filters are plain field-equality dicts, which is all the storage service
needs and all three backends can express.

Backend precedence, resolved once at startup: MongoDB proxy > Firestore > local.
"""
import copy
import json
import logging
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

import firebase_admin
import httpx
from firebase_admin import firestore
from google.api_core.exceptions import GoogleAPIError
from google.cloud.firestore_v1.base_query import FieldFilter

from settings import Settings

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
Filter = Optional[Dict[str, Any]]


class StorageError(Exception):
    """A backend call failed (network, driver or file error)."""


def new_id() -> str:
    return str(uuid.uuid4())


def matches(document: Document, filter_dict: Filter) -> bool:
    return all(document.get(field) == value for field, value in (filter_dict or {}).items())


class Repository:
    name = "abstract"

    def find(self, collection: str, filter_dict: Filter = None) -> List[Document]:
        raise NotImplementedError

    def find_one(self, collection: str, filter_dict: Filter) -> Optional[Document]:
        raise NotImplementedError

    def insert_one(self, collection: str, document: Document) -> str:
        raise NotImplementedError

    def update_one(self, collection: str, filter_dict: Filter, changes: Document) -> bool:
        raise NotImplementedError

    def delete_one(self, collection: str, filter_dict: Filter) -> bool:
        raise NotImplementedError

    def delete_many(self, collection: str, filter_dict: Filter) -> int:
        raise NotImplementedError


# -----------------------------
# MongoDB through the document proxy
# -----------------------------
class MongoProxyRepository(Repository):
    name = "mongo"

    def __init__(self, base_url: Optional[str] = None, client: Optional[httpx.Client] = None, timeout: float = 10.0):
        if client is None:
            if not base_url:
                raise RuntimeError("Missing MONGO_PROXY_URL")
            client = httpx.Client(base_url=base_url, timeout=timeout)
        self.client = client

    def _request(self, action: str, collection: str, **body) -> Dict[str, Any]:
        payload = {"collection": collection}
        payload.update({k: v for k, v in body.items() if v is not None})
        try:
            response = self.client.post(f"/api/action/{action}", json=payload)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise StorageError(f"MongoDB proxy {action} on {collection} failed: {e}") from e

    @staticmethod
    def _clean(doc: Document) -> Document:
        doc = dict(doc)
        mongo_id = doc.pop("_id", None)
        if not doc.get("id") and mongo_id is not None:
            doc["id"] = str(mongo_id)
        return doc

    def find(self, collection, filter_dict=None):
        result = self._request("find", collection, filter=filter_dict or {})
        return [self._clean(doc) for doc in result.get("documents", [])]

    def find_one(self, collection, filter_dict):
        result = self._request("findOne", collection, filter=filter_dict or {})
        doc = result.get("document")
        return self._clean(doc) if doc else None

    def insert_one(self, collection, document):
        doc = dict(document)
        doc.setdefault("id", new_id())
        self._request("insertOne", collection, document=doc)
        return doc["id"]

    def update_one(self, collection, filter_dict, changes):
        result = self._request("updateOne", collection, filter=filter_dict or {}, update={"$set": changes})
        return result.get("matchedCount", 0) > 0

    def delete_one(self, collection, filter_dict):
        result = self._request("deleteOne", collection, filter=filter_dict or {})
        return result.get("deletedCount", 0) > 0

    def delete_many(self, collection, filter_dict):
        result = self._request("deleteMany", collection, filter=filter_dict or {})
        return int(result.get("deletedCount", 0))


# -----------------------------
# Firebase Firestore
# -----------------------------
def get_firebase_app(settings: Settings):
    try:
        return firebase_admin.get_app()
    except ValueError:
        options = {"projectId": settings.FIREBASE_PROJECT_ID}
        if settings.FIREBASE_STORAGE_BUCKET:
            options["storageBucket"] = settings.FIREBASE_STORAGE_BUCKET
        app = firebase_admin.initialize_app(options=options)
        logger.info(f"✅ Firebase initialized for project {settings.FIREBASE_PROJECT_ID}")
        return app


class FirestoreRepository(Repository):
    name = "firebase"

    def __init__(self, client):
        self.client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "FirestoreRepository":
        return cls(firestore.client(app=get_firebase_app(settings)))

    def _query(self, collection: str, filter_dict: Filter):
        query = self.client.collection(collection)
        for field, value in (filter_dict or {}).items():
            query = query.where(filter=FieldFilter(field, "==", value))
        return query

    def _snapshots(self, collection: str, filter_dict: Filter, limit: Optional[int] = None):
        query = self._query(collection, filter_dict)
        if limit is not None:
            query = query.limit(limit)
        try:
            return list(query.stream())
        except GoogleAPIError as e:
            raise StorageError(f"Firestore query on {collection} failed: {e}") from e

    @staticmethod
    def _to_doc(snapshot) -> Document:
        data = snapshot.to_dict() or {}
        data.setdefault("id", snapshot.id)
        return data

    def find(self, collection, filter_dict=None):
        return [self._to_doc(s) for s in self._snapshots(collection, filter_dict)]

    def find_one(self, collection, filter_dict):
        snapshots = self._snapshots(collection, filter_dict, limit=1)
        return self._to_doc(snapshots[0]) if snapshots else None

    def insert_one(self, collection, document):
        doc = dict(document)
        doc.setdefault("id", new_id())
        try:
            self.client.collection(collection).document(doc["id"]).set(doc)
        except GoogleAPIError as e:
            raise StorageError(f"Firestore insert into {collection} failed: {e}") from e
        return doc["id"]

    def update_one(self, collection, filter_dict, changes):
        snapshots = self._snapshots(collection, filter_dict, limit=1)
        if not snapshots:
            return False
        try:
            snapshots[0].reference.update(changes)
        except GoogleAPIError as e:
            raise StorageError(f"Firestore update in {collection} failed: {e}") from e
        return True

    def delete_one(self, collection, filter_dict):
        return self._delete(collection, filter_dict, limit=1) > 0

    def delete_many(self, collection, filter_dict):
        return self._delete(collection, filter_dict)

    def _delete(self, collection, filter_dict, limit=None) -> int:
        snapshots = self._snapshots(collection, filter_dict, limit=limit)
        try:
            for snapshot in snapshots:
                snapshot.reference.delete()
        except GoogleAPIError as e:
            raise StorageError(f"Firestore delete in {collection} failed: {e}") from e
        return len(snapshots)


# -----------------------------
# Local JSON store (one list per collection)
# -----------------------------
class LocalStorageRepository(Repository):
    name = "local"

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path) if path else None
        self._lock = threading.RLock()
        self._data: Dict[str, List[Document]] = self._load()

    def _load(self) -> Dict[str, List[Document]]:
        if self.path is None or not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text(encoding="utf-8")) or {}
        except (OSError, ValueError) as e:
            raise StorageError(f"Cannot read local store {self.path}: {e}") from e

    def _flush(self):
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(self._data), encoding="utf-8")
            tmp.replace(self.path)
        except OSError as e:
            raise StorageError(f"Cannot write local store {self.path}: {e}") from e

    def find(self, collection, filter_dict=None):
        with self._lock:
            return [copy.deepcopy(d) for d in self._data.get(collection, []) if matches(d, filter_dict)]

    def find_one(self, collection, filter_dict):
        with self._lock:
            for doc in self._data.get(collection, []):
                if matches(doc, filter_dict):
                    return copy.deepcopy(doc)
        return None

    def insert_one(self, collection, document):
        doc = copy.deepcopy(document)
        doc.setdefault("id", new_id())
        with self._lock:
            self._data.setdefault(collection, []).append(doc)
            self._flush()
        return doc["id"]

    def update_one(self, collection, filter_dict, changes):
        with self._lock:
            for doc in self._data.get(collection, []):
                if matches(doc, filter_dict):
                    doc.update(copy.deepcopy(changes))
                    self._flush()
                    return True
        return False

    def delete_one(self, collection, filter_dict):
        with self._lock:
            docs = self._data.get(collection, [])
            for index, doc in enumerate(docs):
                if matches(doc, filter_dict):
                    del docs[index]
                    self._flush()
                    return True
        return False

    def delete_many(self, collection, filter_dict):
        with self._lock:
            docs = self._data.get(collection, [])
            kept = [d for d in docs if not matches(d, filter_dict)]
            removed = len(docs) - len(kept)
            if removed:
                self._data[collection] = kept
                self._flush()
        return removed


def resolve_repository(settings: Settings) -> Repository:
    if settings.use_mongo:
        logger.info(f"📦 Storage backend: MongoDB proxy at {settings.MONGO_PROXY_URL}")
        return MongoProxyRepository(settings.MONGO_PROXY_URL, timeout=settings.MONGO_PROXY_TIMEOUT)
    if settings.use_firebase_storage:
        logger.info("📦 Storage backend: Firebase Firestore")
        return FirestoreRepository.from_settings(settings)
    logger.info(f"📦 Storage backend: local store ({settings.LOCAL_STORAGE_PATH or 'in memory'})")
    return LocalStorageRepository(settings.LOCAL_STORAGE_PATH)
