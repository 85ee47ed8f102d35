"""
Generic document proxy: POST /api/action/{action} -> MongoDB driver call.

Stateless; no business logic. Mounted on the main app when MONGODB_URI is
set, or served on its own with ``uvicorn proxy:app``.
"""
import logging
from datetime import datetime
from functools import lru_cache
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pymongo import MongoClient

from settings import get_settings

router = APIRouter()
logger = logging.getLogger(__name__)


class ActionRequest(BaseModel):
    collection: Optional[str] = None
    filter: Optional[Dict[str, Any]] = None
    document: Optional[Dict[str, Any]] = None
    update: Optional[Dict[str, Any]] = None
    limit: Optional[int] = None
    projection: Optional[Dict[str, Any]] = None
    sort: Optional[Dict[str, int]] = None


@lru_cache
def get_mongo_client() -> MongoClient:
    settings = get_settings()
    if not settings.MONGODB_URI:
        raise RuntimeError("Missing MONGODB_URI")
    return MongoClient(settings.MONGODB_URI, serverSelectionTimeoutMS=settings.MONGO_TIMEOUT_MS)


def get_mongo_db():
    try:
        client = get_mongo_client()
    except RuntimeError as e:
        logger.error(f"Document proxy unavailable: {e}")
        return None
    return client[get_settings().MONGODB_DB_NAME]


def to_json(value: Any) -> Any:
    """BSON -> JSON-safe values (ObjectId as string, datetimes ISO-8601)."""
    if isinstance(value, dict):
        return {k: to_json(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_json(v) for v in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def update_result(result) -> Dict[str, Any]:
    return {
        "acknowledged": result.acknowledged,
        "matchedCount": result.matched_count,
        "modifiedCount": result.modified_count,
        "upsertedId": to_json(result.upserted_id),
    }


def delete_result(result) -> Dict[str, Any]:
    return {"acknowledged": result.acknowledged, "deletedCount": result.deleted_count}


def run_action(db, action: str, body: ActionRequest):
    col = db[body.collection]
    query = body.filter or {}

    if action == "find":
        options: Dict[str, Any] = {}
        if body.limit:
            options["limit"] = int(body.limit)
        if body.projection:
            options["projection"] = body.projection
        if body.sort:
            options["sort"] = list(body.sort.items())
        return 200, {"documents": to_json(list(col.find(query, **options)))}
    if action == "findOne":
        return 200, {"document": to_json(col.find_one(query, projection=body.projection))}
    if action == "insertOne":
        result = col.insert_one(body.document)
        return 200, {"insertedId": to_json(result.inserted_id)}
    if action == "updateOne":
        return 200, update_result(col.update_one(query, body.update))
    if action == "deleteOne":
        return 200, delete_result(col.delete_one(query))
    if action == "deleteMany":
        return 200, delete_result(col.delete_many(query))
    return 400, {"error": f"Unknown action: {action}"}


@router.post("/api/action/{action}")
def document_action(action: str, body: ActionRequest, db=Depends(get_mongo_db)):
    if not body.collection:
        return JSONResponse(status_code=400, content={"error": "Missing collection name"})
    if db is None:
        return JSONResponse(status_code=500, content={"error": "Database not connected"})
    logger.info(f"Processing {action} on {body.collection}")
    try:
        status_code, content = run_action(db, action, body)
    except Exception as e:
        logger.error(f"Proxy action {action} failed: {e}")
        return JSONResponse(status_code=500, content={"error": "Server Error", "details": str(e)})
    return JSONResponse(status_code=status_code, content=content)


@router.options("/api/action/{action}")
def document_action_options(action: str):
    return Response(status_code=200)


@router.api_route("/api/action/{action}", methods=["GET", "PUT", "PATCH", "DELETE"])
def document_action_not_allowed(action: str):
    return JSONResponse(status_code=405, content={"error": "Method Not Allowed"})


def add_cors(application: FastAPI):
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


app = FastAPI(title="EventHorizon Document Proxy")
add_cors(app)
app.include_router(router)
