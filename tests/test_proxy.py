"""
Document proxy: POST /api/action/{action} against an in-memory MongoDB.
"""
from unittest.mock import MagicMock

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import proxy


def action(client, name, **body):
    return client.post(f"/api/action/{name}", json=body)


class TestDocumentActions:
    def test_insert_and_find(self, proxy_client, mongo_db):
        response = action(proxy_client, "insertOne", collection="events", document={"id": "e1", "title": "Meetup"})
        assert response.status_code == 200
        inserted_id = response.json()["insertedId"]
        assert ObjectId.is_valid(inserted_id)

        found = action(proxy_client, "find", collection="events", filter={"id": "e1"}).json()["documents"]
        assert len(found) == 1
        assert found[0]["_id"] == inserted_id
        assert found[0]["title"] == "Meetup"

    def test_find_one_missing(self, proxy_client):
        response = action(proxy_client, "findOne", collection="events", filter={"id": "nope"})
        assert response.status_code == 200
        assert response.json() == {"document": None}

    def test_find_with_sort_and_limit(self, proxy_client, mongo_db):
        mongo_db["events"].insert_many([{"id": "a", "n": 2}, {"id": "b", "n": 1}, {"id": "c", "n": 3}])

        body = action(proxy_client, "find", collection="events", sort={"n": 1}, limit=2).json()
        assert [d["id"] for d in body["documents"]] == ["b", "a"]

    def test_update_and_delete_counts(self, proxy_client, mongo_db):
        mongo_db["registrations"].insert_many([{"id": "r1", "event_id": "e1"}, {"id": "r2", "event_id": "e1"}])

        updated = action(
            proxy_client, "updateOne", collection="registrations", filter={"id": "r1"}, update={"$set": {"status": "APPROVED"}}
        ).json()
        assert updated["matchedCount"] == 1
        assert updated["modifiedCount"] == 1
        assert mongo_db["registrations"].find_one({"id": "r1"})["status"] == "APPROVED"

        deleted = action(proxy_client, "deleteMany", collection="registrations", filter={"event_id": "e1"}).json()
        assert deleted["deletedCount"] == 2

        deleted = action(proxy_client, "deleteOne", collection="registrations", filter={"id": "r1"}).json()
        assert deleted["deletedCount"] == 0


class TestErrors:
    def test_missing_collection(self, proxy_client):
        response = action(proxy_client, "find", filter={})
        assert response.status_code == 400
        assert response.json() == {"error": "Missing collection name"}

    def test_unknown_action(self, proxy_client):
        response = action(proxy_client, "aggregate", collection="events")
        assert response.status_code == 400
        assert response.json() == {"error": "Unknown action: aggregate"}

    def test_wrong_method(self, proxy_client):
        assert proxy_client.get("/api/action/find").status_code == 405
        assert proxy_client.delete("/api/action/find").status_code == 405

    def test_preflight(self, proxy_client):
        assert proxy_client.options("/api/action/find").status_code == 200

    def test_database_not_configured(self):
        proxy.app.dependency_overrides[proxy.get_mongo_db] = lambda: None
        try:
            with TestClient(proxy.app) as client:
                response = action(client, "find", collection="events")
        finally:
            proxy.app.dependency_overrides.clear()
        assert response.status_code == 500
        assert response.json() == {"error": "Database not connected"}

    def test_driver_failure(self):
        db = MagicMock()
        db.__getitem__.return_value.find.side_effect = RuntimeError("connection reset")
        proxy.app.dependency_overrides[proxy.get_mongo_db] = lambda: db
        try:
            with TestClient(proxy.app) as client:
                response = action(client, "find", collection="events")
        finally:
            proxy.app.dependency_overrides.clear()
        assert response.status_code == 500
        assert response.json() == {"error": "Server Error", "details": "connection reset"}


@pytest.mark.parametrize(
    "value, expected",
    [
        (ObjectId("64b7f0c2a1b2c3d4e5f60718"), "64b7f0c2a1b2c3d4e5f60718"),
        ({"nested": [ObjectId("64b7f0c2a1b2c3d4e5f60718")]}, {"nested": ["64b7f0c2a1b2c3d4e5f60718"]}),
        ("plain", "plain"),
    ],
)
def test_to_json(value, expected):
    assert proxy.to_json(value) == expected
