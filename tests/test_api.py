"""
HTTP API end to end with the in-memory store.
"""
import json

import pytest

from schemas import User

EVENT_BODY = {
    "title": "PyData Meetup",
    "description": "Talks and pizza",
    "start": "2030-05-01T18:00:00Z",
    "end": "2030-05-01T21:00:00Z",
    "location": "Main Hall",
    "capacity": 1,
}


@pytest.fixture
def second_attendee(service):
    user = User(id="att-2", name="Bea Attendee", email="bea@example.com", role="attendee")
    service.save_user(user)
    return user


@pytest.fixture
def event_id(client, organizer, auth_headers):
    response = client.post("/events", json=EVENT_BODY, headers=auth_headers(organizer))
    assert response.status_code == 200, response.text
    return response.json()["id"]


def register(client, event_id, user, auth_headers, **body):
    return client.post(f"/events/{event_id}/register", json=body, headers=auth_headers(user))


class TestBasics:
    def test_root(self, client):
        assert client.get("/").json() == {"message": "EventHorizon API running"}

    def test_backend_status(self, client):
        body = client.get("/test").json()
        assert body["storage"] == "local"
        assert body["auth"] == "local"


class TestAuth:
    def test_signup_login_me(self, client):
        response = client.post(
            "/auth/signup", json={"email": "grace@example.com", "password": "s3cret!", "name": "Grace", "role": "organizer"}
        )
        assert response.status_code == 200
        assert response.json()["token_type"] == "bearer"

        token = client.post("/auth/login", json={"email": "grace@example.com", "password": "s3cret!"}).json()["access_token"]
        me = client.get("/me", headers={"Authorization": f"Bearer {token}"}).json()
        assert me["email"] == "grace@example.com"
        assert me["role"] == "organizer"
        assert "password_hash" not in me

    def test_duplicate_signup(self, client):
        body = {"email": "grace@example.com", "password": "s3cret!", "name": "Grace"}
        client.post("/auth/signup", json=body)
        assert client.post("/auth/signup", json=body).status_code == 400

    def test_bad_login(self, client):
        response = client.post("/auth/login", json={"email": "ghost@example.com", "password": "whatever"})
        assert response.status_code == 400

    @pytest.mark.parametrize("header", [None, "Token abc", "Bearer not-a-jwt"])
    def test_unauthenticated(self, client, header):
        headers = {"Authorization": header} if header else {}
        assert client.get("/me", headers=headers).status_code == 401

    def test_change_feed_requires_login(self, client):
        assert client.get("/changes").status_code == 401

    def test_update_profile(self, client, attendee, auth_headers):
        response = client.patch("/me", json={"name": "Adam A."}, headers=auth_headers(attendee))
        assert response.json()["name"] == "Adam A."

    def test_delete_account(self, client, service, attendee, auth_headers):
        assert client.delete("/me", headers=auth_headers(attendee)).json() == {"ok": True}
        assert service.get_user(attendee.id) is None


class TestEvents:
    def test_attendee_cannot_create(self, client, attendee, auth_headers):
        assert client.post("/events", json=EVENT_BODY, headers=auth_headers(attendee)).status_code == 403

    def test_invalid_dates(self, client, organizer, auth_headers):
        body = dict(EVENT_BODY, end="2030-05-01T17:00:00Z")
        response = client.post("/events", json=body, headers=auth_headers(organizer))
        assert response.status_code == 400
        assert response.json()["detail"] == "End date must be after start date"

    def test_list_and_get(self, client, event_id):
        assert [e["id"] for e in client.get("/events").json()] == [event_id]
        assert client.get(f"/events/{event_id}").json()["title"] == "PyData Meetup"
        assert client.get("/events/missing").status_code == 404

    def test_collaborator_can_edit_but_not_delete(self, client, organizer, attendee, auth_headers, event_id):
        body = dict(EVENT_BODY, collaborator_emails=["ADAM@example.com"])
        client.put(f"/events/{event_id}", json=body, headers=auth_headers(organizer))

        edited = client.put(f"/events/{event_id}", json=dict(body, title="Renamed"), headers=auth_headers(attendee))
        assert edited.status_code == 200
        assert edited.json()["organizer_id"] == organizer.id

        assert client.delete(f"/events/{event_id}", headers=auth_headers(attendee)).status_code == 403
        assert client.delete(f"/events/{event_id}", headers=auth_headers(organizer)).json() == {"ok": True}

    def test_stranger_cannot_edit(self, client, attendee, auth_headers, event_id):
        assert client.put(f"/events/{event_id}", json=EVENT_BODY, headers=auth_headers(attendee)).status_code == 403

    def test_close_registration(self, client, organizer, attendee, auth_headers, event_id):
        response = client.patch(f"/events/{event_id}/registration", json={"is_registration_open": False}, headers=auth_headers(organizer))
        assert response.json()["is_registration_open"] is False
        assert register(client, event_id, attendee, auth_headers).status_code == 400

    def test_full_update_keeps_registration_closed(self, client, organizer, auth_headers, event_id):
        client.patch(f"/events/{event_id}/registration", json={"is_registration_open": False}, headers=auth_headers(organizer))

        edited = client.put(f"/events/{event_id}", json=dict(EVENT_BODY, title="Renamed"), headers=auth_headers(organizer))
        assert edited.status_code == 200
        assert edited.json()["is_registration_open"] is False
        assert client.get(f"/events/{event_id}").json()["is_registration_open"] is False


class TestRegistrationFlow:
    def test_waitlist_and_promotion(self, client, organizer, attendee, second_attendee, auth_headers, event_id):
        first = register(client, event_id, attendee, auth_headers).json()
        second = register(client, event_id, second_attendee, auth_headers).json()
        assert first["status"] == "PENDING"
        assert second["status"] == "WAITLISTED"

        assert client.delete(f"/registrations/{first['id']}", headers=auth_headers(attendee)).json() == {"ok": True}

        mine = client.get("/my/registrations", headers=auth_headers(second_attendee)).json()
        assert mine[0]["status"] == "PENDING"
        kinds = [n["type"] for n in client.get("/notifications", headers=auth_headers(second_attendee)).json()["results"]]
        assert "waitlist" in kinds

    def test_duplicate_registration(self, client, attendee, auth_headers, event_id):
        register(client, event_id, attendee, auth_headers)
        response = register(client, event_id, attendee, auth_headers)
        assert response.status_code == 409

    def test_unknown_event(self, client, attendee, auth_headers):
        assert register(client, "missing", attendee, auth_headers).status_code == 404

    def test_organizer_is_notified(self, client, service, organizer, attendee, auth_headers, event_id):
        register(client, event_id, attendee, auth_headers)
        notifications = client.get("/notifications", headers=auth_headers(organizer)).json()["results"]
        assert notifications[0]["title"] == "New Registration"

        notif_id = notifications[0]["id"]
        assert client.post(f"/notifications/{notif_id}/read", headers=auth_headers(attendee)).status_code == 404
        assert client.post(f"/notifications/{notif_id}/read", headers=auth_headers(organizer)).json() == {"ok": True}
        assert service.get_notifications(organizer.id)[0].read is True

    def test_status_update_and_check_in(self, client, organizer, attendee, auth_headers, event_id):
        reg = register(client, event_id, attendee, auth_headers).json()

        listed = client.get(f"/events/{event_id}/registrations", headers=auth_headers(organizer)).json()
        assert [r["id"] for r in listed] == [reg["id"]]
        assert client.get(f"/events/{event_id}/registrations", headers=auth_headers(attendee)).status_code == 403

        assert client.post(f"/registrations/{reg['id']}/attendance", headers=auth_headers(organizer)).status_code == 400

        response = client.patch(f"/registrations/{reg['id']}/status", json={"status": "APPROVED"}, headers=auth_headers(organizer))
        assert response.json() == {"ok": True, "status": "APPROVED"}
        titles = [n["title"] for n in client.get("/notifications", headers=auth_headers(attendee)).json()["results"]]
        assert "Registration approved" in titles

        assert client.post(f"/registrations/{reg['id']}/attendance", headers=auth_headers(organizer)).json() == {"ok": True}

    def test_waitlisted_is_not_a_valid_target(self, client, organizer, attendee, auth_headers, event_id):
        reg = register(client, event_id, attendee, auth_headers).json()
        response = client.patch(f"/registrations/{reg['id']}/status", json={"status": "WAITLISTED"}, headers=auth_headers(organizer))
        assert response.status_code == 422

    def test_waitlisted_cannot_be_approved(self, client, organizer, attendee, second_attendee, auth_headers, event_id):
        register(client, event_id, attendee, auth_headers)
        waiting = register(client, event_id, second_attendee, auth_headers).json()

        response = client.patch(f"/registrations/{waiting['id']}/status", json={"status": "APPROVED"}, headers=auth_headers(organizer))
        assert response.status_code == 400
        assert response.json()["detail"] == "Waitlisted registrations are promoted automatically"

        mine = client.get("/my/registrations", headers=auth_headers(second_attendee)).json()
        assert mine[0]["status"] == "WAITLISTED"

    def test_ticket_and_scan(self, client, organizer, attendee, auth_headers, event_id):
        reg = register(client, event_id, attendee, auth_headers).json()
        client.patch(f"/registrations/{reg['id']}/status", json={"status": "APPROVED"}, headers=auth_headers(organizer))

        ticket = client.get(f"/registrations/{reg['id']}/ticket", headers=auth_headers(attendee))
        assert ticket.headers["content-type"] == "image/png"
        assert ticket.content.startswith(b"\x89PNG")

        data = json.dumps({"id": reg["id"], "eventId": event_id})
        scanned = client.post("/scan", json={"data": data, "event_id": event_id}, headers=auth_headers(organizer)).json()
        assert scanned["status"] == "ok"
        assert scanned["participant_name"] == attendee.name

    def test_scan_unknown_ticket(self, client, organizer, auth_headers):
        response = client.post("/scan", json={"data": json.dumps({"id": "unknown-id"})}, headers=auth_headers(organizer))
        assert response.json()["message"] == "Invalid Ticket or Participant not found"

    def test_reminders(self, client, organizer, attendee, auth_headers, event_id):
        reg = register(client, event_id, attendee, auth_headers).json()
        client.patch(f"/registrations/{reg['id']}/status", json={"status": "APPROVED"}, headers=auth_headers(organizer))
        assert client.post(f"/events/{event_id}/reminders", headers=auth_headers(organizer)).json() == {"sent": 1}


class TestTeams:
    def test_create_and_join(self, client, organizer, attendee, second_attendee, auth_headers):
        body = dict(EVENT_BODY, capacity=10, participation_mode="team", max_team_size=2)
        event_id = client.post("/events", json=body, headers=auth_headers(organizer)).json()["id"]

        leader = register(client, event_id, attendee, auth_headers, participation_type="team", team_name="Pandas").json()
        teams = client.get(f"/events/{event_id}/teams", headers=auth_headers(organizer)).json()["results"]
        code = teams[0]["invite_code"]

        preview = client.get(f"/teams/{code}", headers=auth_headers(second_attendee)).json()
        assert preview == {"id": leader["team_id"], "name": "Pandas", "event_id": event_id, "member_count": 1, "max_team_size": 2}

        member = register(client, event_id, second_attendee, auth_headers, participation_type="team", invite_code=code).json()
        assert member["team_id"] == leader["team_id"]

    def test_individual_on_team_event(self, client, organizer, attendee, auth_headers):
        body = dict(EVENT_BODY, participation_mode="team")
        event_id = client.post("/events", json=body, headers=auth_headers(organizer)).json()["id"]
        response = register(client, event_id, attendee, auth_headers)
        assert response.status_code == 400
        assert response.json()["detail"] == "This event only accepts team registrations"

    def test_unknown_code(self, client, attendee, auth_headers):
        assert client.get("/teams/ZZZZZZ", headers=auth_headers(attendee)).status_code == 404


class TestCommunity:
    def test_messages(self, client, attendee, auth_headers, event_id):
        client.post(f"/events/{event_id}/messages", json={"text": "Is there parking?"}, headers=auth_headers(attendee))
        client.post(f"/events/{event_id}/messages", json={"text": "Never mind, found it"}, headers=auth_headers(attendee))

        texts = [m["text"] for m in client.get(f"/events/{event_id}/messages").json()]
        assert texts == ["Is there parking?", "Never mind, found it"]

    def test_empty_message(self, client, attendee, auth_headers, event_id):
        assert client.post(f"/events/{event_id}/messages", json={"text": ""}, headers=auth_headers(attendee)).status_code == 422

    def test_one_review_per_user(self, client, attendee, auth_headers, event_id):
        first = client.post(f"/events/{event_id}/reviews", json={"rating": 5, "comment": "Great"}, headers=auth_headers(attendee))
        assert first.status_code == 200
        again = client.post(f"/events/{event_id}/reviews", json={"rating": 1}, headers=auth_headers(attendee))
        assert again.status_code == 409
        assert [r["rating"] for r in client.get(f"/events/{event_id}/reviews").json()] == [5]


class TestAI:
    def test_description_without_key(self, client, organizer, auth_headers):
        body = {"title": "PyData Meetup", "start": "2030-05-01T18:00:00Z", "location": "Main Hall"}
        response = client.post("/ai/description", json=body, headers=auth_headers(organizer))
        assert response.json()["description"].startswith("AI service is currently unavailable")

    def test_recommendations_fall_back(self, client, attendee, auth_headers, event_id):
        picks = client.get("/ai/recommendations", headers=auth_headers(attendee)).json()
        assert [e["id"] for e in picks] == [event_id]
