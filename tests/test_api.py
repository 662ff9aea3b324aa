from fastapi import FastAPI
from fastapi.testclient import TestClient

from errors import UNAVAILABLE_MESSAGE, StoreUnavailableError, register_exception_handlers
from main import app, get_engine


def test_root_reports_up(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["message"].endswith("is up")


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "UP"
    assert payload["timestamp"].isdigit()


def test_identify_new_contact(client):
    response = client.post("/identify", json={"email": "lorraine@hillvalley.edu", "phoneNumber": "123456"})

    assert response.status_code == 200
    assert response.json() == {
        "contact": {
            "primaryContactId": 1,
            "emails": ["lorraine@hillvalley.edu"],
            "phoneNumbers": ["123456"],
            "secondaryContactIds": [],
        }
    }


def test_identify_links_and_consolidates(client):
    client.post("/identify", json={"email": "lorraine@hillvalley.edu", "phoneNumber": "123456"})
    response = client.post("/identify", json={"email": "mcfly@hillvalley.edu", "phoneNumber": 123456})

    assert response.status_code == 200
    assert response.json()["contact"] == {
        "primaryContactId": 1,
        "emails": ["lorraine@hillvalley.edu", "mcfly@hillvalley.edu"],
        "phoneNumbers": ["123456"],
        "secondaryContactIds": [2],
    }

    lookup = client.post("/identify", json={"email": None, "phoneNumber": "123456"})
    assert lookup.json() == response.json()


def test_identify_rejects_missing_contact_methods(client):
    for body in ({}, {"email": None, "phoneNumber": None}, {"email": "  ", "phoneNumber": ""}):
        response = client.post("/identify", json=body)
        assert response.status_code == 400
        assert response.json() == {
            "detail": "Either email or phoneNumber must be provided",
            "code": "request.validation_error",
        }


def test_identify_rejects_malformed_email(client, rows):
    response = client.post("/identify", json={"email": "not-an-email", "phoneNumber": "1"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid email format"
    assert rows() == {}


def test_identify_rejects_display_name_email(client, rows):
    response = client.post("/identify", json={"email": "Doc Brown <doc@hillvalley.edu>", "phoneNumber": "1"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid email format"
    assert rows() == {}


def test_invariant_violation_is_opaque(client, seed):
    a = seed("a@x.com", "1")
    b = seed("b@x.com", "1", linked_to=a.id)
    seed("c@x.com", "3", linked_to=b.id)

    response = client.post("/identify", json={"email": "c@x.com", "phoneNumber": "4"})

    assert response.status_code == 500
    assert response.json() == {"detail": UNAVAILABLE_MESSAGE, "code": "internal.invariant_violation"}


def test_store_unavailable_is_transient(client):
    class DownEngine:
        def reconcile(self, request):
            raise StoreUnavailableError("database is locked", context={"db_path": "/secret/contacts.db"})

    app.dependency_overrides[get_engine] = lambda: DownEngine()

    response = client.post("/identify", json={"phoneNumber": "1"})

    assert response.status_code == 503
    assert response.json() == {"detail": UNAVAILABLE_MESSAGE, "code": "store.unavailable"}
    assert "secret" not in response.text


def test_unhandled_error_is_opaque():
    bare = FastAPI()
    register_exception_handlers(bare)

    @bare.get("/boom")
    async def boom():
        raise RuntimeError("row 7 has email a@x.com")

    response = TestClient(bare, raise_server_exceptions=False).get("/boom")

    assert response.status_code == 500
    assert response.json() == {"detail": UNAVAILABLE_MESSAGE, "code": "internal.unhandled"}
