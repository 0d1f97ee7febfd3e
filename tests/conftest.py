import mongomock
import pytest
from fastapi.testclient import TestClient

import config
from mailer import MailDeliveryError
from main import create_app
from storage import BlobStorage

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


class FakeMailer:
    def __init__(self, configured=True, failing=()):
        self.configured = configured
        self.failing = set(failing)
        self.sent = []

    def is_configured(self):
        return self.configured

    def send(self, to, subject, html_body):
        if to in self.failing:
            raise MailDeliveryError(f"Failed to send email: mailbox {to} unavailable")
        self.sent.append({"to": to, "subject": subject, "html": html_body})


@pytest.fixture
def db():
    return mongomock.MongoClient().filereview


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def app(db, mailer, tmp_path):
    return create_app(db, debug=True, mailer=mailer, storage=BlobStorage(str(tmp_path / "uploads")))


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def signup(client, email, password="secret-pw"):
    """Sign up and return request headers carrying that user's session cookie."""
    res = client.post("/auth/signup", json={"email": email, "password": password})
    assert res.status_code == 201, res.text
    value = client.cookies.get(config.SESSION_COOKIE_NAME)
    client.cookies.clear()
    return {"cookie": f"{config.SESSION_COOKIE_NAME}={value}"}


def user_id(client, headers):
    return client.get("/auth/me", headers=headers).json()["id"]


def create_project(client, headers, name="Launch"):
    res = client.post("/projects", json={"name": name}, headers=headers)
    assert res.status_code == 201, res.text
    return res.json()


def invite(client, headers, project_id, email):
    res = client.post(f"/projects/{project_id}/reviewers", json={"email": email}, headers=headers)
    assert res.status_code == 201, res.text
    return res.json()


def upload(client, headers, project_id, name="mock.png", deadline=None):
    data = {"projectId": project_id}
    if deadline:
        data["deadline"] = deadline
    res = client.post("/files", data=data, files={"file": (name, PNG_BYTES, "image/png")}, headers=headers)
    assert res.status_code == 201, res.text
    return res.json()


def comment(client, headers, file_id, body="Looks good", x=10, y=20, **extra):
    return client.post("/comments", json={"fileId": file_id, "body": body, "x": x, "y": y, **extra}, headers=headers)


@pytest.fixture
def review_setup(client):
    """Owner alice with project and file; bob invited as reviewer and signed up."""
    alice = signup(client, "alice@example.com")
    project = create_project(client, alice)
    invite(client, alice, project["id"], "bob@example.com")
    bob = signup(client, "bob@example.com")
    file = upload(client, alice, project["id"])
    return {"alice": alice, "bob": bob, "project": project, "file": file}
