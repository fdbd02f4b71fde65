"""API tests: the app is built with in-memory storage and fake Gemini/GitHub clients."""
import asyncio

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from repobrief import main
from repobrief.config import Settings
from repobrief.main import create_app
from repobrief.models import FileRecord, User
from repobrief.query_search import APOLOGY

REPO = "https://github.com/octo/demo"


@pytest.fixture
def github_stub(fake_github_factory, sample_repo_files, commit_factory):
    return fake_github_factory(sample_repo_files, commits=[commit_factory("aaa", "Init")], diffs={"aaa": "diff"})


@pytest.fixture
def client(session_factory, fake_gemini, github_stub):
    app = create_app(
        settings=Settings(database_url=None, gemini_api_key=None),
        session_factory=session_factory,
        gemini=fake_gemini,
        github=github_stub.client(),
        credits_http=github_stub.async_client(),
    )
    return TestClient(app)


@pytest.fixture
def ingested(session, project):
    session.add(FileRecord(project_id="proj_1", file_name="src/server.py", summary="Runs the HTTP server.",
                           source_code="def start_server():\n    serve_forever()\n"))
    session.commit()
    return project


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_sync_user_and_read_credits(client):
    response = client.post("/users/sync", json={"user_id": "user_9", "first_name": "Lin"})
    assert response.json() == {"id": "user_9", "credits": 150}

    response = client.get("/users/user_9/credits", params={"required": 200})
    assert response.json()["has_enough_credits"] is False


def test_unknown_user_credits_is_404(client):
    assert client.get("/users/ghost/credits").status_code == 404


def test_purchase_is_credited_once(client, user):
    body = {"amount": 100, "event_id": "evt_42"}

    assert client.post("/users/user_1/credits", json=body).json() == {"credits": 250}
    assert client.post("/users/user_1/credits", json=body).json() == {"credits": 250}


def test_purchase_requires_positive_amount(client, user):
    assert client.post("/users/user_1/credits", json={"amount": 0}).status_code == 422


def test_estimate_credits(client):
    response = client.post("/credits/estimate", json={"repo_url": REPO})
    assert response.json() == {"credits": 10}


def test_estimate_credits_for_bad_url(client):
    assert client.post("/credits/estimate", json={"repo_url": "https://example.com/a/b"}).json() == {"credits": 0}


def test_create_project_charges_and_ingests(client, session, user):
    response = client.post("/projects", json={"user_id": "user_1", "name": "Demo", "repo_url": REPO})

    assert response.status_code == 200
    body = response.json()
    assert body["credits_charged"] == 10

    status = client.get(f"/projects/{body['id']}/status").json()
    assert status == {"project_id": body["id"], "status": "completed", "error": None}

    session.expire_all()
    assert session.get(User, "user_1").credits == 140
    names = {f.file_name for f in session.query(FileRecord).filter(FileRecord.project_id == body["id"])}
    assert names == {"README.md", "package.json", "src/index.ts"}

    commits = client.post(f"/projects/{body['id']}/commits").json()
    assert [c["commit_hash"] for c in commits] == ["aaa"]

    listed = client.get("/projects", params={"user_id": "user_1"}).json()
    assert [p["id"] for p in listed] == [body["id"]]


def test_create_project_without_enough_credits(client, session, user):
    user.credits = 5
    session.commit()

    response = client.post("/projects", json={"user_id": "user_1", "name": "Demo", "repo_url": REPO})

    assert response.status_code == 402
    assert "Insufficient credits" in response.json()["error"]
    assert client.get("/projects", params={"user_id": "user_1"}).json() == []


def test_create_project_with_invalid_url(client, user):
    response = client.post("/projects", json={"user_id": "user_1", "name": "x", "repo_url": "not-a-url"})
    assert response.status_code == 400


def test_unknown_project_status_is_404(client):
    assert client.get("/projects/nope/status").status_code == 404


def test_archive_project(client, project):
    assert client.post("/projects/proj_1/archive").json()["deleted_at"] is not None
    assert client.post("/projects/proj_1/archive").status_code == 404


def test_reingest_replaces_files(client, session, ingested):
    response = client.post("/projects/proj_1/ingest", json={})

    assert response.json()["inserted"] == 3
    names = {f.file_name for f in session.query(FileRecord).filter(FileRecord.project_id == "proj_1")}
    assert "src/server.py" not in names


def test_backfill(client, ingested):
    assert client.post("/projects/proj_1/backfill").json() == {"filled": 1}


def test_ask_question(client, ingested, fake_gemini):
    response = client.post("/qa", json={"project_id": "proj_1", "question": "How does start_server work?"})

    body = response.json()
    assert body["answer"] == "Generated answer"
    assert body["referenced_files"][0]["file_name"] == "src/server.py"


def test_ask_question_generation_failure(client, ingested, fake_gemini):
    fake_gemini.fail_generate = True

    response = client.post("/qa", json={"project_id": "proj_1", "question": "anything"})

    assert response.status_code == 200
    assert response.json()["answer"] == APOLOGY


def test_ask_question_unknown_project(client):
    response = client.post("/qa", json={"project_id": "nope", "question": "anything"})
    assert response.status_code == 404


def test_ask_question_invalid_mode(client, ingested):
    response = client.post("/qa", json={"project_id": "proj_1", "question": "q", "mode": "fuzzy"})
    assert response.status_code == 422


def test_stream_question(client, ingested):
    response = client.post("/qa/stream", json={"project_id": "proj_1", "question": "start_server"})

    assert response.status_code == 200
    assert response.text == "Generated answer"


def test_simple_question(client, ingested):
    response = client.post("/simple-qa", json={"project_id": "proj_1", "question": "where is serve_forever"})

    [ref] = response.json()["referenced_files"]
    assert ref["file_name"] == "src/server.py"
    assert ref["matching_lines"] == [2]


def test_save_and_list_questions(client, ingested, user):
    saved = client.post("/questions", json={
        "project_id": "proj_1",
        "user_id": "user_1",
        "question": "What runs the server?",
        "answer": "start_server",
        "referenced_files": [{"file_name": "src/server.py"}],
    })
    assert saved.json()["success"] is True

    listed = client.get("/questions", params={"project_id": "proj_1"}).json()
    assert listed["saved_questions"][0]["question"] == "What runs the server?"
    assert listed["saved_questions"][0]["user"]["id"] == "user_1"


def test_unexpected_error_returns_json_error(session_factory, fake_gemini, github_stub, user, monkeypatch):
    def failing_create(*args):
        raise OperationalError("INSERT", {}, Exception("connection lost"))

    monkeypatch.setattr(main, "create_project", failing_create)
    app = create_app(
        settings=Settings(database_url=None, gemini_api_key=None),
        session_factory=session_factory,
        gemini=fake_gemini,
        github=github_stub.client(),
        credits_http=github_stub.async_client(),
    )
    client = TestClient(app, raise_server_exceptions=False)

    response = client.post("/projects", json={"user_id": "user_1", "name": "Demo", "repo_url": REPO})

    assert response.status_code == 500
    assert response.headers["content-type"] == "application/json"
    assert response.json()["error"] == "Internal server error"
    assert "connection lost" in response.json()["message"]


def test_project_is_created_outside_the_event_loop(client, user, monkeypatch):
    real_create = main.create_project
    loops = []

    def recording_create(*args):
        try:
            loops.append(asyncio.get_running_loop())
        except RuntimeError:
            loops.append(None)
        return real_create(*args)

    monkeypatch.setattr(main, "create_project", recording_create)

    response = client.post("/projects", json={"user_id": "user_1", "name": "Demo", "repo_url": REPO})

    assert response.status_code == 200
    assert loops == [None]


def test_join_and_list_members(client, session, project, user):
    session.add(User(id="user_2", first_name="Grace"))
    session.commit()

    first = client.post("/projects/proj_1/join", json={"user_id": "user_2"})
    again = client.post("/projects/proj_1/join", json={"user_id": "user_2"})

    assert first.json() == {"message": "Successfully joined the project"}
    assert again.json() == {"message": "You are already a member of this project"}

    members = client.get("/projects/proj_1/members").json()
    assert members["total_members"] == 1
    assert members["members"][0]["user_id"] == "user_2"


def test_join_missing_project_is_404(client, user):
    response = client.post("/projects/nope/join", json={"user_id": "user_1"})
    assert response.status_code == 404
