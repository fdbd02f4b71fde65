"""
Shared fixtures: an in-memory database, a fake Gemini client and a fake
GitHub served through httpx.MockTransport.
"""
import re
from typing import Dict, List, Optional
from urllib.parse import unquote

import httpx
import pytest

from repobrief.db import init_db, make_engine, make_session_factory
from repobrief.gemini import fallback_embedding
from repobrief.github_loader import GitHubClient
from repobrief.models import Project, User


# ============================================================
# Database
# ============================================================

@pytest.fixture
def session_factory():
    engine = make_engine("sqlite:///:memory:")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def user(session):
    u = User(id="user_1", first_name="Ada", last_name="Lovelace", credits=150)
    session.add(u)
    session.commit()
    return u


@pytest.fixture
def project(session, user):
    p = Project(id="proj_1", name="Demo", repo_url="https://github.com/octo/demo")
    session.add(p)
    session.commit()
    return p


# ============================================================
# Gemini
# ============================================================

class FakeGemini:
    """Stands in for GeminiClient. Records what it was asked."""

    def __init__(self, answer: str = "Generated answer", fail_generate: bool = False,
                 stream_chunks: Optional[List[str]] = None, fail_stream_after: Optional[int] = None):
        self.answer = answer
        self.fail_generate = fail_generate
        self.stream_chunks = stream_chunks or ["Generated ", "answer"]
        self.fail_stream_after = fail_stream_after
        self.summarized: List[str] = []
        self.embedded: List[str] = []
        self.diffs: List[str] = []
        self.prompts: List[str] = []

    def summarize_code(self, code: str) -> str:
        self.summarized.append(code)
        return "A short file summary."

    def summarize_diff(self, diff: str) -> str:
        self.diffs.append(diff)
        return f"Summary of a {len(diff)} character diff."

    def embed(self, text: str) -> List[float]:
        self.embedded.append(text)
        return fallback_embedding(text)

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.fail_generate:
            raise RuntimeError("Gemini unavailable")
        return self.answer

    def stream(self, prompt: str):
        self.prompts.append(prompt)
        for idx, chunk in enumerate(self.stream_chunks):
            if self.fail_stream_after is not None and idx >= self.fail_stream_after:
                raise RuntimeError("stream broken")
            yield chunk


@pytest.fixture
def fake_gemini():
    return FakeGemini()


# ============================================================
# GitHub
# ============================================================

def _list_dir(files: Dict[str, str], sub: str):
    entries = {}
    prefix = f"{sub}/" if sub else ""
    for path in files:
        if not path.startswith(prefix):
            continue
        rest = path[len(prefix):]
        first = rest.split("/")[0]
        full = prefix + first
        entries[full] = {"type": "dir" if "/" in rest else "file", "path": full, "name": first}
    if not entries and sub:
        return None
    return list(entries.values())


class FakeGitHub:
    """
    Serves a repository from a {path: content} dict on one branch.

    `commits` is the commit listing, `diffs` maps hash -> diff text or an
    int status code (or a list of them, consumed one per request).
    """

    def __init__(self, files: Dict[str, str], branch: str = "main", commits: Optional[list] = None,
                 diffs: Optional[dict] = None, broken_dirs=(), fail_all: bool = False):
        self.files = files
        self.branch = branch
        self.commits = commits or []
        self.diffs = diffs or {}
        self.broken_dirs = set(broken_dirs)
        self.fail_all = fail_all
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_all:
            return httpx.Response(500, json={"message": "boom"})

        path = unquote(request.url.path)

        if request.url.host == "github.com":
            m = re.match(r"^/[^/]+/[^/]+/commit/([0-9a-f]+)\.diff$", path)
            outcome = self.diffs.get(m.group(1), 404) if m else 404
            if isinstance(outcome, list):
                outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
            if isinstance(outcome, int):
                return httpx.Response(outcome, text="error")
            return httpx.Response(200, text=outcome)

        if path.endswith("/commits"):
            return httpx.Response(200, json=self.commits)

        m = re.match(r"^/repos/[^/]+/[^/]+/contents/?(.*)$", path)
        if not m:
            return httpx.Response(404, json={"message": "Not Found"})

        ref = request.url.params.get("ref")
        if ref is not None and ref != self.branch:
            return httpx.Response(404, json={"message": "No commit found for the ref"})

        sub = m.group(1).strip("/")
        if sub in self.broken_dirs:
            return httpx.Response(500, json={"message": "boom"})
        if sub in self.files:
            if request.headers.get("accept") == "application/vnd.github.raw":
                return httpx.Response(200, text=self.files[sub])
            return httpx.Response(200, json={"type": "file", "path": sub, "name": sub.split("/")[-1]})

        listing = _list_dir(self.files, sub)
        if listing is None:
            return httpx.Response(404, json={"message": "Not Found"})
        return httpx.Response(200, json=listing)

    def client(self, token: Optional[str] = None) -> GitHubClient:
        return GitHubClient(token=token, http=httpx.Client(transport=httpx.MockTransport(self.handler)))

    def async_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def make_commit(sha: str, message: str, date: str = "2024-05-01T10:00:00Z", author: str = "Ada") -> dict:
    return {
        "sha": sha,
        "commit": {"message": message, "author": {"name": author, "date": date}},
        "author": {"avatar_url": f"https://avatars.example/{author}.png"},
    }


@pytest.fixture
def fake_github_factory():
    return FakeGitHub


@pytest.fixture
def commit_factory():
    return make_commit


@pytest.fixture
def sample_repo_files():
    return {
        "src/index.ts": "import express from 'express';\nconst app = express();\nbootstrapServer(app);\n",
        "package.json": '{"name": "demo", "version": "1.0.0"}',
        "README.md": "# Demo\nA tiny demo service.",
    }
