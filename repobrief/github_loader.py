# repobrief/github_loader.py

import asyncio
import fnmatch
import logging
from dataclasses import dataclass
from posixpath import basename
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote, urlparse

import httpx

from repobrief.errors import InvalidRepositoryUrlError

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
BRANCHES = ("main", "master")
MIN_CREDITS = 10

# Matched against the file name, whatever directory it sits in
IGNORE_FILES = [
    "*.jpg", "*.jpeg", "*.png", "*.gif", "*.svg", "*.ico",
    "*.mp4", "*.mp3", "*.wav", "*.ogg",
    "*.pdf", "*.zip", "*.tar.gz",
]


@dataclass
class RepoDocument:
    path: str
    content: str


def parse_github_url(url: str) -> Tuple[str, str]:
    """Return (owner, repo) for a github.com URL."""
    parsed = urlparse((url or "").strip())
    if parsed.hostname != "github.com":
        raise InvalidRepositoryUrlError("Invalid GitHub URL")

    path = parsed.path.strip("/")
    if path.endswith(".git"):
        path = path[:-4]

    segments = [s for s in path.split("/") if s]
    if len(segments) < 2:
        raise InvalidRepositoryUrlError("Invalid GitHub URL")

    return segments[0], segments[1]


def is_ignored(path: str) -> bool:
    name = basename(path).lower()
    return any(fnmatch.fnmatch(name, pattern) for pattern in IGNORE_FILES)


def github_headers(token: Optional[str], accept: str = "application/vnd.github.v3+json") -> Dict[str, str]:
    headers = {"Accept": accept, "User-Agent": "RepoBrief/1.0"}
    if token:
        headers["Authorization"] = f"token {token}"
    return headers


def placeholder_document(repo_url: str) -> RepoDocument:
    name = (repo_url or "").rstrip("/").split("/")[-1] or "repository"
    return RepoDocument(
        path="README.md",
        content=(
            f"# {name}\n\n"
            "This repository appears to be empty or inaccessible. "
            "Please add some files to this repository."
        ),
    )


class GitHubClient:
    """Read-only access to the GitHub REST API over a shared httpx client."""

    def __init__(self, token: Optional[str] = None, http: Optional[httpx.Client] = None, api_url: str = GITHUB_API):
        self.token = token
        self.http = http if http is not None else httpx.Client(timeout=30.0, follow_redirects=True)
        self.api_url = api_url.rstrip("/")

    def with_token(self, token: Optional[str]) -> "GitHubClient":
        """Same connection pool, different credential. No token keeps the current one."""
        if not token or token == self.token:
            return self
        return GitHubClient(token=token, http=self.http, api_url=self.api_url)

    def _get(self, url: str, accept: str = "application/vnd.github.v3+json", params=None) -> httpx.Response:
        response = self.http.get(url, headers=github_headers(self.token, accept), params=params)
        response.raise_for_status()
        return response

    def _contents_url(self, owner: str, repo: str, path: str) -> str:
        return f"{self.api_url}/repos/{owner}/{repo}/contents/{quote(path, safe='/')}"

    def list_directory(self, owner: str, repo: str, path: str = "", ref: Optional[str] = None) -> List[dict]:
        params = {"ref": ref} if ref else None
        data = self._get(self._contents_url(owner, repo, path), params=params).json()
        # A file path returns a single object instead of a listing
        return data if isinstance(data, list) else [data]

    def get_file_text(self, owner: str, repo: str, path: str, ref: Optional[str] = None) -> str:
        params = {"ref": ref} if ref else None
        return self._get(self._contents_url(owner, repo, path), accept="application/vnd.github.raw", params=params).text

    def list_commits(self, owner: str, repo: str, per_page: int = 20) -> List[dict]:
        url = f"{self.api_url}/repos/{owner}/{repo}/commits"
        return self._get(url, params={"per_page": per_page}).json() or []

    def get_commit_diff(self, repo_url: str, commit_hash: str) -> str:
        url = f"{repo_url.rstrip('/')}/commit/{commit_hash}.diff"
        return self._get(url, accept="application/vnd.github.v3.diff").text

    def close(self):
        self.http.close()


def _load_branch(client: GitHubClient, owner: str, repo: str, branch: str, recursive: bool) -> List[RepoDocument]:
    docs = []
    pending = [""]

    while pending:
        path = pending.pop(0)
        for item in client.list_directory(owner, repo, path, ref=branch):
            kind = item.get("type")
            item_path = item.get("path", "")

            if kind == "dir":
                if recursive:
                    pending.append(item_path)
            elif kind == "file":
                if is_ignored(item_path):
                    continue
                content = client.get_file_text(owner, repo, item_path, ref=branch)
                docs.append(RepoDocument(path=item_path, content=content))

    return docs


def load_github_repository(
    repo_url: str,
    access_token: Optional[str] = None,
    recursive: bool = False,
    github: Optional[GitHubClient] = None,
) -> List[RepoDocument]:
    """
    Load every non-ignored file of a GitHub repository as text.

    Tries the `main` branch, then `master`. If both fail, returns a single
    placeholder README so callers never have to handle an exception here.
    """
    logger.info(f"[GITHUB] Loading repository: {repo_url}")
    logger.info(f"[GITHUB] Access token provided: {'Yes' if access_token else 'No'}, recursive: {recursive}")

    owned = github is None
    client = (github or GitHubClient()).with_token(access_token)

    try:
        for branch in BRANCHES:
            try:
                owner, repo = parse_github_url(repo_url)
                docs = _load_branch(client, owner, repo, branch, recursive)
                logger.info(f"[GITHUB] Loaded {len(docs)} documents from {repo_url} ({branch} branch)")
                return docs
            except Exception as e:
                logger.error(f"[GITHUB] Error loading {repo_url} on branch '{branch}': {e}")
    finally:
        if owned:
            client.close()

    logger.warning(f"[GITHUB] Creating a placeholder README for empty repository {repo_url}")
    return [placeholder_document(repo_url)]


# ================================================================
# Credit estimate: one credit per file in the repository
# ================================================================

async def _count_files(client: httpx.AsyncClient, api_url: str, owner: str, repo: str, path: str, headers) -> int:
    url = f"{api_url}/repos/{owner}/{repo}/contents/{quote(path, safe='/')}"
    try:
        response = await client.get(url, headers=headers)
        response.raise_for_status()
        data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"[CREDITS] Error counting files under '{path or '/'}': {e}")
        return 0

    if not isinstance(data, list):
        return 1 if data.get("type") == "file" else 0

    count = sum(1 for item in data if item.get("type") == "file")
    directories = [item["path"] for item in data if item.get("type") == "dir"]

    if directories:
        counts = await asyncio.gather(
            *(_count_files(client, api_url, owner, repo, d, headers) for d in directories)
        )
        count += sum(counts)

    return count


async def check_credits(
    repo_url: str,
    token: Optional[str] = None,
    http: Optional[httpx.AsyncClient] = None,
    api_url: str = GITHUB_API,
) -> int:
    """Credits needed to ingest a repository: one per file, at least MIN_CREDITS. 0 for a bad URL."""
    try:
        owner, repo = parse_github_url(repo_url)
    except InvalidRepositoryUrlError:
        logger.warning(f"[CREDITS] Cannot estimate credits for invalid URL: {repo_url}")
        return 0

    client = http if http is not None else httpx.AsyncClient(timeout=30.0, follow_redirects=True)
    try:
        total = await _count_files(client, api_url.rstrip("/"), owner, repo, "", github_headers(token))
    finally:
        if http is None:
            await client.aclose()

    logger.info(f"[CREDITS] {repo_url} has {total} files")
    return max(MIN_CREDITS, total)
