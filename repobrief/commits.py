# repobrief/commits.py

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from tenacity import Retrying, retry_if_exception, stop_after_attempt

from repobrief.errors import CommitPersistenceError, ProjectNotFoundError, RepoBriefError
from repobrief.github_loader import GitHubClient, parse_github_url
from repobrief.models import CommitRecord, Project

logger = logging.getLogger(__name__)

COMMIT_LIMIT = 20
COMMIT_DELAY_SECONDS = 2
MAX_RETRIES = 3

FORBIDDEN_SUMMARY = (
    "Updated code in repository. "
    "(Note: Detailed summary unavailable due to GitHub access restrictions)"
)
NOT_FOUND_SUMMARY = (
    "New commit added to repository. "
    "(Note: Detailed summary unavailable as commit details could not be found)"
)
FAILED_SUMMARY = "[AI summary failed]"


@dataclass
class CommitInfo:
    hash: str
    message: str
    author: str
    date: Optional[str]
    author_avatar: Optional[str] = None


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def get_commit_hashes(github: GitHubClient, repo_url: str, limit: int = COMMIT_LIMIT) -> List[CommitInfo]:
    """Most recent commits first, as the hosting API returns them."""
    owner, repo = parse_github_url(repo_url)
    commits = []
    for item in github.list_commits(owner, repo, per_page=limit)[:limit]:
        commit = item.get("commit") or {}
        author = commit.get("author") or {}
        commits.append(CommitInfo(
            hash=item["sha"],
            message=commit.get("message") or "",
            author=author.get("name") or "Unknown",
            date=author.get("date"),
            author_avatar=(item.get("author") or {}).get("avatar_url"),
        ))
    return commits


# ================================================================
# Diff summaries
# ================================================================

def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429
    return isinstance(exc, httpx.TransportError)


def _backoff(retry_state) -> float:
    exc = retry_state.outcome.exception()
    if isinstance(exc, httpx.HTTPStatusError):
        retry_after = exc.response.headers.get("retry-after", "")
        if retry_after.isdigit():
            return float(retry_after)
    return float(2 ** retry_state.attempt_number)


def fetch_commit_diff(github: GitHubClient, repo_url: str, commit_hash: str, sleep: Callable = time.sleep) -> str:
    retrying = Retrying(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(MAX_RETRIES),
        wait=_backoff,
        sleep=sleep,
        reraise=True,
    )
    return retrying(github.get_commit_diff, repo_url, commit_hash)


def fetch_commit_summary(github: GitHubClient, gemini, repo_url: str, commit_hash: str, sleep: Callable = time.sleep) -> str:
    """AI summary of one commit's diff. 403/404 give a canned summary without retrying."""
    try:
        diff = fetch_commit_diff(github, repo_url, commit_hash, sleep=sleep)
    except httpx.HTTPStatusError as e:
        status = e.response.status_code
        if status == 403:
            logger.error(f"[COMMITS] 403 Forbidden for commit {commit_hash}, access restricted or rate limited")
            return FORBIDDEN_SUMMARY
        if status == 404:
            logger.error(f"[COMMITS] 404 Not Found for commit {commit_hash}")
            return NOT_FOUND_SUMMARY
        logger.error(f"[COMMITS] Could not fetch diff for {commit_hash}: HTTP {status}")
        return FAILED_SUMMARY
    except httpx.HTTPError as e:
        logger.error(f"[COMMITS] Could not fetch diff for {commit_hash}: {e}")
        return FAILED_SUMMARY

    return gemini.summarize_diff(diff)


# ================================================================
# Pull + upsert
# ================================================================

def filter_unprocessed_commits(session, project_id: str, commits: List[CommitInfo]) -> List[CommitInfo]:
    hashes = [c.hash for c in commits]
    if not hashes:
        return []

    processed = {
        row.commit_hash
        for row in session.query(CommitRecord.commit_hash)
        .filter(CommitRecord.project_id == project_id, CommitRecord.commit_hash.in_(hashes))
        .all()
    }
    return [c for c in commits if c.hash not in processed]


def upsert_commit(session, project_id: str, commit: CommitInfo, summary: str) -> CommitRecord:
    record = (
        session.query(CommitRecord)
        .filter(CommitRecord.project_id == project_id, CommitRecord.commit_hash == commit.hash)
        .one_or_none()
    )
    if record is None:
        record = CommitRecord(project_id=project_id, commit_hash=commit.hash)
        session.add(record)

    record.summary = summary
    record.message = commit.message
    record.author_name = commit.author
    record.author_avatar = commit.author_avatar or ""
    record.committed_at = _parse_date(commit.date)
    return record


def list_project_commits(session, project_id: str) -> List[CommitRecord]:
    return (
        session.query(CommitRecord)
        .filter(CommitRecord.project_id == project_id)
        .order_by(CommitRecord.committed_at.desc(), CommitRecord.id.desc())
        .all()
    )


def pull_commits(
    session,
    github: GitHubClient,
    gemini,
    project_id: str,
    sleep: Callable = time.sleep,
    delay_seconds: float = COMMIT_DELAY_SECONDS,
) -> List[CommitRecord]:
    """
    Summarize and store the project's new commits, then return all its
    commits as stored, newest first.

    Already-stored hashes are skipped entirely. A summary failure stores a
    placeholder; a database failure aborts the pull.
    """
    logger.info(f"[COMMITS] Fetching project and GitHub URL for project {project_id}")
    project = session.query(Project).filter(Project.id == project_id).first()
    if project is None or not project.repo_url:
        raise ProjectNotFoundError("Project or GitHub URL not found")

    try:
        commits = get_commit_hashes(github, project.repo_url)
    except httpx.HTTPError as e:
        logger.error(f"[COMMITS] Error listing commits for {project.repo_url}: {e}")
        raise RepoBriefError(f"Could not pull commits: {e}") from e
    logger.info(f"[COMMITS] Got {len(commits)} commits from GitHub")

    new_commits = filter_unprocessed_commits(session, project_id, commits)
    logger.info(f"[COMMITS] Processing {len(new_commits)} new commits")

    for idx, commit in enumerate(new_commits):
        if idx > 0:
            sleep(delay_seconds)

        try:
            summary = fetch_commit_summary(github, gemini, project.repo_url, commit.hash, sleep=sleep)
        except Exception as e:
            logger.error(f"[COMMITS] Error summarizing commit {commit.hash}: {e}")
            summary = FAILED_SUMMARY

        try:
            upsert_commit(session, project_id, commit, summary)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"[COMMITS] Error saving commit {commit.hash}: {e}")
            raise CommitPersistenceError(f"Could not save commit {commit.hash} to database: {e}") from e

    # Re-read so the caller sees what is actually stored
    return list_project_commits(session, project_id)
