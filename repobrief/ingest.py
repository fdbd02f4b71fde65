# repobrief/ingest.py

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from tenacity import Retrying, retry_if_exception_type, retry_if_result, stop_after_attempt, wait_incrementing

from repobrief.gemini import fallback_embedding
from repobrief.github_loader import RepoDocument, load_github_repository
from repobrief.models import EMBEDDING_DIM, FileRecord

logger = logging.getLogger(__name__)

MAX_LOAD_ATTEMPTS = 3
LOAD_RETRY_SECONDS = 3


@dataclass
class IngestReport:
    project_id: str
    documents: int = 0
    inserted: int = 0
    embedded: int = 0
    failed: List[str] = field(default_factory=list)


# ================================================================
# Processing order
# ================================================================

def _priority(path: str) -> int:
    lower = "/" + (path or "").lower()
    if "readme" in lower:
        return 0
    if "package.json" in lower:
        return 1
    if "/src/" in lower:
        return 2
    return 3


def prioritize_documents(docs: List[RepoDocument]) -> List[RepoDocument]:
    """README first, then package.json, then anything under src/, then the rest. Stable."""
    return sorted(docs, key=lambda d: _priority(d.path))


def load_documents(
    repo_url: str,
    token: Optional[str],
    loader: Callable = load_github_repository,
    sleep: Callable[[float], None] = time.sleep,
) -> List[RepoDocument]:
    """Recursive load, tried again (after 3s, then 6s) while nothing comes back."""
    retrying = Retrying(
        retry=retry_if_result(lambda docs: not docs) | retry_if_exception_type(Exception),
        stop=stop_after_attempt(MAX_LOAD_ATTEMPTS),
        wait=wait_incrementing(start=LOAD_RETRY_SECONDS, increment=LOAD_RETRY_SECONDS),
        sleep=sleep,
        retry_error_callback=lambda state: [],
    )
    return retrying(loader, repo_url, token, recursive=True)


# ================================================================
# Per-file steps
# ================================================================

def _summarize(gemini, source_code: str, file_name: str) -> str:
    try:
        summary = gemini.summarize_code(source_code)
    except Exception as e:
        logger.warning(f"[INGEST] Summary error for {file_name}: {e}")
        summary = ""
    return summary or f"Summary unavailable for {file_name}"


def _embed(gemini, summary: str, file_name: str) -> List[float]:
    try:
        return list(gemini.embed(summary))
    except Exception as e:
        logger.warning(f"[INGEST] Embedding error for {file_name}: {e}")
        return fallback_embedding(summary)


def _store(session, project_id: str, file_name: str, summary: str, source_code: str, embedding: List[float]) -> bool:
    """Insert the row, then set its vector in a second statement. Returns whether a vector was written."""
    record = FileRecord(
        project_id=project_id,
        file_name=file_name,
        summary=summary,
        source_code=source_code,
    )
    session.add(record)
    session.flush()

    has_vector = len(embedding) == EMBEDDING_DIM
    if has_vector:
        session.execute(
            update(FileRecord)
            .where(FileRecord.id == record.id)
            .values(embedding=embedding)
        )
    else:
        logger.warning(f"[INGEST] Invalid embedding for {file_name} ({len(embedding)} values), storing text only")

    session.commit()
    return has_vector


# ================================================================
# Pipeline
# ================================================================

def ingest_repository(
    session,
    gemini,
    project_id: str,
    repo_url: str,
    token: Optional[str] = None,
    max_files: Optional[int] = None,
    loader: Callable = load_github_repository,
    sleep: Callable[[float], None] = time.sleep,
    delay_seconds: float = 0.0,
) -> IngestReport:
    """
    Load, summarize, embed and store every file of a repository for a project.

    Files go one at a time, in priority order, to stay under the API rate
    limits. A failure on one file is logged and the next file is processed;
    nothing is rolled back across files, so a re-run without deleting the
    project's rows first will duplicate them.
    """
    report = IngestReport(project_id=project_id)

    logger.info(f"[INGEST] Loading documents from repo: {repo_url}")
    docs = load_documents(repo_url, token, loader=loader, sleep=sleep)

    if not docs:
        logger.warning(f"[INGEST] No documents loaded from {repo_url} after {MAX_LOAD_ATTEMPTS} attempts")
        return report

    ordered = prioritize_documents(docs)
    if max_files is not None:
        ordered = ordered[:max_files]
    report.documents = len(ordered)

    logger.info(f"[INGEST] Summarizing and embedding {len(ordered)} documents...")

    for idx, doc in enumerate(ordered):
        if idx > 0 and delay_seconds:
            sleep(delay_seconds)

        file_name = doc.path or f"unknown-file-{idx}"
        logger.info(f"[INGEST] Processing {idx + 1}/{len(ordered)}: {file_name}")

        summary = _summarize(gemini, doc.content, file_name)
        embedding = _embed(gemini, summary, file_name)

        try:
            if _store(session, project_id, file_name, summary, doc.content or "", embedding):
                report.embedded += 1
            report.inserted += 1
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"[DB] Insert error for {file_name}: {e}")
            report.failed.append(file_name)

    logger.info(
        f"[INGEST] Finished project {project_id}: {report.inserted} stored, "
        f"{report.embedded} with vectors, {len(report.failed)} failed"
    )
    return report


def delete_project_files(session, project_id: str) -> int:
    deleted = session.query(FileRecord).filter(FileRecord.project_id == project_id).delete()
    session.commit()
    logger.info(f"[DB] Removed {deleted} stored files for project {project_id}")
    return deleted


def reingest_repository(session, gemini, project_id: str, repo_url: str, token: Optional[str] = None, **kwargs) -> IngestReport:
    """Drop the project's stored files and ingest from scratch."""
    delete_project_files(session, project_id)
    return ingest_repository(session, gemini, project_id, repo_url, token, **kwargs)


def backfill_embeddings(session, gemini, project_id: str) -> int:
    """Embed stored files that have no vector yet. Returns how many got one."""
    rows = (
        session.query(FileRecord)
        .filter(FileRecord.project_id == project_id, FileRecord.embedding.is_(None))
        .order_by(FileRecord.id)
        .all()
    )

    filled = 0
    for row in rows:
        embedding = _embed(gemini, row.summary or row.source_code, row.file_name)
        if len(embedding) != EMBEDDING_DIM:
            continue
        try:
            row.embedding = embedding
            session.commit()
            filled += 1
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"[DB] Could not store embedding for {row.file_name}: {e}")

    logger.info(f"[INGEST] Backfilled {filled}/{len(rows)} embeddings for project {project_id}")
    return filled
