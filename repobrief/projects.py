# repobrief/projects.py

import logging
import time
from datetime import datetime
from functools import partial
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from repobrief.commits import pull_commits
from repobrief.credits import deduct_credits, get_user
from repobrief.errors import ProjectNotFoundError
from repobrief.github_loader import load_github_repository, parse_github_url
from repobrief.ingest import ingest_repository
from repobrief.models import Project, User, UserToProject

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


def get_project(session, project_id: str, include_deleted: bool = False) -> Project:
    query = session.query(Project).filter(Project.id == project_id)
    if not include_deleted:
        query = query.filter(Project.deleted_at.is_(None))
    project = query.first()
    if project is None:
        raise ProjectNotFoundError(f"Project {project_id} not found")
    return project


def create_project(session, user_id: str, name: str, repo_url: str, required_credits: int) -> Project:
    """
    Create a project owned by `user_id` and charge its ingestion credits.

    Project, membership and deduction are committed together; if the user
    cannot pay, nothing is created.
    """
    parse_github_url(repo_url)
    get_user(session, user_id)

    try:
        project = Project(name=name, repo_url=repo_url, ingestion_status=STATUS_PENDING)
        session.add(project)
        session.flush()

        session.add(UserToProject(user_id=user_id, project_id=project.id))
        deduct_credits(session, user_id, required_credits, commit=False)
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info(f"[PROJECTS] Created project {project.id} ({repo_url}) for user {user_id}")
    return project


def list_projects(session, user_id: str) -> List[Project]:
    return (
        session.query(Project)
        .join(UserToProject, UserToProject.project_id == Project.id)
        .filter(UserToProject.user_id == user_id, Project.deleted_at.is_(None))
        .order_by(Project.created_at.desc())
        .all()
    )


def archive_project(session, project_id: str) -> Project:
    project = get_project(session, project_id)
    project.deleted_at = datetime.utcnow()
    session.commit()
    logger.info(f"[PROJECTS] Archived project {project_id}")
    return project


def join_project(session, user_id: str, project_id: str) -> bool:
    """Add `user_id` to an active project's team. False when already a member."""
    get_project(session, project_id)
    get_user(session, user_id)

    existing = (
        session.query(UserToProject)
        .filter(UserToProject.user_id == user_id, UserToProject.project_id == project_id)
        .first()
    )
    if existing is not None:
        return False

    session.add(UserToProject(user_id=user_id, project_id=project_id))
    try:
        session.commit()
    except IntegrityError:
        # A concurrent join got there first
        session.rollback()
        return False

    logger.info(f"[PROJECTS] User {user_id} joined project {project_id}")
    return True


def list_members(session, project_id: str) -> List[dict]:
    get_project(session, project_id)
    rows = (
        session.query(UserToProject, User)
        .join(User, UserToProject.user_id == User.id)
        .filter(UserToProject.project_id == project_id)
        .order_by(UserToProject.created_at, UserToProject.id)
        .all()
    )
    return [
        {
            "user_id": u.id,
            "first_name": u.first_name,
            "last_name": u.last_name,
            "image_url": u.image_url,
            "joined_at": m.created_at.isoformat() if m.created_at else None,
        }
        for m, u in rows
    ]


def set_ingestion_status(session, project_id: str, status: str, error: Optional[str] = None):
    project = get_project(session, project_id, include_deleted=True)
    project.ingestion_status = status
    project.ingestion_error = error
    session.commit()


def run_ingestion_job(
    session_factory,
    gemini,
    github,
    project_id: str,
    repo_url: str,
    token: Optional[str] = None,
    delay_seconds: float = 0.0,
    sleep=time.sleep,
):
    """
    Background job: ingest the repository, then pull its commits.

    Runs in its own session. The outcome lands on the project row
    (`ingestion_status` / `ingestion_error`) so callers can poll it.
    """
    session = session_factory()
    try:
        set_ingestion_status(session, project_id, STATUS_RUNNING)
        logger.info(f"[JOB] Starting embedding process for project {project_id} ({repo_url})")

        ingest_repository(
            session,
            gemini,
            project_id,
            repo_url,
            token,
            loader=partial(load_github_repository, github=github),
            sleep=sleep,
            delay_seconds=delay_seconds,
        )

        commit_error = None
        try:
            pull_commits(session, github, gemini, project_id, sleep=sleep)
        except Exception as e:
            session.rollback()
            logger.error(f"[JOB] Error fetching commits for project {project_id}: {e}")
            commit_error = f"Commit pull failed: {e}"

        set_ingestion_status(session, project_id, STATUS_COMPLETED, commit_error)
        logger.info(f"[JOB] Finished embedding process for project {project_id}")
    except Exception as e:
        logger.exception(f"[JOB] Error in embedding process for project {project_id}")
        session.rollback()
        set_ingestion_status(session, project_id, STATUS_FAILED, str(e))
    finally:
        session.close()
