# repobrief/main.py

import logging
from contextlib import asynccontextmanager
from functools import partial
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

# Internal modules
from repobrief.commits import pull_commits
from repobrief.config import Settings, load_settings
from repobrief.credits import add_credits, check_user_credits, ensure_user
from repobrief.db import init_db, make_engine, make_session_factory
from repobrief.errors import (
    CommitPersistenceError,
    InsufficientCreditsError,
    InvalidRepositoryUrlError,
    ProjectNotFoundError,
    RepoBriefError,
    UserNotFoundError,
)
from repobrief.gemini import GeminiClient
from repobrief.github_loader import GitHubClient, check_credits, load_github_repository
from repobrief.ingest import backfill_embeddings, reingest_repository
from repobrief.logging_config import setup_logging
from repobrief.projects import (
    archive_project,
    create_project,
    get_project,
    join_project,
    list_members,
    list_projects,
    run_ingestion_job,
)
from repobrief.query_search import APOLOGY, AnswerMode, answer_question, answer_question_simple, stream_answer
from repobrief.questions import list_questions, save_question

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ProjectNotFoundError: 404,
    UserNotFoundError: 404,
    InvalidRepositoryUrlError: 400,
    InsufficientCreditsError: 402,
    CommitPersistenceError: 500,
}

router = APIRouter()


# ======================= Request Models =======================

class UserSyncRequest(BaseModel):
    user_id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    image_url: Optional[str] = None


class CreditPurchaseRequest(BaseModel):
    amount: int = Field(gt=0)
    event_id: Optional[str] = None


class CreditEstimateRequest(BaseModel):
    repo_url: str
    github_token: Optional[str] = None


class CreateProjectRequest(BaseModel):
    user_id: str
    name: str
    repo_url: str
    github_token: Optional[str] = None


class JoinProjectRequest(BaseModel):
    user_id: str


class IngestRequest(BaseModel):
    github_token: Optional[str] = None


class QueryRequest(BaseModel):
    project_id: str
    question: str
    mode: AnswerMode = AnswerMode.KEYWORD


class SimpleQueryRequest(BaseModel):
    project_id: str
    question: str


class SaveQuestionRequest(BaseModel):
    project_id: str
    user_id: str
    question: str
    answer: str
    referenced_files: List[dict] = []


# ======================= Dependencies =======================

def get_db(request: Request):
    session = request.app.state.session_factory()
    try:
        yield session
    finally:
        session.close()


def get_gemini(request: Request) -> GeminiClient:
    return request.app.state.gemini


def get_github(request: Request) -> GitHubClient:
    return request.app.state.github


def _internal_error(label: str, e: Exception, message: str, **extra) -> JSONResponse:
    logger.exception(f"[API] {label} failed")
    return JSONResponse(status_code=500, content={"error": message, "message": str(e), **extra})


def _project_dict(project) -> dict:
    return {
        "id": project.id,
        "name": project.name,
        "repo_url": project.repo_url,
        "created_at": project.created_at.isoformat() if project.created_at else None,
        "deleted_at": project.deleted_at.isoformat() if project.deleted_at else None,
        "ingestion_status": project.ingestion_status,
        "ingestion_error": project.ingestion_error,
    }


def _commit_dict(commit) -> dict:
    return {
        "commit_hash": commit.commit_hash,
        "message": commit.message,
        "author_name": commit.author_name,
        "author_avatar": commit.author_avatar,
        "committed_at": commit.committed_at.isoformat() if commit.committed_at else None,
        "summary": commit.summary,
    }


# ========================= Health Check ========================

@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/")
def root():
    return {
        "message": "RepoBrief backend is running",
        "docs": "/docs",
        "endpoints": {
            "POST /credits/estimate": "Count repository files → credits needed",
            "POST /projects": "Charge credits → create project → ingest in the background",
            "POST /projects/{id}/commits": "Pull and summarize new commits",
            "POST /qa": "Ask a question about an ingested repository",
        },
    }


# ========================== USERS & CREDITS ==========================

@router.post("/users/sync")
def sync_user(req: UserSyncRequest, db=Depends(get_db)):
    user = ensure_user(db, req.user_id, req.email, req.first_name, req.last_name, req.image_url)
    return {"id": user.id, "credits": user.credits}


@router.get("/users/{user_id}/credits")
def get_credits(user_id: str, required: int = 0, db=Depends(get_db)):
    return check_user_credits(db, user_id, required)


@router.post("/users/{user_id}/credits")
def purchase_credits(user_id: str, req: CreditPurchaseRequest, db=Depends(get_db)):
    """Credit a completed purchase. Replays of the same event_id are ignored."""
    balance = add_credits(db, user_id, req.amount, req.event_id)
    return {"credits": balance}


@router.post("/credits/estimate")
async def estimate_credits(req: CreditEstimateRequest, request: Request):
    try:
        settings = request.app.state.settings
        credits = await check_credits(
            req.repo_url,
            req.github_token or settings.github_token,
            http=request.app.state.credits_http,
        )
        return {"credits": credits}
    except Exception as e:
        return _internal_error("Credit estimate", e, "Failed to check credits")


# ========================== PROJECTS ==========================

def _create_project_record(session_factory, user_id: str, name: str, repo_url: str, required: int) -> dict:
    db = session_factory()
    try:
        return _project_dict(create_project(db, user_id, name, repo_url, required))
    finally:
        db.close()


@router.post("/projects")
async def create_project_api(req: CreateProjectRequest, request: Request, background_tasks: BackgroundTasks):
    state = request.app.state
    token = req.github_token or state.settings.github_token

    required = await check_credits(req.repo_url, token, http=state.credits_http)
    if required <= 0:
        raise InvalidRepositoryUrlError("Invalid GitHub URL")

    # Blocking DB work stays off the event loop
    payload = await run_in_threadpool(
        _create_project_record, state.session_factory, req.user_id, req.name, req.repo_url, required
    )

    background_tasks.add_task(
        run_ingestion_job,
        state.session_factory,
        state.gemini,
        state.github,
        payload["id"],
        req.repo_url,
        token,
        state.settings.ingest_delay_seconds,
    )
    return {**payload, "credits_charged": required}


@router.get("/projects")
def list_projects_api(user_id: str, db=Depends(get_db)):
    return [_project_dict(p) for p in list_projects(db, user_id)]


@router.get("/projects/{project_id}/status")
def project_status(project_id: str, db=Depends(get_db)):
    project = get_project(db, project_id, include_deleted=True)
    return {
        "project_id": project.id,
        "status": project.ingestion_status,
        "error": project.ingestion_error,
    }


@router.post("/projects/{project_id}/archive")
def archive_project_api(project_id: str, db=Depends(get_db)):
    return _project_dict(archive_project(db, project_id))


@router.post("/projects/{project_id}/join")
def join_project_api(project_id: str, req: JoinProjectRequest, db=Depends(get_db)):
    if join_project(db, req.user_id, project_id):
        return {"message": "Successfully joined the project"}
    return {"message": "You are already a member of this project"}


@router.get("/projects/{project_id}/members")
def list_members_api(project_id: str, db=Depends(get_db)):
    members = list_members(db, project_id)
    return {"members": members, "total_members": len(members)}


@router.post("/projects/{project_id}/ingest")
def reingest_api(project_id: str, req: IngestRequest, request: Request, db=Depends(get_db),
                 gemini=Depends(get_gemini), github=Depends(get_github)):
    project = get_project(db, project_id)
    if not project.repo_url:
        raise HTTPException(400, "Project repository URL is missing.")

    settings = request.app.state.settings
    try:
        report = reingest_repository(
            db,
            gemini,
            project_id,
            project.repo_url,
            req.github_token or settings.github_token,
            loader=partial(load_github_repository, github=github),
            delay_seconds=settings.ingest_delay_seconds,
        )
    except RepoBriefError:
        raise
    except Exception as e:
        return _internal_error("Re-ingest", e, "Error ingesting repository")

    return {
        "status": "success",
        "documents": report.documents,
        "inserted": report.inserted,
        "embedded": report.embedded,
        "failed": report.failed,
    }


@router.post("/projects/{project_id}/backfill")
def backfill_api(project_id: str, db=Depends(get_db), gemini=Depends(get_gemini)):
    get_project(db, project_id)
    return {"filled": backfill_embeddings(db, gemini, project_id)}


@router.post("/projects/{project_id}/commits")
def pull_commits_api(project_id: str, db=Depends(get_db), gemini=Depends(get_gemini), github=Depends(get_github)):
    try:
        commits = pull_commits(db, github, gemini, project_id)
    except RepoBriefError:
        raise
    except Exception as e:
        return _internal_error("Commit pull", e, "Could not pull commits")
    return [_commit_dict(c) for c in commits]


# =========================== QUERY API ==========================

@router.post("/qa")
def query_api(req: QueryRequest, db=Depends(get_db), gemini=Depends(get_gemini)):
    """Answer a question from the project's stored files."""
    try:
        answer = answer_question(db, gemini, req.project_id, req.question, req.mode)
    except RepoBriefError:
        raise
    except Exception as e:
        return _internal_error("Question", e, "Error generating answer", answer=APOLOGY)

    return {"answer": answer.text, "referenced_files": answer.referenced_files}


@router.post("/qa/stream")
def query_stream_api(req: QueryRequest, db=Depends(get_db), gemini=Depends(get_gemini)):
    try:
        _, chunks = stream_answer(db, gemini, req.project_id, req.question, req.mode)
    except RepoBriefError:
        raise
    except Exception as e:
        return _internal_error("Streaming question", e, "Error generating answer", answer=APOLOGY)

    return StreamingResponse(chunks, media_type="text/plain; charset=utf-8")


@router.post("/simple-qa")
def simple_query_api(req: SimpleQueryRequest, db=Depends(get_db), gemini=Depends(get_gemini)):
    try:
        answer = answer_question_simple(db, gemini, req.project_id, req.question)
    except RepoBriefError:
        raise
    except Exception as e:
        return _internal_error("Simple question", e, "Error generating answer", answer=APOLOGY)

    return {"answer": answer.text, "referenced_files": answer.referenced_files}


# =========================== SAVED QUESTIONS ==========================

@router.post("/questions")
def save_question_api(req: SaveQuestionRequest, db=Depends(get_db)):
    record = save_question(db, req.project_id, req.user_id, req.question, req.answer, req.referenced_files)
    return {"success": True, "id": record.id}


@router.get("/questions")
def list_questions_api(project_id: str, db=Depends(get_db)):
    return {"success": True, "saved_questions": list_questions(db, project_id)}


# =========================== APP ==========================

def _repobrief_error_handler(request: Request, exc: RepoBriefError) -> JSONResponse:
    status = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 502)
    if status >= 500:
        logger.error(f"[API] {type(exc).__name__}: {exc}")
    return JSONResponse(status_code=status, content={"error": str(exc)})


def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"[API] Unhandled error on {request.method} {request.url.path}", exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error", "message": str(exc)})


def create_app(settings: Optional[Settings] = None, session_factory=None, gemini=None,
               github=None, credits_http=None) -> FastAPI:
    """
    Build the API. Anything not passed in is constructed from the settings
    when the app starts, and lives until it stops.
    """
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level)
        owned_github = None

        if app.state.session_factory is None:
            engine = make_engine(settings.database_url)
            init_db(engine)
            app.state.session_factory = make_session_factory(engine)
        if app.state.gemini is None:
            app.state.gemini = GeminiClient(
                api_key=settings.gemini_api_key,
                model_name=settings.gemini_model,
                embedding_model=settings.gemini_embedding_model,
            )
        if app.state.github is None:
            owned_github = app.state.github = GitHubClient(token=settings.github_token)

        yield

        if owned_github is not None:
            owned_github.close()

    app = FastAPI(title="RepoBrief API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],   # for development
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.gemini = gemini
    app.state.github = github
    app.state.credits_http = credits_http

    app.add_exception_handler(RepoBriefError, _repobrief_error_handler)
    app.add_exception_handler(Exception, _unexpected_error_handler)
    app.include_router(router)
    return app


app = create_app()
