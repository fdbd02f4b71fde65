# repobrief/models.py
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from pgvector.sqlalchemy import Vector

from repobrief.db import Base

EMBEDDING_DIM = 768
DEFAULT_USER_CREDITS = 150


def _new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_new_id)  # id issued by the identity provider
    email = Column(String, nullable=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    image_url = Column(String, nullable=True)
    credits = Column(Integer, nullable=False, default=DEFAULT_USER_CREDITS)
    created_at = Column(DateTime, default=datetime.utcnow)


class Project(Base):
    __tablename__ = "projects"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    repo_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    deleted_at = Column(DateTime, nullable=True)   # soft delete
    ingestion_status = Column(String, nullable=False, default="pending")
    ingestion_error = Column(Text, nullable=True)


class UserToProject(Base):
    __tablename__ = "user_to_project"
    __table_args__ = (UniqueConstraint("user_id", "project_id", name="uq_user_project"),)

    id = Column(Integer, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    project_id = Column(String, ForeignKey("projects.id"), nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class FileRecord(Base):
    __tablename__ = "source_code_embeddings"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(String, ForeignKey("projects.id"), nullable=False, index=True)
    file_name = Column(String, nullable=False)
    summary = Column(Text, nullable=False, default="")
    source_code = Column(Text, nullable=False, default="")
    embedding = Column(Vector(EMBEDDING_DIM), nullable=True)  # NULL when the vector was not 768 long
    created_at = Column(DateTime, default=datetime.utcnow)


class CommitRecord(Base):
    __tablename__ = "commits"
    __table_args__ = (UniqueConstraint("project_id", "commit_hash", name="uq_commit_project_hash"),)

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(String, ForeignKey("projects.id"), nullable=False, index=True)
    commit_hash = Column(String, nullable=False)
    message = Column(Text, nullable=False, default="")
    author_name = Column(String, nullable=False, default="Unknown")
    author_avatar = Column(String, nullable=False, default="")
    committed_at = Column(DateTime, nullable=True)
    summary = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Question(Base):
    __tablename__ = "questions"

    id = Column(String, primary_key=True, default=_new_id)
    project_id = Column(String, ForeignKey("projects.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    question = Column(Text, nullable=False)
    answer = Column(Text, nullable=False)
    referenced_files = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    credits = Column(Integer, nullable=False)            # signed delta
    event_id = Column(String, nullable=True, unique=True)  # purchase event, for idempotent crediting
    created_at = Column(DateTime, default=datetime.utcnow)
