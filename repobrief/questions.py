# repobrief/questions.py

import logging
from typing import List, Optional

from repobrief.credits import get_user
from repobrief.models import Question, User
from repobrief.projects import get_project

logger = logging.getLogger(__name__)


def save_question(session, project_id: str, user_id: str, question: str, answer: str,
                  referenced_files: Optional[list] = None) -> Question:
    get_project(session, project_id)
    get_user(session, user_id)

    record = Question(
        project_id=project_id,
        user_id=user_id,
        question=question,
        answer=answer,
        referenced_files=list(referenced_files or []),
    )
    session.add(record)
    session.commit()

    logger.info(f"[QUESTIONS] Saved question {record.id} for project {project_id}")
    return record


def list_questions(session, project_id: str) -> List[dict]:
    """Saved questions of a project with who asked them, newest first."""
    rows = (
        session.query(Question, User)
        .join(User, Question.user_id == User.id)
        .filter(Question.project_id == project_id)
        .order_by(Question.created_at.desc())
        .all()
    )
    return [
        {
            "id": q.id,
            "question": q.question,
            "answer": q.answer,
            "referenced_files": q.referenced_files or [],
            "project_id": q.project_id,
            "created_at": q.created_at.isoformat() if q.created_at else None,
            "user": {
                "id": u.id,
                "first_name": u.first_name,
                "last_name": u.last_name,
                "image_url": u.image_url,
            },
        }
        for q, u in rows
    ]
