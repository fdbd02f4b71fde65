# repobrief/query_search.py

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

import numpy as np
from google.api_core import exceptions as google_exceptions
from tenacity import Retrying, before_sleep_log, stop_after_attempt

from repobrief.errors import ProjectNotFoundError
from repobrief.models import FileRecord, Project

logger = logging.getLogger(__name__)

TOP_K = 5
KEYWORD_FETCH_LIMIT = 10
SIMPLE_QA_FILE_LIMIT = 15
SIMPLE_QA_REFERENCE_LIMIT = 10
MAX_RETRIES = 3

APOLOGY = "Sorry, there was an error generating the answer. Please try again later."
NO_CONTEXT = "No specific code context available for this project."
NO_FILES = "Sorry, no files were found for this project. Please add some files first."

STOPWORDS = {
    "what", "where", "when", "which", "about", "does", "this", "that", "have",
    "from", "with", "file", "code", "function", "page", "button", "component",
}

SOURCE_MARKERS = ("/src/", "/app/", "/pages/", "index.", "main.", "app.")
CONFIG_MARKERS = (".config.", "tsconfig.", "webpack.", ".env", "dockerfile")


class AnswerMode(str, Enum):
    KEYWORD = "keyword"
    SEMANTIC = "semantic"


@dataclass
class Answer:
    text: str
    referenced_files: List[dict] = field(default_factory=list)


# ================================================================
# Keyword scoring
# ================================================================

def extract_keywords(question: str) -> List[str]:
    words = (question or "").lower().split()
    return [w for w in words if len(w) > 3 and w not in STOPWORDS]


def keyword_score(file: FileRecord, question: str) -> float:
    q = (question or "").lower().strip()
    name = (file.file_name or "").lower()
    summary = (file.summary or "").lower()
    source = (file.source_code or "").lower()

    score = 0.0
    if q:
        if q in name:
            score += 5
        if q in summary:
            score += 3
        if q in source:
            score += 2

    for word in extract_keywords(question):
        if word in name:
            score += 2
        if word in summary:
            score += 1
        if word in source:
            score += 0.5

    return score


def rank_by_keywords(files: Sequence[FileRecord], question: str) -> List[Tuple[FileRecord, float]]:
    scored = [(f, keyword_score(f, question)) for f in files]
    # sorted() is stable, so ties keep fetch order
    return sorted(scored, key=lambda pair: pair[1], reverse=True)


def select_by_keywords(files: Sequence[FileRecord], question: str, top_k: int = TOP_K) -> List[FileRecord]:
    return [f for f, _ in rank_by_keywords(files, question)[:top_k]]


# ================================================================
# Vector scoring
# ================================================================

def _valid_vector(vector, length: Optional[int] = None) -> bool:
    if vector is None:
        return False
    arr = np.asarray(vector, dtype=float)
    if arr.ndim != 1 or arr.size == 0:
        return False
    return length is None or arr.shape[0] == length


def cosine_similarity(a, b) -> float:
    """dot(a, b) / (|a| |b|), or -1 when either vector is missing, zero, or the lengths differ."""
    if not _valid_vector(a) or not _valid_vector(b):
        return -1.0

    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    if a.shape != b.shape:
        return -1.0

    norm = np.linalg.norm(a) * np.linalg.norm(b)
    if not norm:
        return -1.0

    return float(np.clip(np.dot(a, b) / norm, -1.0, 1.0))


def rank_by_similarity(files: Sequence[FileRecord], question_vector) -> List[Tuple[FileRecord, float]]:
    length = len(question_vector)
    scored = []
    for f in files:
        valid = _valid_vector(f.embedding, length)
        scored.append((f, cosine_similarity(f.embedding, question_vector) if valid else -1.0, valid))

    # Files without a usable vector always go after the ones with one
    scored.sort(key=lambda item: (item[2], item[1]), reverse=True)
    return [(f, sim) for f, sim, _ in scored]


def select_by_similarity(files: Sequence[FileRecord], question_vector, top_k: int = TOP_K) -> List[FileRecord]:
    return [f for f, _ in rank_by_similarity(files, question_vector)[:top_k]]


# ================================================================
# Prompt
# ================================================================

def build_context(files: Sequence) -> str:
    context = ""
    for f in files:
        context += f"File: {_get(f, 'file_name')}\nSummary: {_get(f, 'summary')}\nSource Code:\n{_get(f, 'source_code')}\n---\n"
    return context or NO_CONTEXT


def build_prompt(question: str, context: str) -> str:
    return f"""You are an AI code assistant. Use the following context from the user's codebase to answer the question.

Context:
{context}

Question: {question}

Answer the question with detailed explanations. Format your response using markdown:
- Use proper headings (##) for sections
- Format code snippets with triple backticks and the appropriate language
- Use **bold** for important terms
- Use inline code formatting with backticks for variable names, function names, and short code references
- If referencing specific lines or sections of code, clearly indicate the file and line numbers
- Highlight the most relevant parts of the code that answer the question

Answer:"""


def _get(f, key: str) -> str:
    value = f.get(key) if isinstance(f, dict) else getattr(f, key, None)
    return value or ""


def file_reference(f: FileRecord) -> dict:
    return {
        "file_name": f.file_name,
        "summary": f.summary or "",
        "source_code": f.source_code or "",
    }


# ================================================================
# Answering
# ================================================================

def _require_project(session, project_id: str) -> Project:
    project = session.query(Project).filter(Project.id == project_id).first()
    if project is None:
        raise ProjectNotFoundError(f"Project {project_id} not found")
    return project


def fetch_project_files(session, project_id: str, limit: Optional[int] = None) -> List[FileRecord]:
    query = (
        session.query(FileRecord)
        .filter(FileRecord.project_id == project_id)
        .order_by(FileRecord.id)
    )
    if limit is not None:
        query = query.limit(limit)
    return query.all()


def select_files(gemini, files: List[FileRecord], question: str, mode: AnswerMode) -> List[FileRecord]:
    if mode == AnswerMode.SEMANTIC:
        try:
            question_vector = gemini.embed(question)
            return select_by_similarity(files, question_vector)
        except Exception as e:
            logger.error(f"[QUERY] Semantic search failed, using first files: {e}")
            return files[:TOP_K]

    return select_by_keywords(files, question)


def _prepare(session, gemini, project_id: str, question: str, mode) -> Tuple[List[FileRecord], str]:
    mode = AnswerMode(mode)
    _require_project(session, project_id)

    logger.info(f"[QUERY] Processing question for project {project_id} ({mode.value} mode)")
    limit = None if mode == AnswerMode.SEMANTIC else KEYWORD_FETCH_LIMIT
    files = fetch_project_files(session, project_id, limit)
    logger.info(f"[QUERY] Found {len(files)} files")

    top_files = select_files(gemini, files, question, mode)
    logger.info(f"[QUERY] Selected: {[f.file_name for f in top_files]}")

    return top_files, build_prompt(question, build_context(top_files))


def answer_question(session, gemini, project_id: str, question: str, mode=AnswerMode.KEYWORD) -> Answer:
    """
    Pick the most relevant stored files for a question and ask Gemini once.

    Generation failures come back as the fixed apology so there is always
    something to show.
    """
    top_files, prompt = _prepare(session, gemini, project_id, question, mode)

    try:
        text = gemini.generate(prompt)
    except Exception as e:
        logger.error(f"[QUERY] Error generating answer with Gemini: {e}")
        text = APOLOGY

    return Answer(text=text, referenced_files=[file_reference(f) for f in top_files])


def stream_answer(session, gemini, project_id: str, question: str, mode=AnswerMode.KEYWORD) -> Tuple[List[dict], Iterator[str]]:
    """Same selection as answer_question. Returns the references and a chunk iterator."""
    top_files, prompt = _prepare(session, gemini, project_id, question, mode)

    def chunks() -> Iterator[str]:
        emitted = False
        try:
            for text in gemini.stream(prompt):
                emitted = True
                yield text
        except Exception as e:
            logger.error(f"[QUERY] Streaming failed: {e}")
            yield f"\n\n{APOLOGY}" if emitted else APOLOGY
            return
        if not emitted:
            yield APOLOGY

    return [file_reference(f) for f in top_files], chunks()


# ================================================================
# Keyword-only path with line matches and a non-AI fallback
# ================================================================

def find_matching_lines(source_code: str, keywords: Sequence[str]) -> Tuple[List[int], List[str]]:
    """1-indexed numbers and stripped contents of lines containing any keyword."""
    numbers, contents = [], []
    for idx, line in enumerate((source_code or "").split("\n")):
        lower = line.lower()
        if any(k in lower for k in keywords):
            numbers.append(idx + 1)
            contents.append(line.strip())
    return numbers, contents


def _as_entry(f: FileRecord) -> dict:
    return {
        "id": f.id,
        "file_name": f.file_name,
        "summary": f.summary or "",
        "source_code": f.source_code or "",
        "matching_lines": [],
        "matching_line_contents": [],
    }


def _matches(entry: dict, keywords: Sequence[str]) -> bool:
    name = entry["file_name"].lower()
    source = entry["source_code"].lower()
    return any(k in name or k in source for k in keywords)


def _is_readme(entry: dict) -> bool:
    return "readme" in entry["file_name"].lower()


def _is_package(entry: dict) -> bool:
    return "package.json" in entry["file_name"].lower()


def _is_source(entry: dict) -> bool:
    name = "/" + entry["file_name"].lower()
    return any(m in name for m in SOURCE_MARKERS)


def _is_config(entry: dict) -> bool:
    name = entry["file_name"].lower()
    return any(m in name for m in CONFIG_MARKERS)


def prioritize_for_simple_qa(entries: List[dict], keywords: Sequence[str], limit: int = SIMPLE_QA_FILE_LIMIT) -> List[dict]:
    """Keyword matches, then READMEs, package.json, source, config, everything else."""
    for entry in entries:
        if _matches(entry, keywords):
            entry["matching_lines"], entry["matching_line_contents"] = find_matching_lines(entry["source_code"], keywords)

    buckets = [
        [e for e in entries if _matches(e, keywords) and not _is_readme(e)],
        [e for e in entries if _is_readme(e)],
        [e for e in entries if _is_package(e)],
        [e for e in entries if _is_source(e)],
        [e for e in entries if _is_config(e)],
        entries,
    ]

    ordered, seen = [], set()
    for bucket in buckets:
        for entry in bucket:
            if entry["id"] not in seen:
                seen.add(entry["id"])
                ordered.append(entry)
    return ordered[:limit]


def build_simple_prompt(question: str, files: Sequence[dict]) -> str:
    context = ""
    for f in files:
        context += f"File: {f['file_name']}\nSummary: {f['summary']}\n"
        if f["matching_lines"]:
            matches = "\n".join(
                f"  Line {n}: {text}" for n, text in zip(f["matching_lines"], f["matching_line_contents"])
            )
            context += f"Matching lines:\n{matches}\n"
        context += f"Source Code:\n{f['source_code']}\n---\n"

    return f"""You are an AI code assistant for a project. Use the following context from the user's codebase to answer the question.

When answering questions about specific code or features, focus on the exact files that contain the relevant keywords from the question.
For each file that contains matching keywords, the specific line numbers and line contents are listed. Use them to give precise answers.

FORMATTING INSTRUCTIONS:
1. Start your answer with a clear title that summarizes the question
2. For section titles, use UPPERCASE followed by a colon (e.g., "TECHNOLOGIES USED:")
3. When mentioning code or file names, be very specific about where to find them, including line numbers
4. If multiple files are involved, list them in order of relevance
5. Keep your answer concise and focused on the question

Context:
{context or NO_CONTEXT}

Question: {question}

Answer:"""


def build_fallback_answer(question: str, files: Sequence[dict]) -> str:
    """Plain answer from the matched files alone, for when Gemini is unavailable."""
    keywords = extract_keywords(question)

    answer = "FILE LOCATION:\n"
    if not files:
        answer += "No specific files found for this question.\n\n"
    else:
        for idx, f in enumerate(files[:3]):
            answer += f"{idx + 1}. {f['file_name']}\n"
            if f["matching_lines"]:
                lines = ", ".join(f"Line {n}" for n in f["matching_lines"][:5])
                answer += f"   Relevant lines: {lines}\n"
        answer += "\n"

    answer += "EXPLANATION:\nBased on the files in this repository, "
    readme = next((f for f in files if _is_readme(f)), None)
    if readme:
        description = " ".join(readme["source_code"].split("\n")[:10])
        answer += f"this project appears to be {description[:200]}...\n\n"
    else:
        answer += (
            f"this project contains {len(files)} files. The most relevant files to your "
            f"question about \"{question}\" are listed above.\n\n"
        )

    if keywords:
        answer += f"I searched for these keywords: {', '.join(keywords)}\n\n"

    answer += (
        "NOTE: Due to API limitations, I'm providing a simplified answer. "
        "For more detailed information, please try again later or rephrase your question."
    )
    return answer


def _is_rate_limited(exc: BaseException) -> bool:
    return isinstance(exc, (google_exceptions.ResourceExhausted, google_exceptions.TooManyRequests))


def _generation_backoff(retry_state) -> float:
    # 2s, 4s; five times longer when rate limited
    factor = 5 if _is_rate_limited(retry_state.outcome.exception()) else 1
    return float(2 ** retry_state.attempt_number * factor)


def _is_relevant_reference(entry: dict, keywords: Sequence[str]) -> bool:
    if _is_readme(entry) or _is_package(entry):
        return True
    if _matches(entry, keywords):
        return True
    if _is_source(entry):
        name = entry["file_name"].lower()
        return any(k[:4] in name or k in entry["source_code"].lower() for k in keywords)
    return False


def answer_question_simple(session, gemini, project_id: str, question: str, sleep: Callable = time.sleep) -> Answer:
    """
    Keyword-only answering over every stored file.

    Matched files carry the line numbers (1-indexed) where a keyword appears.
    Generation is retried; when it is exhausted, the answer is built from the
    matches without the model.
    """
    _require_project(session, project_id)
    entries = [_as_entry(f) for f in fetch_project_files(session, project_id)]
    logger.info(f"[SIMPLE QA] Found {len(entries)} files for project {project_id}")

    if not entries:
        return Answer(text=NO_FILES, referenced_files=[])

    keywords = extract_keywords(question)
    logger.info(f"[SIMPLE QA] Keywords extracted from question: {keywords}")

    prioritized = prioritize_for_simple_qa(entries, keywords)
    prompt = build_simple_prompt(question, prioritized)

    retrying = Retrying(
        stop=stop_after_attempt(MAX_RETRIES),
        wait=_generation_backoff,
        sleep=sleep,
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    try:
        text = retrying(gemini.generate, prompt)
    except Exception as e:
        logger.error(f"[SIMPLE QA] Max retries reached, using fallback answer: {e}")
        text = build_fallback_answer(question, prioritized)

    references = [e for e in prioritized if _is_relevant_reference(e, keywords)][:SIMPLE_QA_REFERENCE_LIMIT]
    return Answer(text=text, referenced_files=references)
