# repobrief/gemini.py

import hashlib
import logging
import time
from typing import Callable, Iterator, List, Optional

import numpy as np
import google.generativeai as genai
from tenacity import Retrying, before_sleep_log, stop_after_attempt, wait_exponential

from repobrief.models import EMBEDDING_DIM

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
MAX_CODE_CHARS = 10_000
MAX_EMBED_CHARS = 100_000

FALLBACK_SUMMARY = "Updated code with various improvements and fixes."
EMPTY_EMBED_TEXT = "empty text"

CODE_SUMMARY_PROMPT = """You are an intelligent senior software engineer specializing in onboarding people.
Explain the purpose of the following code in no more than 100 words.

{code}"""

DIFF_SUMMARY_PROMPT = """You are an expert programmer. Summarize the following git diff in clear, concise language for a changelog or PR reviewer.
The diff is in standard unified format.

{diff}"""


def fallback_embedding(text: str) -> List[float]:
    """
    Deterministic stand-in vector for when the embedding API is exhausted.

    The generator is seeded from a SHA-256 of the text, so identical input
    always gives the identical 768 values in [-1, 1). It carries no meaning.
    """
    digest = hashlib.sha256((text or "").encode("utf-8")).digest()
    rng = np.random.default_rng(int.from_bytes(digest[:8], "big"))
    return rng.uniform(-1.0, 1.0, EMBEDDING_DIM).tolist()


class GeminiClient:
    """
    Summaries, embeddings and answers from the Gemini API.

    Built once at startup and passed to whatever needs it. `llm` and
    `embedder` default to the real SDK objects; tests hand in fakes.
    `sleep` is what the retry loop waits with.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_name: str = "gemini-2.5-flash",
        embedding_model: str = "models/text-embedding-004",
        llm=None,
        embedder: Optional[Callable] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if llm is None or embedder is None:
            if not api_key:
                raise ValueError("GEMINI_API_KEY not found in .env file")
            genai.configure(api_key=api_key)

        self.llm = llm if llm is not None else genai.GenerativeModel(model_name)
        self.embedding_model = embedding_model
        self._embedder = embedder if embedder is not None else genai.embed_content
        self._sleep = sleep

    def _retrying(self) -> Retrying:
        # 3 attempts, waiting 2s then 4s between them
        return Retrying(
            stop=stop_after_attempt(MAX_RETRIES),
            wait=wait_exponential(multiplier=2),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    # ===============================
    # Raw calls (errors propagate)
    # ===============================

    def generate(self, prompt: str) -> str:
        response = self.llm.generate_content(prompt)
        text = (response.text or "").strip()
        if not text:
            raise ValueError("Empty response returned from Gemini API")
        return text

    def stream(self, prompt: str) -> Iterator[str]:
        for chunk in self.llm.generate_content(prompt, stream=True):
            text = getattr(chunk, "text", "")
            if text:
                yield text

    def _embed_once(self, content: str) -> List[float]:
        result = self._embedder(model=self.embedding_model, content=content)
        values = result.get("embedding") if isinstance(result, dict) else getattr(result, "embedding", None)

        if not values:
            raise ValueError("Empty embedding returned from Gemini API")
        if len(values) != EMBEDDING_DIM:
            raise ValueError(f"Expected {EMBEDDING_DIM} embedding values, got {len(values)}")

        return [float(v) for v in values]

    # ===============================
    # Retried calls with fallbacks
    # ===============================

    def summarize(self, prompt: str) -> str:
        try:
            return self._retrying()(self.generate, prompt)
        except Exception as e:
            logger.error(f"[GEMINI] Max retries reached for summary, using fallback summary: {e}")
            return FALLBACK_SUMMARY

    def summarize_code(self, code: str) -> str:
        return self.summarize(CODE_SUMMARY_PROMPT.format(code=(code or "")[:MAX_CODE_CHARS]))

    def summarize_diff(self, diff: str) -> str:
        return self.summarize(DIFF_SUMMARY_PROMPT.format(diff=diff))

    def embed(self, text: str) -> List[float]:
        """Always returns exactly EMBEDDING_DIM floats."""
        content = (text or EMPTY_EMBED_TEXT)[:MAX_EMBED_CHARS]
        try:
            return self._retrying()(self._embed_once, content)
        except Exception as e:
            logger.error(f"[GEMINI] Max retries reached for embedding, using fallback embedding: {e}")
            return fallback_embedding(text)
