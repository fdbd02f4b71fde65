"""Tests for the Gemini client: retries, fallbacks and the vector length invariant."""
from types import SimpleNamespace

import pytest

from repobrief.gemini import (
    EMPTY_EMBED_TEXT,
    FALLBACK_SUMMARY,
    MAX_CODE_CHARS,
    MAX_EMBED_CHARS,
    GeminiClient,
    fallback_embedding,
)
from repobrief.models import EMBEDDING_DIM


class FlakyLLM:
    def __init__(self, failures: int, text: str = "A concise summary."):
        self.failures = failures
        self.text = text
        self.prompts = []

    def generate_content(self, prompt, stream=False):
        self.prompts.append(prompt)
        if len(self.prompts) <= self.failures:
            raise RuntimeError("429 Resource exhausted")
        if stream:
            return iter([SimpleNamespace(text="A concise "), SimpleNamespace(text="summary.")])
        return SimpleNamespace(text=self.text)


class RecordingEmbedder:
    def __init__(self, failures: int = 0, size: int = EMBEDDING_DIM):
        self.failures = failures
        self.size = size
        self.calls = []

    def __call__(self, model, content):
        self.calls.append(content)
        if len(self.calls) <= self.failures:
            raise RuntimeError("503 Service unavailable")
        return {"embedding": [0.01] * self.size}


def make_client(llm=None, embedder=None):
    waits = []
    client = GeminiClient(
        llm=llm or FlakyLLM(failures=0),
        embedder=embedder or RecordingEmbedder(),
        sleep=waits.append,
    )
    return client, waits


def test_fallback_embedding_is_deterministic():
    first = fallback_embedding("def main(): pass")
    second = fallback_embedding("def main(): pass")

    assert len(first) == EMBEDDING_DIM
    assert first == second
    assert first != fallback_embedding("def main(): return 1")
    assert all(-1.0 <= v < 1.0 for v in first)


@pytest.mark.parametrize("text", ["", "x" * 150_000, "import os\n\nprint(os.getcwd())\n"])
def test_embed_always_returns_full_vector_when_api_fails(text):
    client, _ = make_client(embedder=RecordingEmbedder(failures=99))

    vector = client.embed(text)

    assert len(vector) == EMBEDDING_DIM
    assert vector == fallback_embedding(text)


def test_embed_fallback_is_stable_across_calls():
    client, _ = make_client(embedder=RecordingEmbedder(failures=99))
    assert client.embed("same input") == client.embed("same input")


def test_embed_sends_placeholder_for_empty_text_and_truncates_long_text():
    embedder = RecordingEmbedder()
    client, _ = make_client(embedder=embedder)

    client.embed("")
    client.embed("y" * (MAX_EMBED_CHARS + 500))

    assert embedder.calls[0] == EMPTY_EMBED_TEXT
    assert len(embedder.calls[1]) == MAX_EMBED_CHARS


def test_embed_retries_with_exponential_backoff():
    embedder = RecordingEmbedder(failures=2)
    client, waits = make_client(embedder=embedder)

    vector = client.embed("hello world")

    assert vector == [0.01] * EMBEDDING_DIM
    assert len(embedder.calls) == 3
    assert waits == [2, 4]


def test_embed_treats_wrong_size_as_failure():
    client, waits = make_client(embedder=RecordingEmbedder(size=3))

    vector = client.embed("hello")

    assert vector == fallback_embedding("hello")
    assert waits == [2, 4]


def test_summarize_falls_back_after_three_attempts():
    llm = FlakyLLM(failures=5)
    client, waits = make_client(llm=llm)

    assert client.summarize("prompt") == FALLBACK_SUMMARY
    assert len(llm.prompts) == 3
    assert waits == [2, 4]


def test_summarize_recovers_after_a_transient_failure():
    client, waits = make_client(llm=FlakyLLM(failures=1))

    assert client.summarize("prompt") == "A concise summary."
    assert waits == [2]


def test_summarize_code_truncates_source():
    llm = FlakyLLM(failures=0)
    client, _ = make_client(llm=llm)

    client.summarize_code("z" * (MAX_CODE_CHARS + 1000))

    assert "onboarding" in llm.prompts[0]
    assert "z" * MAX_CODE_CHARS in llm.prompts[0]
    assert "z" * (MAX_CODE_CHARS + 1) not in llm.prompts[0]


def test_summarize_diff_uses_changelog_prompt():
    llm = FlakyLLM(failures=0)
    client, _ = make_client(llm=llm)

    client.summarize_diff("--- a/README.md\n+++ b/README.md")

    assert "git diff" in llm.prompts[0]
    assert "+++ b/README.md" in llm.prompts[0]


def test_stream_yields_chunk_text():
    client, _ = make_client()
    assert "".join(client.stream("prompt")) == "A concise summary."


def test_missing_api_key_is_rejected():
    with pytest.raises(ValueError):
        GeminiClient(api_key=None)
