"""Session summaries via the Anthropic Messages API."""

import logging

import httpx

from opswatch.store import OpsStore

logger = logging.getLogger(__name__)

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
MAX_RESPONSE_CHARS = 20000

SYSTEM_PROMPT = (
    "You are a concise technical summarizer. Summarize the following infrastructure "
    "monitoring session output in 2-4 sentences. Focus on: what was checked, what "
    "issues were found, and what actions were taken. Be factual and specific."
)


def _send_anthropic(api_key: str, model: str, text: str, timeout: float = 60.0) -> str:
    """Send via Anthropic API using httpx directly."""
    response = httpx.post(
        ANTHROPIC_URL,
        headers={
            "x-api-key": api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        },
        json={
            "model": model,
            "max_tokens": 200,
            "system": SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": text[:MAX_RESPONSE_CHARS]}],
        },
        timeout=timeout,
    )
    response.raise_for_status()
    data = response.json()
    return "".join(
        block["text"] for block in data.get("content", [])
        if block.get("type") == "text"
    ).strip()


class Summarizer:
    """Writes a short summary onto a finished session."""

    def __init__(self, api_key: str | None, model: str):
        self.api_key = api_key
        self.model = model

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def summarize(self, text: str) -> str:
        if not self.api_key:
            raise ValueError("API key not found: set ANTHROPIC_API_KEY environment variable.")
        return _send_anthropic(self.api_key, self.model, text)

    def summarize_session(self, store: OpsStore, session_id: int, response: str) -> str | None:
        """Summarize and store. Failures are logged; the session is left without a summary."""
        if not self.enabled:
            logger.debug("No API key; skipping summary for session %d", session_id)
            return None
        if not response.strip():
            return None
        try:
            summary = self.summarize(response)
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.error("Summary for session %d failed: %s", session_id, e)
            return None
        if summary:
            store.update_session_summary(session_id, summary)
        return summary
