"""Tests for session summaries."""

from unittest.mock import MagicMock, patch

import httpx
import pytest

from opswatch.models import Session
from opswatch.summarize import MAX_RESPONSE_CHARS, Summarizer, _send_anthropic


def _response(payload: dict) -> MagicMock:
    resp = MagicMock()
    resp.json.return_value = payload
    resp.raise_for_status.return_value = None
    return resp


class TestSendAnthropic:

    @patch("opswatch.summarize.httpx.post")
    def test_request_shape(self, mock_post):
        mock_post.return_value = _response({
            "content": [{"type": "text", "text": "  Checked nginx; all healthy. "}],
        })
        result = _send_anthropic("sk-test", "claude-haiku-4-5", "x" * (MAX_RESPONSE_CHARS + 50))

        assert result == "Checked nginx; all healthy."
        kwargs = mock_post.call_args.kwargs
        assert kwargs["headers"]["x-api-key"] == "sk-test"
        body = kwargs["json"]
        assert body["model"] == "claude-haiku-4-5"
        assert body["max_tokens"] == 200
        assert "concise technical summarizer" in body["system"]
        assert len(body["messages"][0]["content"]) == MAX_RESPONSE_CHARS

    @patch("opswatch.summarize.httpx.post")
    def test_non_text_blocks_ignored(self, mock_post):
        mock_post.return_value = _response({"content": [
            {"type": "thinking", "thinking": "hmm"},
            {"type": "text", "text": "Done."},
        ]})
        assert _send_anthropic("k", "m", "text") == "Done."


class TestSummarizer:

    def test_disabled_without_key(self, store):
        summarizer = Summarizer(None, "claude-haiku-4-5")
        assert summarizer.enabled is False
        with pytest.raises(ValueError, match="API key not found"):
            summarizer.summarize("text")

    def test_summarize_session_stores_summary(self, store):
        session = store.insert_session(Session(id=None, tier=1, model="haiku"))
        summarizer = Summarizer("sk-test", "claude-haiku-4-5")
        with patch("opswatch.summarize._send_anthropic", return_value="All good."):
            assert summarizer.summarize_session(store, session.id, "long output") == "All good."
        assert store.get_session(session.id).summary == "All good."

    def test_http_error_logged_not_raised(self, store, caplog):
        session = store.insert_session(Session(id=None, tier=1, model="haiku"))
        summarizer = Summarizer("sk-test", "claude-haiku-4-5")
        with patch("opswatch.summarize._send_anthropic",
                   side_effect=httpx.ConnectError("unreachable")):
            assert summarizer.summarize_session(store, session.id, "output") is None
        assert store.get_session(session.id).summary is None
        assert "Summary for session" in caplog.text

    def test_empty_response_skipped(self, store):
        summarizer = Summarizer("sk-test", "claude-haiku-4-5")
        with patch("opswatch.summarize._send_anthropic") as send:
            assert summarizer.summarize_session(store, 1, "   ") is None
        send.assert_not_called()

    def test_no_key_skips(self, store):
        with patch("opswatch.summarize._send_anthropic") as send:
            assert Summarizer("", "m").summarize_session(store, 1, "output") is None
        send.assert_not_called()
