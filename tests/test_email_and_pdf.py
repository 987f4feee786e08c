"""SendGrid delivery over a mock transport and report HTML rendering."""
import base64
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from deep_research.tools.email_sender import ATTACHMENT_NAME, SENDGRID_URL, SendGridEmailSender
from deep_research.tools.pdf_report import ReportDocument, format_duration, render_html


class TestSendGrid:
    @pytest.mark.asyncio
    async def test_posts_message_with_pdf_attachment(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202)

        sender = SendGridEmailSender(
            api_key="sg-key", email_from="reports@example.com", transport=httpx.MockTransport(handler)
        )
        await sender.send("user@example.com", "Your Research Report", "summary", b"%PDF-1.7")

        request = seen[0]
        payload = json.loads(request.content)
        assert str(request.url) == SENDGRID_URL
        assert request.headers["authorization"] == "Bearer sg-key"
        assert payload["personalizations"] == [{"to": [{"email": "user@example.com"}]}]
        attachment = payload["attachments"][0]
        assert attachment["filename"] == ATTACHMENT_NAME
        assert base64.b64decode(attachment["content"]) == b"%PDF-1.7"

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        sender = SendGridEmailSender(
            api_key="sg-key",
            email_from="reports@example.com",
            transport=httpx.MockTransport(lambda r: httpx.Response(400, text="bad from")),
        )
        with pytest.raises(RuntimeError, match="SendGrid error: bad from"):
            await sender.send("user@example.com", "s", "b", b"x")

    @pytest.mark.asyncio
    async def test_missing_key_raises(self):
        sender = SendGridEmailSender(api_key="", email_from="reports@example.com")
        with pytest.raises(RuntimeError, match="SENDGRID_API_KEY"):
            await sender.send("user@example.com", "s", "b", b"x")


def _document(**overrides) -> ReportDocument:
    fields = dict(
        session_id="s-1",
        topic="Tidal energy <costs>",
        refined_prompt=None,
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        report_markdown="# Aggregated Deep Research Report\n\n## Unified Sources\n\n[1] https://a.example",
    )
    fields.update(overrides)
    return ReportDocument(**fields)


class TestRenderHtml:
    def test_escapes_topic_and_renders_markdown(self):
        html = render_html(_document())
        assert "Tidal energy &lt;costs&gt;" in html
        assert "<h1>Aggregated Deep Research Report</h1>" in html
        assert "Refined Prompt</h2><p>N/A" in html

    def test_summary_block_omitted_without_summaries(self):
        assert "Executive Summary" not in render_html(_document())

    def test_two_summary_mode(self):
        html = render_html(_document(openai_summary="O sum", gemini_summary=None))
        assert "OpenAI summary</h3><p>O sum" in html
        assert "No Gemini result available." in html


def test_format_duration():
    start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert format_duration(start, start + timedelta(seconds=125)) == "2m 5s"
    assert format_duration(start, start + timedelta(seconds=9)) == "9s"
    assert format_duration(None, start) == "N/A"
