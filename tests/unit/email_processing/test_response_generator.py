"""
Unit tests for the response generator.

The Groq client is replaced with an AsyncMock so prompt assembly and
output post-processing can be checked without network access.
"""

from datetime import datetime, timezone

import pytest
from unittest.mock import MagicMock, AsyncMock

from src.email_processing.handlers.response_generator import (
    SUMMARY_FALLBACK,
    ResponseGenerationError,
    ResponseGenerator,
    format_calendar_block,
    format_calendar_event,
    format_conversation_history,
    format_response,
)
from src.email_processing.models import EmailContext, StyleProfileSettings
from src.integrations.groq.client import CompletionResult, GroqCompletionError

FIXED_NOW = datetime(2025, 10, 1, 16, 30, tzinfo=timezone.utc)


@pytest.fixture
def groq_client():
    client = MagicMock()
    client.complete = AsyncMock(return_value=CompletionResult(content="Thanks for the note.", model="test"))
    return client


@pytest.fixture
def generator(groq_client):
    return ResponseGenerator(groq_client, now=lambda: FIXED_NOW, max_output_tokens=900, temperature=0.2)


@pytest.fixture
def context():
    style = StyleProfileSettings(
        writing_style="concise",
        tone="warm",
        sample_emails=["Happy to help!"],
        custom_instructions="Always mention the retainer.",
    )
    return EmailContext(subject="Meeting next week", sender="client@example.com",
                        body="Can we meet Thursday?", style=style)


class TestFormatting:
    """Test suite for model output post-processing."""

    def test_strips_subject_and_sign_off(self):
        raw = "Subject: Re: Meeting\n\nHi Sam,\nThursday works.\n\nSee you then.\n\nBest regards,\nJane"

        assert format_response(raw) == "<p>Hi Sam,<br>Thursday works.</p>\n<p>See you then.</p>"

    def test_keeps_thank_you_inside_body(self):
        raw = "Thank you\n\nLine one\n\nLine two\n\nLine three\n\nLine four"

        assert format_response(raw).startswith("<p>Thank you</p>")

    def test_empty_output(self):
        assert format_response("   ") == ""


class TestCalendar:
    """Test suite for calendar rendering."""

    def test_timed_event(self):
        event = {
            "subject": "Deposition",
            "start": {"dateTime": "2025-10-02T12:00:00.0000000"},
            "end": {"dateTime": "2025-10-02T13:00:00.0000000"},
        }

        assert format_calendar_event(event) == "   - Thursday, Oct 02: 12:00 PM - 1:00 PM -> BLOCKED (Deposition)"

    def test_all_day_event(self):
        event = {
            "subject": "Offsite", "isAllDay": True,
            "start": {"dateTime": "2025-10-03T00:00:00"}, "end": {"dateTime": "2025-10-04T00:00:00"},
        }

        assert "all day -> BLOCKED (Offsite)" in format_calendar_event(event)

    def test_open_calendar_block(self):
        block = format_calendar_block([], 30)

        assert "CALENDAR STATUS" in block
        assert "open for the next 30 days" in block

    def test_busy_calendar_block(self):
        block = format_calendar_block([{
            "subject": "Call",
            "start": {"dateTime": "2025-10-02T09:00:00"},
            "end": {"dateTime": "2025-10-02T09:30:00"},
        }], 14)

        assert "CRITICAL CALENDAR INFORMATION" in block
        assert "9:00 AM - 9:30 AM" in block
        assert "NEXT 14 DAYS" in block


class TestPrompt:
    """Test suite for prompt assembly."""

    def test_prompt_sections(self, generator, context):
        prompt = generator.build_prompt(context)

        assert "CURRENT DATE AND TIME: Wednesday, October 01, 2025 at 12:30 PM EDT" in prompt
        assert "TODAY IS: Wednesday" in prompt
        assert "Subject: Meeting next week" in prompt
        assert "- Writing Style: concise" in prompt
        assert "Example 1:\nHappy to help!" in prompt
        assert "My calendar is currently open" in prompt
        assert prompt.index("CRITICAL CUSTOM INSTRUCTIONS") > prompt.index("CLIENT COMMUNICATION PREFERENCES")
        assert "Always mention the retainer." in prompt

    def test_no_custom_section_without_instructions(self, generator, context):
        context.style.custom_instructions = "  "

        assert "CRITICAL CUSTOM INSTRUCTIONS" not in generator.build_prompt(context)


class TestGenerate:
    """Test suite for reply generation."""

    @pytest.mark.asyncio
    async def test_generate_uses_budget(self, generator, groq_client, context):
        reply = await generator.generate(context)

        assert reply == "<p>Thanks for the note.</p>"
        kwargs = groq_client.complete.call_args.kwargs
        assert kwargs["max_completion_tokens"] == 900
        assert kwargs["temperature"] == 0.2
        assert kwargs["task"] == "response_generation"

    @pytest.mark.asyncio
    async def test_generate_failure(self, generator, groq_client, context):
        groq_client.complete.side_effect = GroqCompletionError("rate limited")

        with pytest.raises(ResponseGenerationError):
            await generator.generate(context)

    @pytest.mark.asyncio
    async def test_generate_empty_output(self, generator, groq_client, context):
        groq_client.complete.return_value = CompletionResult(content="Best regards,", model="test")

        with pytest.raises(ResponseGenerationError):
            await generator.generate(context)


class TestAuxiliary:
    """Test suite for classification and conversation summaries."""

    @pytest.mark.asyncio
    async def test_classify_email(self, generator, groq_client):
        groq_client.complete.return_value = CompletionResult(
            content='{"email_type": "meeting", "urgency": "high", "requires_response": true}', model="test"
        )

        result = await generator.classify_email("Meet?", "a@b.test", "Can we meet?")

        assert (result.email_type, result.urgency, result.requires_response) == ("meeting", "high", True)

    @pytest.mark.asyncio
    async def test_classify_email_falls_back(self, generator, groq_client):
        groq_client.complete.return_value = CompletionResult(content="not json", model="test")

        result = await generator.classify_email("Meet?", "a@b.test", "Can we meet?")

        assert result.email_type == "general"

    @pytest.mark.asyncio
    async def test_summarize_conversation(self, generator, groq_client):
        groq_client.complete.side_effect = GroqCompletionError("down")

        assert await generator.summarize_conversation([{"body": {"content": "hi"}}]) == SUMMARY_FALLBACK
        assert await generator.summarize_conversation([]) == ""

    def test_conversation_history_excludes_current(self):
        messages = [
            {"id": "m2", "receivedDateTime": "2025-09-02T10:00:00Z",
             "from": {"emailAddress": {"address": "b@x.test"}}, "body": {"content": "<p>Second</p>"}},
            {"id": "m1", "receivedDateTime": "2025-09-01T10:00:00Z",
             "from": {"emailAddress": {"address": "a@x.test"}}, "body": {"content": "First"}},
            {"id": "current", "receivedDateTime": "2025-09-03T10:00:00Z", "body": {"content": "Now"}},
        ]

        history = format_conversation_history(messages, current_message_id="current")

        assert history.index("First") < history.index("Second")
        assert "Now" not in history
