"""
Response Generator

Builds the model prompt for a reply from the incoming email, the client's
style profile and calendar context, calls the language model and turns
its output into an HTML body fragment.

Design Considerations:
- The generated body never carries a signature; the draft builder appends
  the client's signature separately
- Calendar context is always stated explicitly: busy intervals are listed
  as blocked, and an empty calendar is described as open
- Free-text client instructions are placed last and marked as overriding
  the style and tone defaults
- Token usage is estimated from text length rather than tokenized
"""

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from src.email_processing.handlers.content import estimate_tokens, extract_email_address, sanitize_email_content
from src.email_processing.models import EmailClassification, EmailContext
from src.integrations.groq.client import EnhancedGroqClient, GroqCompletionError

logger = logging.getLogger(__name__)

SIGN_OFFS = ("best regards", "sincerely", "kind regards", "thank you")
SUMMARY_FALLBACK = "Unable to summarize conversation"

_SUBJECT_LINE = re.compile(r"^\s*Subject:.*(?:\n|$)", re.IGNORECASE)
_SIGN_OFF_LINE = re.compile(
    r"^[ \t]*(?:" + "|".join(SIGN_OFFS) + r")[ \t]*[,.!]?[ \t]*$",
    re.IGNORECASE | re.MULTILINE,
)
_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")
_TIME_PART = re.compile(r"T(\d{2}):(\d{2})")

SECTION_RULE = "=" * 63


class ResponseGenerationError(Exception):
    """Raised when no usable reply could be generated."""


def _format_clock(hour: int, minute: str) -> str:
    period = "PM" if hour >= 12 else "AM"
    hour12 = 12 if hour % 12 == 0 else hour % 12
    return f"{hour12}:{minute} {period}"


def format_calendar_event(event: Dict[str, Any]) -> Optional[str]:
    """
    Render one Graph event as a blocked interval.

    Event times are already expressed in the mailbox's timezone, so the
    wall-clock values are used as they are.
    """
    start = event.get("start") or {}
    end = event.get("end") or {}
    start_str = start.get("dateTime") or start.get("date")
    end_str = end.get("dateTime") or end.get("date")
    if not start_str or not end_str:
        return None

    try:
        start_day = datetime.fromisoformat(start_str[:10])
    except ValueError:
        logger.warning(f"Unparseable calendar event start: {start_str}")
        return None

    day_label = start_day.strftime("%A, %b %d")
    subject = event.get("subject") or "Busy"

    start_time = _TIME_PART.search(start_str)
    end_time = _TIME_PART.search(end_str)
    if event.get("isAllDay") or not start_time or not end_time:
        return f"   - {day_label}: all day -> BLOCKED ({subject})"

    start_label = _format_clock(int(start_time.group(1)), start_time.group(2))
    end_label = _format_clock(int(end_time.group(1)), end_time.group(2))
    return f"   - {day_label}: {start_label} - {end_label} -> BLOCKED ({subject})"


def format_calendar_block(events: Optional[List[Dict[str, Any]]], lookahead_days: int = 30) -> str:
    """Render the calendar section of the prompt."""
    lines = [format_calendar_event(event) for event in events or []]
    lines = [line for line in lines if line]

    if not lines:
        return (
            f"{SECTION_RULE}\n"
            "CALENDAR STATUS\n"
            f"{SECTION_RULE}\n\n"
            f"My calendar is currently open for the next {lookahead_days} days - no conflicts found.\n"
            "You may suggest meeting times freely, but still ask for their preferences.\n\n"
            f"{SECTION_RULE}\n"
        )

    return (
        f"{SECTION_RULE}\n"
        "CRITICAL CALENDAR INFORMATION - MUST FOLLOW\n"
        f"{SECTION_RULE}\n\n"
        f"MY CALENDAR FOR THE NEXT {lookahead_days} DAYS:\n\n"
        + "\n".join(lines)
        + "\n\n"
        "CRITICAL RULES FOR SCHEDULING:\n"
        "1. The times listed above are BLOCKED and UNAVAILABLE\n"
        "2. NEVER suggest any meeting time that overlaps with these blocked times\n"
        "3. If asked about availability during a blocked time, I am NOT available\n"
        "4. Only suggest times that do NOT conflict with the calendar above\n"
        "5. If uncertain, ask for their availability instead of suggesting times\n\n"
        f"{SECTION_RULE}\n"
    )


def format_response(text: str) -> str:
    """
    Turn raw model output into an HTML body fragment.

    Drops a leading subject line and a trailing sign-off, then wraps each
    paragraph in <p> with single newlines rendered as <br>.
    """
    formatted = (text or "").strip()
    formatted = _SUBJECT_LINE.sub("", formatted, count=1).strip()

    for match in _SIGN_OFF_LINE.finditer(formatted):
        trailing = [line for line in formatted[match.end():].splitlines() if line.strip()]
        # Only a closing followed by at most a short name block counts as a sign-off
        if len(trailing) <= 3:
            formatted = formatted[:match.start()].strip()
            break

    paragraphs = [paragraph.strip() for paragraph in _PARAGRAPH_SPLIT.split(formatted)]
    return "\n".join(
        f"<p>{paragraph.replace(chr(10), '<br>')}</p>"
        for paragraph in paragraphs
        if paragraph
    )


def format_conversation_history(messages: List[Dict[str, Any]], current_message_id: Optional[str] = None,
                                max_body_length: int = 500) -> str:
    """Render earlier messages of a thread, oldest first, excluding the current one."""
    earlier = [message for message in messages if message.get("id") != current_message_id]
    earlier.sort(key=lambda message: message.get("receivedDateTime") or "")

    blocks = []
    for index, message in enumerate(earlier, start=1):
        sender = extract_email_address(message.get("from")) or "Unknown"
        date = (message.get("receivedDateTime") or "")[:10]
        body = sanitize_email_content((message.get("body") or {}).get("content"), max_length=max_body_length)
        blocks.append(f"Message {index} ({date}):\nFrom: {sender}\n{body}")
    return "\n\n---\n\n".join(blocks)


class ResponseGenerator:
    """Generates reply bodies with the Groq chat completion API."""

    def __init__(
        self,
        groq_client: EnhancedGroqClient,
        business_timezone: str = "America/New_York",
        max_output_tokens: int = 1500,
        temperature: float = 0.3,
        calendar_lookahead_days: int = 30,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.groq_client = groq_client
        self.timezone = ZoneInfo(business_timezone)
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.calendar_lookahead_days = calendar_lookahead_days
        self._now = now or (lambda: datetime.now(timezone.utc))

    def build_prompt(self, context: EmailContext) -> str:
        """
        Assemble the single-turn prompt for a reply.

        Args:
            context: Incoming email, style profile and optional calendar events

        Returns:
            Prompt text
        """
        now = self._now().astimezone(self.timezone)
        current_time = now.strftime("%A, %B %d, %Y at %I:%M %p %Z")
        style = context.style

        conversation_text = ""
        if context.conversation_history:
            conversation_text = f"CONVERSATION HISTORY:\n{context.conversation_history}\n\n"

        samples = [sample.strip() for sample in style.sample_emails if sample and sample.strip()]
        samples_text = ""
        if samples:
            samples_text = "WRITING STYLE EXAMPLES:\n" + "\n\n".join(
                f"Example {index}:\n{sample}" for index, sample in enumerate(samples, start=1)
            ) + "\n\n"

        custom_text = ""
        if style.custom_instructions and style.custom_instructions.strip():
            custom_text = (
                f"{SECTION_RULE}\n"
                "CRITICAL CUSTOM INSTRUCTIONS - HIGHEST PRIORITY\n"
                f"{SECTION_RULE}\n\n"
                f"{style.custom_instructions.strip()}\n\n"
                "These instructions override all other guidelines, including the writing "
                "style and tone above. Follow them exactly.\n\n"
                f"{SECTION_RULE}\n"
            )

        calendar_text = format_calendar_block(context.calendar_events, self.calendar_lookahead_days)

        return (
            "You are an AI email assistant helping to write professional email responses "
            "that match the user's personal writing style and tone.\n\n"
            f"CURRENT DATE AND TIME: {current_time}\n"
            f"TODAY IS: {now.strftime('%A')}\n\n"
            f"{conversation_text}"
            "INCOMING EMAIL:\n"
            f"Subject: {context.subject}\n"
            f"From: {context.sender}\n"
            f"Body: {context.body}\n\n"
            "CLIENT COMMUNICATION PREFERENCES:\n"
            f"- Writing Style: {style.writing_style}\n"
            f"- Tone: {style.tone}\n\n"
            f"{samples_text}"
            f"{calendar_text}\n"
            f"{custom_text}\n"
            f"{SECTION_RULE}\n"
            "RESPONSE INSTRUCTIONS\n"
            f"{SECTION_RULE}\n\n"
            "1. Acknowledge the sender's message appropriately\n"
            "2. Address their main points or questions directly\n"
            "3. Match the specified writing style and tone exactly\n"
            "4. If discussing meeting times, ONLY suggest times that do NOT conflict with the blocked calendar times above\n"
            "5. Never assume availability during blocked calendar times\n"
            "6. Do NOT include any signature or closing - the signature is added automatically\n"
            "7. Write in paragraph format and do not include a subject line\n"
            "8. Follow all custom instructions above\n"
            "9. NEVER assume information not explicitly stated (meeting locations, prior agreements)\n\n"
            "Write only the email body content without any signature or closing."
        )

    async def generate(self, context: EmailContext) -> str:
        """
        Generate the HTML reply body for an email.

        Raises:
            ResponseGenerationError: If the model call fails or returns nothing usable
        """
        prompt = self.build_prompt(context)
        logger.debug(f"Reply prompt built ({len(prompt)} characters, "
                     f"{len(context.calendar_events or [])} calendar events)")

        try:
            result = await self.groq_client.complete(
                prompt,
                task="response_generation",
                max_completion_tokens=self.max_output_tokens,
                temperature=self.temperature,
            )
        except GroqCompletionError as e:
            raise ResponseGenerationError(f"Failed to generate AI response: {str(e)}")

        formatted = format_response(result.content)
        if not formatted:
            raise ResponseGenerationError("Language model returned an empty response")

        logger.info(f"AI response generated ({len(formatted)} characters)")
        return formatted

    def estimate_tokens(self, text: str) -> int:
        """Cheap usage estimate recorded on the processing record."""
        return estimate_tokens(text)

    async def classify_email(self, subject: str, sender: str, body: str) -> EmailClassification:
        """
        Classify an email's type and urgency for optional routing.

        Falls back to a general, normal-urgency classification when the
        model call or its JSON output fails.
        """
        prompt = (
            "Classify this email. Respond in JSON format:\n"
            '{"email_type": "meeting|question|request|introduction|follow_up|notification|marketing|general", '
            '"urgency": "low|normal|high", "requires_response": boolean}\n\n'
            f"Subject: {subject}\nFrom: {sender}\nBody: {body[:2000]}"
        )
        try:
            result = await self.groq_client.complete(
                prompt,
                task="email_classification",
                response_format={"type": "json_object"},
            )
            data = json.loads(result.content)
            return EmailClassification(
                email_type=str(data.get("email_type") or "general"),
                urgency=str(data.get("urgency") or "normal"),
                requires_response=bool(data.get("requires_response", True)),
            )
        except (GroqCompletionError, ValueError, AttributeError) as e:
            logger.error(f"Email classification failed: {e}")
            return EmailClassification()

    async def summarize_conversation(self, messages: List[Dict[str, Any]]) -> str:
        """
        Summarize a conversation thread.

        Returns a fixed fallback string when summarization fails.
        """
        if not messages:
            return ""

        conversation_text = "\n\n---\n\n".join(
            f"From: {extract_email_address(message.get('from'))}\n"
            f"Date: {message.get('receivedDateTime', '')}\n"
            f"Body: {sanitize_email_content((message.get('body') or {}).get('content'), max_length=1000)}"
            for message in messages
        )
        try:
            result = await self.groq_client.complete(
                "Summarize this email conversation concisely, focusing on key points and decisions:"
                f"\n\n{conversation_text}",
                task="conversation_summary",
            )
            return result.content.strip() or SUMMARY_FALLBACK
        except GroqCompletionError as e:
            logger.error(f"Conversation summary error: {e}")
            return SUMMARY_FALLBACK
