from typing import Any, Iterable, Optional
from bs4 import BeautifulSoup
import re
import logging

logger = logging.getLogger(__name__)

MIN_MESSAGE_ID_LENGTH = 10
LOG_ID_LENGTH = 15

_WHITESPACE = re.compile(r"\s+")


def sanitize_email_content(content: Optional[str], max_length: Optional[int] = None) -> str:
    """
    Reduce an HTML or plain-text email body to clean plain text.

    Script and style elements are dropped, entities decoded and runs of
    whitespace collapsed.
    """
    if not content:
        return ""

    try:
        soup = BeautifulSoup(content, "html.parser")
        for element in soup(["script", "style", "head"]):
            element.decompose()
        text = soup.get_text(" ")
    except Exception as e:
        logger.warning(f"HTML cleaning failed: {e}, returning original content")
        text = content

    cleaned = _WHITESPACE.sub(" ", text).strip()
    if max_length is not None and len(cleaned) > max_length:
        cleaned = cleaned[:max_length] + "..."
    return cleaned


def extract_email_address(value: Any) -> str:
    """Pull the address out of a Graph recipient object, a dict or a plain string."""
    if not value:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        nested = value.get("emailAddress")
        if isinstance(nested, dict) and nested.get("address"):
            return nested["address"]
        if value.get("address"):
            return value["address"]
    return ""


def is_sender_filtered(sender_email: str, patterns: Iterable[str]) -> bool:
    """
    Check a sender against a client's filter list.

    ``@domain.com`` matches the domain suffix, a pattern containing ``@``
    matches one exact address, anything else matches as a substring.
    Blank patterns never match.
    """
    sender = (sender_email or "").lower().strip()
    if not sender:
        return False

    for raw_pattern in patterns or []:
        pattern = (raw_pattern or "").lower().strip()
        if not pattern:
            continue
        if pattern.startswith("@"):
            if sender.endswith(pattern):
                return True
        elif "@" in pattern:
            if sender == pattern:
                return True
        elif pattern in sender:
            return True
    return False


def parse_message_id(resource: Optional[str]) -> Optional[str]:
    """
    Return the message id at the end of a notification resource path.

    Returns None when the last segment is too short to be a provider id.
    """
    if not resource:
        return None
    message_id = resource.rstrip("/").split("/")[-1].strip()
    if len(message_id) < MIN_MESSAGE_ID_LENGTH:
        return None
    return message_id


def truncate_id(value: Optional[str], length: int = LOG_ID_LENGTH) -> str:
    """Shorten an identifier for log lines and API payloads."""
    if not value:
        return ""
    if len(value) <= length:
        return value
    return value[:length] + "..."


def estimate_tokens(text: Optional[str]) -> int:
    """Rough token count: one token per four characters, rounded up."""
    if not text:
        return 0
    return -(-len(text) // 4)
