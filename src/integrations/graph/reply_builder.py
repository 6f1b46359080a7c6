"""
Reply body assembly for threaded drafts.

Combines the generated reply, the client's signature and a quoted copy of
the original message into the HTML body of a draft.
"""

import html
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup, Comment

from src.email_processing.handlers.content import extract_email_address

logger = logging.getLogger(__name__)

_CONDITIONAL_COMMENT = re.compile(r"<!--\[if[^>]*>.*?<!\[endif\]-->", re.IGNORECASE | re.DOTALL)
_MSO_STYLE = re.compile(r"mso-[^;\"']*;?", re.IGNORECASE)
_EMPTY_STYLE = re.compile(r"\s*style\s*=\s*([\"'])\s*\1", re.IGNORECASE)
_LINE_BREAKS = re.compile(r"\s*\n\s*")


def clean_original_html(content: Optional[str]) -> str:
    """
    Strip markup that should not be carried into a quoted reply.

    Removes script, style, link and meta tags, Office conditional comments,
    ``o:``/``v:`` namespaced elements and ``mso-`` style declarations while
    keeping the basic formatting of the message.
    """
    if not content:
        return ""

    content = _CONDITIONAL_COMMENT.sub("", content)
    soup = BeautifulSoup(content, "html.parser")

    for element in soup(["script", "style", "link", "meta", "head", "title"]):
        element.decompose()
    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()
    for element in soup.find_all(lambda tag: tag.name and (tag.name.startswith("o:") or tag.name.startswith("v:"))):
        element.decompose()

    body = soup.body
    markup = body.decode_contents() if body else str(soup)

    markup = _MSO_STYLE.sub("", markup)
    markup = _EMPTY_STYLE.sub("", markup)
    return _LINE_BREAKS.sub(" ", markup).strip()


def format_signature(signature: Optional[str]) -> str:
    """Render a plain-text signature as an HTML paragraph."""
    if not signature or not signature.strip():
        return ""
    lines = [html.escape(line) for line in signature.strip().splitlines()]
    return f"<p>{'<br>'.join(lines)}</p>"


def _format_sent(value: Optional[str]) -> str:
    if not value:
        return ""
    try:
        sent = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return value
    return sent.strftime("%A, %B %d, %Y %I:%M %p %Z").strip()


def _format_recipients(recipients: Optional[List[Dict[str, Any]]]) -> str:
    addresses = [extract_email_address(recipient) for recipient in recipients or []]
    return "; ".join(address for address in addresses if address)


def build_quoted_original(original: Dict[str, Any]) -> str:
    """Render the original message as a quoted block under the reply."""
    sender = extract_email_address(original.get("from")) or "Unknown Sender"
    sent = _format_sent(original.get("receivedDateTime"))
    recipients = _format_recipients(original.get("toRecipients"))
    subject = original.get("subject") or "No Subject"
    body = clean_original_html((original.get("body") or {}).get("content"))

    header = [
        f"<p><strong>From:</strong> {html.escape(sender)}</p>",
        f"<p><strong>Sent:</strong> {html.escape(sent)}</p>",
    ]
    if recipients:
        header.append(f"<p><strong>To:</strong> {html.escape(recipients)}</p>")
    header.append(f"<p><strong>Subject:</strong> {html.escape(subject)}</p>")

    return (
        '<hr style="border: none; border-top: 1px solid #ccc; margin: 20px 0;">'
        '<div style="font-size: 12px; color: #666; margin-bottom: 10px;">'
        + "".join(header)
        + "</div>"
        '<div style="border-left: 3px solid #0078d4; padding-left: 15px; margin-left: 10px; color: #333;">'
        + body
        + "</div>"
    )


def build_reply_body(reply_html: str, signature: Optional[str],
                     original: Optional[Dict[str, Any]] = None) -> str:
    """
    Assemble the complete HTML body of a reply draft.

    Args:
        reply_html: Generated reply as an HTML fragment, without signature
        signature: Plain-text signature; newlines become line breaks
        original: Graph message the draft replies to, quoted underneath

    Returns:
        HTML body content
    """
    parts = [reply_html or ""]

    formatted_signature = format_signature(signature)
    if formatted_signature:
        parts.append("<br>" + formatted_signature)

    if original:
        parts.append("<br>" + build_quoted_original(original))

    return "".join(parts)
