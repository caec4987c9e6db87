# -*- coding: utf-8 -*-
"""
Email utilities: parsing fetched RFC822 sources into subject, text and html bodies.
Uses the modern EmailMessage API (Python 3.6+).
"""

import email
import email.policy
from collections import namedtuple

import html_utils

EMAIL_POLICY = email.policy.EmailPolicy(utf8=True)

ParsedMessage = namedtuple("ParsedMessage", ["subject", "text", "html"])


class MessageParseError(Exception):
    """Raised when a fetched message cannot be turned into content."""


# ============================================================================
# Email parsing
# ============================================================================


def decode_part(part):
    """
    Decode a single MIME part to string.

    Args:
        part: MIME part

    Returns:
        Decoded string or None when the part has no payload
    """
    payload = part.get_payload(decode=True)
    if payload is None:
        return None

    charset = part.get_content_charset() or "utf-8"

    for encoding in [charset, "utf-8", "iso-8859-1"]:
        try:
            return payload.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            continue

    return payload.decode("utf-8", errors="replace")


def get_body_parts(msg):
    """
    Find the first text/plain and first text/html body of a message.
    Walks nested multiparts; attachments are skipped.

    Args:
        msg: Parsed email message

    Returns:
        (text, html) tuple, either may be None
    """
    text_part = None
    html_part = None

    for part in msg.walk():
        if part.is_multipart():
            continue
        if part.get_content_disposition() == "attachment":
            continue

        content_type = part.get_content_type()
        if content_type == "text/plain" and text_part is None:
            text_part = decode_part(part)
        elif content_type == "text/html" and html_part is None:
            html_part = decode_part(part)

    return text_part, html_part


def parse_message(raw_source):
    """
    Parse a fetched RFC822 source.

    Args:
        raw_source: Message bytes as returned by the server

    Returns:
        ParsedMessage(subject, text, html)

    Raises:
        MessageParseError: if there is no source or it cannot be decoded
    """
    if not raw_source:
        raise MessageParseError("empty message source")

    try:
        msg = email.message_from_bytes(raw_source, policy=EMAIL_POLICY)
        subject = str(msg.get("Subject", "") or "")
        text, html = get_body_parts(msg)
    except (TypeError, ValueError, LookupError) as e:
        raise MessageParseError(str(e)) from e

    return ParsedMessage(subject, text, html)


def message_content(parsed):
    """
    Build the two extractor inputs from a parsed message.

    Returns:
        (content, raw_text): content is the html body, else the text body;
        raw_text joins subject, text, rendered html and html source so the
        regex fallbacks see labels even when markup splits them.
    """
    content = parsed.html or parsed.text or ""
    rendered = html_utils.html_to_text(parsed.html)
    raw_text = " ".join(
        [parsed.subject or "", parsed.text or "", rendered, parsed.html or ""]
    )
    return content, raw_text


def envelope_summary(raw_source):
    """Subject and sender from a raw source header block, for log context."""
    if not raw_source:
        return {"subject": None, "from": None}
    headers = email.message_from_bytes(raw_source)
    return {"subject": headers.get("Subject"), "from": headers.get("From")}
