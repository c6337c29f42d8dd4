#   Copyright 2026 UCP Authors
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

"""Inbound email replies to support tickets.

Each email provider posts a different payload shape. An adapter per provider
recognizes its own shape and normalizes it into an `InboundEmail`; adapters
are tried in a fixed order and the generic one always matches.
"""

import dataclasses
import json
import logging
import re
from typing import Any, Callable, Mapping, Optional, Sequence

import db
from enums import TicketStatus
from exceptions import ForbiddenError
from exceptions import InvalidRequestError
from exceptions import ResourceNotFoundError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 5000

_UUID_PATTERN = re.compile(
    r"\b[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-"
    r"[0-9a-f]{12}\b",
    re.IGNORECASE,
)
_EMAIL_PATTERN = re.compile(
    r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE
)
_QUOTE_MARKERS = (
    re.compile(r"^\s*On .+ wrote:\s*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^\s*From:\s.+$", re.IGNORECASE | re.MULTILINE),
    re.compile(
        r"^\s*---+\s*Original Message\s*---+\s*$",
        re.IGNORECASE | re.MULTILINE,
    ),
)


@dataclasses.dataclass
class InboundEmail:
  provider: str
  sender_email: Optional[str] = None
  subject: Optional[str] = None
  recipient: Optional[str] = None
  message: Optional[str] = None
  ticket_id_hint: Optional[str] = None


# --- Payload helpers ---


def get_path(obj: Any, path: str) -> Any:
  """Follows a dotted path through nested mappings."""
  for key in path.split("."):
    if not isinstance(obj, Mapping) or key not in obj:
      return None
    obj = obj[key]
  return obj


def first_string(*values: Any) -> Optional[str]:
  for value in values:
    if isinstance(value, str) and value.strip():
      return value.strip()
  return None


def parse_json_object(value: Any) -> Any:
  if not isinstance(value, str):
    return None
  trimmed = value.strip()
  if not trimmed.startswith(("{", "[")):
    return None
  try:
    return json.loads(trimmed)
  except ValueError:
    return None


def normalize_email(value: Any) -> Optional[str]:
  email = str(value or "").strip().lower()
  return email or None


def extract_email(value: Any) -> Optional[str]:
  """Pulls a bare address out of strings, address objects or lists of them."""
  if not value:
    return None
  if isinstance(value, (list, tuple)):
    for entry in value:
      found = extract_email(entry)
      if found:
        return found
    return None
  if isinstance(value, Mapping):
    return normalize_email(
        value.get("email")
        or value.get("address")
        or value.get("Email")
        or value.get("Address")
    )
  raw = str(value).strip()
  angle = re.search(r"<([^>]+)>", raw)
  if angle:
    return normalize_email(angle.group(1))
  plain = _EMAIL_PATTERN.search(raw)
  return normalize_email(plain.group(0)) if plain else None


def normalize_recipient(value: Any) -> Optional[str]:
  if not value:
    return None
  if isinstance(value, (list, tuple)):
    parts = [p for p in (normalize_recipient(v) for v in value) if p]
    return ", ".join(parts) if parts else None
  if isinstance(value, Mapping):
    return first_string(
        value.get("email"),
        value.get("address"),
        value.get("Email"),
        value.get("Address"),
    )
  return str(value).strip() or None


def header_value(headers: Any, name: str) -> Optional[str]:
  """Reads a header from a raw block, a list of name/value pairs or a dict."""
  if not headers:
    return None
  target = name.lower()
  if isinstance(headers, str):
    match = re.search(
        rf"^{re.escape(target)}:\s*(.+)$", headers, re.IGNORECASE | re.MULTILINE
    )
    return match.group(1).strip() if match else None
  if isinstance(headers, (list, tuple)):
    for header in headers:
      if not isinstance(header, Mapping):
        continue
      if str(header.get("Name") or header.get("name") or "").lower() == target:
        return first_string(header.get("Value"), header.get("value"))
    return None
  if isinstance(headers, Mapping):
    for key, value in headers.items():
      if str(key).lower() == target:
        return first_string(value)
  return None


def strip_html(html: Any) -> str:
  text = str(html or "")
  text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
  text = re.sub(r"</p>", "\n", text, flags=re.IGNORECASE)
  text = re.sub(r"<[^>]*>", "", text)
  text = re.sub(r"&nbsp;", " ", text, flags=re.IGNORECASE)
  return text.strip()


def strip_quoted_text(message: str) -> str:
  """Cuts the reply at the first quoted-history marker."""
  text = message.replace("\r\n", "\n").strip()
  cutoff = len(text)
  for marker in _QUOTE_MARKERS:
    found = marker.search(text)
    if found:
      cutoff = min(cutoff, found.start())
  return text[:cutoff].strip()


def clean_message(value: Optional[str]) -> str:
  raw = (value or "").strip()
  if not raw:
    return ""
  return strip_quoted_text(raw) or raw


def extract_ticket_id(value: Optional[str]) -> Optional[str]:
  match = _UUID_PATTERN.search(value or "")
  return match.group(0).lower() if match else None


def unwrap_payload(payload: Any) -> dict:
  """Lifts `data` objects or JSON-encoded `payload` fields to the top level."""
  if not isinstance(payload, Mapping):
    return {}
  data = payload.get("data")
  if isinstance(data, Mapping):
    return {**payload, **data}
  nested = parse_json_object(payload.get("payload"))
  if isinstance(nested, Mapping):
    return {**payload, **nested}
  return dict(payload)


# --- Provider adapters ---


def from_postmark(payload: Mapping[str, Any]) -> Optional[InboundEmail]:
  if not (
      payload.get("RecordType") == "Inbound"
      or payload.get("MessageID")
      or payload.get("FromFull")
      or payload.get("TextBody")
  ):
    return None
  headers = payload.get("Headers")
  return InboundEmail(
      provider="postmark",
      sender_email=extract_email(
          payload.get("FromFull")
          or payload.get("FromEmail")
          or payload.get("From")
      ),
      subject=first_string(payload.get("Subject")),
      recipient=normalize_recipient(
          payload.get("OriginalRecipient")
          or payload.get("To")
          or payload.get("ToFull")
      ),
      message=first_string(
          payload.get("StrippedTextReply"),
          payload.get("TextBody"),
          strip_html(payload.get("StrippedHtmlReply")),
          strip_html(payload.get("HtmlBody")),
      ),
      ticket_id_hint=first_string(
          payload.get("MailboxHash"),
          header_value(headers, "x-ticket-id"),
          header_value(headers, "x-support-ticket-id"),
          get_path(payload, "Metadata.ticket_id"),
      ),
  )


def from_sendgrid(payload: Mapping[str, Any]) -> Optional[InboundEmail]:
  if not (
      "spam_score" in payload
      or payload.get("attachment-info")
      or payload.get("charsets")
      or payload.get("envelope")
  ):
    return None
  envelope = parse_json_object(payload.get("envelope")) or payload.get(
      "envelope"
  )
  headers = payload.get("headers")
  return InboundEmail(
      provider="sendgrid",
      sender_email=extract_email(
          payload.get("from") or get_path(envelope, "from")
      ),
      subject=first_string(payload.get("subject")),
      recipient=normalize_recipient(
          payload.get("to") or get_path(envelope, "to")
      ),
      message=first_string(
          payload.get("stripped-text"),
          payload.get("text"),
          strip_html(payload.get("stripped-html")),
          strip_html(payload.get("html")),
      ),
      ticket_id_hint=first_string(
          header_value(headers, "x-ticket-id"),
          header_value(headers, "x-support-ticket-id"),
      ),
  )


def from_resend(payload: Mapping[str, Any]) -> Optional[InboundEmail]:
  markers = (payload.get("provider"), payload.get("source"), payload.get("type"))
  data = payload.get("data")
  is_resend = any("resend" in str(m or "").lower() for m in markers) or (
      isinstance(data, Mapping) and (data.get("from") or data.get("to"))
  )
  if not is_resend:
    return None
  source = data if isinstance(data, Mapping) else payload
  headers = source.get("headers")
  return InboundEmail(
      provider="resend",
      sender_email=extract_email(
          source.get("from") or source.get("from_email") or source.get("sender")
      ),
      subject=first_string(source.get("subject")),
      recipient=normalize_recipient(source.get("to") or source.get("recipient")),
      message=first_string(
          source.get("text"),
          source.get("textBody"),
          strip_html(source.get("html")),
          strip_html(source.get("htmlBody")),
      ),
      ticket_id_hint=first_string(
          source.get("ticket_id"),
          source.get("ticketId"),
          header_value(headers, "x-ticket-id"),
          header_value(headers, "x-support-ticket-id"),
      ),
  )


def from_generic(payload: Mapping[str, Any]) -> InboundEmail:
  html = first_string(
      payload.get("html"), payload.get("HtmlBody"), payload.get("body-html")
  )
  return InboundEmail(
      provider="generic",
      sender_email=extract_email(
          first_string(
              payload.get("from"),
              payload.get("sender"),
              payload.get("from_email"),
              payload.get("From"),
              get_path(payload, "FromFull.Email"),
              get_path(payload, "envelope.from"),
          )
          or payload.get("from")
          or payload.get("FromFull")
      ),
      subject=first_string(
          payload.get("subject"),
          payload.get("Subject"),
          get_path(payload, "headers.subject"),
      ),
      recipient=normalize_recipient(
          payload.get("to")
          or payload.get("recipient")
          or payload.get("To")
          or get_path(payload, "headers.to")
      ),
      message=first_string(
          payload.get("text"),
          payload.get("body-plain"),
          payload.get("stripped-text"),
          payload.get("strippedText"),
          payload.get("TextBody"),
          payload.get("message"),
      )
      or (strip_html(html) if html else None),
      ticket_id_hint=first_string(
          payload.get("ticket_id"),
          payload.get("ticketId"),
          get_path(payload, "headers.x-ticket-id"),
      ),
  )


ADAPTERS: Sequence[Callable[[Mapping[str, Any]], Optional[InboundEmail]]] = (
    from_postmark,
    from_sendgrid,
    from_resend,
)


def normalize_inbound(raw_payload: Any) -> InboundEmail:
  """Normalizes any provider's payload into an InboundEmail."""
  payload = unwrap_payload(raw_payload)
  email = None
  for adapter in ADAPTERS:
    email = adapter(payload)
    if email:
      break
  if email is None:
    email = from_generic(payload)
  email.sender_email = normalize_email(email.sender_email)
  email.message = clean_message(email.message)
  return email


def resolve_ticket_id(email: InboundEmail) -> Optional[str]:
  return (
      extract_ticket_id(email.ticket_id_hint)
      or extract_ticket_id(email.subject)
      or extract_ticket_id(email.recipient)
  )


class SupportService:
  """Service for attaching inbound email replies to support tickets."""

  def __init__(self, session: AsyncSession):
    self.session = session

  async def handle_inbound(self, raw_payload: Any) -> db.SupportTicketMessage:
    """Stores an email reply on its ticket.

    Raises:
      InvalidRequestError: The sender, ticket reference or body is missing.
      ResourceNotFoundError: The referenced ticket does not exist.
      ForbiddenError: The sender is neither the guest nor the ticket creator.
    """
    email = normalize_inbound(raw_payload)
    ticket_id = resolve_ticket_id(email)
    if not email.sender_email or not ticket_id or not email.message:
      raise InvalidRequestError(
          "Missing sender, ticket reference, or message body."
      )

    ticket = await self.session.get(db.SupportTicket, ticket_id)
    if not ticket:
      raise ResourceNotFoundError("Ticket not found")

    allowed = {normalize_email(ticket.guest_email)}
    if ticket.created_by:
      creator = await self.session.get(db.Profile, ticket.created_by)
      if creator:
        allowed.add(normalize_email(creator.email))
    allowed.discard(None)
    if email.sender_email not in allowed:
      raise ForbiddenError("Sender is not allowed")

    message = db.SupportTicketMessage(
        ticket_id=ticket.id,
        sender_email=email.sender_email,
        body=email.message[:MAX_MESSAGE_LENGTH],
        source="email",
        provider=email.provider,
    )
    self.session.add(message)
    ticket.updated_at = db.utcnow()
    if ticket.status in (TicketStatus.RESOLVED.value, TicketStatus.CLOSED.value):
      ticket.status = TicketStatus.OPEN.value
    await self.session.commit()
    logger.info(
        "Stored %s email reply on ticket %s", email.provider, ticket.id
    )
    return message
