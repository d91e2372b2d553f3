# file: agents/prompts.py
from __future__ import annotations
import json
import random
import re
from typing import Any, Iterable, Optional, Tuple

from app.schema import Contact, Identity

SENDER_KEYS = ("name", "band_name", "genre", "area", "bio", "website")
RECIPIENT_KEYS = (
    "last_name", "first_name", "email", "company", "address",
    "city", "state", "country", "website", "phone", "metadata",
)

_OUTPUT_CONTRACT = (
    'Respond with ONLY a JSON object of the form {"subject": "...", "message": "..."}. '
    "No markdown fences, no commentary. Do not sign the message; the signature is added later. "
    "Never use em dashes."
)

DRAFTING_SYSTEM_PROMPTS: Tuple[Tuple[str, str], ...] = (
    ("direct", (
        "You write short, warm booking inquiries from independent artists to venues and promoters. "
        "Address {recipient_first_name} by first name when it is known. Mention {company} once, "
        "naturally. Keep the message under 140 words with one clear ask. " + _OUTPUT_CONTRACT
    )),
    ("story", (
        "You are an artist's booking assistant. Open with one concrete, specific detail about why "
        "{company} is a good fit, then introduce the sender in two sentences and close with a "
        "simple question for {recipient_first_name}. Plain, human tone. " + _OUTPUT_CONTRACT
    )),
    ("brief", (
        "Write a concise first-contact email to {recipient_first_name} at {company}. Three short "
        "paragraphs at most: who the sender is, why this recipient, and the ask. No hype, no "
        "exclamation marks. " + _OUTPUT_CONTRACT
    )),
)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_MULTI_SPACE   = re.compile(r" {2,}")
_TRAILING_WS   = re.compile("[ \u00a0]+$")
_PARAGRAPH_GAP = re.compile(r"\n{2,}")

def _dedupe_consecutive(items: Iterable[str]) -> list[str]:
    out: list[str] = []
    for item in items:
        if out and out[-1] == item:
            continue
        out.append(item)
    return out

def pack_metadata(metadata: str) -> str:
    """Shrink free-text contact metadata before it goes into a prompt."""
    text = metadata.replace("\r\n", "\n").replace("\r", "\n")
    text = _CONTROL_CHARS.sub("", text).replace("\t", " ")
    lines = [_TRAILING_WS.sub("", _MULTI_SPACE.sub(" ", ln)) for ln in text.split("\n")]
    text = "\n".join(_dedupe_consecutive(lines))
    return "\n\n".join(_dedupe_consecutive(_PARAGRAPH_GAP.split(text))).strip()

def prepare_contact(contact: Contact) -> Contact:
    if isinstance(contact.metadata, str):
        return contact.model_copy(update={"metadata": pack_metadata(contact.metadata)})
    return contact

def stringify_subset(obj: Any, keys: Iterable[str]) -> str:
    """JSON for a fixed set of fields only (camelCase keys); empty values are left out."""
    picked = {}
    for key in keys:
        value = getattr(obj, key, None)
        if value is None or value == "":
            continue
        field = type(obj).model_fields[key]
        picked[field.alias or key] = value
    return json.dumps(picked, indent=2, ensure_ascii=False, default=str)

def booking_context(booking_for: Optional[str]) -> str:
    value = (booking_for or "").strip()
    if not value or value == "Anytime":
        return ""
    return f"\n\nBooking For:\n{value}"

def build_user_prompt(contact: Contact, identity: Identity, prompt: str,
                      booking_for: Optional[str] = None) -> str:
    return (
        f"Sender information (user profile):\n{stringify_subset(identity, SENDER_KEYS)}"
        f"\n\nRecipient information:\n{stringify_subset(contact, RECIPIENT_KEYS)}"
        f"{booking_context(booking_for)}"
        f"\n\nUser Goal:\n{prompt}"
    )

def pick_system_prompt(contact: Contact, rng: Optional[random.Random] = None) -> Tuple[str, str]:
    """Returns (prompt_name, filled_prompt)."""
    name, template = (rng or random).choice(DRAFTING_SYSTEM_PROMPTS)
    filled = (
        template.replace("{recipient_first_name}", contact.first_name or "")
        .replace("{company}", contact.company or "")
    )
    return name, filled
