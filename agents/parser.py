# file: agents/parser.py
from __future__ import annotations
import json
import re
from typing import Optional, Tuple

from app.errors import ParseError
from app.schema import Identity

# --- cleanup patterns ---

_FENCE_OPEN    = re.compile(r"^```(?:json)?\s*", re.I)
_FENCE_CLOSE   = re.compile(r"\s*```$", re.I)
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")
_JSON_OBJECT   = re.compile(r"\{[\s\S]*\}")

_DOUBLE_QUOTES = re.compile("[“”]")
_SINGLE_QUOTES = re.compile("[‘’]")
_DASHES        = re.compile("[‐‑‒–—―]")

_LEADING_EM_DASH = re.compile("^[ \t]*[—―][ \t]*", re.M)
_SPACED_EM_DASH = re.compile("[ \t]*[—―][ \t]*(?=\\S)")
_EM_DASH        = re.compile("[ \t]*[—―][ \t]*")

_SIGN_OFF = re.compile(
    r"^(best|best regards|kind regards|warm regards|warmest regards|regards|warmly|cheers|"
    r"thanks|thanks so much|thank you|many thanks|sincerely|all the best|talk soon|"
    r"take care|yours truly|respectfully|with gratitude)[\s,!.]*$",
    re.I,
)
_NAME_JOINERS = re.compile(r"\b(of|from|and|with)\b|[-|&/,.()@:]", re.I)

def normalize_typography(text: str) -> str:
    """Curly quotes to straight quotes, every dash variant to '-'."""
    text = _DOUBLE_QUOTES.sub('"', text)
    text = _SINGLE_QUOTES.sub("'", text)
    return _DASHES.sub("-", text)

def decode_escapes(value: str) -> str:
    return (
        value.replace("\\n", "\n")
        .replace("\\r", "")
        .replace("\\t", "\t")
        .replace('\\"', '"')
        .replace("\\\\", "\\")
        .strip()
    )

def extract_field(response: str, field: str) -> Optional[str]:
    """Pull one field out of loosely structured text: quoted value first, then bare value."""
    normalized = normalize_typography(response)
    flags = re.I | re.S if field == "message" else re.I
    quoted = re.search(rf"{field}[\"']?\s*:\s*([\"'])([\s\S]*?)\1", normalized, flags)
    if quoted and quoted.group(2):
        return decode_escapes(quoted.group(2))
    bare = re.search(rf"{field}[\"']?\s*:\s*([^,\n\r{{}}]+)", normalized, re.I)
    if bare and bare.group(1):
        return decode_escapes(bare.group(1))
    return None

def remove_em_dashes(text: str) -> str:
    # a spaced or glued dash between words reads as a clause break; a dangling dash at line end is dropped
    text = _LEADING_EM_DASH.sub("", text)
    text = _SPACED_EM_DASH.sub(", ", text)
    return _EM_DASH.sub("", text)

def _name_key(s: str) -> str:
    return re.sub(r"\s+", " ", _NAME_JOINERS.sub(" ", s.lower())).strip()

def _is_identity_line(line: str, names: list[str]) -> bool:
    key = _name_key(line)
    if not key:
        return False
    for n in names:
        key = key.replace(n, " ")
    return not key.strip()

def strip_signature(message: str, sender_name: Optional[str], band_name: Optional[str] = None) -> str:
    """
    Remove a trailing sign-off block that repeats the sender's identity:
      "...\n\nBest,\nJane Doe\nThe Lanterns" -> "..."
    Only trailing lines are touched; a name mentioned inside the body is kept.
    """
    names = [_name_key(n) for n in (sender_name, band_name) if n and _name_key(n)]
    # longest first so "jane doe" is removed before "jane"
    names.sort(key=len, reverse=True)
    lines = message.rstrip().split("\n")

    stripped_identity = False
    while lines:
        tail = lines[-1].strip()
        if not tail:
            lines.pop()
        elif names and _is_identity_line(tail, names):
            lines.pop()
            stripped_identity = True
        else:
            break

    if lines and _SIGN_OFF.match(lines[-1].strip()):
        lines.pop()
    elif not stripped_identity:
        return message.strip()

    return "\n".join(lines).rstrip()

def _parse_json(raw: str) -> Tuple[Optional[str], Optional[str]]:
    cleaned = _FENCE_OPEN.sub("", raw.strip())
    cleaned = _FENCE_CLOSE.sub("", cleaned)
    cleaned = _TRAILING_COMMA.sub(r"\1", cleaned)
    match = _JSON_OBJECT.search(cleaned)
    if match:
        cleaned = match.group(0)
    parsed = json.loads(cleaned)
    if not isinstance(parsed, dict):
        return None, None
    subject, message = parsed.get("subject"), parsed.get("message")
    return (
        str(subject) if subject is not None else None,
        str(message) if message is not None else None,
    )

def parse_draft_response(raw: str, identity: Identity) -> dict:
    """Reduce raw model output to {"subject", "message"} or raise ParseError."""
    raw = raw or ""
    try:
        subject, message = _parse_json(raw)
    except json.JSONDecodeError:
        subject = extract_field(raw, "subject")
        message = extract_field(raw, "message") or raw

    if not subject or not message:
        raise ParseError()

    cleaned_subject = remove_em_dashes(subject).strip()
    cleaned_message = strip_signature(
        remove_em_dashes(message), identity.name, identity.band_name
    )
    if not cleaned_subject or not cleaned_message:
        raise ParseError()
    return {"subject": cleaned_subject, "message": cleaned_message}
