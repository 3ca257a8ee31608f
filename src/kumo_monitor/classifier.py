# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Best-effort classification of KumoMTA log lines.

A line is first tried as a JSON log record (KumoMTA's ``tailer`` and
journald's ``-o json`` both emit one object per line). When that fails, or
the record is not a transient failure, the raw line goes through the
text heuristics: deferral vocabulary plus an address pattern.

Every heuristic is an entry in an ordered rule table so the precedence is
visible in one place and each rule can be exercised on its own.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

_DOMAIN = r"([a-z0-9.-]+\.[a-z]{2,})"

# Text path: vocabulary that marks a line as a temporary failure.
DEFERRAL_VOCABULARY: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bdefer\w*", re.IGNORECASE),
    re.compile(r"\btransient\b", re.IGNORECASE),
    re.compile(r"\btemporar(?:y|ily)\b", re.IGNORECASE),
    re.compile(r"\btemporary failure\b", re.IGNORECASE),
    re.compile(r"\b4\d\d\b"),
    re.compile(r"\b4\.\d{1,3}\.\d{1,3}\b"),
    re.compile(r"\brate ?limit(?:ed|ing)?\b", re.IGNORECASE),
    re.compile(r"\bgreylist(?:ed|ing)?\b", re.IGNORECASE),
    re.compile(r"\btry(?:ing)? again\b", re.IGNORECASE),
)

# Ordered (name, pattern) pairs; group 1 is the domain. First match wins.
DOMAIN_RULES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("rcpt", re.compile(r"\brcpt\s*[=:]\s*<?[^@\s<>]+@" + _DOMAIN, re.IGNORECASE)),
    ("to", re.compile(r"\bto\s*[=:]\s*<?[^@\s<>]+@" + _DOMAIN, re.IGNORECASE)),
    ("angle", re.compile(r"<[^@\s<>]+@" + _DOMAIN + r">", re.IGNORECASE)),
    ("at", re.compile(r"@" + _DOMAIN, re.IGNORECASE)),
    ("domain", re.compile(r"\bdomain\s*[=:]\s*" + _DOMAIN + r"\b", re.IGNORECASE)),
    ("provider_domain", re.compile(r"\bprovider[_ ]domain\s*[=:]\s*" + _DOMAIN + r"\b", re.IGNORECASE)),
    ("mx", re.compile(r"\bmx\s+(?:host|domain)\s*[=:]\s*" + _DOMAIN + r"\b", re.IGNORECASE)),
)
BARE_DOMAIN = re.compile(_DOMAIN, re.IGNORECASE)

SMTP_CODE = re.compile(r"\b(4\d\d)\b")
ENHANCED_CODE = re.compile(r"\b(4\.\d{1,3}\.\d{1,3})\b")
LEVEL_TOKEN = re.compile(r"\b(DEBUG|INFO|WARN|WARNING|ERROR)\b", re.IGNORECASE)
ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")
WHITESPACE = re.compile(r"\s+")

# JSON path: (field, pattern) markers for a transient failure record.
TRANSIENT_MARKERS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("type", re.compile(r"TransientFailure", re.IGNORECASE)),
    ("event", re.compile(r"TransientFailure", re.IGNORECASE)),
    ("outcome", re.compile(r"transient|defer", re.IGNORECASE)),
    ("status", re.compile(r"transient|defer", re.IGNORECASE)),
    ("result", re.compile(r"transient|defer", re.IGNORECASE)),
)
DOMAIN_FIELDS = (("domain",), ("provider_domain",), ("rcpt_domain",))
RECIPIENT_FIELDS = (
    ("rcpt",),
    ("recipient",),
    ("envelope_to",),
    ("to",),
    ("envelope", "to"),
    ("message", "recipient"),
    ("message", "rcpt"),
)
CODE_FIELDS = (("response", "code"), ("smtp", "code"), ("smtp_code",))
ENHANCED_FIELDS = (("response", "enhanced_code"), ("enhanced_code",))
TEXT_FIELDS = (("response", "content"), ("response", "text"), ("smtp", "text"), ("reason",), ("message",))
PROVIDER_FIELDS = (("provider",), ("provider_domain",))
DISPLAY_FIELDS = (("message",), ("event",), ("type",))
RECORD_KIND_FIELDS = ("type", "event")

ERROR_TEXT_LIMIT = 400
DEFERRAL_EVENT_TEXT_LIMIT = 240


# -------------------------------------------------------------------- helpers
def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE.sub("", text)


def infer_level(text: str) -> str:
    """Severity token embedded in ``text``; INFO when there is none."""
    match = LEVEL_TOKEN.search(text)
    if not match:
        return "INFO"
    level = match.group(1).upper()
    return "WARN" if level == "WARNING" else level


def trim_text(value: Any, limit: int = ERROR_TEXT_LIMIT) -> str:
    """Collapse whitespace and cap the length, marking the cut with an ellipsis."""
    text = WHITESPACE.sub(" ", "" if value is None else str(value)).strip()
    if len(text) > limit:
        return text[: limit - 1] + "…"
    return text


def decode_message(value: Any) -> str:
    """Turn a journald ``MESSAGE`` (string, byte list or ``{"data": [...]}``) into text."""
    if isinstance(value, Mapping) and "data" in value:
        value = value["data"]
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, list):
        try:
            return bytes(value).decode("utf-8", errors="replace")
        except (TypeError, ValueError):
            return str(value)
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def to_enhanced_code(value: Any) -> str | None:
    """Render an enhanced status code given as string, number, list or object."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    parts: list[Any] = [None, None, None]
    if isinstance(value, Mapping):
        for i, names in enumerate((("major", "class", "m"), ("minor", "subject", "n"), ("detail", "d"))):
            parts[i] = next((value[n] for n in names if value.get(n) is not None), None)
    elif isinstance(value, (list, tuple)) and len(value) >= 3:
        parts = list(value[:3])
    if any(p is None for p in parts):
        return None
    return ".".join(str(p) for p in parts)


def dig(obj: Any, path: tuple[str, ...]) -> Any:
    for name in path:
        if not isinstance(obj, Mapping):
            return None
        obj = obj.get(name)
    return obj


def first_field(obj: Mapping[str, Any], paths: tuple[tuple[str, ...], ...]) -> Any:
    """Value of the first path holding a truthy value."""
    for path in paths:
        value = dig(obj, path)
        if value:
            return value
    return None


def extract_domain(text: Any) -> str | None:
    """Lower-cased destination domain found in ``text`` by :data:`DOMAIN_RULES`."""
    if not text:
        return None
    text = str(text)
    for _name, pattern in DOMAIN_RULES:
        match = pattern.search(text)
        if match:
            return match.group(1).lower()
    return None


def extract_field_domain(value: Any) -> str | None:
    """Domain from a recipient-like field: an address or a bare domain."""
    domain = extract_domain(value)
    if domain is None and isinstance(value, str):
        match = BARE_DOMAIN.fullmatch(value.strip())
        domain = match.group(1).lower() if match else None
    return domain


def is_deferral_text(text: str) -> bool:
    return any(pattern.search(text) for pattern in DEFERRAL_VOCABULARY)


# ------------------------------------------------------------- classification
@dataclass
class Failure:
    """Detailed failure reason attached to a deferral."""

    domain: str
    text: str
    code: int | str | None = None
    enhanced: str | None = None
    provider: str | None = None


@dataclass
class Classification:
    """Outcome of classifying one log line."""

    display: str
    source: str = "text"
    domain: str | None = None
    failure: Failure | None = None

    @property
    def is_deferral(self) -> bool:
        return self.domain is not None

    def deferral_summary(self) -> str | None:
        """``DEFERRAL <domain> <code> <enhanced> <text>`` line for the event feed."""
        if self.failure is None:
            return None
        f = self.failure
        parts = ["DEFERRAL", f.domain, str(f.code or ""), f.enhanced or "", trim_text(f.text, DEFERRAL_EVENT_TEXT_LIMIT)]
        return " ".join(p for p in parts if p)


def is_transient_record(record: Mapping[str, Any]) -> bool:
    for name, pattern in TRANSIENT_MARKERS:
        value = record.get(name)
        if value is not None and pattern.search(str(value)):
            return True
    return False


def _record_domain(record: Mapping[str, Any]) -> str | None:
    explicit = first_field(record, DOMAIN_FIELDS)
    if explicit:
        return str(explicit).strip().lower()
    recipient = first_field(record, RECIPIENT_FIELDS)
    domain = extract_field_domain(recipient) if isinstance(recipient, str) else None
    if domain:
        return domain
    message = record.get("message")
    return extract_domain(message) if isinstance(message, str) else None


def classify_record(record: Mapping[str, Any]) -> Classification | None:
    """Classify a parsed JSON log record; None when it is not a transient failure."""
    if not is_transient_record(record):
        return None
    domain = _record_domain(record)
    result = Classification(display=_display_of(record), source="json", domain=domain)
    if domain is None:
        return result
    code = first_field(record, CODE_FIELDS)
    text = first_field(record, TEXT_FIELDS)
    if code or text:
        provider = first_field(record, PROVIDER_FIELDS)
        result.failure = Failure(
            domain=domain,
            text=trim_text(decode_message(text) if text else ""),
            code=code or None,
            enhanced=to_enhanced_code(first_field(record, ENHANCED_FIELDS)),
            provider=str(provider) if provider else None,
        )
    return result


def classify_text(line: str) -> Classification:
    """Apply the text heuristics to a raw line."""
    text = strip_ansi(line).strip()
    result = Classification(display=text)
    if not is_deferral_text(text):
        return result
    domain = extract_domain(text)
    if domain is None:
        return result
    result.domain = domain
    code = SMTP_CODE.search(text)
    if code:
        enhanced = ENHANCED_CODE.search(text)
        result.failure = Failure(
            domain=domain,
            text=trim_text(text),
            code=int(code.group(1)),
            enhanced=enhanced.group(1) if enhanced else None,
        )
    return result


def _parse_json(text: str) -> Any:
    if not (text.startswith("{") and text.endswith("}")):
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


def classify_line(line: str | bytes) -> Classification | None:
    """Classify one complete log line; None for blank input.

    Journald JSON envelopes are unwrapped and their ``MESSAGE`` classified
    in turn.
    """
    if isinstance(line, (bytes, bytearray)):
        line = decode_message(line)
    text = line.strip()
    if not text:
        return None
    record = _parse_json(text)
    if isinstance(record, Mapping):
        if "MESSAGE" in record and not _is_typed(record):
            return classify_line(decode_message(record["MESSAGE"]))
        result = classify_record(record)
        if result is not None:
            return result
        display = _display_of(record)
        if not _is_typed(record):
            # Untyped records only fall back on their free-text field.
            free_text = first_field(record, TEXT_FIELDS)
            if isinstance(free_text, str):
                fallback = classify_text(free_text)
                if fallback.is_deferral:
                    fallback.display = display
                    return fallback
        return Classification(display=display, source="json")
    return classify_text(text)


def _is_typed(record: Mapping[str, Any]) -> bool:
    return any(record.get(key) for key in RECORD_KIND_FIELDS)


def _display_of(record: Mapping[str, Any]) -> str:
    display = first_field(record, DISPLAY_FIELDS)
    return decode_message(display) if display else json.dumps(record, separators=(",", ":"))


def explain_text(text: str) -> dict[str, Any]:
    """Debug view of the text heuristics for one line."""
    clean = strip_ansi(text)[:300]
    return {"text": clean, "isDeferral": is_deferral_text(clean), "domain": extract_domain(clean)}
