"""
Calendar events from free-form lines.

A line such as "Lunch with Sarah at Cafe Roma next friday" becomes a
CalendarEvent: the first remaining word is the title, the rest the
description, capitalized words are attendee candidates and keywords decide
status and category.
"""

import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pendulum

from services.parser_service.date_tagger import DateSpan
from services.parser_service.results import EVENT, ParsedLineResult

logger = logging.getLogger(__name__)

DISPLAY_DATE_FORMAT = "ddd, DD MMM YYYY"

# Checked in order, first hit wins
STATUS_MARKERS = [
    ("completed", ["completed", "complete", "done", "finished", "ok", "[x]"]),
    ("cancelled", ["cancelled", "canceled", "postponed", "rescheduled"]),
    ("tentative", ["tentative", "maybe", "possibly", "tbc", "to be confirmed"]),
]

BUSINESS_TERMS = [
    "meeting", "presentation", "training", "session", "pitch",
    "review", "call", "submit", "create", "proposal",
]

NON_PERSON_WORDS = {
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
    "january", "february", "march", "april", "may", "june", "july", "august",
    "september", "october", "november", "december",
    "home", "office", "school", "work", "hospital", "proposal", "report", "meeting", "presentation",
}

HONORIFICS = {"mr", "mrs", "ms", "dr", "prof"}

# Words that carry no event meaning once the date phrases are removed
FILLER_WORDS = {
    "from", "to", "until", "till", "through", "thru", "between", "and",
    "in", "on", "at", "by", "for", "the", "of", "a", "an",
    "day", "days", "workday", "workdays", "week", "weeks",
    "month", "months", "year", "years",
}

PERSON_WITH_HONORIFIC = re.compile(r"\b(?:Mr|Mrs|Ms|Dr|Prof)\.?\s+[A-Z][a-z]+\b")
LOCATION = re.compile(r"\b(?:at|in)\s+((?:the\s+)?[A-Z][\w'-]*(?:\s+[A-Z][\w'-]*)*)")
CAPITALIZED_WORD = re.compile(r"^[A-Z][a-z]+$")
TRAILING_PREPOSITION = re.compile(r"\s+(?:on|at|by|in|for|from|until|till)\s*$", re.IGNORECASE)
LEADING_WITH = re.compile(r"^with\s+", re.IGNORECASE)


@dataclass
class CalendarEvent:
    id: str
    title: str
    description: str
    start: pendulum.DateTime
    end: pendulum.DateTime
    category: str
    status: str
    location: str = ""
    attendees: List[str] = field(default_factory=list)
    priority: str = "medium"
    is_range: bool = False
    line_number: Optional[int] = None
    text: str = ""

    def display(self) -> str:
        value = f"{self.status.capitalize()} Event: {self.start.format(DISPLAY_DATE_FORMAT)}"
        if self.is_range:
            value += f" to {self.end.format(DISPLAY_DATE_FORMAT)}"
        return value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "category": self.category,
            "status": self.status,
            "priority": self.priority,
            "location": self.location,
            "attendees": list(self.attendees),
            "isRange": self.is_range,
            "lineNumber": self.line_number,
            "text": self.text,
        }


def _contains_marker(text: str, marker: str) -> bool:
    if not marker[0].isalnum():
        return marker in text
    return re.search(rf"\b{re.escape(marker)}\b", text, re.IGNORECASE) is not None


def detect_status(text: str) -> str:
    for status, markers in STATUS_MARKERS:
        if any(_contains_marker(text, marker) for marker in markers):
            return status
    return "new"


def strip_dates(text: str, spans: List[DateSpan]) -> str:
    """Remove date phrases and the prepositions left dangling by them."""
    for span in sorted(spans, key=lambda s: s.span[0], reverse=True):
        begin, finish = span.span
        text = text[:begin] + " " + text[finish:]
    text = re.sub(r"\s+", " ", text).strip()

    previous = None
    while previous != text:
        previous = text
        text = TRAILING_PREPOSITION.sub("", text).strip()
    return text


def has_event_language(text: str, spans: List[DateSpan]) -> bool:
    """
    True when something other than date references is left in the line.

    "week 5", "Q1 to Q2" or "May 1 to May 9 in days" are standalone date
    references; "Dentist next friday" is an event.
    """
    if not spans:
        return False
    residue = strip_dates(text, spans)
    words = [word.lower() for word in re.findall(r"[A-Za-z]+", residue)]
    return any(word not in FILLER_WORDS for word in words)


def find_location(text: str) -> str:
    match = LOCATION.search(text)
    return match.group(1) if match else ""


def find_attendees(description: str, location: str = "") -> List[str]:
    honorific_names = PERSON_WITH_HONORIFIC.findall(description)
    excluded = {word.strip(".").lower() for name in honorific_names for word in name.split()}
    excluded.update(word.lower() for word in location.split())

    attendees = []
    for word in description.split():
        word = word.strip(".,;:!?")
        if not CAPITALIZED_WORD.match(word):
            continue
        lowered = word.lower()
        if lowered in NON_PERSON_WORDS or lowered in HONORIFICS or lowered in excluded:
            continue
        if word not in attendees:
            attendees.append(word)

    for name in honorific_names:
        if name not in attendees:
            attendees.append(name)
    return attendees


def event_id(title: str, start: pendulum.DateTime, text: str) -> str:
    """Deterministic id so re-parsing an unchanged line yields the same event."""
    digest = hashlib.sha256(f"{title}|{start.isoformat()}|{text}".encode("utf-8"))
    return digest.hexdigest()[:16]


def extract_event(text: str, spans: List[DateSpan], line_number: Optional[int] = None) -> Optional[ParsedLineResult]:
    """
    Build a calendar event from ``text`` and the date spans found in it.

    Args:
        text: The raw line
        spans: Date phrases found in the line; the first one dates the event
        line_number: Document line the event came from

    Returns:
        An ``event`` result, or None when the line has no date or nothing but
        date phrases
    """
    if not spans:
        return None

    clean_text = strip_dates(text, spans)
    words = clean_text.split()
    if not words:
        return None

    title = words[0][:1].upper() + words[0][1:]
    description = LEADING_WITH.sub("", " ".join(words[1:]))

    location = find_location(clean_text)
    attendees = find_attendees(description, location)

    lowered = f"{title} {description}".lower()
    category = "business" if any(term in lowered for term in BUSINESS_TERMS) else "personal"

    date = spans[0]
    event = CalendarEvent(
        id=event_id(title, date.start, text),
        title=title,
        description=description,
        start=date.start,
        end=date.end,
        category=category,
        status=detect_status(text),
        location=location,
        attendees=attendees,
        is_range=date.is_range,
        line_number=line_number,
        text=text,
    )
    logger.debug(f"Extracted {event.status} event {event.title!r} on line {line_number}")

    return ParsedLineResult(value=event.display(), type=EVENT, original=event)
