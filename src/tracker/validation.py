"""Input validation for subjects and record URLs.

Failures raise ValidationError and are reported to the caller immediately.
"""

import re

from tracker.exceptions import ValidationError

_SUBJECT_RE = re.compile(r"^[A-Za-z0-9_-]{3,20}$")
_RECORD_URL_RE = re.compile(r"reddit\.com/r/\w+/comments/(\w+)")


def validate_subject(subject: str) -> str:
    """Return the subject stripped of a leading "u/" and lowercased if it is a valid username.

    Reddit usernames are case-insensitive; the lowercase form is the key used
    for storage and event topics.
    """
    if not isinstance(subject, str):
        raise ValidationError("subject must be a string")
    cleaned = subject.strip()
    if cleaned.startswith("/"):
        cleaned = cleaned[1:]
    if cleaned.startswith("u/"):
        cleaned = cleaned[2:]
    if not _SUBJECT_RE.match(cleaned):
        raise ValidationError(f"invalid subject: {subject!r}")
    return cleaned.lower()


def parse_record_url(url: str) -> str:
    """Extract the record's natural key from a submission URL."""
    match = _RECORD_URL_RE.search(url or "")
    if match is None:
        raise ValidationError("Invalid Reddit URL format")
    return match.group(1)
