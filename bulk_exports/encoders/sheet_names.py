"""Worksheet naming under spreadsheet constraints."""

import re
from typing import Set

MAX_SHEET_NAME_LENGTH = 31
DEFAULT_SHEET_NAME = "Sheet"

_INVALID_SHEET_CHARS = re.compile(r"[:\\/?*\[\]]")


def safe_sheet_name(desired: str, used: Set[str]) -> str:
    """
    Return a valid worksheet name unique within ``used``.

    Forbidden characters become spaces; a name that is empty or only
    whitespace falls back to "Sheet". Names are cut to 31
    characters. On a case-insensitive collision, " 1", " 2", ... is
    appended to a base shortened so the total still fits.

    ``used`` holds lower-cased names and is updated with the result.
    """
    name = _INVALID_SHEET_CHARS.sub(" ", desired or "")
    if not name.strip():
        name = DEFAULT_SHEET_NAME
    name = name[:MAX_SHEET_NAME_LENGTH]

    candidate = name
    n = 1
    while candidate.lower() in used:
        suffix = f" {n}"
        candidate = name[: MAX_SHEET_NAME_LENGTH - len(suffix)] + suffix
        n += 1

    used.add(candidate.lower())
    return candidate
