"""Small text helpers shared by parsers and routes."""

import re

from bs4 import BeautifulSoup


# Known misspellings in the account manager column
MANAGER_NAME_CORRECTIONS = {
    r"nortor": "Norton",
}

# Entries like "Jay Norton Adam Young" hold the manager followed by a contact
KNOWN_MANAGERS = ("Jay Norton",)


def normalize_manager_name(name: str) -> str:
    """Clean up an account manager cell."""
    if not name:
        return ""
    normalized = str(name).strip()

    for pattern, replacement in MANAGER_NAME_CORRECTIONS.items():
        normalized = re.sub(pattern, replacement, normalized, flags=re.IGNORECASE)

    for manager in KNOWN_MANAGERS:
        if normalized.lower().startswith(manager.lower()):
            return manager

    return normalized


def strip_html(html: str) -> str:
    if not html:
        return ""
    return BeautifulSoup(html, "html.parser").get_text()


def get_initials(name: str) -> str:
    """First and last initials, or the first two letters of a single word."""
    if not name:
        return "??"
    parts = name.split(" ")
    if len(parts) > 1 and parts[0] and parts[-1]:
        return f"{parts[0][0]}{parts[-1][0]}".upper()
    return name[:2].upper()


def format_time(total_seconds: int) -> str:
    """Seconds -> MM:SS for call timers."""
    minutes, seconds = divmod(int(total_seconds), 60)
    return f"{minutes:02d}:{seconds:02d}"
