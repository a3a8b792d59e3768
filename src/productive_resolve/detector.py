from __future__ import annotations

import re

from productive_resolve.models import ResourceType


EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PROJECT_NUMBER_PATTERN = re.compile(r"^(PRJ|P)-\d+$", re.IGNORECASE)
DEAL_NUMBER_PATTERN = re.compile(r"^(D|DEAL)-\d+$", re.IGNORECASE)
NUMERIC_ID_PATTERN = re.compile(r"^\d+$")


def is_numeric_id(value: str) -> bool:
    return bool(NUMERIC_ID_PATTERN.match(value))


def needs_resolution(value: str) -> bool:
    return not is_numeric_id(value)


def is_email(value: str) -> bool:
    return bool(EMAIL_PATTERN.match(value))


def is_project_number(value: str) -> bool:
    return bool(PROJECT_NUMBER_PATTERN.match(value))


def is_deal_number(value: str) -> bool:
    return bool(DEAL_NUMBER_PATTERN.match(value))


def detect_resource_type(query: str) -> ResourceType | None:
    """
    Classify a raw identifier. Numeric IDs and free text both yield None:
    the former needs no resolution, the latter needs an explicit type.
    """
    if is_numeric_id(query):
        return None
    if is_email(query):
        return "person"
    if is_project_number(query):
        return "project"
    if is_deal_number(query):
        return "deal"
    return None


def normalize_project_number(value: str) -> str:
    upper = value.strip().upper()
    if upper.startswith("P-"):
        return "PRJ-" + upper[len("P-") :]
    return upper


def normalize_deal_number(value: str) -> str:
    upper = value.strip().upper()
    if upper.startswith("DEAL-"):
        return "D-" + upper[len("DEAL-") :]
    return upper


def normalize_email(value: str) -> str:
    return value.strip()
