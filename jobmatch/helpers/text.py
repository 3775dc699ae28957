import re
from typing import Optional

from jobmatch.models.models import Job, UserPreferences


def clean_text(x: Optional[str]) -> str:
    return re.sub(r'\s+', ' ', x or '').strip()


def meaningful_length(text: str) -> int:
    """Count of letters and digits, ignoring whitespace and punctuation."""
    return sum(1 for ch in text or '' if ch.isalnum())


def build_job_text(job: Job) -> str:
    return clean_text(f"{job.title or ''} {job.company or ''} {job.description or ''} {job.location or ''}")


def build_semantic_query(prefs: UserPreferences) -> str:
    parts = []
    if prefs.career_path:
        parts.append(f"Career: {', '.join(prefs.career_path)}")
    if prefs.roles_selected:
        parts.append(f"Roles: {', '.join(prefs.roles_selected)}")
    if prefs.work_environment:
        parts.append(f"Work environment: {prefs.work_environment}")
    if prefs.entry_level_preference:
        parts.append(f"Experience level: {prefs.entry_level_preference}")
    if prefs.company_types:
        parts.append(f"Company types: {', '.join(prefs.company_types)}")
    if prefs.languages_spoken:
        parts.append(f"Languages: {', '.join(prefs.languages_spoken)}")
    if prefs.target_cities:
        parts.append(f"Location: {', '.join(prefs.target_cities)}")
    return ". ".join(parts)


def truncate_for_embedding(text: str, max_chars: int, margin: int) -> str:
    """
    Cut text that would exceed max_chars down to max_chars - margin and mark
    the cut with '...'. Text within the limit is returned unchanged.
    """
    if len(text) <= max_chars:
        return text
    return text[:max_chars - margin] + "..."


def normalize_city(value: Optional[str]) -> str:
    return clean_text(value).lower()


def normalize_work_environment(value: Optional[str]) -> str:
    v = normalize_city(value).replace("_", "-").replace(" ", "-")
    if v in ("onsite", "on-site", "office", "in-office"):
        return "on-site"
    if v in ("remote", "fully-remote", "work-from-home", "wfh"):
        return "remote"
    if v in ("hybrid", "flexible"):
        return "hybrid"
    return v
