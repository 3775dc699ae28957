from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from jobmatch.helpers.text import normalize_city, normalize_work_environment
from jobmatch.models.models import Job, UserPreferences
from jobmatch.services.category_mapper import CAREER_PATH_LABELS, CategoryMapper

DEFAULT_WEIGHTS = {
    "role": 0.35,
    "experience": 0.25,
    "location": 0.20,
    "career_path": 0.15,
    "recency": 0.05,
}


def jaccard(a: List[str], b: List[str]) -> float:
    sa, sb = set([x.lower() for x in a]), set([x.lower() for x in b])
    if not sa and not sb:
        return 0.0
    return len(sa & sb) / len(sa | sb)


def tokens(text: Optional[str]) -> List[str]:
    return [t for t in "".join(ch if ch.isalnum() else " " for ch in (text or "").lower()).split() if len(t) > 2]


def role_score(job: Job, prefs: UserPreferences) -> float:
    if not prefs.roles_selected:
        return 50.0
    title = (job.title or "").lower()
    if any(role.lower() in title for role in prefs.roles_selected if role):
        return 100.0
    role_tokens = [t for role in prefs.roles_selected for t in tokens(role)]
    return round(100 * jaccard(tokens(job.title), role_tokens), 2)


def experience_score(job: Job, prefs: UserPreferences) -> float:
    early = job.is_internship or job.is_graduate or job.is_early_career
    pref = (prefs.entry_level_preference or "").lower()
    if not pref:
        return 60.0 if early else 40.0
    if "intern" in pref and job.is_internship:
        return 100.0
    if "grad" in pref and job.is_graduate:
        return 100.0
    if ("entry" in pref or "junior" in pref or "early" in pref) and (job.is_early_career or job.is_graduate):
        return 100.0
    return 60.0 if early else 30.0


def location_score(job: Job, prefs: UserPreferences) -> float:
    targets = [normalize_city(c) for c in prefs.target_cities if c]
    if not targets:
        return 50.0
    if normalize_city(job.city) in targets:
        return 100.0
    location = normalize_city(job.location)
    if location and any(t in location for t in targets):
        return 75.0
    if normalize_work_environment(job.work_environment) == "remote" or "remote" in location:
        return 35.0
    return 15.0


def recency_score(job: Job, now: datetime) -> float:
    posted = job.posted_at()
    if posted is None:
        return 10.0
    if posted.tzinfo is None:
        posted = posted.replace(tzinfo=timezone.utc)
    age_days = (now - posted).days
    if age_days <= 7:
        return 100.0
    if age_days <= 14:
        return 70.0
    if age_days <= 30:
        return 40.0
    return 10.0


@dataclass
class ScoreBreakdown:
    total: float
    components: Dict[str, float]
    reason: str


class RuleBasedScorer:
    """Weighted preference scoring used whenever the reranker is not."""

    def __init__(self, category_mapper: CategoryMapper, weights: Optional[Dict[str, float]] = None, semantic_weight: float = 0.3):
        self.category_mapper = category_mapper
        self.weights = dict(weights or DEFAULT_WEIGHTS)
        self.semantic_weight = semantic_weight

    def career_path_score(self, job: Job, prefs: UserPreferences) -> float:
        if self.category_mapper.prefers_all_categories(prefs.career_path):
            return 50.0
        return self.category_mapper.get_student_satisfaction_score(job.categories, prefs.career_path)

    def score(
        self,
        job: Job,
        prefs: UserPreferences,
        semantic_score: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> ScoreBreakdown:
        now = now or datetime.now(timezone.utc)
        components = {
            "role": role_score(job, prefs),
            "experience": experience_score(job, prefs),
            "location": location_score(job, prefs),
            "career_path": self.career_path_score(job, prefs),
            "recency": recency_score(job, now),
        }
        total = sum(self.weights.get(k, 0.0) * v for k, v in components.items())
        if semantic_score is not None:
            components["semantic"] = round(100 * semantic_score, 2)
            total = (1 - self.semantic_weight) * total + self.semantic_weight * components["semantic"]
        total = round(max(0.0, min(100.0, total)), 2)
        return ScoreBreakdown(total, components, self.explain(job, prefs, components))

    def explain(self, job: Job, prefs: UserPreferences, components: Dict[str, float]) -> str:
        parts = []
        if components["location"] >= 100 and job.city:
            parts.append(f"Located in {job.city}")
        elif components["location"] >= 75:
            parts.append(f"Near {', '.join(prefs.target_cities)}")
        elif components["location"] >= 35 and prefs.target_cities:
            parts.append("Remote-friendly")
        matched = [c for c in job.categories if c in set(self.category_mapper.expand_career_paths(prefs.career_path))]
        if matched and not self.category_mapper.prefers_all_categories(prefs.career_path):
            parts.append("Matches " + ", ".join(CAREER_PATH_LABELS.get(c, c) for c in matched))
        if components["role"] >= 100:
            parts.append("Role matches your selection")
        if components["experience"] >= 100:
            parts.append("Fits your experience level")
        elif job.is_internship or job.is_graduate or job.is_early_career:
            parts.append("Entry-level friendly")
        if components.get("semantic", 0) >= 65:
            parts.append("Strong profile similarity")
        if components["recency"] >= 100:
            parts.append("Posted this week")
        return "; ".join(parts) or "General fit for your profile"
