"""
Career path vocabulary and category scoring.

Form values and stored job categories share the same long-form vocabulary
(e.g. ``finance-investment``), so most mappings are identity. Display labels
from the signup form are mapped onto that vocabulary, and the sentinel
``all-categories`` stands for "no career path narrowing".
"""
import re
from typing import Callable, Iterable, List, Optional, Sequence

ALL_CATEGORIES = "all-categories"
UNSURE = "unsure"
EARLY_CAREER = "early-career"

CAREER_PATHS = [
    "strategy-business-design",
    "data-analytics",
    "sales-client-success",
    "marketing-growth",
    "finance-investment",
    "operations-supply-chain",
    "product-innovation",
    "tech-transformation",
    "sustainability-esg",
]

WORK_TYPE_CATEGORIES = CAREER_PATHS + [ALL_CATEGORIES]

CAREER_PATH_LABELS = {
    "strategy-business-design": "Strategy & Business Design",
    "data-analytics": "Data & Analytics",
    "sales-client-success": "Sales & Client Success",
    "marketing-growth": "Marketing & Growth",
    "finance-investment": "Finance & Investment",
    "operations-supply-chain": "Operations & Supply Chain",
    "product-innovation": "Product & Innovation",
    "tech-transformation": "Tech & Transformation",
    "sustainability-esg": "Sustainability & ESG",
    ALL_CATEGORIES: "Not Sure Yet / General",
}

FORM_LABEL_TO_CATEGORY = {label: category for category, label in CAREER_PATH_LABELS.items()}

VALID_CATEGORIES = frozenset(CAREER_PATHS + [UNSURE, EARLY_CAREER])

# Legacy or experience-level strings superseded by the is_* flags
INVALID_CATEGORIES = frozenset([
    "people-hr",
    "creative-design",
    "general",
    "general-management",
    "legal-compliance",
    ALL_CATEGORIES,
    "legal",
    "creative",
    "internship",
    "graduate",
])

EXPERIENCE_LEVEL_CATEGORIES = frozenset(["internship", "graduate", "general"])

# Keyword -> canonical category, checked in order
CATEGORY_KEYWORDS = [
    ("strategy", "strategy-business-design"),
    ("consulting", "strategy-business-design"),
    ("finance", "finance-investment"),
    ("investment", "finance-investment"),
    ("sales", "sales-client-success"),
    ("client", "sales-client-success"),
    ("marketing", "marketing-growth"),
    ("growth", "marketing-growth"),
    ("product", "product-innovation"),
    ("operations", "operations-supply-chain"),
    ("supply", "operations-supply-chain"),
    ("data", "data-analytics"),
    ("analytics", "data-analytics"),
    ("sustainability", "sustainability-esg"),
    ("esg", "sustainability-esg"),
    ("tech", "tech-transformation"),
    ("engineering", "tech-transformation"),
    ("software", "tech-transformation"),
    ("cloud", "tech-transformation"),
]

SatisfactionScaler = Callable[[int, int], float]


def proportional_overlap(overlap: int, user_count: int) -> float:
    """Share of the user's categories covered by the job, on a 0-100 scale."""
    if overlap <= 0 or user_count <= 0:
        return 0.0
    return float(max(1, min(100, round(100 * overlap / user_count))))


class CategoryMapper:
    """Maps form selections onto stored job categories and scores overlap."""

    NEUTRAL_SCORE = 1.0

    def __init__(self, satisfaction_scaler: Optional[SatisfactionScaler] = None):
        self.satisfaction_scaler = satisfaction_scaler or proportional_overlap

    def map_form_label_to_database(self, label: str) -> str:
        return FORM_LABEL_TO_CATEGORY.get(label, label)

    def map_form_to_database(self, value: str) -> str:
        return value

    def map_database_to_form(self, value: str) -> str:
        return value

    def get_database_categories_for_form(self, form_value: str) -> List[str]:
        if form_value == ALL_CATEGORIES:
            return list(WORK_TYPE_CATEGORIES)
        return [form_value]

    def expand_career_paths(self, paths: Iterable[str]) -> List[str]:
        """Map labels to categories and expand the sentinel, keeping first-seen order."""
        seen = []
        for path in paths or []:
            if not path:
                continue
            mapped = self.map_form_to_database(self.map_form_label_to_database(path))
            for category in self.get_database_categories_for_form(mapped):
                if category not in seen:
                    seen.append(category)
        return seen

    def prefers_all_categories(self, paths: Sequence[str]) -> bool:
        mapped = [self.map_form_label_to_database(p) for p in paths or [] if p]
        return not mapped or ALL_CATEGORIES in mapped

    def get_student_satisfaction_score(
        self, job_categories: Iterable[str], user_form_values: Iterable[str]
    ) -> float:
        """
        Score in [0, 100] for how well a job's categories cover the user's selection.

        Users with no selection get a neutral 1 so they are not ranked below
        scoped users; a selection with no overlap scores exactly 0.
        """
        user_set = {
            self.map_form_label_to_database(v) for v in user_form_values or [] if v
        }
        user_set.discard(ALL_CATEGORIES)
        if not user_set:
            return self.NEUTRAL_SCORE

        overlap = len(user_set & set(job_categories or []))
        if overlap == 0:
            return 0.0
        score = float(self.satisfaction_scaler(overlap, len(user_set)))
        return max(0.0, min(100.0, score))

    def validate_and_fix_categories(self, categories: Iterable[str]) -> List[str]:
        """
        Clean a stored category list: drop legacy and experience-level strings,
        map free-text entries onto the vocabulary by keyword, dedupe.
        Returns ["unsure"] when nothing valid remains.
        """
        cleaned = []
        for raw in categories or []:
            if not raw:
                continue
            value = raw.strip().lower()
            if value in VALID_CATEGORIES:
                category = value
            elif value in INVALID_CATEGORIES:
                continue
            else:
                category = self._category_from_keywords(value)
            if category and category not in cleaned:
                cleaned.append(category)

        real = [c for c in cleaned if c != UNSURE]
        if real:
            return real
        return [UNSURE]

    def has_experience_conflict(self, job) -> bool:
        """True when legacy experience strings coexist with the boolean flags."""
        flagged = job.is_internship or job.is_graduate
        legacy = EXPERIENCE_LEVEL_CATEGORIES & set(job.categories or [])
        return bool(flagged and legacy)

    @staticmethod
    def _category_from_keywords(value: str) -> Optional[str]:
        tokens = set(re.split(r"[^a-z0-9]+", value))
        for keyword, category in CATEGORY_KEYWORDS:
            if keyword in tokens:
                return category
        return None
