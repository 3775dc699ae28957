"""
Deterministic ranking and per-send selection of jobs.

Jobs are ranked by, in order of precedence:

1. satisfaction score against the user's selected categories
2. category match (exact career-path match, or vocabulary coverage for
   users open to all categories)
3. student-critical completeness (city, work environment, experience level)
4. content richness (title + company + description length by default)
5. recency (posting date, falling back to ingestion date)

``job_hash`` breaks any remaining tie so the order is total.
"""
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from jobmatch.helpers.text import normalize_city
from jobmatch.models.models import DistributionMetrics, Job, Tier
from jobmatch.services.category_mapper import ALL_CATEGORIES, WORK_TYPE_CATEGORIES, CategoryMapper
from jobmatch.services.send_configuration import SendConfiguration
from jobmatch.utils.logging_config import get_logger

logger = get_logger(__name__)

RichnessFn = Callable[[Job], float]
CareerPath = Union[str, Sequence[str], None]


def content_richness(job: Job) -> float:
    return float(len(job.title or "") + len(job.company or "") + len(job.description or ""))


def student_critical_count(job: Job) -> int:
    return sum(1 for value in (job.city, job.work_environment, job.experience_required) if value)


def recency_timestamp(job: Job) -> float:
    posted = job.posted_at()
    if posted is None:
        return float("-inf")
    if posted.tzinfo is None:
        posted = posted.replace(tzinfo=timezone.utc)
    return posted.timestamp()


def _company_key(job: Job) -> str:
    return (job.company or "").strip().lower()


def city_quotas(target_cities: Optional[Sequence[str]], target: int) -> Dict[str, int]:
    """Even split of ``target`` over distinct cities; earlier cities take the remainder."""
    cities = []
    for city in target_cities or []:
        key = normalize_city(city)
        if key and key not in cities:
            cities.append(key)
    if not cities:
        return {}
    share, remainder = divmod(target, len(cities))
    return {city: share + (1 if i < remainder else 0) for i, city in enumerate(cities)}


@dataclass
class DistributionResult:
    jobs: List[Job] = field(default_factory=list)
    metrics: DistributionMetrics = field(default_factory=DistributionMetrics)


class JobDistributor:

    def __init__(
        self,
        category_mapper: CategoryMapper,
        send_config: SendConfiguration,
        richness_fn: Optional[RichnessFn] = None,
    ):
        self.category_mapper = category_mapper
        self.send_config = send_config
        self.richness_fn = richness_fn or content_richness

    @staticmethod
    def filter_valid_jobs(jobs: Sequence[Job]) -> List[Job]:
        """Active jobs with a hash, title and company; the first job per hash wins."""
        seen = set()
        valid = []
        for job in jobs:
            if not job.is_active or not job.has_required_fields() or job.job_hash in seen:
                continue
            seen.add(job.job_hash)
            valid.append(job)
        return valid

    def _career_paths(self, user_career_path: CareerPath) -> List[str]:
        if not user_career_path:
            return []
        if isinstance(user_career_path, str):
            user_career_path = [user_career_path]
        return [self.category_mapper.map_form_label_to_database(p) for p in user_career_path if p]

    def category_match(self, job: Job, career_paths: List[str]) -> int:
        specific = [p for p in career_paths if p != ALL_CATEGORIES]
        job_categories = job.categories or []
        if specific and ALL_CATEGORIES not in career_paths:
            return 1 if any(p in job_categories for p in specific) else 0
        return sum(1 for c in job_categories if c in WORK_TYPE_CATEGORIES)

    def sort_key(self, job: Job, user_form_values: Sequence[str], career_paths: List[str]) -> Tuple:
        return (
            -self.category_mapper.get_student_satisfaction_score(job.categories, user_form_values),
            -self.category_match(job, career_paths),
            -student_critical_count(job),
            -self.richness_fn(job),
            -recency_timestamp(job),
            job.job_hash or "",
        )

    def rank(
        self,
        jobs: Sequence[Job],
        user_career_path: CareerPath = None,
        user_form_values: Optional[Sequence[str]] = None,
    ) -> List[Job]:
        career_paths = self._career_paths(user_career_path)
        form_values = list(user_form_values) if user_form_values is not None else career_paths
        return sorted(jobs, key=lambda job: self.sort_key(job, form_values, career_paths))

    def select(
        self,
        ranked: Sequence[Job],
        target: int,
        enforce_diversity: bool = True,
        target_cities: Optional[Sequence[str]] = None,
    ) -> List[Job]:
        """
        Take ``target`` jobs from a ranked list, returned in rank order.

        With diversity on, the user's target cities first take turns picking
        their best job until each has its even share of the send. The rest of
        the send is filled in rank order. Companies and sources over their caps
        are passed over in both passes, then back-filled in rank order if the
        list would otherwise come up short.
        """
        if target <= 0:
            return []
        if not enforce_diversity:
            return list(ranked[:target])

        rules = self.send_config.rules
        picked = set()
        companies = Counter()
        sources = Counter()

        def within_caps(job: Job) -> bool:
            if companies[_company_key(job)] >= rules.max_per_company:
                return False
            return not (job.source and sources[job.source] >= rules.max_per_source)

        def take(index: int) -> None:
            job = ranked[index]
            picked.add(index)
            companies[_company_key(job)] += 1
            if job.source:
                sources[job.source] += 1

        quotas = city_quotas(target_cities, target)
        per_city = Counter()
        progress = True
        while quotas and progress and len(picked) < target:
            progress = False
            for city, quota in quotas.items():
                if len(picked) >= target:
                    break
                if per_city[city] >= quota:
                    continue
                for index, job in enumerate(ranked):
                    if index not in picked and normalize_city(job.city) == city and within_caps(job):
                        take(index)
                        per_city[city] += 1
                        progress = True
                        break

        for index, job in enumerate(ranked):
            if len(picked) >= target:
                break
            if index not in picked and within_caps(job):
                take(index)

        for index in range(len(ranked)):
            if len(picked) >= target:
                break
            picked.add(index)

        return [ranked[i] for i in sorted(picked)]

    def distribute(
        self,
        jobs: Sequence[Job],
        tier: Union[Tier, str] = Tier.FREE,
        user_career_path: CareerPath = None,
        user_form_values: Optional[Sequence[str]] = None,
        per_send: Optional[int] = None,
        enforce_diversity: bool = True,
        target_cities: Optional[Sequence[str]] = None,
    ) -> DistributionResult:
        start = time.perf_counter()
        tier = Tier(tier)
        target = per_send if per_send is not None else self.send_config.jobs_per_send(tier)

        valid = self.filter_valid_jobs(jobs)
        ranked = self.rank(valid, user_career_path, user_form_values)
        selected = self.select(ranked, target, enforce_diversity, target_cities)

        sources, cities = self.get_distribution_stats(selected)
        metrics = DistributionMetrics(
            total_jobs=len(jobs),
            valid_job_count=len(valid),
            selected_job_count=len(selected),
            processing_time_ms=round((time.perf_counter() - start) * 1000, 3),
            tier_distribution={tier.value: len(selected)},
            source_distribution=sources,
            city_distribution=cities,
        )
        if len(valid) < len(jobs):
            logger.debug(f"Dropped {len(jobs) - len(valid)} invalid or duplicate jobs")
        logger.debug(
            f"Distributed {metrics.selected_job_count}/{metrics.valid_job_count} valid jobs for tier {tier.value}"
        )
        return DistributionResult(selected, metrics)

    @staticmethod
    def get_distribution_stats(jobs: Sequence[Job]) -> Tuple[Dict[str, int], Dict[str, int]]:
        """Counts of selected jobs per source and per city."""
        sources = Counter(job.source or "unknown" for job in jobs)
        cities = Counter(job.city or "unknown" for job in jobs)
        return dict(sources), dict(cities)
