import os

os.environ.setdefault("ENVIRONMENT", "testing")

from datetime import datetime, timedelta, timezone  # noqa: E402
from itertools import count  # noqa: E402

import pytest  # noqa: E402

from jobmatch.models.models import Job, UserPreferences  # noqa: E402
from jobmatch.services.category_mapper import CategoryMapper  # noqa: E402
from jobmatch.services.distributor import JobDistributor  # noqa: E402
from jobmatch.services.send_configuration import SendConfiguration  # noqa: E402

NOW = datetime(2026, 3, 11, 9, 0, tzinfo=timezone.utc)  # a Wednesday


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_job():
    """Factory for valid, active jobs; keyword overrides win."""
    seq = count(1)

    def _make(**overrides):
        n = next(seq)
        data = {
            "job_hash": f"job-{n:03d}",
            "title": f"Analyst {n}",
            "company": f"Company {n}",
            "location": "Berlin, Germany",
            "city": "Berlin",
            "country": "Germany",
            "description": "Entry level role working with a small team.",
            "created_at": NOW - timedelta(days=2),
            "categories": ["finance-investment"],
            "is_early_career": True,
            "is_active": True,
            "source": "jobspy",
        }
        data.update(overrides)
        return Job(**data)

    return _make


@pytest.fixture
def berlin_finance_user():
    return UserPreferences(
        user_id="user-1",
        email="student@example.com",
        subscription_tier="free",
        target_cities=["Berlin"],
        career_path=["finance-investment"],
    )


@pytest.fixture
def mapper():
    return CategoryMapper()


@pytest.fixture
def send_config():
    return SendConfiguration()


@pytest.fixture
def distributor(mapper, send_config):
    return JobDistributor(mapper, send_config)
