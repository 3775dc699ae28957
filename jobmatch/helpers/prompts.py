RERANK_PROMPT = """You are a careers advisor for students and graduates.
Score how well each job fits the candidate on a 0-100 scale.
Return strict JSON: {{"matches": [{{"job_hash": "<hash>", "score": <0..100>, "reason": "<one sentence>"}}]}}
Only use job_hash values from the list below. Include every job exactly once.

CANDIDATE:
{profile}

JOBS:
{jobs}
"""

JOB_LINE = "- job_hash: {job_hash} | {title} at {company} | {location} | categories: {categories} | {snippet}"
