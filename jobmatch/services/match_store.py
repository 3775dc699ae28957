from datetime import datetime, timezone
from typing import List, Sequence

from pymongo import DESCENDING, UpdateOne
from pymongo.errors import PyMongoError

from jobmatch.models.models import MatchResult
from jobmatch.utils.exceptions import DatabaseError
from jobmatch.utils.logging_config import get_logger

logger = get_logger(__name__)


class MatchStore:
    """Match rows keyed by (user_id, job_hash); a newer run overwrites an older row."""

    def __init__(self, matches_collection, jobs_collection):
        self.matches = matches_collection
        self.jobs = jobs_collection

    async def save_matches(self, user_id: str, matches: Sequence[MatchResult]) -> int:
        if not matches:
            return 0
        matched_at = datetime.now(timezone.utc)
        ops = [
            UpdateOne(
                {"user_id": user_id, "job_hash": m.job.job_hash},
                {"$set": {
                    "user_id": user_id,
                    "job_hash": m.job.job_hash,
                    "match_score": m.match_score,
                    "match_reason": m.match_reason,
                    "provenance": m.provenance.value,
                    "matched_at": matched_at,
                }},
                upsert=True,
            )
            for m in matches
        ]
        try:
            result = await self.matches.bulk_write(ops, ordered=False)
        except PyMongoError as e:
            raise DatabaseError(
                f"Failed to save matches for {user_id}: {e}", operation="bulk_write", collection="matches", cause=e
            ) from e
        written = result.upserted_count + result.modified_count
        logger.info(f"Saved {written} matches", extra={"user_id": user_id})
        return written

    async def recent_matches(self, user_id: str, limit: int = 20) -> List[dict]:
        """Most recent matches whose job is still active; stale rows are left out."""
        try:
            rows = await self.matches.find({"user_id": user_id}, {"_id": 0}) \
                .sort("matched_at", DESCENDING).limit(limit).to_list(length=limit)
            hashes = [r["job_hash"] for r in rows]
            active = await self.jobs.find(
                {"job_hash": {"$in": hashes}, "is_active": True}, {"_id": 0, "embedding": 0}
            ).to_list(length=len(hashes))
        except PyMongoError as e:
            raise DatabaseError(
                f"Failed to read matches for {user_id}: {e}", operation="find", collection="matches", cause=e
            ) from e

        jobs_by_hash = {j["job_hash"]: j for j in active}
        out = []
        for row in rows:
            job = jobs_by_hash.get(row["job_hash"])
            if job is None:
                continue
            out.append({**row, "job": job})
        skipped = len(rows) - len(out)
        if skipped:
            logger.debug(f"Skipped {skipped} stale matches", extra={"user_id": user_id})
        return out
