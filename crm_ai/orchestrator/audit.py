"""
AI Audit Log
============

Append-only record of every AI request (one entry per request, including
rejected, failed and cancelled ones) plus user feedback on responses.

Backends:
- MemoryAuditStore: process-local lists
- PostgresAuditStore: tables ai_request_logs / ai_feedback (psycopg2, worker thread)

The AuditLog service on top provides feedback ratios for confidence scoring
and the usage analytics served by GET /ai/analytics.

Schema (PostgreSQL):
    CREATE TABLE ai_request_logs (
        request_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        feature TEXT NOT NULL,
        entity_id TEXT,
        cache_hit BOOLEAN NOT NULL,
        confidence INTEGER,
        latency_ms INTEGER NOT NULL,
        status TEXT NOT NULL,
        error_code TEXT,
        fallback BOOLEAN NOT NULL DEFAULT FALSE,
        dependency TEXT,
        created_at TIMESTAMP NOT NULL
    );
    CREATE TABLE ai_feedback (
        feedback_id TEXT PRIMARY KEY,
        request_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        feature TEXT NOT NULL,
        feedback TEXT NOT NULL,
        rating INTEGER,
        comments TEXT,
        created_at TIMESTAMP NOT NULL
    );
    CREATE UNIQUE INDEX ON ai_feedback (request_id, user_id);
"""

import asyncio
import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from psycopg2.extras import RealDictCursor

from ..data.db import Database
from ..errors import ValidationError
from ..models import AiRequestRecord, FeedbackRecord

logger = logging.getLogger(__name__)

ANALYTICS_PERIODS = {
    "1d": timedelta(days=1),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}


class MemoryAuditStore:
    """Process-local audit store."""

    def __init__(self):
        self._records: List[AiRequestRecord] = []
        self._feedback: List[FeedbackRecord] = []

    async def append(self, record: AiRequestRecord) -> None:
        self._records.append(record)

    async def add_feedback(self, feedback: FeedbackRecord) -> None:
        self._feedback = [
            f for f in self._feedback
            if (f.request_id, f.user_id) != (feedback.request_id, feedback.user_id)
        ]
        self._feedback.append(feedback)

    async def find(self, request_id: str) -> Optional[AiRequestRecord]:
        for record in reversed(self._records):
            if record.request_id == request_id:
                return record
        return None

    async def list_records(self, user_id: Optional[str] = None, since: Optional[datetime] = None) -> List[AiRequestRecord]:
        return [
            r for r in self._records
            if (user_id is None or r.user_id == user_id) and (since is None or r.timestamp >= since)
        ]

    async def list_feedback(
        self,
        user_id: Optional[str] = None,
        feature: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[FeedbackRecord]:
        return [
            f for f in self._feedback
            if (user_id is None or f.user_id == user_id)
            and (feature is None or f.feature == feature)
            and (since is None or f.timestamp >= since)
        ]

    async def close(self) -> None:
        return None


class PostgresAuditStore:
    """PostgreSQL audit store."""

    def __init__(self, db: Database):
        self.db = db

    async def ensure_schema(self) -> None:
        await asyncio.to_thread(self._ensure_schema_sync)

    def _ensure_schema_sync(self) -> None:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS ai_request_logs (
                        request_id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        feature TEXT NOT NULL,
                        entity_id TEXT,
                        cache_hit BOOLEAN NOT NULL,
                        confidence INTEGER,
                        latency_ms INTEGER NOT NULL,
                        status TEXT NOT NULL,
                        error_code TEXT,
                        fallback BOOLEAN NOT NULL DEFAULT FALSE,
                        dependency TEXT,
                        created_at TIMESTAMP NOT NULL
                    )
                """)
                cur.execute("""
                    CREATE INDEX IF NOT EXISTS idx_ai_request_logs_user_time
                    ON ai_request_logs (user_id, created_at)
                """)
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS ai_feedback (
                        feedback_id TEXT PRIMARY KEY,
                        request_id TEXT NOT NULL,
                        user_id TEXT NOT NULL,
                        feature TEXT NOT NULL,
                        feedback TEXT NOT NULL,
                        rating INTEGER,
                        comments TEXT,
                        created_at TIMESTAMP NOT NULL
                    )
                """)
                cur.execute("""
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_ai_feedback_request_user
                    ON ai_feedback (request_id, user_id)
                """)

    async def append(self, record: AiRequestRecord) -> None:
        await asyncio.to_thread(self._append_sync, record)

    def _append_sync(self, record: AiRequestRecord) -> None:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO ai_request_logs (
                        request_id, user_id, feature, entity_id, cache_hit, confidence,
                        latency_ms, status, error_code, fallback, dependency, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """, (
                    record.request_id, record.user_id, record.feature, record.entity_id,
                    record.cache_hit, record.confidence, record.latency_ms, record.status,
                    record.error_code, record.fallback, record.dependency, record.timestamp,
                ))

    async def add_feedback(self, feedback: FeedbackRecord) -> None:
        await asyncio.to_thread(self._add_feedback_sync, feedback)

    def _add_feedback_sync(self, feedback: FeedbackRecord) -> None:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO ai_feedback (
                        feedback_id, request_id, user_id, feature, feedback, rating, comments, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (request_id, user_id) DO UPDATE SET
                        feedback_id = EXCLUDED.feedback_id,
                        feedback = EXCLUDED.feedback,
                        rating = EXCLUDED.rating,
                        comments = EXCLUDED.comments,
                        created_at = EXCLUDED.created_at
                """, (
                    feedback.feedback_id, feedback.request_id, feedback.user_id, feedback.feature,
                    feedback.feedback, feedback.rating, feedback.comments, feedback.timestamp,
                ))

    async def find(self, request_id: str) -> Optional[AiRequestRecord]:
        rows = await asyncio.to_thread(
            self._select_sync,
            "SELECT * FROM ai_request_logs WHERE request_id = %s",
            (request_id,),
        )
        return self._to_record(rows[0]) if rows else None

    async def list_records(self, user_id: Optional[str] = None, since: Optional[datetime] = None) -> List[AiRequestRecord]:
        clauses, params = self._where(user_id=user_id, since=since)
        rows = await asyncio.to_thread(
            self._select_sync,
            f"SELECT * FROM ai_request_logs {clauses} ORDER BY created_at",
            params,
        )
        return [self._to_record(row) for row in rows]

    async def list_feedback(
        self,
        user_id: Optional[str] = None,
        feature: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[FeedbackRecord]:
        clauses, params = self._where(user_id=user_id, feature=feature, since=since)
        rows = await asyncio.to_thread(
            self._select_sync,
            f"SELECT * FROM ai_feedback {clauses} ORDER BY created_at",
            params,
        )
        return [
            FeedbackRecord(
                feedback_id=row["feedback_id"],
                request_id=row["request_id"],
                user_id=row["user_id"],
                feature=row["feature"],
                feedback=row["feedback"],
                rating=row["rating"],
                comments=row["comments"],
                timestamp=row["created_at"],
            )
            for row in rows
        ]

    @staticmethod
    def _where(**filters) -> Tuple[str, Tuple]:
        clauses = []
        params = []
        for column, value in filters.items():
            if value is None:
                continue
            if column == "since":
                clauses.append("created_at >= %s")
            else:
                clauses.append(f"{column} = %s")
            params.append(value)
        return ("WHERE " + " AND ".join(clauses)) if clauses else "", tuple(params)

    def _select_sync(self, sql: str, params: Tuple) -> List[Dict[str, Any]]:
        with self.db.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, params)
                return cur.fetchall()

    @staticmethod
    def _to_record(row: Dict[str, Any]) -> AiRequestRecord:
        return AiRequestRecord(
            request_id=row["request_id"],
            user_id=row["user_id"],
            feature=row["feature"],
            entity_id=row["entity_id"],
            cache_hit=row["cache_hit"],
            confidence=row["confidence"],
            latency_ms=row["latency_ms"],
            status=row["status"],
            timestamp=row["created_at"],
            error_code=row["error_code"],
            fallback=row["fallback"],
            dependency=row["dependency"],
        )

    async def close(self) -> None:
        self.db.close()


class AuditLog:
    """
    Audit service used by the orchestrator and the analytics endpoint.

    Args:
        store: MemoryAuditStore or PostgresAuditStore
        clock: Returns the current local datetime (injectable for tests)
    """

    def __init__(self, store, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self._clock = clock or datetime.now

    async def append(self, record: AiRequestRecord) -> None:
        await self.store.append(record)
        logger.debug(f"Audit record {record.request_id}: {record.status}")

    async def find(self, request_id: str) -> Optional[AiRequestRecord]:
        return await self.store.find(request_id)

    async def add_feedback(self, feedback: FeedbackRecord) -> None:
        await self.store.add_feedback(feedback)
        logger.info(f"AI feedback received: {feedback.feedback} for {feedback.feature} from user {feedback.user_id}")

    async def feedback_ratio(self, feature: str) -> Tuple[Optional[float], int]:
        """Share of positive feedback for a feature. Returns (ratio, samples)."""
        entries = await self.store.list_feedback(feature=feature)
        if not entries:
            return None, 0
        positive = sum(1 for f in entries if f.is_positive)
        return positive / len(entries), len(entries)

    async def analytics(self, user_id: str, period: str = "7d", remaining_quota: Optional[int] = None,
                        used_today: Optional[int] = None) -> Dict[str, Any]:
        """
        Usage statistics for one user over a period.

        Raises:
            ValidationError: unknown period (allowed: 1d, 7d, 30d)
        """
        if period not in ANALYTICS_PERIODS:
            raise ValidationError(f"Unknown period: {period}", {"allowed": list(ANALYTICS_PERIODS)})

        end = self._clock()
        start = end - ANALYTICS_PERIODS[period]

        records = await self.store.list_records(user_id=user_id, since=start)
        feedback = await self.store.list_feedback(user_id=user_id, since=start)

        total = len(records)
        feature_usage = dict(Counter(r.feature for r in records))
        cache_hits = sum(1 for r in records if r.cache_hit)
        latencies = [r.latency_ms for r in records if r.latency_ms and r.latency_ms > 0]
        positive = sum(1 for f in feedback if f.is_positive)

        return {
            "totalRequests": total,
            "todaysUsage": used_today,
            "remainingRequests": remaining_quota,
            "featureUsage": feature_usage,
            "cacheHitRate": round(cache_hits / total, 4) if total else 0.0,
            "completedRequests": sum(1 for r in records if r.status == "completed"),
            "rejectedRequests": sum(1 for r in records if r.status == "rejected"),
            "failedRequests": sum(1 for r in records if r.status == "failed"),
            "fallbackResponses": sum(1 for r in records if r.fallback),
            "avgResponseTime": round(sum(latencies) / len(latencies)) if latencies else 0,
            "positiveFeedback": round(positive / len(feedback) * 100) if feedback else 0,
            "feedbackCount": len(feedback),
            "period": period,
            "dateRange": {"start": start.isoformat(), "end": end.isoformat()},
        }

    async def close(self) -> None:
        await self.store.close()
