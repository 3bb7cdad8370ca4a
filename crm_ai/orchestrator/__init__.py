"""
CRM AI Orchestrator Module
==========================

Components:
    - Orchestrator: request pipeline (validate, admit, moderate, cache, generate, score, audit)
    - RateLimiter: per-user daily quota
    - AuditLog: request records, feedback, analytics
    - MaintenanceScheduler: periodic sweeps

Usage:
    from crm_ai.orchestrator import Orchestrator

    result = await orchestrator.handle(request)
"""

from .audit import AuditLog, MemoryAuditStore, PostgresAuditStore
from .pipeline import FeatureResult, Orchestrator, RequestState
from .rate_limiter import MemoryCounterStore, RateLimiter, RedisCounterStore
from .scheduler import MaintenanceScheduler

__all__ = [
    "AuditLog",
    "MemoryAuditStore",
    "PostgresAuditStore",
    "FeatureResult",
    "Orchestrator",
    "RequestState",
    "MemoryCounterStore",
    "RateLimiter",
    "RedisCounterStore",
    "MaintenanceScheduler",
]
