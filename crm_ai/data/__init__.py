"""
CRM AI Data Module
==================

CRM entity access and the PostgreSQL connection pool.
"""

from .crm_client import CRMClient, InMemoryCRMClient
from .db import Database

__all__ = ["CRMClient", "InMemoryCRMClient", "Database"]
