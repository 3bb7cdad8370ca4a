"""
CRM AI Service
==============

AI request orchestration for the CRM: deal coaching, objection handling,
customer personas and win/loss analysis, with rate limiting, moderation,
response caching, retrieval-augmented prompts and confidence scoring.
"""

__version__ = "1.0.0"
