"""
CRM AI API Module
=================

FastAPI application (crm_ai.api.main:app) and the /ai routes.
"""
