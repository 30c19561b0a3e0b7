"""FastAPI application package for the evidence-intake submission gateway.

Exposes the application factory. The pipeline components (schema compiler,
conditional resolver, sanitizer, risk scanner, abuse and forgery guards,
orchestrator) live in `app/logic/`, route handlers in `app/routes/`.
"""

from __future__ import annotations

from app.main import create_app

__all__ = ["create_app"]
