"""
Utility helpers for ingestion feature flag checks.
"""

from __future__ import annotations

from flask import current_app


def _get_config(app=None):
    if app is not None:
        return app.config
    return current_app.config


def is_ingestion_enabled(app=None) -> bool:
    """Return True when the ingestion feature flag is enabled."""
    config = _get_config(app)
    return bool(config.get("INGESTION_ENABLED", False))


def is_worker_enabled(app=None) -> bool:
    config = _get_config(app)
    return bool(config.get("INGESTION_WORKER_ENABLED", False))
