# api/services/__init__.py
"""
API Services Package

Holds the pipeline container shared by the route handlers.
"""

from api.services.pipeline_service import Pipeline, build_pipeline, get_pipeline, set_pipeline

__all__ = ["Pipeline", "build_pipeline", "get_pipeline", "set_pipeline"]
