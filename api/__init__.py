"""
API Package

FastAPI application receiving mail provider push notifications and
exposing the administrative surface of the draft pipeline.
"""
