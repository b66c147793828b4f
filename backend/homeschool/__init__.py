"""Application package for the homeschool planner backend.

This package exposes the service, repository and model modules used by
the FastAPI application. Curriculum records (children, subjects, units,
topics, sessions) live next to the flashcard, review and kids-mode
modules; the pure algorithms sit under `homeschool.utils`.
"""
