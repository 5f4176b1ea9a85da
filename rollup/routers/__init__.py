"""API routers for the internal admin surface."""

from rollup.routers import pipeline, summaries, system

__all__ = ["pipeline", "summaries", "system"]
