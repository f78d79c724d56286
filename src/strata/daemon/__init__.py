"""Serving-process background loop.

Architecture:
    - BackgroundWorker: embeds new observations and tools, runs topic
      shift detection and the tool staleness sweep on a fixed interval

Usage:
    >>> from strata.daemon import BackgroundWorker
    >>> worker = BackgroundWorker(db, project_hash, provider)
    >>> worker.start()
    >>> ...
    >>> await worker.stop()
"""

from strata.daemon.worker import BackgroundWorker

__all__ = ["BackgroundWorker"]
