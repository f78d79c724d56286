"""Strata - local knowledge store for an AI assistant's memory layer.

Observations captured from tool use are kept in one SQLite file, indexed
for keyword and vector search, and watched for topic shifts by a
background loop in the serving process.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
