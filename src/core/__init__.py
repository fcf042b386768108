"""
Recommendation Delivery Core Package

Database access, observability and the submission delivery pipeline.
"""

from . import database
from . import submissions

__all__ = ["database", "submissions"]
