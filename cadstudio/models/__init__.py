"""SQLAlchemy ORM models."""

from cadstudio.models.analysis_history import AnalysisHistory
from cadstudio.models.base import Base

__all__ = ["Base", "AnalysisHistory"]
