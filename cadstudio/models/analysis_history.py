"""AnalysisHistory model — one row per analyze request, for usage analytics."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from cadstudio.models.base import Base


class AnalysisHistory(Base):
    """Summary of a finished analyze run (not the run's stage outputs)."""

    __tablename__ = "analysis_history"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    config_path: Mapped[str] = mapped_column(
        String(512), nullable=False, index=True,
    )
    profile_name: Mapped[str] = mapped_column(
        String(128), nullable=False, insert_default="",
    )
    stages: Mapped[list] = mapped_column(JSONB, nullable=False)
    errors: Mapped[list] = mapped_column(JSONB, nullable=False)
    cached_stages: Mapped[list] = mapped_column(JSONB, nullable=False)
    execution_time_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    client_ip_hash: Mapped[str] = mapped_column(String(64), nullable=False, insert_default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
