"""
Finalization wizard progress, one record per season.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class WizardProgress(BaseModel, TimestampMixin):
    """Persisted continuation record of a season's finalization wizard."""

    __tablename__ = "wizard_progress"

    season_number: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)

    current_step: Mapped[int] = mapped_column(
        Integer,
        default=1,
        comment="Step the wizard is positioned at (1-5)"
    )

    steps: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSON,
        comment="Full step array with per-step status"
    )

    step_data: Mapped[Dict[str, Any]] = mapped_column(
        JSON,
        default=dict,
        comment="Output of completed steps keyed by step name"
    )

    approved_by: Mapped[Optional[str]] = mapped_column(String(100))
    approved_at: Mapped[Optional[datetime]] = mapped_column()

    version: Mapped[int] = mapped_column(
        Integer,
        default=1,
        server_default="1",
        comment="Row version, bumped on every update"
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<WizardProgress(season={self.season_number}, step={self.current_step})>"
