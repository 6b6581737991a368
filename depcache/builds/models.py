"""Build ORM models.

This module defines the BuildRecord model storing the history of build
pipeline invocations.
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from depcache.db import Base
from depcache.types import BuildStatus


class BuildRecord(Base):
    """ORM model for build pipeline invocations.

    Attributes:
        id: Primary key.
        project_name: Name of the built project.
        recipe_digest: Digest of the dependency recipe.
        toolchain_version: Toolchain version used.
        target_platform: Target platform identifier.
        status: Build status (pending, running, succeeded, failed).
        pipeline_state: Last pipeline state reached.
        is_cache_hit: Whether a cached dependency bundle was reused.
        requested_at: Timestamp when the build was requested.
        started_at: Timestamp when compilation started.
        finished_at: Timestamp when the build finished.
        output_dir: Path of the packaged output.
        binary_sha256: SHA-256 of the compiled binary.
        error_type: Error code if the build failed.
        error_message: Error message if the build failed.
        cache_warning: Warning about impaired cache reuse.
    """

    __tablename__ = "build_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    project_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    recipe_digest: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    toolchain_version: Mapped[str] = mapped_column(String(255), nullable=False)
    target_platform: Mapped[str] = mapped_column(String(100), nullable=False)

    # Status and timing
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BuildStatus.PENDING.value, index=True
    )
    pipeline_state: Mapped[str | None] = mapped_column(String(20), nullable=True)
    is_cache_hit: Mapped[bool] = mapped_column(nullable=False, default=False)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Outputs
    output_dir: Mapped[str | None] = mapped_column(String(500), nullable=True)
    binary_sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Error tracking
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    cache_warning: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("ix_build_records_project_status", "project_name", "status"),)

    def __repr__(self) -> str:
        """Return string representation of BuildRecord."""
        return (
            f"<BuildRecord(id={self.id}, project='{self.project_name}', "
            f"status='{self.status}', recipe='{self.recipe_digest[:23]}...')>"
        )

    def mark_running(self) -> None:
        """Mark this build as running."""
        self.status = BuildStatus.RUNNING.value
        self.started_at = datetime.now(timezone.utc)

    def mark_succeeded(self) -> None:
        """Mark this build as succeeded."""
        self.status = BuildStatus.SUCCEEDED.value
        self.finished_at = datetime.now(timezone.utc)

    def mark_failed(
        self, error_type: str | None = None, message: str | None = None
    ) -> None:
        """Mark this build as failed.

        Args:
            error_type: Type/category of the error.
            message: Error message details.
        """
        self.status = BuildStatus.FAILED.value
        self.finished_at = datetime.now(timezone.utc)
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message

    def is_succeeded(self) -> bool:
        """Check if this build succeeded."""
        return self.status == BuildStatus.SUCCEEDED.value


__all__ = ["BuildRecord"]
