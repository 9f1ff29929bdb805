from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, DateTime, ForeignKey, Index, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from repo_leaderboard.db.models.base import Base, TimestampMixin, utcnow


class JobType(str, Enum):
    COMMIT_PROCESSING = "commit_processing"
    USER_PROCESSING = "user_processing"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# Literal predicates so ON CONFLICT can infer the partial indexes below
OPEN_JOB_PREDICATE = text("status IN ('queued', 'running')")
RUNNING_JOB_PREDICATE = text("status = 'running'")


class PipelineJob(Base, TimestampMixin):
    __tablename__ = "pipeline_jobs"

    id: Mapped[int] = mapped_column(primary_key=True)
    repository_id: Mapped[int] = mapped_column(
        ForeignKey("repositories.id", ondelete="CASCADE"),
        nullable=False,
    )
    job_type: Mapped[JobType] = mapped_column(String(50), nullable=False)
    status: Mapped[JobStatus] = mapped_column(String(50), default=JobStatus.QUEUED)
    payload: Mapped[dict] = mapped_column(JSON().with_variant(JSONB(), "postgresql"))
    dedup_key: Mapped[str | None] = mapped_column(String(255))
    lane_key: Mapped[str | None] = mapped_column(String(255))
    attempts: Mapped[int] = mapped_column(default=0)
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[str | None] = mapped_column(Text)

    # Relationships
    repository = relationship("Repository", back_populates="jobs")

    __table_args__ = (
        # At most one open job per dedup key
        Index(
            "idx_pipeline_jobs_dedup_open",
            "dedup_key",
            unique=True,
            postgresql_where=OPEN_JOB_PREDICATE,
            sqlite_where=OPEN_JOB_PREDICATE,
        ),
        # At most one running job per lane
        Index(
            "idx_pipeline_jobs_lane_running",
            "lane_key",
            unique=True,
            postgresql_where=RUNNING_JOB_PREDICATE,
            sqlite_where=RUNNING_JOB_PREDICATE,
        ),
        Index("idx_pipeline_jobs_claim", "job_type", "status", "available_at"),
        Index("idx_pipeline_jobs_repo_status", "repository_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<PipelineJob {self.job_type} for repo_id={self.repository_id} status={self.status}>"
