from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from repo_leaderboard.db.models.base import Base, TimestampMixin


class RepositoryState(str, Enum):
    PENDING = "pending"
    COMMITS_PROCESSING = "commits_processing"
    USERS_PROCESSING = "users_processing"
    COMPLETED = "completed"
    COMPLETED_PARTIAL = "completed_partial"
    FAILED = "failed"


class Repository(Base, TimestampMixin):
    __tablename__ = "repositories"

    id: Mapped[int] = mapped_column(primary_key=True)
    url: Mapped[str] = mapped_column(String(512), nullable=False)
    path_name: Mapped[str] = mapped_column(String(512), nullable=False)
    state: Mapped[RepositoryState] = mapped_column(
        String(50),
        default=RepositoryState.PENDING,
    )
    last_attempt: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    commits_processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    users_processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    total_commits: Mapped[int] = mapped_column(default=0)
    unique_contributors: Mapped[int] = mapped_column(default=0)

    # Set when identity resolution ran without the external API
    rate_limited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    failure_reason: Mapped[str | None] = mapped_column(Text)

    # Relationships
    commit_records = relationship(
        "CommitRecord",
        back_populates="repository",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    contributors = relationship(
        "RepositoryContributor",
        back_populates="repository",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    jobs = relationship(
        "PipelineJob",
        back_populates="repository",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("idx_repositories_url", "url", unique=True),
        Index("idx_repositories_state", "state"),
    )

    def __repr__(self) -> str:
        return f"<Repository {self.url} state={self.state}>"
