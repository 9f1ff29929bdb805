from sqlalchemy import ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from repo_leaderboard.db.models.base import Base, TimestampMixin


class CommitRecord(Base, TimestampMixin):
    """Commit count for one author email in one repository.

    ``processed = false`` rows are exactly the identity-resolution work still
    outstanding for the repository.
    """

    __tablename__ = "commit_records"

    id: Mapped[int] = mapped_column(primary_key=True)
    repository_id: Mapped[int] = mapped_column(
        ForeignKey("repositories.id", ondelete="CASCADE"),
        nullable=False,
    )
    author_email: Mapped[str] = mapped_column(String(320), nullable=False)
    commit_count: Mapped[int] = mapped_column(default=0)
    processed: Mapped[bool] = mapped_column(default=False)

    # Contributor this email resolved to; drives the leaderboard row counts
    contributor_id: Mapped[int | None] = mapped_column(
        ForeignKey("contributors.id", ondelete="SET NULL"),
    )

    # Relationships
    repository = relationship("Repository", back_populates="commit_records")
    contributor = relationship("Contributor", back_populates="commit_records")

    __table_args__ = (
        Index("idx_commit_records_repo_email", "repository_id", "author_email", unique=True),
        Index("idx_commit_records_repo_processed", "repository_id", "processed"),
        Index("idx_commit_records_contributor", "contributor_id"),
    )

    def __repr__(self) -> str:
        return f"<CommitRecord {self.author_email} repo_id={self.repository_id} count={self.commit_count}>"
