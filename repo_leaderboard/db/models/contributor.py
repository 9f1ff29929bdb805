from sqlalchemy import CheckConstraint, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from repo_leaderboard.db.models.base import Base, TimestampMixin


class Contributor(Base, TimestampMixin):
    __tablename__ = "contributors"

    id: Mapped[int] = mapped_column(primary_key=True)
    username: Mapped[str | None] = mapped_column(String(255))
    email: Mapped[str | None] = mapped_column(String(320))
    profile_url: Mapped[str | None] = mapped_column(String(512))

    # Relationships
    commit_records = relationship(
        "CommitRecord",
        back_populates="contributor",
        passive_deletes=True,
    )
    repositories = relationship(
        "RepositoryContributor",
        back_populates="contributor",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("idx_contributors_username", "username", unique=True),
        Index("idx_contributors_email", "email"),
        CheckConstraint(
            "username IS NOT NULL OR email IS NOT NULL",
            name="ck_contributors_identity",
        ),
    )

    @property
    def display_name(self) -> str:
        return self.username or self.email or ""

    def __repr__(self) -> str:
        return f"<Contributor {self.display_name}>"


class RepositoryContributor(Base, TimestampMixin):
    """Materialized leaderboard row: one contributor's commits in one repository."""

    __tablename__ = "repository_contributors"

    id: Mapped[int] = mapped_column(primary_key=True)
    repository_id: Mapped[int] = mapped_column(
        ForeignKey("repositories.id", ondelete="CASCADE"),
        nullable=False,
    )
    contributor_id: Mapped[int] = mapped_column(
        ForeignKey("contributors.id", ondelete="CASCADE"),
        nullable=False,
    )
    commit_count: Mapped[int] = mapped_column(default=0)

    # Relationships
    repository = relationship("Repository", back_populates="contributors")
    contributor = relationship("Contributor", back_populates="repositories")

    __table_args__ = (
        Index(
            "idx_repository_contributors_repo_contributor",
            "repository_id",
            "contributor_id",
            unique=True,
        ),
        Index("idx_repository_contributors_count", "repository_id", "commit_count"),
    )

    def __repr__(self) -> str:
        return (
            f"<RepositoryContributor repo_id={self.repository_id} "
            f"contributor_id={self.contributor_id} count={self.commit_count}>"
        )
