from repo_leaderboard.db.models.base import Base
from repo_leaderboard.db.models.commit_record import CommitRecord
from repo_leaderboard.db.models.contributor import Contributor, RepositoryContributor
from repo_leaderboard.db.models.job import JobStatus, JobType, PipelineJob
from repo_leaderboard.db.models.repository import Repository, RepositoryState

__all__ = [
    "Base",
    "Repository",
    "RepositoryState",
    "CommitRecord",
    "Contributor",
    "RepositoryContributor",
    "PipelineJob",
    "JobType",
    "JobStatus",
]
