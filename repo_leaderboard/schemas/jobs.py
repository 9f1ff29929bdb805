"""Typed job payloads.

Each job type has exactly one payload schema. Payloads are validated when a
job is dequeued so a malformed row fails that job instead of the worker.
"""

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from repo_leaderboard.core.exceptions import MalformedJobPayloadError


class CommitProcessingPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_type: Literal["commit_processing"] = "commit_processing"
    repository_id: int = Field(gt=0)


class UserProcessingPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_type: Literal["user_processing"] = "user_processing"
    repository_id: int = Field(gt=0)
    emails: list[str] = Field(min_length=1)
    attempt: int = Field(default=0, ge=0)  # Rate-limit re-enqueues so far


JobPayload = Annotated[
    CommitProcessingPayload | UserProcessingPayload,
    Field(discriminator="job_type"),
]

_payload_adapter: TypeAdapter[JobPayload] = TypeAdapter(JobPayload)


def parse_job_payload(
    job_type: str,
    payload: dict | None,
    job_id: int | None = None,
) -> CommitProcessingPayload | UserProcessingPayload:
    """Validate a stored payload against the schema for ``job_type``."""
    if not isinstance(payload, dict):
        raise MalformedJobPayloadError(job_id, "payload is not an object")
    if payload.get("job_type", job_type) != job_type:
        raise MalformedJobPayloadError(
            job_id,
            f"payload tagged {payload.get('job_type')!r} on a {job_type} job",
        )
    try:
        return _payload_adapter.validate_python({**payload, "job_type": job_type})
    except ValidationError as exc:
        raise MalformedJobPayloadError(job_id, str(exc)) from exc
