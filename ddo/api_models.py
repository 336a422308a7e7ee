from __future__ import annotations

from pydantic import BaseModel, Field


class OutcomeModel(BaseModel):
    op_id: str = Field(..., description="provider/resource-key")
    kind: str
    provider: str
    action: str = Field(..., description="create|update|delete")
    state: str = Field(..., description="SUCCEEDED|FAILED|CANCELLED")
    attempts: int = Field(0, ge=0)
    retried: bool = False
    error: str | None = None
    error_class: str | None = Field(None, description="transient|permanent|dependency|cancelled|unexpected")
    blocked_by: str | None = None
    detail: str | None = None
    started_at: str | None = None
    finished_at: str | None = None


class RunModel(BaseModel):
    run_id: str
    project: str
    started_at: str
    finished_at: str
    status: str = Field(..., description="succeeded|partial|failed")
    cancelled: bool = False
    cancel_reason: str | None = None
    counts: dict[str, int] = Field(default_factory=dict)
    outcomes: list[OutcomeModel] = Field(default_factory=list)


class RunSummaryModel(BaseModel):
    run_id: str
    project: str
    started_at: str
    finished_at: str
    status: str
    cancelled: bool = False


class EventModel(BaseModel):
    id: int
    ts: str
    level: str
    project: str | None = None
    run_id: str | None = None
    op_id: str | None = None
    message: str
