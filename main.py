"""Read-only status API over the run store.

Serves stored run results and the event log so operators (and `ddo status
--api`) can inspect runs from elsewhere. Applying manifests is CLI-only.
"""
from __future__ import annotations

import secrets

from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from ddo import db
from ddo.api_models import EventModel, RunModel, RunSummaryModel
from ddo.settings import settings

app = FastAPI(title="Declarative Deployment Orchestrator")
security = HTTPBasic(auto_error=False)


def get_current_username(credentials: HTTPBasicCredentials | None = Depends(security)) -> str:
    # Without a configured password the API is open (local use).
    if not settings.api_password:
        return credentials.username if credentials else "anonymous"
    if credentials is None or not (
        secrets.compare_digest(credentials.username, settings.api_user)
        and secrets.compare_digest(credentials.password, settings.api_password)
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


@app.on_event("startup")
def startup() -> None:
    db.init_db()
    db.log_event("INFO", "status API started")


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "healthy"}


@app.get("/runs", response_model=list[RunSummaryModel])
def runs(limit: int = Query(20, ge=1, le=500), username: str = Depends(get_current_username)):
    return [
        RunSummaryModel(
            run_id=r.run_id,
            project=r.project,
            started_at=r.started_at,
            finished_at=r.finished_at,
            status=r.status,
            cancelled=bool(r.cancelled),
        )
        for r in db.list_runs(limit=limit)
    ]


@app.get("/runs/latest", response_model=RunModel)
def latest(project: str | None = None, username: str = Depends(get_current_username)):
    result = db.latest_run(project)
    if result is None:
        raise HTTPException(status_code=404, detail="no runs recorded")
    return result.to_dict()


@app.get("/runs/{run_id}", response_model=RunModel)
def run(run_id: str, username: str = Depends(get_current_username)):
    result = db.get_run(run_id)
    if result is None:
        raise HTTPException(status_code=404, detail=f"unknown run {run_id}")
    return result.to_dict()


@app.get("/events", response_model=list[EventModel])
def events(
    limit: int = Query(100, ge=1, le=1000),
    run_id: str | None = None,
    username: str = Depends(get_current_username),
):
    return db.latest_events(limit=limit, run_id=run_id)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
