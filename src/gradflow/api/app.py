from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from ..artifacts import DatasetStore, DatasetVersion, valid_tag
from ..errors import ArtifactError
from ..runner import list_runs, load_run

# -------------------- Schemas --------------------

class DatasetSummary(BaseModel):
    ref: str
    versions: int
    latest: str | None

class VersionInfo(BaseModel):
    ref: str
    version: str
    digest: str
    created_at: str
    file_count: int
    size: int
    message: str
    tags: list[str]

class TagRequest(BaseModel):
    version: str
    tag: str

class RunSummary(BaseModel):
    run_id: str
    workflow: str
    started_at: str
    statuses: dict[str, str]


def _info(v: DatasetVersion) -> VersionInfo:
    return VersionInfo(
        ref=v.ref,
        version=v.version,
        digest=v.digest,
        created_at=v.created_at,
        file_count=v.file_count,
        size=v.size,
        message=v.message,
        tags=list(v.tags),
    )

# -------------------- App --------------------

def create_app(store: DatasetStore) -> FastAPI:
    app = FastAPI(title="gradflow datasets")

    @app.get("/datasets", response_model=list[DatasetSummary])
    def list_datasets():
        out = []
        for ref in store.list_datasets():
            versions = store.list_versions(ref)
            out.append(DatasetSummary(
                ref=ref,
                versions=len(versions),
                latest=versions[-1].version if versions else None,
            ))
        return out

    @app.get("/datasets/{ref:path}/versions", response_model=list[VersionInfo])
    def list_versions(ref: str):
        try:
            return [_info(v) for v in store.list_versions(ref)]
        except ArtifactError as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.get("/datasets/{ref:path}/resolve", response_model=VersionInfo)
    def resolve(ref: str, version: str = "latest"):
        try:
            return _info(store.resolve(f"{ref}:{version}"))
        except ArtifactError as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.post("/datasets/{ref:path}/tags", response_model=VersionInfo)
    def tag(ref: str, req: TagRequest):
        if not valid_tag(req.tag):
            raise HTTPException(status_code=400, detail=f"tag {req.tag!r} is reserved or invalid")
        try:
            return _info(store.tag(ref, req.version, req.tag))
        except ArtifactError as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.get("/runs", response_model=list[RunSummary])
    def runs():
        return [
            RunSummary(
                run_id=r["run_id"],
                workflow=r["workflow"],
                started_at=r["started_at"],
                statuses=r["statuses"],
            )
            for r in list_runs(store)
        ]

    @app.get("/runs/{run_id}")
    def get_run(run_id: str) -> dict[str, Any]:
        """Full run record including per-job status, errors and produced datasets."""
        try:
            return load_run(store, run_id)
        except FileNotFoundError:
            raise HTTPException(status_code=404, detail="Run not found")

    return app
