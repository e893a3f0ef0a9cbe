"""
Pattern Nexus API

HTTP surface for the pattern intelligence core: feed change batches, check
code against learned conventions, and query patterns shared across projects.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from pattern_nexus import PatternNexus, PatternNexusConfig
from pattern_nexus.core.models import (
    AggregationFilter,
    ComplianceOptions,
    OriginContext,
    ProjectMetadata,
    Trigger,
)
from pattern_nexus.errors import (
    ConsistencyError,
    InputError,
    MergeError,
    NotFoundError,
    PatternNexusError,
    SyncError,
    SyncInProgressError,
)
from pattern_nexus.patterns.changes import parse_name_status
from pattern_nexus.patterns.detector import parse_severity

logger = logging.getLogger(__name__)

# =============================================================================
# Configuration
# =============================================================================

HOST = os.environ.get("PATTERN_NEXUS_HOST", "127.0.0.1")
PORT = int(os.environ.get("PATTERN_NEXUS_PORT", "8765"))

ALLOWED_ORIGINS = os.environ.get(
    "ALLOWED_ORIGINS",
    "http://localhost:3000"
).split(",")

ENABLE_DOCS = os.environ.get("ENABLE_DOCS")

MAX_CHANGES_PER_BATCH = 5000
MAX_CODE_UNIT_CHARS = 1_000_000

_nexus: Optional[PatternNexus] = None


def get_nexus() -> PatternNexus:
    if _nexus is None:
        raise HTTPException(status_code=503, detail="Pattern Nexus not initialized")
    return _nexus


# =============================================================================
# Lifespan
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown."""
    global _nexus
    config = PatternNexusConfig.from_env().ensure_valid()
    logging.getLogger().setLevel(config.log_level)
    _nexus = PatternNexus(config=config)
    yield
    _nexus.close()
    _nexus = None


# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="Pattern Nexus API",
    description="Learns coding conventions per project and aggregates them across a portfolio.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if ENABLE_DOCS else None,
    redoc_url=None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type"],
)


def _status_for(error: PatternNexusError) -> int:
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, InputError):
        return 400
    if isinstance(error, (SyncInProgressError, ConsistencyError)):
        return 409
    if isinstance(error, SyncError):
        return 503
    if isinstance(error, MergeError):
        return 500
    return 500


@app.exception_handler(PatternNexusError)
async def pattern_nexus_error_handler(request: Request, error: PatternNexusError):
    status = _status_for(error)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {error}")
    return JSONResponse(status_code=status, content={"detail": error.to_dict()})


# =============================================================================
# Request Models
# =============================================================================

class ChangeModel(BaseModel):
    path: str = Field(..., description="Project-relative path", max_length=4096)
    kind: str = Field(..., description="added, modified, deleted or renamed")
    old_path: Optional[str] = Field(default=None, description="Previous path (renames only)", max_length=4096)
    content: Optional[str] = Field(default=None, description="New file text; read from disk when omitted")


class ProcessChangesRequest(BaseModel):
    changes: List[ChangeModel] = Field(default_factory=list, max_length=MAX_CHANGES_PER_BATCH)
    name_status: Optional[str] = Field(default=None, description="Raw `git diff --name-status` output")
    trigger: str = Field(default="manual", description="manual, git-commit or watch")
    commit_id: Optional[str] = Field(default=None, max_length=200)
    author: Optional[str] = Field(default=None, max_length=200)

    @field_validator("trigger")
    @classmethod
    def validate_trigger(cls, v):
        values = [t.value for t in Trigger]
        if v not in values:
            raise ValueError(f"trigger must be one of {values}")
        return v


class ComplianceRequest(BaseModel):
    code_unit: str = Field(..., description="Source text to check", max_length=MAX_CODE_UNIT_CHARS)
    file_path: str = Field(..., description="Project-relative path of the code", max_length=4096)
    severity_threshold: str = Field(default="medium", description="low, medium or high")
    auto_fix: bool = False
    track_history: bool = False

    @field_validator("severity_threshold")
    @classmethod
    def validate_severity(cls, v):
        if v.lower() not in ("low", "medium", "high"):
            raise ValueError("severity_threshold must be low, medium or high")
        return v.lower()


class ExceptionRequest(BaseModel):
    pattern_id: str = Field(..., max_length=200)
    reason: str = Field(default="", max_length=2000)
    scope_glob: str = Field(..., description="Path or glob the exception covers", max_length=4096)


class ResolveViolationRequest(BaseModel):
    resolution: str = Field(..., description="fixed, ignored or pattern_updated")


class LinkProjectRequest(BaseModel):
    path: str = Field(..., description="Project root directory", max_length=4096)
    name: Optional[str] = Field(default=None, max_length=200)
    primary_language: Optional[str] = Field(default=None, max_length=50)
    frameworks: List[str] = Field(default_factory=list, max_length=50)


class ImportPatternsRequest(BaseModel):
    patterns: List[Dict[str, Any]] = Field(..., max_length=10000)


# =============================================================================
# Public Endpoints
# =============================================================================

@app.get("/")
async def root():
    """API status and endpoint discovery."""
    return {
        "service": "Pattern Nexus API",
        "status": "operational",
        "version": "0.1.0",
        "endpoints": {
            "link_project": "POST /v1/projects",
            "unlink_project": "DELETE /v1/projects/{project_id}",
            "process_changes": "POST /v1/projects/{project_id}/changes",
            "check_compliance": "POST /v1/projects/{project_id}/compliance",
            "add_exception": "POST /v1/projects/{project_id}/exceptions",
            "is_excepted": "GET /v1/projects/{project_id}/exceptions/check",
            "sync_project": "POST /v1/projects/{project_id}/sync",
            "aggregations": "GET /v1/aggregations",
            "portfolio": "GET /v1/portfolio",
        },
    }


@app.get("/health")
async def health():
    """Health check."""
    return {"status": "healthy"}


# =============================================================================
# Projects
# =============================================================================

@app.post("/v1/projects")
def link_project(request: LinkProjectRequest):
    """Link a project (idempotent by path)."""
    nexus = get_nexus()
    project_id = nexus.link_project(
        request.path,
        ProjectMetadata(
            name=request.name,
            primary_language=request.primary_language,
            frameworks=request.frameworks,
        ),
    )
    return nexus.get_project(project_id).to_dict()


@app.get("/v1/projects")
def list_projects(include_inactive: bool = False):
    projects = get_nexus().list_projects(include_inactive)
    return {"count": len(projects), "projects": [p.to_dict() for p in projects]}


@app.get("/v1/projects/{project_id}")
def get_project(project_id: str):
    return get_nexus().get_project(project_id).to_dict()


@app.delete("/v1/projects/{project_id}")
def unlink_project(project_id: str):
    """Deactivate a project; its aggregation history is kept."""
    return get_nexus().unlink_project(project_id).to_dict()


# =============================================================================
# Learning
# =============================================================================

@app.post("/v1/projects/{project_id}/changes")
def process_changes(project_id: str, request: ProcessChangesRequest):
    """
    Learn from a change batch.

    Accepts explicit changes, raw `git diff --name-status` output, or both.
    """
    changes: List[Any] = [c.model_dump(exclude_none=True) for c in request.changes]
    if request.name_status:
        changes.extend(parse_name_status(request.name_status, request.commit_id))
    if not changes:
        raise InputError("No changes given")

    origin = OriginContext(
        trigger=Trigger(request.trigger),
        commit_id=request.commit_id,
        author=request.author,
    )
    delta = get_nexus().process_changes(project_id, changes, origin)
    return delta.to_dict()


@app.post("/v1/projects/{project_id}/patterns/import")
def import_patterns(project_id: str, request: ImportPatternsRequest):
    return get_nexus().import_patterns(project_id, request.patterns).to_dict()


@app.get("/v1/projects/{project_id}/patterns")
def list_patterns(
    project_id: str,
    pattern_type: Optional[str] = None,
    language: Optional[str] = None,
    min_frequency: int = 1,
):
    patterns = get_nexus().list_patterns(project_id, pattern_type, language, min_frequency)
    return {"count": len(patterns), "patterns": [p.to_dict() for p in patterns]}


@app.get("/v1/projects/{project_id}/deltas")
def recent_deltas(project_id: str, limit: int = 10):
    deltas = get_nexus().get_recent_deltas(project_id, limit)
    return {"count": len(deltas), "deltas": [d.to_dict() for d in deltas]}


@app.get("/v1/projects/{project_id}/stats")
def learning_stats(project_id: str):
    return get_nexus().get_learning_statistics(project_id)


# =============================================================================
# Compliance
# =============================================================================

@app.post("/v1/projects/{project_id}/compliance")
def check_compliance(project_id: str, request: ComplianceRequest):
    options = ComplianceOptions(
        severity_threshold=parse_severity(request.severity_threshold),
        auto_fix=request.auto_fix,
        track_history=request.track_history,
    )
    report = get_nexus().check_compliance(project_id, request.code_unit, request.file_path, options)
    return report.to_dict()


@app.post("/v1/projects/{project_id}/exceptions")
def add_exception(project_id: str, request: ExceptionRequest):
    exception = get_nexus().add_exception(project_id, request.pattern_id, request.reason, request.scope_glob)
    return exception.to_dict()


@app.get("/v1/projects/{project_id}/exceptions")
def list_exceptions(project_id: str, pattern_id: Optional[str] = None):
    exceptions = get_nexus().list_exceptions(project_id, pattern_id)
    return {"count": len(exceptions), "exceptions": [e.to_dict() for e in exceptions]}


@app.get("/v1/projects/{project_id}/exceptions/check")
def is_excepted(project_id: str, pattern_id: str, file_path: str):
    excepted = get_nexus().is_excepted(project_id, pattern_id, file_path)
    return {"pattern_id": pattern_id, "file_path": file_path, "excepted": excepted}


@app.get("/v1/projects/{project_id}/violations")
def violation_history(
    project_id: str,
    file_path: Optional[str] = None,
    pattern_id: Optional[str] = None,
    include_resolved: bool = False,
    limit: int = 100,
):
    history = get_nexus().get_violation_history(
        project_id,
        file_path=file_path,
        pattern_id=pattern_id,
        include_resolved=include_resolved,
        limit=limit,
    )
    return {"count": len(history), "violations": history}


@app.post("/v1/projects/{project_id}/violations/{violation_id}/resolve")
def resolve_violation(project_id: str, violation_id: str, request: ResolveViolationRequest):
    if not get_nexus().resolve_violation(project_id, violation_id, request.resolution):
        raise NotFoundError(f"Unknown violation id: {violation_id}")
    return {"id": violation_id, "resolution": request.resolution}


# =============================================================================
# Portfolio
# =============================================================================

@app.post("/v1/projects/{project_id}/sync")
def sync_project(project_id: str):
    return get_nexus().sync_project(project_id).to_dict()


@app.get("/v1/aggregations")
def get_aggregations(
    category: Optional[str] = None,
    pattern_type: Optional[str] = None,
    min_project_count: int = 0,
    min_consensus: float = 0.0,
    language: Optional[str] = None,
    limit: Optional[int] = None,
):
    aggregations = get_nexus().get_aggregations(AggregationFilter(
        category=category,
        pattern_type=pattern_type,
        min_project_count=min_project_count,
        min_consensus=min_consensus,
        language=language,
        limit=limit,
    ))
    return {"count": len(aggregations), "aggregations": [a.to_dict() for a in aggregations]}


@app.get("/v1/aggregations/rank")
def rank_aggregations(query: str, limit: int = 10):
    ranked = get_nexus().rank_aggregations(query, limit)
    return {
        "query": query,
        "results": [{"score": round(score, 4), **a.to_dict()} for a, score in ranked],
    }


@app.get("/v1/portfolio")
def portfolio_view():
    return get_nexus().get_portfolio_view().to_dict()


@app.get("/v1/portfolio/stats")
def portfolio_stats():
    return get_nexus().get_statistics()


@app.get("/v1/concepts/search")
def search_concepts(query: str, limit: int = 20, project_id: Optional[str] = None):
    results = get_nexus().search_concepts(query, limit=limit, project=project_id)
    return {"query": query, "count": len(results), "results": results}


@app.get("/v1/projects/{project_id}/compare/{other_id}")
def compare_projects(project_id: str, other_id: str):
    nexus = get_nexus()
    return {
        "similarity": nexus.get_project_similarity(project_id, other_id),
        **nexus.get_pattern_diff(project_id, other_id),
    }


# =============================================================================
# Run with: uvicorn api.main:app --reload --port 8765
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=HOST, port=PORT)
