"""FastAPI application exposing the exercise harvester pipeline."""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, File, HTTPException, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config import Settings, load_settings
from src.exercise_harvester.orchestrator import PipelineBusyError, PipelineError, PipelineOrchestrator
from src.exercise_harvester.review import NothingToReview, ReviewError
from src.exercise_harvester.session_exporter import ImportFormatError, to_plain


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = load_settings()
    settings.ensure_directories()
    return settings


@lru_cache(maxsize=1)
def get_orchestrator() -> PipelineOrchestrator:
    return PipelineOrchestrator(get_settings())


class SettingsPatch(BaseModel):
    concurrency: Optional[int] = None
    top_k: Optional[int] = None
    min_confidence: Optional[float] = None
    options_count: Optional[int] = None
    target_question_type: Optional[str] = None


class SkipRequest(BaseModel):
    reason: Optional[str] = None


class CursorRequest(BaseModel):
    index: int


app = FastAPI(title="Exercise Harvester", version="0.1.0")


def _busy(exc: PipelineBusyError) -> HTTPException:
    return HTTPException(status_code=409, detail=str(exc))


def _review_payload(orchestrator: PipelineOrchestrator) -> Dict[str, Any]:
    item = orchestrator.review.current()
    if item is None:
        raise HTTPException(status_code=404, detail="No rewrite results to review.")
    return {"cursor": orchestrator.review.cursor, "total": len(orchestrator.review), "item": to_plain(item)}


@app.get("/healthz")
def health(settings: Settings = Depends(get_settings)) -> Dict[str, Any]:
    return {
        "status": "ok",
        "llm_configured": settings.llm_configured,
        "ocr_backend": settings.ocr_backend,
        "output_dir": str(settings.output_dir),
    }


@app.get("/settings")
def read_settings(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    return to_plain(orchestrator.pipeline_settings.model_dump())


@app.patch("/settings")
def update_settings(
    patch: SettingsPatch,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    updated = orchestrator.update_settings(**patch.model_dump(exclude_none=True))
    return to_plain(updated.model_dump())


@app.post("/documents")
async def upload_document(
    file: UploadFile = File(...),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    if not file.filename or not file.filename.lower().endswith(".pdf"):
        raise HTTPException(status_code=400, detail="Only PDF uploads are supported.")

    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")

    try:
        report = await orchestrator.extract_bytes(data, file.filename)
    except PipelineBusyError as exc:
        raise _busy(exc) from exc
    except PipelineError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    payload = {
        "report": to_plain(report),
        "document": to_plain(orchestrator.session.document),
        "pages": len(orchestrator.session.pages),
        "blocks": len(orchestrator.session.blocks),
    }
    return JSONResponse(content=payload)


@app.post("/stages/classify")
async def classify(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    try:
        report = await orchestrator.run_classification()
    except PipelineBusyError as exc:
        raise _busy(exc) from exc
    except PipelineError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return to_plain(report)


@app.post("/stages/rewrite")
async def rewrite(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    try:
        report = await orchestrator.run_rewrite()
    except PipelineBusyError as exc:
        raise _busy(exc) from exc
    except PipelineError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return to_plain(report)


@app.get("/session")
def read_session(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    payload = orchestrator.exporter.session_payload(orchestrator.session)
    payload["busy"] = orchestrator.busy
    return payload


@app.get("/review")
def current_review(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    return _review_payload(orchestrator)


@app.post("/review/accept")
def accept_review(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    try:
        record = orchestrator.review.accept()
    except NothingToReview as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ReviewError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return {"problem": to_plain(record), "cursor": orchestrator.review.cursor}


@app.post("/review/skip")
def skip_review(
    request: Optional[SkipRequest] = None,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    try:
        item = orchestrator.review.skip(request.reason if request else None)
    except NothingToReview as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"skipped": item.id, "cursor": orchestrator.review.cursor}


@app.post("/review/cursor")
def move_cursor(
    request: CursorRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    orchestrator.review.move(request.index)
    return _review_payload(orchestrator)


@app.post("/reset")
def reset(force: bool = False, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    try:
        orchestrator.reset(force=force)
    except PipelineBusyError as exc:
        raise _busy(exc) from exc
    return {"status": "reset"}


@app.get("/export")
def export(kind: str = "session", orchestrator: PipelineOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    exporter = orchestrator.exporter
    if kind == "candidates":
        return exporter.candidates_payload(orchestrator.session)
    if kind == "rewrites":
        return exporter.rewrites_payload(orchestrator.session)
    if kind == "session":
        return exporter.session_payload(orchestrator.session)
    raise HTTPException(status_code=400, detail=f"Unknown export kind '{kind}'.")


@app.post("/import/candidates")
def import_candidates(
    document: Any = Body(...),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    try:
        count = orchestrator.import_candidates(document)
    except PipelineBusyError as exc:
        raise _busy(exc) from exc
    except ImportFormatError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"imported": count}


@app.post("/import/rewrites")
def import_rewrites(
    document: Any = Body(...),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    try:
        count = orchestrator.import_rewrites(document)
    except PipelineBusyError as exc:
        raise _busy(exc) from exc
    except ImportFormatError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"imported": count}
