from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from sefdispatch.api.dependencies.dispatch import get_dispatch_db, get_dispatcher
from sefdispatch.integrations.authority import AuthorityError
from sefdispatch.models.job import QUEUE_NAMES, Job
from sefdispatch.runtime import Dispatcher
from sefdispatch.services.invoice_service import InvoiceAuthorityService, InvoiceDispatchService
from sefdispatch.services.job_service import JobService

router = APIRouter(prefix="/queue", tags=["Queue"])


class SendInvoiceRequest(BaseModel):
    user_id: Optional[str] = Field(default=None, description="Operator who requested the send")


class CancelInvoiceRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    user_id: Optional[str] = None


class JobResponse(BaseModel):
    id: str
    job_type: str
    queue: str
    payload: Dict[str, Any]
    status: str
    worker_id: Optional[str] = None
    attempts_made: int
    max_attempts: int
    error: Optional[str] = None
    fatal: bool = False
    dedupe_key: Optional[str] = None
    created_at: Optional[datetime] = None
    run_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_by_id: Optional[str] = None


def _to_job_response(job: Job) -> JobResponse:
    return JobResponse(
        id=job.id,
        job_type=job.job_type,
        queue=job.queue_name,
        payload=job.payload or {},
        status=job.status,
        worker_id=job.worker_id,
        attempts_made=job.attempts_made or 0,
        max_attempts=job.max_attempts or 0,
        error=job.error,
        fatal=bool(job.fatal),
        dedupe_key=job.dedupe_key,
        created_at=job.created_at,
        run_at=job.run_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        created_by_id=job.created_by_id,
    )


@router.post("/send-invoice/{invoice_id}", response_model=JobResponse, status_code=202)
def send_invoice(
    invoice_id: str,
    req: Optional[SendInvoiceRequest] = None,
    dispatcher: Dispatcher = Depends(get_dispatcher),
    db: Session = Depends(get_dispatch_db),
) -> JobResponse:
    user_id = req.user_id if req else None
    job = InvoiceDispatchService(db, dispatcher.queue).send_invoice(invoice_id, user_id)
    return _to_job_response(job)


@router.post("/invoices/{invoice_id}/cancel")
def cancel_invoice(
    invoice_id: str,
    req: CancelInvoiceRequest,
    dispatcher: Dispatcher = Depends(get_dispatcher),
    db: Session = Depends(get_dispatch_db),
) -> Dict[str, Any]:
    service = InvoiceAuthorityService(db, client_factory=dispatcher.client_factory)
    try:
        return service.cancel_invoice(invoice_id, req.reason, req.user_id)
    except AuthorityError as exc:
        db.rollback()
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@router.post("/invoices/{invoice_id}/poll-status")
def poll_invoice_status(
    invoice_id: str,
    dispatcher: Dispatcher = Depends(get_dispatcher),
    db: Session = Depends(get_dispatch_db),
) -> Dict[str, Any]:
    service = InvoiceAuthorityService(db, client_factory=dispatcher.client_factory)
    try:
        return service.poll_invoice_status(invoice_id)
    except AuthorityError as exc:
        db.rollback()
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@router.get("/metrics")
def queue_metrics(
    dispatcher: Dispatcher = Depends(get_dispatcher),
    db: Session = Depends(get_dispatch_db),
) -> Dict[str, Any]:
    service = JobService(db, dispatcher.settings)
    queues = {
        queue_name: service.count_depth(job_type) for job_type, queue_name in QUEUE_NAMES.items()
    }
    snapshot = getattr(dispatcher.queue.metrics, "snapshot", None)
    return {
        "queues": queues,
        "quiet_hours_active": dispatcher.queue.quiet_hours.is_active(dispatcher.queue.clock()),
        "metrics": snapshot() if callable(snapshot) else None,
    }


@router.get("/jobs")
def list_jobs(
    status: Optional[str] = Query(None),
    job_type: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    dispatcher: Dispatcher = Depends(get_dispatcher),
    db: Session = Depends(get_dispatch_db),
) -> Dict[str, Any]:
    jobs: List[Job] = JobService(db, dispatcher.settings).list_jobs(
        status=status, job_type=job_type, limit=limit, offset=offset
    )
    return {"total": len(jobs), "items": [_to_job_response(job).model_dump() for job in jobs]}


@router.get("/jobs/{job_id}", response_model=JobResponse)
def get_job(
    job_id: str,
    dispatcher: Dispatcher = Depends(get_dispatcher),
    db: Session = Depends(get_dispatch_db),
) -> JobResponse:
    job = JobService(db, dispatcher.settings).get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return _to_job_response(job)
