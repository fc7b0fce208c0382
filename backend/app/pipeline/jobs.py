# app/pipeline/jobs.py
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlalchemy.orm import Session

from app.enrichment.fetcher import SafeFetcher
from app.enrichment.service import EnrichmentService
from app.ledger.db import tenant_session
from app.signals.service import SignalService

log = logging.getLogger("sentinel.jobs")

JOB_ENRICH_EVIDENCE = "enrich-evidence"
JOB_EVALUATE_SIGNAL = "evaluate-signal"


# ---- Job payloads (produced by the external scheduler / queue) ----

class _JobPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    tenant_id: str = Field(alias="tenantId", min_length=1)
    evidence_id: str = Field(alias="evidenceId", min_length=1)

    @field_validator("tenant_id", "evidence_id", mode="before")
    @classmethod
    def _strip(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v


class EnrichEvidenceJob(_JobPayload):
    actor_user_id: Optional[str] = Field(default=None, alias="actorUserId")
    force: bool = False


class EvaluateSignalJob(_JobPayload):
    pass


def parse_payload(model: type[_JobPayload], payload: Dict[str, Any]) -> _JobPayload:
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise ValueError(f"invalid job payload for {model.__name__}: {e}") from e


# ---- Dispatch ----

SessionFactory = Callable[[str], Session]


def run_enrich_evidence(db: Session, job: EnrichEvidenceJob, *, fetcher: Optional[SafeFetcher] = None):
    return EnrichmentService(db, fetcher=fetcher).enrich_evidence(
        tenant_id=job.tenant_id,
        evidence_id=job.evidence_id,
        actor_user_id=job.actor_user_id,
        force=job.force,
    )


def run_evaluate_signal(db: Session, job: EvaluateSignalJob):
    return SignalService(db).evaluate_signal(tenant_id=job.tenant_id, evidence_id=job.evidence_id)


def run_job(
    job_name: str,
    payload: Dict[str, Any],
    *,
    session_factory: Optional[SessionFactory] = None,
    fetcher: Optional[SafeFetcher] = None,
):
    """
    Entry point for the external worker pool: one call per (tenant, evidence) job.
    Opens a session on the tenant's store and always closes it.
    Retry / backoff on raised errors belongs to the caller.
    """
    if job_name == JOB_ENRICH_EVIDENCE:
        job = parse_payload(EnrichEvidenceJob, payload)
    elif job_name == JOB_EVALUATE_SIGNAL:
        job = parse_payload(EvaluateSignalJob, payload)
    else:
        raise ValueError(f"unknown job: {job_name}")

    factory = session_factory or tenant_session
    db = factory(job.tenant_id)
    try:
        log.info("job start name=%s tenant=%s evidence=%s", job_name, job.tenant_id, job.evidence_id)
        if job_name == JOB_ENRICH_EVIDENCE:
            return run_enrich_evidence(db, job, fetcher=fetcher)
        return run_evaluate_signal(db, job)
    except Exception as e:
        log.error("job failed name=%s tenant=%s evidence=%s err=%s", job_name, job.tenant_id, job.evidence_id, e)
        raise
    finally:
        db.close()
