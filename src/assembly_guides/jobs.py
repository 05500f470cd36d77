"""Generation jobs: record, state machine, and the queue contract.

States:
    queued -> processing -> review -> approved
    queued | processing | review -> failed
    failed -> queued (re-queue)

Every other transition is rejected. Each job status change also moves the
product's guide status (queued / generating / in_review / published).

The store and catalog here are in-memory; the admin layer that persists
them is a separate collaborator and only the contract matters to the
pipeline.

Usage:
    catalog = Catalog([Product(id=1, name="BILLY", assembly_pdf_url=url)])
    queue = JobQueue(JobStore(), catalog)
    result = queue.enqueue(1, priority="high")
    job = queue.claim_next_job()
"""

import math
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .errors import InvalidTransitionError
from .logging_config import get_logger

logger = get_logger(__name__)

JOB_STATUSES = ("queued", "processing", "review", "approved", "failed")
PRIORITIES = ("high", "normal", "low")
TRIGGERS = ("manual", "auto_sync", "batch")

VALID_TRANSITIONS = {
    "queued": ("processing", "failed"),
    "processing": ("review", "failed"),
    "review": ("approved", "failed"),
    "approved": (),
    "failed": ("queued",),
}

GUIDE_STATUS_MAP = {
    "queued": "queued",
    "processing": "generating",
    "review": "in_review",
    "approved": "published",
}

PRIORITY_RANK = {"high": 0, "normal": 1, "low": 2}

ACTIVE_STATUSES = ("queued", "processing")

SORT_FIELDS = ("created_at", "priority", "status")

# Fields a transition may write alongside the new status
TRANSITION_FIELDS = (
    "confidence_score",
    "raw_output",
    "quality_flags",
    "model_primary",
    "model_secondary",
    "publish_decision",
    "cost_summary",
    "review_notes",
    "reviewed_by",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Product:
    id: int
    name: str | None = None
    article_number: str | None = None
    assembly_pdf_url: str | None = None
    page_count: int | None = None
    guide_status: str = "none"


class Catalog:
    """Product lookup and guide-status updates."""

    def __init__(self, products: list[Product] | None = None):
        self._products: dict[int, Product] = {p.id: p for p in products or []}

    def add(self, product: Product) -> None:
        self._products[product.id] = product

    def get(self, product_id: int) -> Product | None:
        return self._products.get(product_id)

    def set_guide_status(self, product_id: int, status: str) -> None:
        product = self._products.get(product_id)
        if product is not None:
            product.guide_status = status


@dataclass
class Job:
    id: str
    product_id: int
    status: str = "queued"
    priority: str = "normal"
    triggered_by: str = "manual"
    input_pdf_url: str | None = None
    model_primary: str | None = None
    model_secondary: str | None = None
    raw_output: dict | None = None
    confidence_score: float | None = None
    quality_flags: list | None = None
    publish_decision: str | None = None
    cost_summary: dict | None = None
    review_notes: str | None = None
    reviewed_by: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    # Insertion order; breaks created_at ties
    seq: int = 0


@dataclass
class OperationResult:
    success: bool
    error: str | None = None
    job_id: str | None = None


@dataclass
class BatchEnqueueResult:
    total: int
    queued: int
    skipped: int
    results: list[dict]


@dataclass
class JobListing:
    jobs: list[Job]
    total: int
    page: int
    page_size: int
    total_pages: int


class JobStore:
    """In-memory job records with validated status transitions."""

    def __init__(self, now: Callable[[], datetime] = _utcnow):
        self._jobs: dict[str, Job] = {}
        self._seq = 0
        self.now = now

    def __len__(self) -> int:
        return len(self._jobs)

    def all(self) -> list[Job]:
        return list(self._jobs.values())

    def get(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def create(self, product_id: int, **fields: Any) -> Job:
        self._seq += 1
        job = Job(
            id=uuid.uuid4().hex,
            product_id=product_id,
            created_at=self.now(),
            seq=self._seq,
            **fields,
        )
        self._jobs[job.id] = job
        return job

    def transition(self, job_id: str, new_status: str, **metadata: Any) -> Job:
        """Move a job to `new_status`, writing any given metadata fields.

        Raises:
            KeyError: Unknown job id
            InvalidTransitionError: Not allowed by VALID_TRANSITIONS
        """
        job = self._jobs[job_id]
        if new_status not in VALID_TRANSITIONS.get(job.status, ()):
            raise InvalidTransitionError(job.status, new_status)

        for name, value in metadata.items():
            if name not in TRANSITION_FIELDS:
                raise TypeError(f"Unknown job field: {name}")
            if value is not None:
                setattr(job, name, value)

        job.status = new_status
        if new_status in ("approved", "failed"):
            job.completed_at = self.now()
        return job

    def active_job_for(self, product_id: int) -> Job | None:
        for job in self._jobs.values():
            if job.product_id == product_id and job.status in ACTIVE_STATUSES:
                return job
        return None


def _queue_order(job: Job) -> tuple:
    return (PRIORITY_RANK.get(job.priority, 1), job.created_at, job.seq)


class JobQueue:
    """The queue contract consumed by the admin layer and the pipeline."""

    def __init__(self, store: JobStore, catalog: Catalog):
        self.store = store
        self.catalog = catalog

    def enqueue(
        self,
        product_id: int,
        priority: str = "normal",
        triggered_by: str = "manual",
    ) -> OperationResult:
        if priority not in PRIORITIES or triggered_by not in TRIGGERS:
            return OperationResult(False, "Invalid input")

        product = self.catalog.get(product_id)
        if product is None:
            return OperationResult(False, "Product not found")
        if not product.assembly_pdf_url:
            return OperationResult(False, "No assembly PDF found for this product")

        active = self.store.active_job_for(product_id)
        if active is not None:
            return OperationResult(False, "A job is already active for this product", active.id)

        job = self.store.create(
            product_id,
            priority=priority,
            triggered_by=triggered_by,
            input_pdf_url=product.assembly_pdf_url,
        )
        self.catalog.set_guide_status(product_id, "queued")
        logger.info("Queued job %s for product %d (%s)", job.id, product_id, priority)
        return OperationResult(True, job_id=job.id)

    def batch_enqueue(
        self,
        product_ids: list[int],
        priority: str = "normal",
        triggered_by: str = "batch",
    ) -> BatchEnqueueResult:
        """Enqueue many products; each one is reported as queued or skipped."""
        results = []
        for product_id in product_ids:
            product = self.catalog.get(product_id)
            if product is None:
                reason = "Product not found"
            elif not product.assembly_pdf_url:
                reason = "No assembly PDF"
            elif self.store.active_job_for(product_id) is not None:
                reason = "Job already active"
            else:
                outcome = self.enqueue(product_id, priority, triggered_by)
                if outcome.success:
                    results.append(
                        {"product_id": product_id, "status": "queued", "job_id": outcome.job_id}
                    )
                    continue
                reason = outcome.error
            results.append({"product_id": product_id, "status": "skipped", "reason": reason})

        queued = sum(1 for r in results if r["status"] == "queued")
        return BatchEnqueueResult(
            total=len(product_ids),
            queued=queued,
            skipped=len(product_ids) - queued,
            results=results,
        )

    def next_queued_job(self) -> Job | None:
        """Highest priority first (high > normal > low), oldest first within a priority."""
        queued = [j for j in self.store.all() if j.status == "queued"]
        return min(queued, key=_queue_order) if queued else None

    def claim_next_job(self) -> Job | None:
        job = self.next_queued_job()
        if job is None:
            return None
        self.transition(job.id, "processing")
        return job

    def transition(self, job_id: str, new_status: str, **metadata: Any) -> OperationResult:
        job = self.store.get(job_id)
        if job is None:
            return OperationResult(False, "Job not found")
        try:
            self.store.transition(job_id, new_status, **metadata)
        except InvalidTransitionError as e:
            return OperationResult(False, str(e), job_id)

        guide_status = GUIDE_STATUS_MAP.get(new_status)
        if guide_status is not None:
            self.catalog.set_guide_status(job.product_id, guide_status)
        return OperationResult(True, job_id=job_id)

    def fail(self, job_id: str, message: str) -> OperationResult:
        """Mark a job failed and reset the product's guide status."""
        result = self.transition(job_id, "failed", review_notes=message)
        if result.success:
            self.catalog.set_guide_status(self.store.get(job_id).product_id, "none")
        return result

    def cancel(self, job_id: str) -> OperationResult:
        job = self.store.get(job_id)
        if job is None:
            return OperationResult(False, "Job not found")
        if job.status not in ACTIVE_STATUSES:
            return OperationResult(False, f'Cannot cancel job with status "{job.status}"', job_id)
        return self.fail(job_id, "Cancelled by admin")

    def requeue(self, job_id: str) -> OperationResult:
        job = self.store.get(job_id)
        if job is None:
            return OperationResult(False, "Job not found")
        if job.status != "failed":
            return OperationResult(False, "Only failed jobs can be re-queued", job_id)

        job.review_notes = None
        job.completed_at = None
        job.raw_output = None
        job.confidence_score = None
        job.quality_flags = None
        job.publish_decision = None
        job.cost_summary = None
        return self.transition(job_id, "queued")

    def processing_count(self) -> int:
        return sum(1 for j in self.store.all() if j.status == "processing")

    def get_queue_stats(self) -> dict:
        jobs = self.store.all()
        today = self.store.now().date()

        by_status: dict[str, int] = {}
        by_priority: dict[str, int] = {}
        by_trigger: dict[str, int] = {}
        for job in jobs:
            by_status[job.status] = by_status.get(job.status, 0) + 1
            by_priority[job.priority] = by_priority.get(job.priority, 0) + 1
            by_trigger[job.triggered_by] = by_trigger.get(job.triggered_by, 0) + 1

        scored = [
            j.confidence_score
            for j in jobs
            if j.confidence_score is not None and j.status in ("review", "approved")
        ]

        def finished_today(job: Job, status: str) -> bool:
            return (
                job.status == status
                and job.completed_at is not None
                and job.completed_at.date() == today
            )

        return {
            "total": len(jobs),
            "by_status": by_status,
            "by_priority": by_priority,
            "by_trigger": by_trigger,
            "avg_confidence": sum(scored) / len(scored) if scored else None,
            "completed_today": sum(1 for j in jobs if finished_today(j, "approved")),
            "failed_today": sum(1 for j in jobs if finished_today(j, "failed")),
            "queue_depth": by_status.get("queued", 0),
            "processing": by_status.get("processing", 0),
            "in_review": by_status.get("review", 0),
        }

    def list_queue_jobs(
        self,
        status: str | None = None,
        priority: str | None = None,
        triggered_by: str | None = None,
        page: int = 1,
        page_size: int = 20,
        sort_by: str = "created_at",
        sort_order: str | None = None,
    ) -> JobListing:
        """Filter, sort and paginate jobs.

        Raises:
            ValueError: Unknown filter value, page < 1, or page_size outside 1..100
        """
        if status is not None and status not in JOB_STATUSES:
            raise ValueError(f"Invalid status filter: {status}")
        if priority is not None and priority not in PRIORITIES:
            raise ValueError(f"Invalid priority filter: {priority}")
        if triggered_by is not None and triggered_by not in TRIGGERS:
            raise ValueError(f"Invalid trigger filter: {triggered_by}")
        if sort_by not in SORT_FIELDS:
            raise ValueError(f"Invalid sort field: {sort_by}")
        if sort_order not in (None, "asc", "desc"):
            raise ValueError(f"Invalid sort order: {sort_order}")
        if page < 1 or not 1 <= page_size <= 100:
            raise ValueError("page must be >= 1 and page_size between 1 and 100")

        jobs = [
            j
            for j in self.store.all()
            if (status is None or j.status == status)
            and (priority is None or j.priority == priority)
            and (triggered_by is None or j.triggered_by == triggered_by)
        ]

        if sort_by == "priority":
            # high first by default; created_at ascending within a priority
            jobs.sort(key=lambda j: (j.created_at, j.seq))
            jobs.sort(
                key=lambda j: PRIORITY_RANK.get(j.priority, 1),
                reverse=(sort_order == "desc"),
            )
        elif sort_by == "status":
            jobs.sort(
                key=lambda j: (JOB_STATUSES.index(j.status), j.seq),
                reverse=(sort_order or "desc") == "desc",
            )
        else:
            jobs.sort(
                key=lambda j: (j.created_at, j.seq),
                reverse=(sort_order or "desc") == "desc",
            )

        total = len(jobs)
        start = (page - 1) * page_size
        return JobListing(
            jobs=jobs[start : start + page_size],
            total=total,
            page=page,
            page_size=page_size,
            total_pages=math.ceil(total / page_size),
        )
