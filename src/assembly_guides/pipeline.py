"""Guide generation orchestrator.

Runs one PDF through every stage:

    render -> Pass 1 (per page, escalating) -> assemble -> Pass 2 (refine)
           -> quality checks + publish decision -> illustrations -> guide

and drives the job record around it. A successful run always lands the job in
`review` (publishing is the admin layer's call); any exception marks the job
`failed`, resets the product's guide status, and is re-raised.

Usage:
    settings = Settings.from_env()
    pipeline = GuidePipeline(settings, catalog)
    guide = await pipeline.generate_for_product(product_id)
    write_guide_json(guide, Path("guide.json"))
"""

import json
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path

import httpx

from .api import VisionProvider, create_vision_providers
from .assembly import assemble_steps
from .config import Settings
from .cost_tracker import CostTracker
from .errors import InvalidTransitionError, PipelineError
from .extraction import extract_pages
from .illustration import GeminiImageClient, ImageSink, generate_illustrations_for_guide
from .jobs import Catalog, JobQueue, JobStore, Product
from .logging_config import get_logger
from .models import (
    GeneratedGuide,
    GeneratedStep,
    GenerationMetadata,
    PartsSummary,
    ToolSummary,
)
from .pdf_utils import RenderResult, render_all_pages
from .quality import classify_quality_gate, run_quality_checks
from .rate_limiter import RateLimiterRegistry
from .refinement import refine_steps

logger = get_logger(__name__)

Renderer = Callable[..., Awaitable[RenderResult]]

# Queue runner limits per invocation
MAX_JOBS_PER_RUN = 3
MAX_CONCURRENT = 2
MAX_LIMITER_WAIT_MS = 30_000


def estimate_difficulty(steps: list[GeneratedStep]) -> str:
    complex_ratio = (
        sum(1 for s in steps if s.complexity == "complex") / len(steps) if steps else 0.0
    )
    if len(steps) <= 5 and complex_ratio < 0.3:
        return "easy"
    if len(steps) > 15 or complex_ratio > 0.5:
        return "hard"
    return "medium"


def estimate_time_minutes(steps: list[GeneratedStep]) -> int:
    return sum(5 if s.complexity == "complex" else 3 for s in steps)


def write_guide_json(guide: GeneratedGuide, path: Path) -> None:
    """Write the guide as indented JSON."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(guide.to_dict(), indent=2, ensure_ascii=False))


class GuidePipeline:
    """Application context: providers, shared limiters, catalog and queue."""

    def __init__(
        self,
        settings: Settings,
        catalog: Catalog,
        queue: JobQueue | None = None,
        primary: VisionProvider | None = None,
        secondary: VisionProvider | None = None,
        limiters: RateLimiterRegistry | None = None,
        image_client: GeminiImageClient | None = None,
        image_sink: ImageSink | None = None,
        renderer: Renderer = render_all_pages,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self.catalog = catalog
        self.queue = queue or JobQueue(JobStore(), catalog)
        if primary is None:
            primary, secondary = create_vision_providers(settings, transport=transport)
        self.primary = primary
        self.secondary = secondary
        self.limiters = limiters or RateLimiterRegistry()
        if image_client is None and settings.gemini_api_key:
            image_client = GeminiImageClient(
                settings.gemini_api_key,
                timeout=settings.illustration_timeout,
                transport=transport,
            )
        self.image_client = image_client
        self.image_sink = image_sink
        self.renderer = renderer

    async def generate_guide(
        self,
        product: Product,
        pdf_url: str,
        cost_tracker: CostTracker,
    ) -> GeneratedGuide:
        """Run every stage for one product's PDF and return the guide.

        Raises:
            PdfFetchError / PdfExtractionError: The PDF could not be rendered
            PipelineError: The PDF rendered to zero pages
            ProviderError: Cheap tier unreachable with no expensive tier configured
        """
        start = time.monotonic()
        settings = self.settings
        product_name = product.name or "Product"

        rendered = await self.renderer(
            pdf_url, dpi=settings.pdf_render_dpi, timeout=settings.pdf_fetch_timeout
        )
        if not rendered.pages:
            raise PipelineError("PDF extraction produced no pages")
        logger.info("Product %d: %d pages to analyze", product.id, len(rendered.pages))

        page_results = await extract_pages(
            rendered.pages,
            self.primary,
            self.secondary,
            self.limiters,
            cost_tracker,
            settings.escalation,
        )

        assembled = assemble_steps(page_results)
        refinement = await refine_steps(
            assembled.steps,
            self.primary,
            self.secondary,
            self.limiters,
            cost_tracker,
            product_name=product_name,
        )
        steps = refinement.steps

        quality = run_quality_checks(
            steps,
            rendered.total_pages,
            settings.quality,
            original_step_numbers=assembled.original_numbers,
        )
        decision = classify_quality_gate(quality, settings.quality_gate)
        flags = list(quality.flags)

        if settings.illustration_mode != "off":
            batch = await generate_illustrations_for_guide(
                steps,
                product_name,
                cost_tracker,
                self.image_client,
                self.limiters,
                settings.illustration,
                dry_run=settings.illustration_mode == "dry_run",
                sink=self.image_sink,
            )
            flags.extend(batch.flags)

        escalated_pages = [r.page_number for r in page_results if r.escalated]
        used_secondary = self.secondary is not None and (
            bool(escalated_pages) or refinement.escalated
        )

        parts = assembled.parts
        guide = GeneratedGuide(
            product_id=product.id,
            title=f"How to Assemble {product_name}",
            description=(
                f"Step-by-step assembly guide for {product.name or 'this product'}. "
                f"{len(steps)} steps."
            ),
            difficulty=estimate_difficulty(steps),
            estimated_time_minutes=estimate_time_minutes(steps),
            tools=ToolSummary(required=list(assembled.tools), optional=[]),
            parts=PartsSummary(parts=list(parts), total_part_count=sum(p.quantity for p in parts)),
            steps=steps,
            overall_confidence=quality.overall_confidence,
            quality_flags=flags,
            publish_decision=decision,
            passes_quality_gate=quality.passes_quality_gate,
            metadata=GenerationMetadata(
                primary_model=self.primary.model,
                secondary_model=self.secondary.model if used_secondary else None,
                pdf_page_count=rendered.total_pages,
                processing_time_ms=int((time.monotonic() - start) * 1000),
                pdf_url=pdf_url,
                generated_at=datetime.now(timezone.utc).isoformat(),
                escalated_pages=escalated_pages,
                refinement_applied=refinement.applied,
                cost=cost_tracker.summary(),
            ),
        )
        logger.info(
            "Product %d: %d steps, confidence %.2f, %s, $%.4f",
            product.id,
            len(steps),
            guide.overall_confidence,
            decision,
            cost_tracker.total_cost_usd,
        )
        return guide

    async def process_job(self, job_id: str) -> GeneratedGuide:
        """Run the pipeline for a queued (or already claimed) job.

        On success the job moves to `review` with the guide attached. On any
        exception the job is marked `failed` with the message and the
        exception propagates.
        """
        job = self.queue.store.get(job_id)
        if job is None:
            raise PipelineError(f"Job not found: {job_id}")
        if job.status == "queued":
            self.queue.transition(job_id, "processing")
        elif job.status != "processing":
            raise InvalidTransitionError(job.status, "processing")

        cost_tracker = CostTracker(job_id)
        try:
            product = self.catalog.get(job.product_id)
            if product is None:
                raise PipelineError(f"Product not found: {job.product_id}")
            pdf_url = job.input_pdf_url or product.assembly_pdf_url
            if not pdf_url:
                raise PipelineError(
                    f"No assembly PDF found for product {product.id} ({product.name})"
                )
            guide = await self.generate_guide(product, pdf_url, cost_tracker)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error("Job %s failed: %s", job_id, message)
            self.queue.fail(job_id, message)
            raise

        result = self.queue.transition(
            job_id,
            "review",
            raw_output=guide.to_dict(),
            confidence_score=guide.overall_confidence,
            quality_flags=[asdict(f) for f in guide.quality_flags],
            model_primary=guide.metadata.primary_model,
            model_secondary=guide.metadata.secondary_model,
            publish_decision=guide.publish_decision,
            cost_summary=cost_tracker.summary(),
        )
        if not result.success:
            logger.warning("Job %s finished but was not moved to review: %s", job_id, result.error)
        return guide

    async def generate_for_product(
        self,
        product_id: int,
        priority: str = "normal",
        triggered_by: str = "manual",
    ) -> GeneratedGuide:
        """Enqueue a job for the product and process it immediately."""
        result = self.queue.enqueue(product_id, priority=priority, triggered_by=triggered_by)
        if not result.success:
            raise PipelineError(f"Cannot generate guide for product {product_id}: {result.error}")
        return await self.process_job(result.job_id)

    async def process_queue(
        self,
        max_jobs: int = MAX_JOBS_PER_RUN,
        max_concurrent: int = MAX_CONCURRENT,
        max_wait_ms: float = MAX_LIMITER_WAIT_MS,
    ) -> list[dict]:
        """Claim and process up to `max_jobs` queued jobs in priority order.

        Stops early when `max_concurrent` jobs are already processing, when
        the queue is empty, or when the primary provider's limiter would make
        the run wait longer than `max_wait_ms`.
        """
        results = []
        limiter = self.limiters.get(self.primary.provider)

        for _ in range(max_jobs):
            if self.queue.processing_count() >= max_concurrent:
                break

            # Shorter waits are absorbed by the limiter inside the job's first call
            wait_ms = limiter.wait_time_ms()
            if wait_ms > max_wait_ms:
                logger.info("Rate limit wait %.0f ms too long, stopping run", wait_ms)
                break

            job = self.queue.claim_next_job()
            if job is None:
                break

            try:
                guide = await self.process_job(job.id)
            except Exception as e:
                results.append(
                    {
                        "job_id": job.id,
                        "product_id": job.product_id,
                        "status": "failed",
                        "error": str(e) or type(e).__name__,
                    }
                )
                continue

            results.append(
                {
                    "job_id": job.id,
                    "product_id": job.product_id,
                    "status": "completed",
                    "decision": guide.publish_decision,
                }
            )

        logger.info(
            "Queue run: %d processed, %d failed",
            len(results),
            sum(1 for r in results if r["status"] == "failed"),
        )
        return results
