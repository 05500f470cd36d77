import json

import pytest

from assembly_guides.errors import PdfFetchError, PipelineError, ProviderError
from assembly_guides.jobs import Catalog, JobQueue, JobStore, Product
from assembly_guides.pdf_utils import RenderResult
from assembly_guides.pipeline import (
    GuidePipeline,
    estimate_difficulty,
    estimate_time_minutes,
    write_guide_json,
)

from factories import FakeProvider, make_pages, make_step, page_json, refinement_json, step_json

PDF_URL = "https://cdn.example/billy.pdf"


def fake_renderer(page_count=20, fail_urls=()):
    calls = []

    async def render(url, dpi=144, timeout=60.0):
        calls.append({"url": url, "dpi": dpi, "timeout": timeout})
        if url in fail_urls:
            raise PdfFetchError(f"Failed to fetch PDF {url}: HTTP 404")
        return RenderResult(make_pages(page_count), page_count, url)

    render.calls = calls
    return render


def manual_script(legend_first=True, arrows_on_page=None):
    """Page 1 is a parts legend; page n >= 2 holds printed step n - 1."""
    state = {"page": 0}

    def script(kind, prompt):
        if kind == "complete":
            return refinement_json(
                [{"originalStepNumbers": [1], "title": "Lay out the parts", "instruction": ""}]
            )
        state["page"] += 1
        n = state["page"]
        if legend_first and n == 1:
            return page_json([step_json(0, parts=[("100001", "shelf pin", 16)])], parts_page=True)
        arrows = 6 if n == arrows_on_page else 1
        return page_json(
            [step_json(n - 1, confidence=0.95, parts=[(f"2{n:05d}", f"panel {n}", 1)])],
            arrow_count=arrows,
        )

    return script


@pytest.fixture
def catalog():
    return Catalog(
        [
            Product(1, "BILLY Bookcase", assembly_pdf_url=PDF_URL),
            Product(2, "MALM Dresser", assembly_pdf_url="https://cdn.example/malm.pdf"),
            Product(3, "LACK Table", assembly_pdf_url="https://cdn.example/lack.pdf"),
        ]
    )


def build_pipeline(settings, catalog, limiters, primary=None, secondary=None, renderer=None):
    return GuidePipeline(
        settings,
        catalog,
        queue=JobQueue(JobStore(), catalog),
        primary=primary or FakeProvider(responses=manual_script()),
        secondary=secondary,
        limiters=limiters,
        renderer=renderer or fake_renderer(),
    )


class TestGenerateForProduct:
    @pytest.mark.asyncio
    async def test_clean_twenty_page_manual(self, settings, catalog, limiters):
        primary = FakeProvider(responses=manual_script())
        secondary = FakeProvider(model="gemini-2.5-pro")
        renderer = fake_renderer(20)
        pipeline = build_pipeline(settings, catalog, limiters, primary, secondary, renderer)

        guide = await pipeline.generate_for_product(1)

        assert [s.step_number for s in guide.steps] == list(range(1, 20))
        assert guide.steps[0].title == "Lay out the parts"
        assert len(primary.analyze_calls) == 20
        assert len(primary.complete_calls) == 1
        assert secondary.analyze_calls == secondary.complete_calls == []

        meta = guide.metadata
        assert meta.primary_model == "gemini-2.0-flash"
        assert meta.secondary_model is None
        assert meta.escalated_pages == []
        assert meta.refinement_applied
        assert meta.pdf_page_count == 20
        assert meta.cost["call_count"] == 21

        assert guide.title == "How to Assemble BILLY Bookcase"
        assert guide.description == "Step-by-step assembly guide for BILLY Bookcase. 19 steps."
        assert guide.difficulty == "hard"
        assert guide.estimated_time_minutes == 19 * 3
        assert guide.parts.total_part_count == 16 + 19
        assert guide.overall_confidence == pytest.approx(0.95)
        assert guide.publish_decision == "auto_publish"
        assert guide.passes_quality_gate
        # Dry-run illustrations still leave a prompt on every step
        assert all(s.illustration_prompt for s in guide.steps)

        assert renderer.calls == [{"url": PDF_URL, "dpi": 144, "timeout": 60.0}]

        (job,) = pipeline.queue.store.all()
        assert job.status == "review"
        assert job.confidence_score == pytest.approx(0.95)
        assert job.publish_decision == "auto_publish"
        assert job.model_secondary is None
        assert job.raw_output["metadata"]["pdf_page_count"] == 20
        assert catalog.get(1).guide_status == "in_review"

    @pytest.mark.asyncio
    async def test_escalated_page_records_secondary(self, settings, catalog, limiters):
        primary = FakeProvider(responses=manual_script(arrows_on_page=7))
        secondary = FakeProvider(
            model="gemini-2.5-pro",
            responses=[page_json([step_json(6, confidence=0.95)], arrow_count=6)],
        )
        pipeline = build_pipeline(settings, catalog, limiters, primary, secondary, fake_renderer(10))

        guide = await pipeline.generate_for_product(1)

        assert guide.metadata.escalated_pages == [7]
        assert guide.metadata.secondary_model == "gemini-2.5-pro"
        assert pipeline.queue.store.all()[0].model_secondary == "gemini-2.5-pro"

    @pytest.mark.asyncio
    async def test_render_failure_marks_job_failed(self, settings, catalog, limiters):
        pipeline = build_pipeline(
            settings, catalog, limiters, renderer=fake_renderer(fail_urls=[PDF_URL])
        )

        with pytest.raises(PdfFetchError):
            await pipeline.generate_for_product(1)

        (job,) = pipeline.queue.store.all()
        assert job.status == "failed"
        assert "HTTP 404" in job.review_notes
        assert job.completed_at is not None
        assert catalog.get(1).guide_status == "none"

    @pytest.mark.asyncio
    async def test_provider_failure_without_secondary(self, settings, catalog, limiters):
        primary = FakeProvider(responses=[ProviderError("gemini", 401, "API key not valid")])
        pipeline = build_pipeline(settings, catalog, limiters, primary=primary)

        with pytest.raises(ProviderError):
            await pipeline.generate_for_product(1)

        assert pipeline.queue.store.all()[0].status == "failed"

    @pytest.mark.asyncio
    async def test_zero_pages(self, settings, catalog, limiters):
        pipeline = build_pipeline(settings, catalog, limiters, renderer=fake_renderer(0))
        with pytest.raises(PipelineError, match="no pages"):
            await pipeline.generate_for_product(1)

    @pytest.mark.asyncio
    async def test_unknown_product(self, settings, catalog, limiters):
        pipeline = build_pipeline(settings, catalog, limiters)
        with pytest.raises(PipelineError, match="Product not found"):
            await pipeline.generate_for_product(42)
        assert pipeline.queue.store.all() == []

    @pytest.mark.asyncio
    async def test_unparsable_manual_holds(self, settings, catalog, limiters):
        primary = FakeProvider(responses=lambda kind, prompt: "I can't help with that")
        pipeline = build_pipeline(settings, catalog, limiters, primary=primary)

        guide = await pipeline.generate_for_product(1)

        assert guide.steps == []
        assert guide.overall_confidence == 0
        assert guide.publish_decision == "hold"
        assert not guide.passes_quality_gate
        assert pipeline.queue.store.all()[0].status == "review"


class TestProcessQueue:
    @pytest.mark.asyncio
    async def test_priority_order_and_failures(self, settings, catalog, limiters):
        pipeline = build_pipeline(
            settings,
            catalog,
            limiters,
            primary=FakeProvider(responses=manual_script(legend_first=False)),
            renderer=fake_renderer(4, fail_urls=["https://cdn.example/malm.pdf"]),
        )
        pipeline.queue.enqueue(1, priority="low")
        pipeline.queue.enqueue(2, priority="high")
        pipeline.queue.enqueue(3)

        results = await pipeline.process_queue()

        assert [(r["product_id"], r["status"]) for r in results] == [
            (2, "failed"),
            (3, "completed"),
            (1, "completed"),
        ]
        assert "404" in results[0]["error"]
        assert pipeline.queue.processing_count() == 0

    @pytest.mark.asyncio
    async def test_max_jobs_per_run(self, settings, catalog, limiters):
        pipeline = build_pipeline(settings, catalog, limiters, renderer=fake_renderer(2))
        for product_id in (1, 2, 3):
            pipeline.queue.enqueue(product_id)

        results = await pipeline.process_queue(max_jobs=1)

        assert len(results) == 1
        assert pipeline.queue.get_queue_stats()["queue_depth"] == 2

    @pytest.mark.asyncio
    async def test_stops_when_concurrency_is_saturated(self, settings, catalog, limiters):
        pipeline = build_pipeline(settings, catalog, limiters)
        for product_id in (1, 2, 3):
            pipeline.queue.enqueue(product_id)
        pipeline.queue.claim_next_job()
        pipeline.queue.claim_next_job()

        assert await pipeline.process_queue() == []

    @pytest.mark.asyncio
    async def test_stops_on_long_rate_limit_wait(self, settings, catalog, limiters):
        pipeline = build_pipeline(settings, catalog, limiters)
        pipeline.queue.enqueue(1)
        gemini = limiters.get("gemini")
        for _ in range(gemini.config.max_requests):
            gemini.record()

        assert await pipeline.process_queue() == []
        assert pipeline.queue.get_queue_stats()["queue_depth"] == 1


class TestGuideHelpers:
    def test_difficulty(self):
        assert estimate_difficulty([make_step(n) for n in range(1, 6)]) == "easy"
        assert estimate_difficulty([make_step(n) for n in range(1, 9)]) == "medium"
        assert estimate_difficulty([make_step(n) for n in range(1, 17)]) == "hard"
        complex_steps = [make_step(n, complexity="complex") for n in range(1, 4)]
        assert estimate_difficulty(complex_steps) == "hard"
        assert estimate_difficulty([]) == "easy"

    def test_time(self):
        steps = [make_step(1), make_step(2, complexity="complex")]
        assert estimate_time_minutes(steps) == 8

    @pytest.mark.asyncio
    async def test_write_guide_json(self, settings, catalog, limiters, tmp_path):
        pipeline = build_pipeline(settings, catalog, limiters, renderer=fake_renderer(3))
        guide = await pipeline.generate_for_product(1)

        out = tmp_path / "out" / "guide.json"
        write_guide_json(guide, out)

        data = json.loads(out.read_text())
        assert data["product_id"] == 1
        assert len(data["steps"]) == 2
        assert data["metadata"]["primary_model"] == "gemini-2.0-flash"
