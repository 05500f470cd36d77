"""Pass 1: per-page raw visual extraction with cheap -> expensive escalation.

Each page goes to the cheap (primary) model first. The page is re-run on the
expensive (secondary) model when:
- the cheap call fails outright (transport/auth error)
- the cheap output cannot be parsed
- the parsed output trips a content trigger (many arrows, hinges, ambiguous
  fasteners, or any step the model itself is unsure about)

Every call records its cost with a `page_{n}_{reason}` label.
"""

from .api import VisionProvider, VisionResponse
from .config import EscalationThresholds
from .cost_tracker import CostTracker
from .errors import ProviderContentError, ProviderError
from .logging_config import get_logger
from .models import PageResult, RawPageExtraction
from .parsing import ParseFailure, parse_page_extraction
from .pdf_utils import RenderedPage
from .prompts import RAW_EXTRACTION_PROMPT
from .rate_limiter import RateLimiterRegistry

logger = get_logger(__name__)

EXTRACTION_MAX_TOKENS = 4096


def should_escalate(
    extraction: RawPageExtraction,
    thresholds: EscalationThresholds = EscalationThresholds(),
) -> bool:
    """True when the cheap model's own output says the page needs the expensive tier."""
    indicators = extraction.indicators
    if indicators.arrow_count >= thresholds.max_arrow_count:
        return True
    if indicators.has_hinge_or_rotation:
        return True
    if indicators.has_fastener_ambiguity:
        return True
    return any(s.confidence < thresholds.min_step_confidence for s in extraction.steps)


async def _call(
    provider: VisionProvider,
    page: RenderedPage,
    limiters: RateLimiterRegistry,
    cost_tracker: CostTracker,
    label: str,
) -> VisionResponse:
    await limiters.get(provider.provider).acquire()
    try:
        response = await provider.analyze(
            page.image, page.mime_type, RAW_EXTRACTION_PROMPT, max_tokens=EXTRACTION_MAX_TOKENS
        )
    except ProviderContentError as e:
        cost_tracker.record(e.model or provider.model, e.input_tokens, e.output_tokens, label)
        raise
    cost_tracker.record(response.model, response.input_tokens, response.output_tokens, label)
    return response


async def _escalate_after_failure(
    page: RenderedPage,
    secondary: VisionProvider,
    limiters: RateLimiterRegistry,
    cost_tracker: CostTracker,
    reason: str,
) -> PageResult:
    """Re-run a page whose cheap result is unusable; degrade to an empty extraction."""
    try:
        response = await _call(
            secondary, page, limiters, cost_tracker, f"page_{page.page_number}_{reason}"
        )
    except ProviderContentError as e:
        logger.warning("Page %d: expensive tier returned no content: %s", page.page_number, e)
        return PageResult(page.page_number, RawPageExtraction.empty(), secondary.model, True)

    parsed = parse_page_extraction(response.text)
    if isinstance(parsed, ParseFailure):
        logger.warning(
            "Page %d: expensive tier output unusable (%s), using empty extraction",
            page.page_number,
            parsed.reason,
        )
        return PageResult(page.page_number, RawPageExtraction.empty(), secondary.model, True)
    return PageResult(page.page_number, parsed.value, secondary.model, True)


async def extract_page(
    page: RenderedPage,
    primary: VisionProvider,
    secondary: VisionProvider | None,
    limiters: RateLimiterRegistry,
    cost_tracker: CostTracker,
    thresholds: EscalationThresholds = EscalationThresholds(),
) -> PageResult:
    """Run Pass 1 on one rendered page.

    Raises:
        ProviderError: The cheap call failed in transport and no expensive tier
            is configured, or the expensive tier itself failed in transport
            while no usable cheap result existed.
    """
    n = page.page_number

    try:
        response = await _call(primary, page, limiters, cost_tracker, f"page_{n}_flash")
    except ProviderContentError as e:
        parsed = ParseFailure(str(e))
    except ProviderError as e:
        if secondary is None:
            raise
        logger.warning("Page %d: cheap tier failed (%s), escalating", n, e)
        return await _escalate_after_failure(
            page, secondary, limiters, cost_tracker, "flash_fail_escalation"
        )
    else:
        parsed = parse_page_extraction(response.text)

    if isinstance(parsed, ParseFailure):
        if secondary is None:
            logger.warning("Page %d: unusable output (%s), no expensive tier", n, parsed.reason)
            return PageResult(n, RawPageExtraction.empty(), primary.model, False)
        logger.warning("Page %d: unusable output (%s), escalating", n, parsed.reason)
        return await _escalate_after_failure(
            page, secondary, limiters, cost_tracker, "json_fail_escalation"
        )

    extraction = parsed.value
    if secondary is not None and should_escalate(extraction, thresholds):
        logger.info("Page %d: content triggers fired, escalating", n)
        try:
            pro = await _call(
                secondary, page, limiters, cost_tracker, f"page_{n}_content_escalation"
            )
        except ProviderError as e:
            logger.warning("Page %d: expensive tier failed (%s), keeping cheap result", n, e)
        else:
            pro_parsed = parse_page_extraction(pro.text)
            if not isinstance(pro_parsed, ParseFailure):
                return PageResult(n, pro_parsed.value, secondary.model, True)
            logger.warning(
                "Page %d: expensive output unusable (%s), keeping cheap result",
                n,
                pro_parsed.reason,
            )

    return PageResult(n, extraction, primary.model, False)


async def extract_pages(
    pages: list[RenderedPage],
    primary: VisionProvider,
    secondary: VisionProvider | None,
    limiters: RateLimiterRegistry,
    cost_tracker: CostTracker,
    thresholds: EscalationThresholds = EscalationThresholds(),
) -> list[PageResult]:
    """Run Pass 1 over every page, sequentially and in page order."""
    results = []
    for page in pages:
        result = await extract_page(
            page, primary, secondary, limiters, cost_tracker, thresholds
        )
        logger.info(
            "Page %d/%d: %d steps via %s%s",
            page.page_number,
            len(pages),
            len(result.extraction.steps),
            result.model_used,
            " (escalated)" if result.escalated else "",
        )
        results.append(result)
    return results
