"""Pass 2: whole-document continuity refinement.

One text-only call sees every assembled step at once, so it can keep part
names consistent, merge steps that a page break split in two, and add
transition notes between assembly phases. Unusable output is never fatal:
the guide keeps its factual Pass-1 text.
"""

import json
from dataclasses import dataclass, field

from .api import VisionProvider, VisionResponse
from .assembly import first_screw_direction, merge_parts, merge_tools, renumber_steps
from .cost_tracker import CostTracker
from .errors import ProviderContentError, ProviderError
from .logging_config import get_logger
from .models import GeneratedStep, StepCallout
from .parsing import ParseFailure, ParseOk, extract_json_object
from .prompts import REFINEMENT_PROMPT
from .rate_limiter import RateLimiterRegistry

logger = get_logger(__name__)

REFINEMENT_MAX_TOKENS = 8192


@dataclass(frozen=True)
class RefinementEntry:
    original_step_numbers: tuple[int, ...]
    title: str
    instruction: str
    transition_note: str | None = None


@dataclass
class RefinementResult:
    steps: list[GeneratedStep]
    model_used: str | None = None
    escalated: bool = False
    applied: bool = False
    failures: list[str] = field(default_factory=list)


def _describe_action(action) -> str:
    text = f"{action.action_type} {action.subject}".strip()
    if action.target:
        text += f" -> {action.target}"
    if action.direction:
        text += f" [{action.direction}]"
    return text


def _raw_step_payload(step: GeneratedStep) -> dict:
    raw = step.raw_extraction
    if raw is None:
        return {
            "stepNumber": step.step_number,
            "description": step.instruction,
            "parts": [f"{p.part_name} ({p.part_number}) x{p.quantity}" for p in step.parts],
            "complexity": step.complexity,
        }

    payload = {
        "stepNumber": step.step_number,
        "description": raw.description,
        "parts": [f"{p.part_name} ({p.part_number}) x{p.quantity}" for p in raw.parts_shown],
        "tools": [t.tool_name for t in raw.tools_shown],
        "actions": [_describe_action(a) for a in raw.actions],
        "orientation": raw.spatial_details.orientation,
        "alignment": raw.spatial_details.alignment_notes,
        "arrows": [a.direction + (f" ({a.label})" if a.label else "") for a in raw.arrows],
        "fasteners": [
            f.type + (f" {f.rotation}" if f.rotation != "none" else "") for f in raw.fasteners
        ],
        "annotations": list(raw.annotations),
        "warnings": list(raw.warnings),
        "complexity": raw.complexity,
    }
    # Drop empty fields to keep the prompt compact
    return {k: v for k, v in payload.items() if v not in (None, [], "")}


def build_refinement_input(steps: list[GeneratedStep]) -> str:
    """Compact JSON of every step's raw extraction, in order."""
    return json.dumps([_raw_step_payload(s) for s in steps], ensure_ascii=False)


def parse_refinement(text: str) -> ParseOk[list[RefinementEntry]] | ParseFailure:
    """Parse the Pass-2 response into refinement entries. Never raises."""
    result = extract_json_object(text)
    if isinstance(result, ParseFailure):
        return result

    raw_entries = result.value.get("steps")
    if not isinstance(raw_entries, list):
        return ParseFailure("missing 'steps' list", raw=text[:500])

    entries = []
    for item in raw_entries:
        if not isinstance(item, dict):
            continue
        numbers = item.get("originalStepNumbers", item.get("original_step_numbers"))
        if isinstance(numbers, int):
            numbers = [numbers]
        if not isinstance(numbers, list):
            continue
        try:
            numbers = tuple(int(n) for n in numbers)
        except (TypeError, ValueError, OverflowError):
            continue
        if not numbers:
            continue

        note = item.get("transitionNote", item.get("transition_note"))
        entries.append(
            RefinementEntry(
                original_step_numbers=numbers,
                title=str(item.get("title") or "").strip(),
                instruction=str(item.get("instruction") or "").strip(),
                transition_note=str(note).strip() if note else None,
            )
        )

    if not entries:
        return ParseFailure("no usable refinement entries", raw=text[:500])
    return ParseOk(entries)


def _merge(originals: list[GeneratedStep], entry: RefinementEntry) -> GeneratedStep:
    first = originals[0]
    callouts = []
    if entry.transition_note:
        callouts.append(StepCallout("info", entry.transition_note))
    for step in originals:
        for callout in step.callouts:
            if callout not in callouts:
                callouts.append(callout)

    raw_steps = [s.raw_extraction for s in originals if s.raw_extraction is not None]
    screw = first_screw_direction(raw_steps)
    if screw == "none":
        screw = next(
            (s.screw_direction for s in originals if s.screw_direction != "none"), "none"
        )

    return GeneratedStep(
        step_number=first.step_number,
        title=entry.title or first.title,
        instruction=entry.instruction or " ".join(s.instruction for s in originals),
        parts=merge_parts(s.parts for s in originals),
        tools=merge_tools(s.tools for s in originals),
        callouts=callouts,
        screw_direction=screw,
        complexity="complex" if any(s.complexity == "complex" for s in originals) else "simple",
        confidence=min(s.confidence for s in originals),
        source_pdf_page=first.source_pdf_page,
        raw_extraction=first.raw_extraction,
        merged_from=[s.step_number for s in originals],
    )


def apply_refinement(
    steps: list[GeneratedStep], entries: list[RefinementEntry]
) -> list[GeneratedStep]:
    """Apply refinement entries to the assembled steps and renumber 1..N.

    Singleton entries overwrite title/instruction in place (a transition note
    becomes a leading info callout). Multi-number entries collapse their steps
    into one merged step. Unknown or already-consumed numbers are ignored;
    steps no entry mentions pass through unchanged.
    """
    by_number = {s.step_number: s for s in steps}
    consumed: set[int] = set()
    keyed: list[tuple[int, GeneratedStep]] = []

    for entry in entries:
        numbers = []
        for n in entry.original_step_numbers:
            if n in by_number and n not in consumed and n not in numbers:
                numbers.append(n)
        if not numbers:
            continue
        consumed.update(numbers)

        if len(numbers) == 1:
            step = by_number[numbers[0]]
            if entry.title:
                step.title = entry.title
            if entry.instruction:
                step.instruction = entry.instruction
            if entry.transition_note:
                step.callouts.insert(0, StepCallout("info", entry.transition_note))
            keyed.append((numbers[0], step))
        else:
            keyed.append((numbers[0], _merge([by_number[n] for n in numbers], entry)))

    for step in steps:
        if step.step_number not in consumed:
            keyed.append((step.step_number, step))

    keyed.sort(key=lambda pair: pair[0])
    return renumber_steps([step for _, step in keyed])


async def _complete(
    provider: VisionProvider,
    prompt: str,
    limiters: RateLimiterRegistry,
    cost_tracker: CostTracker,
    label: str,
) -> VisionResponse:
    await limiters.get(provider.provider).acquire()
    try:
        response = await provider.complete(prompt, max_tokens=REFINEMENT_MAX_TOKENS)
    except ProviderContentError as e:
        cost_tracker.record(e.model or provider.model, e.input_tokens, e.output_tokens, label)
        raise
    cost_tracker.record(response.model, response.input_tokens, response.output_tokens, label)
    return response


async def _attempt(provider, prompt, limiters, cost_tracker, label):
    try:
        response = await _complete(provider, prompt, limiters, cost_tracker, label)
    except ProviderError as e:
        return ParseFailure(f"{provider.model}: {e}")
    return parse_refinement(response.text)


async def refine_steps(
    steps: list[GeneratedStep],
    primary: VisionProvider,
    secondary: VisionProvider | None,
    limiters: RateLimiterRegistry,
    cost_tracker: CostTracker,
    product_name: str = "this product",
) -> RefinementResult:
    """Run Pass 2 over the whole step list.

    One call on the cheap tier; if that fails or is unparsable, one retry of
    the whole refinement on the expensive tier. If both are unusable the
    input steps are returned untouched.
    """
    if not steps:
        return RefinementResult(steps=steps)

    prompt = REFINEMENT_PROMPT.format(
        product_name=product_name,
        num_steps=len(steps),
        steps_json=build_refinement_input(steps),
    )

    failures = []
    parsed = await _attempt(primary, prompt, limiters, cost_tracker, "refinement")
    if not isinstance(parsed, ParseFailure):
        return RefinementResult(
            steps=apply_refinement(steps, parsed.value),
            model_used=primary.model,
            applied=True,
        )
    failures.append(parsed.reason)

    if secondary is not None:
        logger.warning("Refinement unusable on %s (%s), escalating", primary.model, parsed.reason)
        parsed = await _attempt(
            secondary, prompt, limiters, cost_tracker, "refinement_escalation"
        )
        if not isinstance(parsed, ParseFailure):
            return RefinementResult(
                steps=apply_refinement(steps, parsed.value),
                model_used=secondary.model,
                escalated=True,
                applied=True,
            )
        failures.append(parsed.reason)

    logger.warning("Refinement skipped, keeping Pass-1 instructions: %s", "; ".join(failures))
    return RefinementResult(
        steps=steps, escalated=secondary is not None, failures=failures
    )
