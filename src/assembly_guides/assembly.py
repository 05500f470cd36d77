"""Step assembler: flatten per-page extractions into one ordered step list."""

from dataclasses import dataclass, field

from .models import (
    GeneratedStep,
    PageResult,
    PartReference,
    RawStepExtraction,
    StepCallout,
    ToolReference,
)


@dataclass
class AssembledSteps:
    steps: list[GeneratedStep]
    parts: list[PartReference] = field(default_factory=list)
    tools: list[ToolReference] = field(default_factory=list)
    # Original printed step numbers, before renumbering (sequence checks use these)
    original_numbers: list[int] = field(default_factory=list)


def renumber_steps(steps: list[GeneratedStep]) -> list[GeneratedStep]:
    """Renumber in place to 1..N and return the same list."""
    for i, step in enumerate(steps, start=1):
        step.step_number = i
    return steps


def first_screw_direction(raw_steps) -> str:
    for raw in raw_steps:
        for fastener in raw.fasteners:
            if fastener.rotation != "none":
                return fastener.rotation
    return "none"


def merge_parts(groups) -> list[PartReference]:
    """Union by part number; the largest quantity seen wins."""
    merged: dict[str, PartReference] = {}
    for parts in groups:
        for part in parts:
            existing = merged.get(part.part_number)
            if existing is None:
                merged[part.part_number] = part
            elif part.quantity > existing.quantity:
                merged[part.part_number] = PartReference(
                    existing.part_number, existing.part_name, part.quantity
                )
    return list(merged.values())


def merge_tools(groups) -> list[ToolReference]:
    """Distinct tool names in first-seen order."""
    seen: dict[str, ToolReference] = {}
    for tools in groups:
        for tool in tools:
            seen.setdefault(tool.tool_name, tool)
    return list(seen.values())


def step_from_raw(raw: RawStepExtraction, page_number: int) -> GeneratedStep:
    return GeneratedStep(
        step_number=raw.step_number,
        title=f"Step {raw.step_number}",
        instruction=raw.description,
        parts=merge_parts([raw.parts_shown]),
        tools=merge_tools([raw.tools_shown]),
        callouts=[StepCallout("warning", w) for w in raw.warnings],
        screw_direction=first_screw_direction([raw]),
        complexity=raw.complexity,
        confidence=raw.confidence,
        source_pdf_page=page_number,
        raw_extraction=raw,
    )


def assemble_steps(page_results: list[PageResult]) -> AssembledSteps:
    """Flatten, drop legend steps (0), sort by printed number, renumber 1..N."""
    steps = []
    for result in page_results:
        for raw in result.extraction.steps:
            if raw.step_number <= 0:
                continue
            steps.append(step_from_raw(raw, result.page_number))

    # sorted() is stable: steps sharing a printed number keep page order
    steps = sorted(steps, key=lambda s: s.step_number)
    original_numbers = [s.step_number for s in steps]
    renumber_steps(steps)

    all_raw = [r for result in page_results for r in result.extraction.steps]
    return AssembledSteps(
        steps=steps,
        parts=merge_parts(r.parts_shown for r in all_raw),
        tools=merge_tools(r.tools_shown for r in all_raw),
        original_numbers=original_numbers,
    )
