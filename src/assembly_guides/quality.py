"""Quality checks over a finished step list, plus the publish decision.

Provides:
- run_quality_checks: Independent structural/statistical checks -> flags,
  overall confidence and the pass/fail quality gate
- classify_quality_gate: auto_publish / review / hold routing

Passing the gate means "technically valid". Auto-publishing needs a higher
bar, so the two are computed separately.

Usage:
    result = run_quality_checks(steps, pdf_page_count=20)
    decision = classify_quality_gate(result)
"""

from dataclasses import dataclass, field

from .config import QualityCheckConfig, QualityGateThresholds
from .models import GeneratedStep, QualityFlag

# Fastener types that need a tool to drive
TOOL_FASTENERS = ("screw", "bolt", "cam lock")

HEAVY_LIFT_MARKERS = ("two-person", "2x", "heavy")


@dataclass
class QualityCheckResult:
    flags: list[QualityFlag]
    overall_confidence: float
    passes_quality_gate: bool
    summary: dict = field(default_factory=dict)

    @property
    def errors(self) -> int:
        return self.summary.get("errors", 0)

    @property
    def warnings(self) -> int:
        return self.summary.get("warnings", 0)


def check_low_confidence_steps(steps, config):
    flags = []
    for step in steps:
        if step.confidence < config.min_step_confidence:
            flags.append(
                QualityFlag(
                    code="low_confidence_step",
                    message=f"Step {step.step_number} has low confidence ({step.confidence:.2f})",
                    severity="error" if step.confidence < config.error_step_confidence else "warning",
                    step_number=step.step_number,
                )
            )
    return flags


def check_step_count(steps, pdf_page_count):
    if not steps:
        return [
            QualityFlag(
                code="step_count_mismatch",
                message="No assembly steps were extracted from the PDF",
                severity="error",
            )
        ]

    # The first 1-2 pages are usually parts lists; steps can also merge or split
    flags = []
    min_reasonable = max(1, pdf_page_count - 3)
    max_reasonable = pdf_page_count * 3
    if len(steps) < min_reasonable and pdf_page_count > 3:
        flags.append(
            QualityFlag(
                code="step_count_mismatch",
                message=(
                    f"Only {len(steps)} steps extracted from {pdf_page_count}-page PDF, "
                    "some steps may be missing"
                ),
                severity="warning",
            )
        )
    if len(steps) > max_reasonable:
        flags.append(
            QualityFlag(
                code="step_count_mismatch",
                message=(
                    f"{len(steps)} steps extracted from {pdf_page_count}-page PDF, "
                    "possible duplicate extraction"
                ),
                severity="warning",
            )
        )
    return flags


def check_step_sequence(steps, original_step_numbers=None):
    """Flag the first numbering gap, in the final list or in the printed numbers."""
    for i, step in enumerate(steps, start=1):
        if step.step_number != i:
            return [
                QualityFlag(
                    code="sequence_gap",
                    message=f"Step numbering gap: expected step {i} but found step {step.step_number}",
                    severity="warning",
                    step_number=step.step_number,
                )
            ]

    if original_step_numbers:
        highest = max(original_step_numbers)
        found = len(set(original_step_numbers))
        if found < highest:
            return [
                QualityFlag(
                    code="sequence_gap",
                    message=f"Expected {highest} steps based on printed numbering but found {found}",
                    severity="warning",
                )
            ]
    return []


def _part_steps(steps) -> dict[str, list[int]]:
    part_steps: dict[str, list[int]] = {}
    for step in steps:
        for part in step.parts:
            part_steps.setdefault(part.part_number, []).append(step.step_number)
    return part_steps


def check_part_references(steps, config):
    if len(steps) <= config.large_guide_steps:
        return []
    part_steps = _part_steps(steps)
    single_use = [p for p, used_in in part_steps.items() if len(used_in) == 1]
    if len(single_use) > len(part_steps) * 0.8:
        return [
            QualityFlag(
                code="missing_parts",
                message=(
                    f"{len(single_use)} of {len(part_steps)} parts appear in only one step, "
                    "part tracking may be incomplete"
                ),
                severity="info",
            )
        ]
    return []


def check_tool_coverage(steps):
    flags = []
    all_tools = {t.tool_name for s in steps for t in s.tools}
    if not all_tools and len(steps) > 3:
        flags.append(
            QualityFlag(
                code="missing_tools",
                message="No tools were identified across all steps, assembly likely requires tools",
                severity="info",
            )
        )

    for step in steps:
        raw = step.raw_extraction
        if raw is None or not raw.fasteners or step.tools:
            continue
        needs_tool = [f.type for f in raw.fasteners if f.type in TOOL_FASTENERS]
        if needs_tool:
            flags.append(
                QualityFlag(
                    code="missing_tools",
                    message=f"Step {step.step_number} has {', '.join(needs_tool)} but no tools identified",
                    severity="warning",
                    step_number=step.step_number,
                )
            )
    return flags


def check_instruction_quality(steps, config):
    flags = []
    for step in steps:
        text = (step.instruction or "").strip()
        if not text:
            flags.append(
                QualityFlag(
                    code="low_confidence_step",
                    message=f"Step {step.step_number} has an empty instruction",
                    severity="error",
                    step_number=step.step_number,
                )
            )
        elif len(text) < config.min_instruction_length:
            flags.append(
                QualityFlag(
                    code="low_confidence_step",
                    message=f"Step {step.step_number} has a very short instruction ({len(text)} chars)",
                    severity="warning",
                    step_number=step.step_number,
                )
            )
    return flags


def check_duplicate_steps(steps):
    """Exact case-insensitive duplicates only."""
    flags = []
    normalized = [(s.step_number, (s.instruction or "").lower().strip()) for s in steps]
    for i, (num_a, a) in enumerate(normalized):
        for num_b, b in normalized[i + 1 :]:
            if a == b and len(a) > 20:
                flags.append(
                    QualityFlag(
                        code="duplicate_step",
                        message=f"Steps {num_a} and {num_b} have identical instructions",
                        severity="warning",
                        step_number=num_b,
                    )
                )
    return flags


def check_safety_warnings(steps, config):
    has_warning = any(c.type == "warning" for s in steps for c in s.callouts)
    if has_warning or len(steps) <= config.large_guide_steps:
        return []

    heavy = any(
        marker in annotation.lower()
        for s in steps
        if s.raw_extraction is not None
        for annotation in s.raw_extraction.annotations
        for marker in HEAVY_LIFT_MARKERS
    )
    if not heavy:
        return []
    return [
        QualityFlag(
            code="no_warnings",
            message=(
                "Guide has heavy-lift annotations but no warning callouts, "
                "consider adding safety warnings"
            ),
            severity="warning",
        )
    ]


def check_orientation_coverage(steps):
    flags = []
    for step in steps:
        raw = step.raw_extraction
        if step.complexity == "complex" and raw is not None and not raw.spatial_details.orientation:
            flags.append(
                QualityFlag(
                    code="orientation_uncertain",
                    message=(
                        f"Complex step {step.step_number} has no orientation data, "
                        "user may be confused about part positioning"
                    ),
                    severity="info",
                    step_number=step.step_number,
                )
            )
    return flags


def check_illustration_coverage(steps):
    # Only meaningful once illustrations were generated for at least one step
    if not any(s.illustration_url for s in steps):
        return []
    return [
        QualityFlag(
            code="illustration_missing",
            message=f"Step {s.step_number} has no illustration",
            severity="warning",
            step_number=s.step_number,
        )
        for s in steps
        if not s.illustration_url
    ]


def check_confidence_distribution(steps, config):
    if not steps:
        return []
    low = sum(1 for s in steps if s.confidence < config.min_step_confidence)
    ratio = low / len(steps)
    pct = round(ratio * 100)
    if ratio > config.low_confidence_ratio_error:
        return [
            QualityFlag(
                code="high_low_confidence_ratio",
                message=(
                    f"{pct}% of steps ({low}/{len(steps)}) have low confidence, "
                    "guide may need manual review"
                ),
                severity="error",
            )
        ]
    if ratio > config.low_confidence_ratio_warning:
        return [
            QualityFlag(
                code="high_low_confidence_ratio",
                message=f"{pct}% of steps ({low}/{len(steps)}) have low confidence",
                severity="warning",
            )
        ]
    return []


def check_part_sequence(steps):
    """Soft check: a part first tracked late but already named in earlier text."""
    if len(steps) <= 5:
        return []

    first_seen: dict[str, int] = {}
    for step in steps:
        for part in step.parts:
            first_seen.setdefault(part.part_number, step.step_number)

    flags = []
    for step in steps:
        # The first two steps always introduce parts
        if step.step_number <= 2:
            continue
        new_parts = [p for p in step.parts if first_seen.get(p.part_number) == step.step_number]
        known_parts = [
            p for p in step.parts
            if first_seen.get(p.part_number, step.step_number) < step.step_number
        ]
        if not new_parts or not known_parts:
            continue

        earlier = [s.instruction for s in steps if s.step_number < step.step_number]
        for part in new_parts:
            name = part.part_name.lower()
            mentioned = any(
                (part.part_number and part.part_number in text)
                or (name and name in text.lower())
                for text in earlier
            )
            if mentioned:
                flags.append(
                    QualityFlag(
                        code="part_sequence_error",
                        message=(
                            f'Part "{part.part_name}" ({part.part_number}) first tracked in '
                            f"step {step.step_number} but referenced in earlier instructions"
                        ),
                        severity="warning",
                        step_number=step.step_number,
                    )
                )
    return flags


def run_quality_checks(
    steps: list[GeneratedStep],
    pdf_page_count: int,
    config: QualityCheckConfig = QualityCheckConfig(),
    original_step_numbers: list[int] | None = None,
) -> QualityCheckResult:
    """Run every check and aggregate flags, confidence and the gate verdict.

    Args:
        steps: Final (renumbered) steps
        pdf_page_count: Pages in the source PDF
        config: Thresholds
        original_step_numbers: Printed step numbers before renumbering, when
            known; gaps in them are reported as sequence_gap

    Returns:
        QualityCheckResult; overall confidence is the mean step confidence
        (0 with no steps)
    """
    flags = [
        *check_low_confidence_steps(steps, config),
        *check_step_count(steps, pdf_page_count),
        *check_step_sequence(steps, original_step_numbers),
        *check_part_references(steps, config),
        *check_tool_coverage(steps),
        *check_instruction_quality(steps, config),
        *check_duplicate_steps(steps),
        *check_safety_warnings(steps, config),
        *check_orientation_coverage(steps),
        *check_illustration_coverage(steps),
        *check_confidence_distribution(steps, config),
        *check_part_sequence(steps),
    ]

    overall = sum(s.confidence for s in steps) / len(steps) if steps else 0.0

    errors = sum(1 for f in flags if f.severity == "error")
    warnings = sum(1 for f in flags if f.severity == "warning")
    info = sum(1 for f in flags if f.severity == "info")

    return QualityCheckResult(
        flags=flags,
        overall_confidence=overall,
        passes_quality_gate=errors == 0 and overall >= config.min_overall_confidence,
        summary={
            "total_checks": len(flags),
            "errors": errors,
            "warnings": warnings,
            "info": info,
        },
    )


def classify_quality_gate(
    result: QualityCheckResult,
    thresholds: QualityGateThresholds = QualityGateThresholds(),
) -> str:
    """Route a checked guide to "auto_publish", "review" or "hold"."""
    if result.overall_confidence < thresholds.hold_threshold or result.errors > 0:
        return "hold"
    if (
        result.overall_confidence >= thresholds.auto_publish_min_confidence
        and result.errors <= thresholds.auto_publish_max_errors
        and result.warnings <= thresholds.auto_publish_max_warnings
    ):
        return "auto_publish"
    return "review"
