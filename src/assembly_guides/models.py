"""Records passed between pipeline stages.

RawStepExtraction / RawPageExtraction come out of Pass 1 and are never
mutated. GeneratedStep is the user-facing unit that Pass 2 and the
illustration generator update in place. GeneratedGuide is the final artifact.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

Severity = Literal["error", "warning", "info"]
Complexity = Literal["simple", "complex"]
RotationDirection = Literal["clockwise", "counter_clockwise", "none"]
CalloutType = Literal["warning", "tip", "info"]
Difficulty = Literal["easy", "medium", "hard"]
PublishDecision = Literal["auto_publish", "review", "hold"]


@dataclass(frozen=True)
class PartReference:
    part_number: str
    part_name: str
    quantity: int = 1


@dataclass(frozen=True)
class ToolReference:
    tool_name: str
    tool_icon: str | None = None


@dataclass(frozen=True)
class StepCallout:
    type: CalloutType
    text: str


@dataclass(frozen=True)
class StepAction:
    action_type: str  # insert, attach, rotate, flip, tighten, slide, ...
    subject: str
    target: str | None = None
    direction: str | None = None


@dataclass(frozen=True)
class SpatialDetails:
    orientation: str | None = None
    alignment_notes: str | None = None


@dataclass(frozen=True)
class ArrowAnnotation:
    direction: str
    label: str | None = None
    indicates_motion: bool = True


@dataclass(frozen=True)
class FastenerDetail:
    type: str  # screw, bolt, dowel, cam lock, nail, ...
    part_id: str | None = None
    rotation: RotationDirection = "none"
    notes: str | None = None


@dataclass(frozen=True)
class RawStepExtraction:
    """One step/panel exactly as observed on a page (step_number 0 = legend)."""

    step_number: int
    description: str
    parts_shown: tuple[PartReference, ...] = ()
    tools_shown: tuple[ToolReference, ...] = ()
    actions: tuple[StepAction, ...] = ()
    spatial_details: SpatialDetails = SpatialDetails()
    arrows: tuple[ArrowAnnotation, ...] = ()
    fasteners: tuple[FastenerDetail, ...] = ()
    annotations: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    complexity: Complexity = "simple"
    confidence: float = 0.0


@dataclass(frozen=True)
class PageIndicators:
    arrow_count: int = 0
    has_hinge_or_rotation: bool = False
    has_fastener_ambiguity: bool = False
    is_parts_page: bool = False


@dataclass(frozen=True)
class RawPageExtraction:
    steps: tuple[RawStepExtraction, ...] = ()
    indicators: PageIndicators = PageIndicators()

    @classmethod
    def empty(cls) -> "RawPageExtraction":
        return cls()


@dataclass(frozen=True)
class PageResult:
    page_number: int
    extraction: RawPageExtraction
    model_used: str
    escalated: bool


@dataclass
class GeneratedStep:
    step_number: int
    title: str
    instruction: str
    parts: list[PartReference] = field(default_factory=list)
    tools: list[ToolReference] = field(default_factory=list)
    callouts: list[StepCallout] = field(default_factory=list)
    screw_direction: RotationDirection = "none"
    complexity: Complexity = "simple"
    confidence: float = 0.0
    source_pdf_page: int = 0
    raw_extraction: RawStepExtraction | None = None
    # Pre-refinement step numbers folded into this step by Pass 2
    merged_from: list[int] = field(default_factory=list)
    illustration_prompt: str | None = None
    illustration_url: str | None = None


@dataclass(frozen=True)
class QualityFlag:
    code: str
    message: str
    severity: Severity
    step_number: int | None = None


@dataclass(frozen=True)
class CostEntry:
    model: str
    input_tokens: int
    output_tokens: int
    cost_usd: float
    timestamp: float
    label: str | None = None


@dataclass
class ToolSummary:
    required: list[ToolReference] = field(default_factory=list)
    optional: list[ToolReference] = field(default_factory=list)


@dataclass
class PartsSummary:
    parts: list[PartReference] = field(default_factory=list)
    total_part_count: int = 0


@dataclass
class GenerationMetadata:
    primary_model: str
    pdf_page_count: int
    processing_time_ms: int
    pdf_url: str
    generated_at: str
    # Only set when the expensive tier actually handled a call
    secondary_model: str | None = None
    escalated_pages: list[int] = field(default_factory=list)
    refinement_applied: bool = False
    cost: dict[str, Any] = field(default_factory=dict)


@dataclass
class GeneratedGuide:
    product_id: int
    title: str
    description: str
    difficulty: Difficulty
    estimated_time_minutes: int
    tools: ToolSummary
    parts: PartsSummary
    steps: list[GeneratedStep]
    overall_confidence: float
    quality_flags: list[QualityFlag]
    metadata: GenerationMetadata
    publish_decision: PublishDecision = "review"
    passes_quality_gate: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
