"""Model-output JSON extraction.

Models wrap JSON in markdown fences, prepend chatter, or truncate it. Every
parser here returns a tagged value (`ParseOk` or `ParseFailure`) instead of
raising, so callers can escalate-then-degrade uniformly.

`normalize_page_extraction` is the single place where defaults are filled
and values are coerced; everything downstream can rely on fully populated
RawPageExtraction records.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from .models import (
    ArrowAnnotation,
    FastenerDetail,
    PageIndicators,
    PartReference,
    RawPageExtraction,
    RawStepExtraction,
    SpatialDetails,
    StepAction,
    ToolReference,
)

T = TypeVar("T")

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")

ROTATIONS = ("clockwise", "counter_clockwise", "none")
COMPLEXITIES = ("simple", "complex")


@dataclass(frozen=True)
class ParseOk(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class ParseFailure:
    reason: str
    raw: str = ""

    @property
    def ok(self) -> bool:
        return False


def extract_json_object(text: str) -> ParseOk[dict] | ParseFailure:
    """Pull the outermost {...} object out of free-form model text."""
    if not text or not text.strip():
        return ParseFailure("empty response", raw=text or "")

    candidate = text.strip()
    fence = _FENCE_RE.search(candidate)
    if fence:
        candidate = fence.group(1).strip()

    start = candidate.find("{")
    end = candidate.rfind("}")
    if start == -1 or end <= start:
        return ParseFailure("no JSON object found", raw=text[:500])

    try:
        data = json.loads(candidate[start : end + 1])
    except json.JSONDecodeError as e:
        return ParseFailure(f"invalid JSON: {e}", raw=text[:500])

    if not isinstance(data, dict):
        return ParseFailure("top-level JSON is not an object", raw=text[:500])
    return ParseOk(data)


def _get(data: dict, camel: str, snake: str, default: Any = None) -> Any:
    if camel in data:
        return data[camel]
    return data.get(snake, default)


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return default


_TRUE = {"true", "yes", "1"}
_FALSE = {"false", "no", "0"}


def _bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
    return default


def _confidence(value: Any) -> float:
    try:
        conf = float(value)
    except (TypeError, ValueError):
        return 0.0
    return min(1.0, max(0.0, conf))


def _dicts(value: Any) -> list[dict]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _strings(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return ()
    return tuple(str(v).strip() for v in value if v is not None and str(v).strip())


def _normalize_step(data: dict) -> RawStepExtraction:
    parts = tuple(
        PartReference(
            part_number=str(_get(p, "partNumber", "part_number", "") or ""),
            part_name=str(_get(p, "partName", "part_name", "") or ""),
            quantity=max(1, _int(p.get("quantity"), 1)),
        )
        for p in _dicts(_get(data, "partsShown", "parts_shown"))
    )
    tools = tuple(
        ToolReference(
            tool_name=str(_get(t, "toolName", "tool_name")),
            tool_icon=_str_or_none(_get(t, "toolIcon", "tool_icon")),
        )
        for t in _dicts(_get(data, "toolsShown", "tools_shown"))
        if _get(t, "toolName", "tool_name")
    )
    actions = tuple(
        StepAction(
            action_type=str(_get(a, "actionType", "action_type", "") or "").lower(),
            subject=str(a.get("subject") or ""),
            target=_str_or_none(a.get("target")),
            direction=_str_or_none(a.get("direction")),
        )
        for a in _dicts(data.get("actions"))
    )

    spatial = _get(data, "spatialDetails", "spatial_details")
    if not isinstance(spatial, dict):
        spatial = {}

    arrows = tuple(
        ArrowAnnotation(
            direction=str(a.get("direction") or ""),
            label=_str_or_none(a.get("label")),
            indicates_motion=_bool(_get(a, "indicatesMotion", "indicates_motion"), True),
        )
        for a in _dicts(data.get("arrows"))
    )

    fasteners = []
    for f in _dicts(data.get("fasteners")):
        rotation = str(f.get("rotation") or "none").lower().replace("-", "_")
        fasteners.append(
            FastenerDetail(
                type=str(f.get("type") or "").lower(),
                part_id=_str_or_none(_get(f, "partId", "part_id")),
                rotation=rotation if rotation in ROTATIONS else "none",
                notes=_str_or_none(f.get("notes")),
            )
        )

    complexity = str(data.get("complexity") or "simple").lower()

    return RawStepExtraction(
        step_number=max(0, _int(_get(data, "stepNumber", "step_number"), 0)),
        description=str(data.get("description") or "").strip(),
        parts_shown=parts,
        tools_shown=tools,
        actions=actions,
        spatial_details=SpatialDetails(
            orientation=_str_or_none(spatial.get("orientation")),
            alignment_notes=_str_or_none(_get(spatial, "alignmentNotes", "alignment_notes")),
        ),
        arrows=arrows,
        fasteners=tuple(fasteners),
        annotations=_strings(data.get("annotations")),
        warnings=_strings(data.get("warnings")),
        complexity=complexity if complexity in COMPLEXITIES else "simple",
        confidence=_confidence(data.get("confidence")),
    )


def normalize_page_extraction(data: dict) -> RawPageExtraction:
    """Fill defaults and coerce types on a decoded page payload."""
    indicators = _get(data, "pageIndicators", "page_indicators")
    if not isinstance(indicators, dict):
        indicators = {}

    return RawPageExtraction(
        steps=tuple(_normalize_step(s) for s in _dicts(data.get("steps"))),
        indicators=PageIndicators(
            arrow_count=max(0, _int(_get(indicators, "arrowCount", "arrow_count"), 0)),
            has_hinge_or_rotation=_bool(
                _get(indicators, "hasHingeOrRotation", "has_hinge_or_rotation")
            ),
            has_fastener_ambiguity=_bool(
                _get(indicators, "hasFastenerAmbiguity", "has_fastener_ambiguity")
            ),
            is_parts_page=_bool(_get(indicators, "isPartsPage", "is_parts_page")),
        ),
    )


def parse_page_extraction(text: str) -> ParseOk[RawPageExtraction] | ParseFailure:
    """Parse one page's Pass-1 response. Never raises."""
    result = extract_json_object(text)
    if isinstance(result, ParseFailure):
        return result
    if not isinstance(result.value.get("steps"), list):
        return ParseFailure("missing 'steps' list", raw=text[:500])
    return ParseOk(normalize_page_extraction(result.value))
