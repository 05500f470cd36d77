"""Builders and fakes shared by the test modules."""

import json
from collections import deque

import fitz

from assembly_guides.api import VisionResponse
from assembly_guides.models import (
    ArrowAnnotation,
    FastenerDetail,
    GeneratedStep,
    PartReference,
    RawStepExtraction,
    SpatialDetails,
    StepAction,
    ToolReference,
)
from assembly_guides.pdf_utils import RenderedPage


class ManualClock:
    """Millisecond clock that only moves when told to (or when slept on)."""

    def __init__(self, start_ms: float = 1_000_000.0):
        self.now_ms = start_ms
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now_ms

    def advance(self, ms: float) -> None:
        self.now_ms += ms

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now_ms += seconds * 1000.0


class FakeProvider:
    """Scripted stand-in for a VisionProvider.

    `responses` items are either response text (str) or an exception to raise.
    When a callable is given instead, it receives (kind, prompt) and returns
    one such item.
    """

    def __init__(self, provider="gemini", model="gemini-2.0-flash", responses=(), tokens=(1000, 200)):
        self.provider = provider
        self.model = model
        self.tokens = tokens
        self.script = responses if callable(responses) else deque(responses)
        self.analyze_calls: list[dict] = []
        self.complete_calls: list[str] = []

    def _next(self, kind, prompt):
        item = self.script(kind, prompt) if callable(self.script) else self.script.popleft()
        if isinstance(item, Exception):
            raise item
        return VisionResponse(item, self.model, *self.tokens)

    async def analyze(self, image, mime_type, prompt, max_tokens=None):
        self.analyze_calls.append({"image": image, "mime_type": mime_type, "prompt": prompt})
        return self._next("analyze", prompt)

    async def complete(self, prompt, max_tokens=None):
        self.complete_calls.append(prompt)
        return self._next("complete", prompt)


def step_json(
    step_number,
    confidence=0.9,
    parts=(),
    description=None,
    complexity="simple",
    fasteners=(),
    warnings=(),
    annotations=(),
):
    return {
        "stepNumber": step_number,
        "description": description or f"Panel {step_number} shows parts being joined together",
        "partsShown": [
            {"partNumber": num, "partName": name, "quantity": qty} for num, name, qty in parts
        ],
        "toolsShown": [],
        "actions": [],
        "spatialDetails": {"orientation": None, "alignmentNotes": None},
        "arrows": [],
        "fasteners": [{"type": f, "rotation": "none"} for f in fasteners],
        "annotations": list(annotations),
        "warnings": list(warnings),
        "complexity": complexity,
        "confidence": confidence,
    }


def page_json(steps=(), arrow_count=0, hinge=False, fastener_ambiguity=False, parts_page=False):
    return json.dumps(
        {
            "steps": list(steps),
            "pageIndicators": {
                "arrowCount": arrow_count,
                "hasHingeOrRotation": hinge,
                "hasFastenerAmbiguity": fastener_ambiguity,
                "isPartsPage": parts_page,
            },
        }
    )


def refinement_json(entries):
    return json.dumps({"steps": entries})


def make_raw(
    step_number=1,
    description="Insert dowels into the side panel",
    parts=(),
    tools=(),
    actions=(),
    orientation=None,
    alignment=None,
    arrows=0,
    fasteners=(),
    annotations=(),
    warnings=(),
    complexity="simple",
    confidence=0.9,
):
    return RawStepExtraction(
        step_number=step_number,
        description=description,
        parts_shown=tuple(PartReference(n, name, q) for n, name, q in parts),
        tools_shown=tuple(ToolReference(t) for t in tools),
        actions=tuple(StepAction(*a) for a in actions),
        spatial_details=SpatialDetails(orientation, alignment),
        arrows=tuple(ArrowAnnotation("down") for _ in range(arrows)),
        fasteners=tuple(
            f if isinstance(f, FastenerDetail) else FastenerDetail(f) for f in fasteners
        ),
        annotations=tuple(annotations),
        warnings=tuple(warnings),
        complexity=complexity,
        confidence=confidence,
    )


def make_step(
    step_number=1,
    instruction=None,
    confidence=0.9,
    complexity="simple",
    parts=(),
    tools=(),
    raw=None,
    illustration_url=None,
):
    return GeneratedStep(
        step_number=step_number,
        title=f"Step {step_number}",
        instruction=instruction or f"Attach panel {step_number} to the frame using the screws",
        parts=[PartReference(n, name, q) for n, name, q in parts],
        tools=[ToolReference(t) for t in tools],
        complexity=complexity,
        confidence=confidence,
        source_pdf_page=step_number + 1,
        raw_extraction=raw,
        illustration_url=illustration_url,
    )


def make_pages(count):
    return [
        RenderedPage(page_number=i, image=f"page-{i}".encode(), width=100, height=140)
        for i in range(1, count + 1)
    ]


def make_pdf(page_count):
    doc = fitz.open()
    try:
        for i in range(page_count):
            page = doc.new_page(width=595, height=842)
            page.insert_text((72, 72), f"Assembly step {i + 1}", fontsize=24)
            page.draw_rect(fitz.Rect(100, 200, 400, 500), color=(0, 0, 0))
        return doc.tobytes()
    finally:
        doc.close()
