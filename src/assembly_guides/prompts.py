"""Model prompt text for every pipeline stage.

Keep prompts centralized so the cheap and expensive tiers always see the
same instructions and escalated results stay comparable.
"""

from __future__ import annotations


RAW_EXTRACTION_PROMPT = """\
You are analyzing a single page from a furniture assembly instruction PDF.
Describe ONLY what is visually present on this page. Do not write narrative
instructions, do not guess at steps on other pages, do not invent part numbers.

For each step or panel on the page, report:
- stepNumber: the step number printed in the diagram (0 if this is a parts/tools legend page)
- description: a short factual description of what the diagram shows
- partsShown: [{"partNumber", "partName", "quantity"}] for every part or hardware item drawn
- toolsShown: [{"toolName"}] for every tool drawn
- actions: [{"actionType", "subject", "target", "direction"}], where actionType is one of
  insert, attach, rotate, flip, tighten, slide, align, press, hang
- spatialDetails: {"orientation", "alignmentNotes"} (null when not shown)
- arrows: [{"direction", "label", "indicatesMotion"}] for every arrow in the panel
- fasteners: [{"type", "partId", "rotation", "notes"}], where rotation is
  "clockwise", "counter_clockwise" or "none"
- annotations: free-text labels, counts (e.g. "2x") or symbols printed near the diagram
- warnings: safety or caution notes (two-person lift, wall anchoring, heavy part)
- complexity: "simple" for a single straightforward action, "complex" for multiple
  sub-actions, exploded views or precise spatial relationships
- confidence: 0.0 to 1.0, how sure you are that you read this panel correctly

Also report these page-level indicators:
- arrowCount: how many directional arrows are visible on the whole page
- hasHingeOrRotation: true if the page shows hinge alignment, drawer slides or rotation
- hasFastenerAmbiguity: true if screws/fasteners are hard to tell apart (Torx vs Phillips, similar lengths)
- isPartsPage: true if the page is primarily a parts legend or tools page

Return ONLY valid JSON with this exact structure (no markdown, no code fences):
{
  "steps": [
    {
      "stepNumber": 1,
      "description": "...",
      "partsShown": [{"partNumber": "104321", "partName": "wooden dowel", "quantity": 4}],
      "toolsShown": [{"toolName": "Phillips screwdriver"}],
      "actions": [{"actionType": "insert", "subject": "wooden dowel", "target": "side panel", "direction": "down"}],
      "spatialDetails": {"orientation": "side panel lying flat", "alignmentNotes": null},
      "arrows": [{"direction": "down", "label": null, "indicatesMotion": true}],
      "fasteners": [{"type": "dowel", "partId": "104321", "rotation": "none", "notes": null}],
      "annotations": ["4x"],
      "warnings": [],
      "complexity": "simple",
      "confidence": 0.85
    }
  ],
  "pageIndicators": {
    "arrowCount": 1,
    "hasHingeOrRotation": false,
    "hasFastenerAmbiguity": false,
    "isPartsPage": false
  }
}
"""


REFINEMENT_PROMPT = """\
You are writing the final step-by-step text of an assembly guide for {product_name}.

Below is the factual, per-page extraction of all {num_steps} steps, in order.
The extraction was produced one page at a time, so some steps were split across
page boundaries and the wording is inconsistent.

## Steps

{steps_json}

## Task

1. Write a short title and a clear, flowing instruction for every step. Write for
   someone who cannot see the diagram. Use the same name for the same part in
   every step.
2. MERGE steps that are one action split across a page break. A merged entry
   lists every original step number it covers, in order.
3. When the assembly moves to a new phase (frame done, now doors; base done,
   now drawers), add a one-sentence transitionNote to the first step of the
   new phase.
4. Do NOT drop steps. Every original step number must appear exactly once.

Return JSON only:
```json
{{
  "steps": [
    {{"originalStepNumbers": [1], "title": "Insert dowels", "instruction": "...", "transitionNote": null}},
    {{"originalStepNumbers": [5, 6], "title": "Attach hinge", "instruction": "...", "transitionNote": "With the frame assembled, ..."}}
  ]
}}
```
"""


ILLUSTRATION_STYLE_PREAMBLE = (
    "Create an isometric technical assembly illustration for furniture assembly "
    "instructions. Style: clean line art with subtle shading, neutral/warm color "
    "palette, white background, no text labels or annotations. The illustration "
    "should look like a professional assembly manual diagram."
)

ILLUSTRATION_COMPLEX_GUIDANCE = (
    "Use an exploded/separated view to show how parts connect. Include subtle "
    "motion arrows showing assembly direction. Show fine details clearly."
)

ILLUSTRATION_SIMPLE_GUIDANCE = (
    "Keep the illustration simple and clear. Show the main action from a clear "
    "isometric angle."
)
