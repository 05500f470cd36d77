"""Per-step illustration generation.

Provides:
- classify_complexity_for_illustration: Weighted score over raw extraction data
- select_illustration_model: Complexity -> image model
- build_illustration_prompt: Style preamble + structured scene description
- GeminiImageClient: Gemini image-generation call (IMAGE + TEXT modalities)
- generate_illustrations_for_guide: Best-effort batch; failures become flags

The complexity score here is independent of the Pass-1 tag: it decides which
image model draws the step, not how hard the step is.

Usage:
    batch = await generate_illustrations_for_guide(
        steps, "BILLY Bookcase", cost_tracker, client, limiters, config, dry_run=True
    )
    print(steps[0].illustration_prompt)
"""

import base64
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import httpx

from .config import IllustrationConfig
from .cost_tracker import CostTracker
from .errors import ConfigError, ProviderContentError, ProviderError
from .logging_config import get_logger
from .models import GeneratedStep, QualityFlag
from .prompts import (
    ILLUSTRATION_COMPLEX_GUIDANCE,
    ILLUSTRATION_SIMPLE_GUIDANCE,
    ILLUSTRATION_STYLE_PREAMBLE,
)
from .rate_limiter import RateLimiterRegistry

logger = get_logger(__name__)

GEMINI_API_URL = "https://generativelanguage.googleapis.com/v1beta/models"

# Stores generated image bytes and returns the URL to put on the step
ImageSink = Callable[[int, bytes, str], Awaitable[str]]


@dataclass
class ImageResponse:
    image: bytes
    mime_type: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class IllustrationResult:
    step_number: int
    model_used: str
    prompt_used: str
    complexity: str
    image: bytes = b""
    mime_type: str = "image/png"
    url: str | None = None


@dataclass
class IllustrationBatchResult:
    illustrations: dict[int, IllustrationResult] = field(default_factory=dict)
    failures: list[dict] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    flags: list[QualityFlag] = field(default_factory=list)


def classify_complexity_for_illustration(step: GeneratedStep, threshold: int = 5) -> str:
    """Score the step's raw data; score >= threshold is "complex"."""
    raw = step.raw_extraction
    if raw is None:
        return step.complexity

    score = 0

    part_count = sum(p.quantity for p in raw.parts_shown)
    if part_count >= 6:
        score += 3
    elif part_count >= 3:
        score += 1

    if len(raw.actions) >= 3:
        score += 2
    elif len(raw.actions) >= 2:
        score += 1

    spatial = raw.spatial_details
    if spatial.orientation and spatial.alignment_notes:
        score += 2
    elif spatial.orientation or spatial.alignment_notes:
        score += 1

    if len({f.type for f in raw.fasteners}) >= 2:
        score += 2
    elif len(raw.fasteners) >= 2:
        score += 1

    if len(raw.arrows) >= 4:
        score += 2
    elif len(raw.arrows) >= 2:
        score += 1

    has_rotation = any(
        a.action_type in ("rotate", "flip")
        or (a.direction and ("clockwise" in a.direction or "rotate" in a.direction))
        for a in raw.actions
    )
    if has_rotation:
        score += 2

    return "complex" if score >= threshold else "simple"


def select_illustration_model(
    complexity: str, config: IllustrationConfig = IllustrationConfig()
) -> str:
    return config.model_complex if complexity == "complex" else config.model_simple


def _part_list(parts) -> str:
    return ", ".join(
        p.part_name + (f" (x{p.quantity})" if p.quantity > 1 else "") for p in parts
    )


def build_illustration_prompt(step: GeneratedStep, product_name: str) -> str:
    raw = step.raw_extraction
    scene = [
        f"Product: {product_name}, Step {step.step_number}.",
        f"Action: {step.instruction}",
    ]

    parts = raw.parts_shown if raw and raw.parts_shown else step.parts
    if parts:
        scene.append(f"Parts visible: {_part_list(parts)}.")

    tools = raw.tools_shown if raw is not None else step.tools
    if tools:
        scene.append(f"Tools in use: {', '.join(t.tool_name for t in tools)}.")

    if raw is not None:
        if raw.spatial_details.orientation:
            scene.append(f"Orientation: {raw.spatial_details.orientation}.")
        if raw.spatial_details.alignment_notes:
            scene.append(f"Alignment: {raw.spatial_details.alignment_notes}.")

        if raw.actions:
            descs = []
            for a in raw.actions:
                desc = f"{a.subject} being {a.action_type}ed"
                if a.target:
                    desc += f" onto/into {a.target}"
                if a.direction:
                    desc += f" (direction: {a.direction})"
                descs.append(desc)
            scene.append(f"Show: {'; '.join(descs)}.")

        motion = [a for a in raw.arrows if a.indicates_motion]
        if motion:
            descs = [
                f"{a.direction} arrow" + (f' labeled "{a.label}"' if a.label else "")
                for a in motion
            ]
            scene.append(f"Include directional arrows: {', '.join(descs)}.")

        if raw.fasteners:
            descs = [
                f.type + (f" with {f.rotation} rotation" if f.rotation != "none" else "")
                for f in raw.fasteners
            ]
            scene.append(f"Fasteners: {', '.join(descs)}. Show them clearly.")

    if step.complexity == "complex":
        scene.append(ILLUSTRATION_COMPLEX_GUIDANCE)
    else:
        scene.append(ILLUSTRATION_SIMPLE_GUIDANCE)

    return ILLUSTRATION_STYLE_PREAMBLE + "\n\n" + "\n".join(scene)


class GeminiImageClient:
    """Gemini generateContent with IMAGE output modality."""

    provider = "gemini"

    def __init__(
        self,
        api_key: str,
        timeout: float = 180.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    async def generate(self, prompt: str, model: str) -> ImageResponse:
        payload = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "responseModalities": ["IMAGE", "TEXT"],
                "temperature": 0.4,
            },
        }
        url = f"{GEMINI_API_URL}/{model}:generateContent?key={self.api_key}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    url, headers={"Content-Type": "application/json"}, json=payload
                )
        except httpx.HTTPError as e:
            raise ProviderError("gemini", None, f"{type(e).__name__}: {e}", model=model) from e

        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderError("gemini", response.status_code, response.text, model=model)

        data = response.json()
        candidates = data.get("candidates") or [{}]
        parts = (candidates[0].get("content") or {}).get("parts")
        if not parts:
            raise ProviderContentError(
                "gemini", "Gemini image generation returned no content", model=model
            )

        image_part = next(
            (
                p["inlineData"]
                for p in parts
                if str((p.get("inlineData") or {}).get("mimeType", "")).startswith("image/")
            ),
            None,
        )
        if image_part is None:
            kinds = ", ".join(
                "text" if p.get("text") else (p.get("inlineData") or {}).get("mimeType", "unknown")
                for p in parts
            )
            raise ProviderContentError(
                "gemini",
                f"Gemini image generation returned no image data. Response parts: {kinds}",
                model=model,
            )

        usage = data.get("usageMetadata") or {}
        return ImageResponse(
            image=base64.b64decode(image_part["data"]),
            mime_type="image/jpeg" if "jpeg" in image_part["mimeType"] else "image/png",
            model=model,
            input_tokens=usage.get("promptTokenCount", 0),
            output_tokens=usage.get("candidatesTokenCount", 0),
        )


async def generate_step_illustration(
    step: GeneratedStep,
    product_name: str,
    cost_tracker: CostTracker,
    client: GeminiImageClient | None,
    limiters: RateLimiterRegistry,
    config: IllustrationConfig = IllustrationConfig(),
    dry_run: bool = False,
    model_override: str | None = None,
) -> IllustrationResult:
    """Build the prompt (stored on the step) and, unless dry_run, render the image."""
    complexity = classify_complexity_for_illustration(step, config.complex_threshold)
    model = model_override or select_illustration_model(complexity, config)
    prompt = build_illustration_prompt(step, product_name)
    step.illustration_prompt = prompt

    result = IllustrationResult(
        step_number=step.step_number,
        model_used=model,
        prompt_used=prompt,
        complexity=complexity,
    )
    if dry_run:
        return result

    if client is None:
        raise ConfigError("Missing GEMINI_API_KEY for illustration generation")

    await limiters.get(client.provider).acquire()
    response = await client.generate(prompt, model)
    cost_tracker.record(
        model,
        response.input_tokens,
        response.output_tokens,
        f"illustration_step_{step.step_number}_{complexity}",
    )
    result.image = response.image
    result.mime_type = response.mime_type
    return result


async def generate_illustrations_for_guide(
    steps: list[GeneratedStep],
    product_name: str,
    cost_tracker: CostTracker,
    client: GeminiImageClient | None,
    limiters: RateLimiterRegistry,
    config: IllustrationConfig = IllustrationConfig(),
    dry_run: bool = False,
    model_override: str | None = None,
    sink: ImageSink | None = None,
) -> IllustrationBatchResult:
    """Illustrate every step sequentially. One failed step never aborts the batch."""
    batch = IllustrationBatchResult()

    for step in steps:
        if step.step_number == 0:
            batch.skipped.append(step.step_number)
            continue

        try:
            result = await generate_step_illustration(
                step,
                product_name,
                cost_tracker,
                client,
                limiters,
                config,
                dry_run=dry_run,
                model_override=model_override,
            )
            if sink is not None and result.image:
                result.url = await sink(step.step_number, result.image, result.mime_type)
                step.illustration_url = result.url
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.warning(
                "Failed to generate illustration for step %d: %s", step.step_number, message
            )
            batch.failures.append({"step_number": step.step_number, "error": message})
            batch.flags.append(
                QualityFlag(
                    code="illustration_failed",
                    message=f"Illustration for step {step.step_number} failed: {message[:200]}",
                    severity="warning",
                    step_number=step.step_number,
                )
            )
            continue

        batch.illustrations[step.step_number] = result

    return batch
