"""Runtime configuration and the pipeline's tuned thresholds.

Provides:
- Settings: provider/model/key/timeout options read from the environment
- EscalationThresholds: Pass-1 cheap -> expensive triggers
- QualityCheckConfig / QualityGateThresholds: quality checker and publish gate
- IllustrationConfig: complexity scoring cutoff and image model routing

The numeric defaults are empirically tuned on real assembly PDFs; keep them
unless a benchmark says otherwise.

Usage:
    from assembly_guides.config import Settings
    settings = Settings.from_env()
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from .errors import ConfigError

# Load .env from project root
_env_path = Path(__file__).parent.parent.parent / ".env"

SUPPORTED_PROVIDERS = ("gemini", "openai", "openrouter")

# Provider-specific fallbacks when AI_PRIMARY_API_KEY / AI_SECONDARY_API_KEY are unset
PROVIDER_KEY_ENV = {
    "gemini": "GEMINI_API_KEY",
    "openai": "OPENAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}

DEFAULT_PRIMARY_PROVIDER = "gemini"
DEFAULT_PRIMARY_MODEL = "gemini-2.0-flash"
DEFAULT_ILLUSTRATION_MODEL_COMPLEX = "gemini-3-pro-image-preview"
DEFAULT_ILLUSTRATION_MODEL_SIMPLE = "gemini-2.5-flash-image"

ILLUSTRATION_MODES = ("generate", "dry_run", "off")


@dataclass(frozen=True)
class EscalationThresholds:
    """Content triggers that send a page to the expensive tier."""

    # Tuned from a 20-page benchmark
    max_arrow_count: int = 5
    min_step_confidence: float = 0.7


@dataclass(frozen=True)
class QualityCheckConfig:
    min_step_confidence: float = 0.7
    error_step_confidence: float = 0.5
    min_overall_confidence: float = 0.6
    min_instruction_length: int = 20
    low_confidence_ratio_error: float = 0.3
    low_confidence_ratio_warning: float = 0.15
    # Guides longer than this get the part-tracking and safety checks
    large_guide_steps: int = 10


@dataclass(frozen=True)
class QualityGateThresholds:
    """Routing of a checked guide into auto_publish / review / hold."""

    auto_publish_min_confidence: float = 0.9
    auto_publish_max_errors: int = 0
    auto_publish_max_warnings: int = 2
    hold_threshold: float = 0.7


@dataclass(frozen=True)
class IllustrationConfig:
    complex_threshold: int = 5
    model_complex: str = DEFAULT_ILLUSTRATION_MODEL_COMPLEX
    model_simple: str = DEFAULT_ILLUSTRATION_MODEL_SIMPLE


@dataclass(frozen=True)
class ProviderConfig:
    """Connection settings for one vision/text model backend."""

    provider: str
    model: str
    api_key: str
    timeout: float = 120.0
    temperature: float = 0.2
    max_tokens: int = 4096


@dataclass(frozen=True)
class Settings:
    primary: ProviderConfig
    secondary: ProviderConfig | None = None
    gemini_api_key: str | None = None
    illustration: IllustrationConfig = field(default_factory=IllustrationConfig)
    illustration_mode: str = "dry_run"
    illustration_timeout: float = 180.0
    pdf_fetch_timeout: float = 60.0
    pdf_render_dpi: int = 144
    escalation: EscalationThresholds = field(default_factory=EscalationThresholds)
    quality: QualityCheckConfig = field(default_factory=QualityCheckConfig)
    quality_gate: QualityGateThresholds = field(default_factory=QualityGateThresholds)

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> "Settings":
        """Build settings from environment variables (and the project .env).

        Reads:
          - AI_PRIMARY_PROVIDER (gemini | openai | openrouter), AI_PRIMARY_MODEL
          - AI_PRIMARY_API_KEY (or GEMINI_API_KEY / OPENAI_API_KEY / OPENROUTER_API_KEY)
          - AI_SECONDARY_PROVIDER, AI_SECONDARY_MODEL, AI_SECONDARY_API_KEY (optional)
          - ILLUSTRATION_MODEL_COMPLEX, ILLUSTRATION_MODEL_SIMPLE, GUIDE_ILLUSTRATIONS
          - AI_REQUEST_TIMEOUT, ILLUSTRATION_TIMEOUT, PDF_FETCH_TIMEOUT, PDF_RENDER_DPI

        Args:
            env: Mapping to read instead of os.environ (the .env file is
                only loaded when this is None)

        Raises:
            ConfigError: unknown provider or no API key for the primary provider
        """
        if env is None:
            load_dotenv(_env_path)
            env = dict(os.environ)

        timeout = _float(env, "AI_REQUEST_TIMEOUT", 120.0)

        primary_provider = env.get("AI_PRIMARY_PROVIDER", DEFAULT_PRIMARY_PROVIDER)
        primary_model = env.get("AI_PRIMARY_MODEL", DEFAULT_PRIMARY_MODEL)
        primary_key = _provider_key(env, primary_provider, env.get("AI_PRIMARY_API_KEY"))
        if not primary_key:
            raise ConfigError(
                f"Missing API key for primary AI provider ({primary_provider}). "
                f"Set AI_PRIMARY_API_KEY or {PROVIDER_KEY_ENV[primary_provider]}"
            )
        primary = ProviderConfig(
            provider=primary_provider,
            model=primary_model,
            api_key=primary_key,
            timeout=timeout,
        )

        secondary = None
        secondary_provider = env.get("AI_SECONDARY_PROVIDER")
        if secondary_provider:
            secondary_model = env.get("AI_SECONDARY_MODEL", "")
            secondary_key = _provider_key(
                env, secondary_provider, env.get("AI_SECONDARY_API_KEY")
            )
            if secondary_model and secondary_key:
                secondary = ProviderConfig(
                    provider=secondary_provider,
                    model=secondary_model,
                    api_key=secondary_key,
                    timeout=timeout,
                )

        illustration_mode = env.get("GUIDE_ILLUSTRATIONS", "dry_run")
        if illustration_mode not in ILLUSTRATION_MODES:
            raise ConfigError(
                f"GUIDE_ILLUSTRATIONS must be one of {', '.join(ILLUSTRATION_MODES)}, "
                f"got {illustration_mode!r}"
            )

        return cls(
            primary=primary,
            secondary=secondary,
            gemini_api_key=env.get("GEMINI_API_KEY"),
            illustration=IllustrationConfig(
                model_complex=env.get(
                    "ILLUSTRATION_MODEL_COMPLEX", DEFAULT_ILLUSTRATION_MODEL_COMPLEX
                ),
                model_simple=env.get(
                    "ILLUSTRATION_MODEL_SIMPLE", DEFAULT_ILLUSTRATION_MODEL_SIMPLE
                ),
            ),
            illustration_mode=illustration_mode,
            illustration_timeout=_float(env, "ILLUSTRATION_TIMEOUT", 180.0),
            pdf_fetch_timeout=_float(env, "PDF_FETCH_TIMEOUT", 60.0),
            pdf_render_dpi=_int(env, "PDF_RENDER_DPI", 144),
        )


def _provider_key(
    env: dict[str, str], provider: str, explicit: str | None = None
) -> str | None:
    if provider not in SUPPORTED_PROVIDERS:
        raise ConfigError(f"Unknown AI provider: {provider}")
    return explicit or env.get(PROVIDER_KEY_ENV[provider])


def _float(env: dict[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _int(env: dict[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
