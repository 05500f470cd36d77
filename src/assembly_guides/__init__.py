"""Assembly-guide generation: scanned instruction PDFs -> structured, illustrated guides."""

from .config import Settings
from .cost_tracker import CostTracker, calculate_cost
from .jobs import Catalog, JobQueue, JobStore, Product
from .models import GeneratedGuide, GeneratedStep, QualityFlag
from .pipeline import GuidePipeline, write_guide_json
from .quality import classify_quality_gate, run_quality_checks
from .rate_limiter import RateLimiter, RateLimiterRegistry

__all__ = [
    "Catalog",
    "CostTracker",
    "GeneratedGuide",
    "GeneratedStep",
    "GuidePipeline",
    "JobQueue",
    "JobStore",
    "Product",
    "QualityFlag",
    "RateLimiter",
    "RateLimiterRegistry",
    "Settings",
    "calculate_cost",
    "classify_quality_gate",
    "run_quality_checks",
    "write_guide_json",
]
