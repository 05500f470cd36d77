"""
Test-wide fixtures.

No test touches the network: providers are scripted fakes or run over
httpx.MockTransport, and the rate limiter runs on a manual clock.
"""
import pytest

from assembly_guides.config import ProviderConfig, Settings
from assembly_guides.cost_tracker import CostTracker
from assembly_guides.rate_limiter import RateLimiterRegistry

from factories import ManualClock


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def limiters(clock):
    return RateLimiterRegistry(clock=clock, sleep=clock.sleep)


@pytest.fixture
def cost_tracker():
    return CostTracker(job_id="test-job")


@pytest.fixture
def settings():
    return Settings(
        primary=ProviderConfig(provider="gemini", model="gemini-2.0-flash", api_key="test-key"),
        secondary=ProviderConfig(provider="gemini", model="gemini-2.5-pro", api_key="test-key"),
        gemini_api_key="test-key",
        illustration_mode="dry_run",
    )
