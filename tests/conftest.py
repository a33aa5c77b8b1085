"""Shared fixtures for admission tests."""

import pytest

from bucketguard.app.services.admission import (
    AdmissionService,
    InMemoryAdmissionBackend,
    RateLimitConfig,
)

# Concrete values used throughout: 2000 capacity, 100 tokens/s, 5 slots
DEFAULT_CONFIG = {
    "bucketCapacity": 2000,
    "tokensPerSecond": 100,
    "maxConcurrency": 5,
}


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return RateLimitConfig.model_validate(DEFAULT_CONFIG)


@pytest.fixture
def backend(clock):
    return InMemoryAdmissionBackend(clock=clock)


@pytest.fixture
def service(backend):
    return AdmissionService(backend)
