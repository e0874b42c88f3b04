import asyncio
import tempfile
from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

from app.core.config import settings

# Override settings for tests
settings.app_env = "test"
settings.generated_dir = tempfile.mkdtemp(prefix="storyteller-generated-")
settings.usage_state_file = ""

from app.api.v1.generation import get_gateway  # noqa: E402
from app.core.rate_limit import limiter  # noqa: E402
from app.gateway.cache import ContentCache  # noqa: E402
from app.gateway.concurrency import ConcurrencyGate  # noqa: E402
from app.gateway.executor import ResilientExecutor  # noqa: E402
from app.gateway.gateway import GenerationGateway  # noqa: E402
from app.gateway.quota import QuotaTracker  # noqa: E402
from app.gateway.storage import ArtifactStore  # noqa: E402
from app.gateway.types import (  # noqa: E402
    FailureClass,
    FatalFailure,
    GatewayConfig,
    GenerationKind,
    RetryableFailure,
    Success,
)
from app.gateway.vendor_adapters import BaseVendorAdapter  # noqa: E402
from app.main import app  # noqa: E402

# Per-client HTTP throttling off: tests hit the same routes many times from one address
limiter.enabled = False

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image-bytes"


class FakeClock:
    """Manually advanced wall clock (seconds)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAdapter(BaseVendorAdapter):
    """Scripted remote: pops one outcome per call, then repeats the default."""

    name = "fake"

    def __init__(self, outcomes=None, delay: float = 0.0):
        super().__init__(api_key="test")
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.calls = []
        self.in_flight = 0
        self.peak_in_flight = 0

    async def send(self, request, model, timeout=45.0):
        self.calls.append((request, model))
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.outcomes:
                outcome = self.outcomes.pop(0)
            elif request.kind == GenerationKind.IMAGE:
                outcome = Success(data=PNG_BYTES, mime_type="image/png")
            else:
                outcome = Success(data=b"Once upon a time", mime_type="text/plain")
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        finally:
            self.in_flight -= 1


def retryable(status_code: int = 503) -> RetryableFailure:
    classification = FailureClass.RATE_LIMITED if status_code == 429 else FailureClass.SERVER_ERROR
    return RetryableFailure(classification=classification, message=f"HTTP {status_code}", status_code=status_code)


def fatal(reason: str = "rejected") -> FatalFailure:
    return FatalFailure(classification=FailureClass.CLIENT_ERROR, reason=reason, status_code=400)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    """Records backoff delays instead of sleeping."""
    recorded: list[float] = []

    async def _sleep(delay: float) -> None:
        recorded.append(delay)

    _sleep.recorded = recorded
    return _sleep


@pytest.fixture
def artifact_store(tmp_path):
    return ArtifactStore(tmp_path / "generated", url_prefix="/generated")


@pytest.fixture
def make_gateway(artifact_store, clock, sleeps):
    """Build a gateway around a FakeAdapter with test-friendly defaults."""

    def _make(
        adapter=None,
        images_per_minute: int = 20,
        requests_per_day: int = 200,
        max_concurrent: int = 2,
        **config_overrides,
    ) -> GenerationGateway:
        config = GatewayConfig(**config_overrides)
        return GenerationGateway(
            adapter=adapter or FakeAdapter(),
            quota=QuotaTracker(images_per_minute=images_per_minute, requests_per_day=requests_per_day, clock=clock),
            cache=ContentCache(artifact_store.child("cache")),
            gate=ConcurrencyGate(max_concurrent=max_concurrent),
            executor=ResilientExecutor(
                timeout=config.timeout_seconds,
                max_attempts=config.max_attempts,
                base_delay=config.base_retry_delay,
                max_delay=config.max_retry_delay,
                jitter=config.retry_jitter,
                sleep=sleeps,
            ),
            config=config,
            artifacts=artifact_store,
        )

    return _make


@pytest.fixture
def api_gateway(make_gateway) -> GenerationGateway:
    """Gateway served by the API during a test; swap ``adapter`` or ``quota`` to script it."""
    return make_gateway()


@pytest.fixture
async def client(api_gateway) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_gateway] = lambda: api_gateway
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
