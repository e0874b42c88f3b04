"""Generation Gateway: orchestrator integrating all gateway components.

Every call goes through:
  1. Validation (prompt bounds, blocked terms, image sanity)
  2. Content cache lookup (a hit skips quota, slot and remote call)
  3. Quota admission (QuotaExceeded carries the usage snapshot)
  4. Concurrency slot
  5. Resilient execution of the vendor adapter call
  6. Cache write of the artifact
  7. Classified GatewayError for anything that failed

Steps 4-6 run in a shielded task: a caller that goes away does not abort an
in-flight remote call, which finishes and warms the cache for the next
identical request.

Usage:
    gateway = GenerationGateway.from_settings(settings)

    result = await gateway.generate_image("A lighthouse in a storm")
    result.data, result.mime_type, result.location
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from app.core.metrics import CACHE_LOOKUPS, QUOTA_REJECTIONS
from app.gateway.cache import ContentCache, compute_cache_key
from app.gateway.concurrency import ConcurrencyGate
from app.gateway.errors import GatewayError, QuotaExceeded, ValidationError, error_from_outcome
from app.gateway.executor import ResilientExecutor
from app.gateway.quota import QuotaTracker
from app.gateway.storage import ArtifactStore, normalize_mime_type
from app.gateway.types import (
    CharacterBlueprint,
    FatalFailure,
    GatewayConfig,
    GenerationKind,
    GenerationRequest,
    GenerationResult,
    GenerationStage,
    ImageEditRequest,
    ImageFromTextRequest,
    InlineImage,
    QuotaReservation,
    Success,
    TextRequest,
    UsageSnapshot,
)
from app.gateway.vendor_adapters import BaseVendorAdapter, get_adapter

logger = logging.getLogger(__name__)


class GenerationGateway:
    """Main gateway orchestrator.

    Integrates:
      - QuotaTracker: per-minute image / per-day request admission
      - ContentCache: content-addressable artifact reuse
      - ConcurrencyGate: ceiling on in-flight remote calls
      - ResilientExecutor: deadline + backoff retries
      - Vendor adapter: the remote call itself
    """

    def __init__(
        self,
        adapter: BaseVendorAdapter,
        quota: QuotaTracker,
        cache: ContentCache,
        gate: ConcurrencyGate,
        executor: ResilientExecutor,
        config: GatewayConfig | None = None,
        artifacts: ArtifactStore | None = None,
    ):
        self.adapter = adapter
        self.quota = quota
        self.cache = cache
        self.gate = gate
        self.executor = executor
        self.config = config or GatewayConfig()
        self.artifacts = artifacts
        self._background: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings) -> GenerationGateway:
        """Wire up a gateway from application settings."""
        artifacts = ArtifactStore(Path(settings.generated_dir), url_prefix="/generated")
        config = GatewayConfig(
            image_model=settings.image_model,
            text_model=settings.text_model,
            timeout_seconds=settings.request_timeout_seconds,
            max_attempts=settings.max_attempts,
            base_retry_delay=settings.base_retry_delay,
            max_retry_delay=settings.max_retry_delay,
            retry_jitter=settings.retry_jitter,
            refund_quota_on_fatal=settings.refund_quota_on_fatal,
            min_prompt_length=settings.min_prompt_length,
            max_prompt_length=settings.max_prompt_length,
            blocked_terms=tuple(settings.blocked_terms_list),
            max_image_bytes=settings.max_image_bytes,
        )
        return cls(
            adapter=get_adapter("gemini", settings.gemini_api_key, base_url=settings.gemini_api_url),
            quota=QuotaTracker(
                images_per_minute=settings.images_per_minute,
                requests_per_day=settings.requests_per_day,
                state_file=settings.usage_state_file or None,
            ),
            cache=ContentCache(artifacts.child("cache")),
            gate=ConcurrencyGate(max_concurrent=settings.max_concurrency),
            executor=ResilientExecutor(
                timeout=config.timeout_seconds,
                max_attempts=config.max_attempts,
                base_delay=config.base_retry_delay,
                max_delay=config.max_retry_delay,
                jitter=config.retry_jitter,
            ),
            config=config,
            artifacts=artifacts,
        )

    # -- inbound operations --------------------------------------------------

    async def generate_text(
        self,
        prompt: str,
        reference_images: tuple[InlineImage, ...] = (),
        *,
        use_cache: bool = True,
    ) -> GenerationResult:
        return await self.generate(TextRequest(prompt=prompt, reference_images=tuple(reference_images)), use_cache=use_cache)

    async def generate_image(
        self,
        prompt: str,
        characters: tuple[CharacterBlueprint, ...] = (),
        style_references: tuple[InlineImage, ...] = (),
    ) -> GenerationResult:
        request = ImageFromTextRequest(
            prompt=prompt,
            characters=tuple(characters),
            style_references=tuple(style_references),
        )
        return await self.generate(request)

    async def edit_image(
        self,
        source: bytes,
        mime_type: str,
        prompt: str,
        characters: tuple[CharacterBlueprint, ...] = (),
    ) -> GenerationResult:
        request = ImageEditRequest(
            source=InlineImage(data=source, mime_type=mime_type or "image/png"),
            prompt=prompt,
            characters=tuple(characters),
        )
        return await self.generate(request)

    def get_usage_snapshot(self) -> UsageSnapshot:
        """Current usage; does not change any window."""
        return self.quota.snapshot()

    def get_status(self) -> dict:
        return {
            "usage": self.quota.get_stats(),
            "concurrency": self.gate.get_stats(),
            "cache": self.cache.get_stats(),
            "vendor": self.adapter.name,
        }

    # -- pipeline ------------------------------------------------------------

    async def generate(self, request: GenerationRequest, *, use_cache: bool = True) -> GenerationResult:
        """Run one request through the full gateway pipeline.

        Raises:
            GatewayError: ValidationError, QuotaExceeded, or a classified remote error.
        """
        kind = request.kind
        self._enter(GenerationStage.VALIDATING, kind)
        try:
            self.validate(request)
        except ValidationError:
            self._enter(GenerationStage.FAILED, kind)
            raise

        model = self.config.model_for(kind)
        key = compute_cache_key(request, model)

        if use_cache:
            self._enter(GenerationStage.CACHE_CHECK, kind, key)
            entry = await asyncio.to_thread(self.cache.lookup, key)
            if entry is not None:
                CACHE_LOOKUPS.labels(kind=kind.value, result="hit").inc()
                logger.info("Cache hit for %s request", kind.value, extra={"kind": kind.value, "cache_key": key[:12]})
                self._enter(GenerationStage.CACHED, kind, key)
                return GenerationResult(
                    data=entry.data,
                    mime_type=entry.mime_type,
                    key=key,
                    cache_hit=True,
                    location=entry.location,
                )
            CACHE_LOOKUPS.labels(kind=kind.value, result="miss").inc()

        self._enter(GenerationStage.QUOTA_CHECK, kind, key)
        cost = self.config.image_cost if kind == GenerationKind.IMAGE else 0
        decision = await self.quota.check_and_reserve(kind, cost)
        if not decision.allowed:
            QUOTA_REJECTIONS.labels(kind=kind.value).inc()
            self._enter(GenerationStage.FAILED, kind, key)
            raise QuotaExceeded(_quota_message(decision.snapshot), snapshot=decision.snapshot)

        # Runs to completion (and writes the cache) even if this caller is cancelled
        task = asyncio.ensure_future(self._execute(request, model, key, use_cache, decision.reservation))
        self._background.add(task)
        task.add_done_callback(self._forget)
        return await asyncio.shield(task)

    async def _execute(
        self,
        request: GenerationRequest,
        model: str,
        key: str,
        use_cache: bool,
        reservation: QuotaReservation | None,
    ) -> GenerationResult:
        kind = request.kind
        cfg = self.config

        self._enter(GenerationStage.AWAITING_SLOT, kind, key)
        async with self.gate.slot():
            self._enter(GenerationStage.EXECUTING, kind, key)
            execution = await self.executor.run(
                lambda: self.adapter.send(request, model, timeout=cfg.timeout_seconds),
                timeout=cfg.timeout_seconds,
                max_attempts=cfg.max_attempts,
                base_delay=cfg.base_retry_delay,
            )

        outcome = execution.outcome
        if isinstance(outcome, Success):
            mime_type = normalize_mime_type(outcome.mime_type)
            location = ""
            if use_cache:
                location = await asyncio.to_thread(self.cache.store, key, outcome.data, mime_type)
            elif kind == GenerationKind.IMAGE and self.artifacts is not None:
                location = await asyncio.to_thread(self.artifacts.store, outcome.data, mime_type)
            logger.info(
                "Generated %s (%s, %d bytes) after %d attempt(s)",
                kind.value,
                mime_type,
                len(outcome.data),
                execution.attempts,
            )
            self._enter(GenerationStage.CACHED, kind, key)
            return GenerationResult(
                data=outcome.data,
                mime_type=mime_type,
                key=key,
                location=location,
                attempts=execution.attempts,
            )

        if isinstance(outcome, FatalFailure) and cfg.refund_quota_on_fatal and reservation is not None:
            await self.quota.refund(reservation)

        error = error_from_outcome(outcome)
        logger.warning(
            "%s request %s failed after %d attempt(s): %s (%s)",
            kind.value,
            key[:12],
            execution.attempts,
            error.kind,
            error.message,
        )
        self._enter(GenerationStage.FAILED, kind, key)
        raise error

    # -- validation ----------------------------------------------------------

    def validate(self, request: GenerationRequest) -> None:
        """Reject malformed input before any side effect.

        Raises:
            ValidationError: With a message that can be shown to the user.
        """
        cfg = self.config
        prompt = (request.prompt or "").strip()
        _require_utf8(prompt, "Prompt")
        if len(prompt) < cfg.min_prompt_length:
            raise ValidationError(f"Prompt must be at least {cfg.min_prompt_length} characters long.")
        if len(prompt) > cfg.max_prompt_length:
            raise ValidationError(f"Prompt must be at most {cfg.max_prompt_length} characters long.")

        lowered = prompt.lower()
        for term in cfg.blocked_terms:
            if term and term in lowered:
                raise ValidationError("The prompt contains disallowed content. Please rephrase it.")

        if isinstance(request, TextRequest):
            images = request.reference_images
        elif isinstance(request, ImageFromTextRequest):
            images = request.style_references
            self._validate_characters(request.characters)
        elif isinstance(request, ImageEditRequest):
            images = (request.source,)
            self._validate_characters(request.characters)
        else:
            raise ValidationError(f"Unsupported request type: {type(request).__name__}")

        for image in images:
            if not image.data:
                raise ValidationError("Image data is empty.")
            if not image.mime_type.startswith("image/"):
                raise ValidationError(f"Unsupported image type: {image.mime_type}")
            if len(image.data) > cfg.max_image_bytes:
                raise ValidationError("Image is too large.")

    @staticmethod
    def _validate_characters(characters: tuple[CharacterBlueprint, ...]) -> None:
        for character in characters:
            if not character.name.strip():
                raise ValidationError("Every character needs a name.")
            _require_utf8(character.name, "Character name")
            _require_utf8(character.profile, "Character profile")

    # -- helpers -------------------------------------------------------------

    def _forget(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()  # marks it retrieved
        if exc is not None and not isinstance(exc, GatewayError):
            logger.error("Generation task failed unexpectedly: %s: %s", type(exc).__name__, exc)

    @staticmethod
    def _enter(stage: GenerationStage, kind: GenerationKind, key: str = "") -> None:
        logger.debug(
            "%s request entered %s",
            kind.value,
            stage.value,
            extra={"kind": kind.value, "stage": stage.value, "cache_key": key[:12]},
        )

    async def drain(self) -> None:
        """Wait for in-flight calls whose callers have gone away."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)


def _require_utf8(text: str, field: str) -> None:
    # Lone surrogates are valid JSON escapes but cannot be hashed or sent on
    try:
        (text or "").encode("utf-8")
    except UnicodeEncodeError as e:
        raise ValidationError(f"{field} contains invalid characters.") from e


def _quota_message(snapshot: UsageSnapshot) -> str:
    if snapshot.requests_today >= snapshot.requests_per_day_limit:
        return f"Daily request limit reached. Resets in {snapshot.daily_reset_in_seconds}s."
    return f"Image limit per minute reached. Try again in {snapshot.minute_reset_in_seconds}s."
