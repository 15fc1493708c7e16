"""
Provider Manager — builds the ordered backend list and runs the fallback.

Backends are tried strictly one after another (never in parallel): they all
share one DashScope key and rate limit, so racing them saves little time and
can bill the same photos twice.  The first backend that yields any product
field wins; a backend that raises is logged and skipped.

Model order comes from config.QWEN_MODELS (env QWEN_MODELS, comma-separated).
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Sequence

from providers.base import ALL_MODELS_FAILED, AnalysisOutcome, VisionProvider

logger = logging.getLogger(__name__)


def build_providers(
    api_key: Optional[str],
    models: Sequence[str],
    uploads_dir: Path,
    api_url: Optional[str] = None,
    timeout: float = 30.0,
) -> list[VisionProvider]:
    """One QwenProvider per model id, in the given order.  No key → empty list."""
    if not api_key:
        logger.warning("DASHSCOPE_API_KEY not set — image analysis is disabled")
        return []

    from providers.qwen_provider import DEFAULT_API_URL, QwenProvider
    providers: list[VisionProvider] = []
    for model in models:
        p = QwenProvider(api_key, model, uploads_dir, api_url=api_url or DEFAULT_API_URL, timeout=timeout)
        providers.append(p)
        logger.info("Loaded provider: %s", p.full_name)
    return providers


class AnalysisDispatcher:
    """Runs the ordered provider list until one succeeds."""

    def __init__(self, providers: Sequence[VisionProvider]):
        self._providers = list(providers)

    @property
    def providers(self) -> list[VisionProvider]:
        return list(self._providers)

    async def attempt(self, provider: VisionProvider, image_refs: Sequence[str], photo_count: int) -> AnalysisOutcome:
        """Run one provider.  Never raises: errors become a failed outcome."""
        try:
            fields = await provider.analyse(image_refs, photo_count)
        except Exception as exc:
            logger.error("[%s] Failed: %s", provider.full_name, exc)
            return AnalysisOutcome.failed(f"{provider.full_name}: {exc}")
        return AnalysisOutcome.succeeded(fields, provider.full_name)

    async def analyse(self, image_refs: Sequence[str], photo_count: Optional[int] = None) -> AnalysisOutcome:
        """
        Fold over the providers in order, stopping at the first success.
        If all fail (or none are configured) the outcome carries the
        placeholder fields plus one error line per attempted provider.
        """
        photo_count = photo_count or len(image_refs)
        failures: list[str] = []
        total = len(self._providers)

        for i, provider in enumerate(self._providers, start=1):
            logger.info("Trying provider %d/%d: %s", i, total, provider.full_name)
            outcome = await self.attempt(provider, image_refs, photo_count)
            if outcome.success:
                logger.info("[%s] OK — %s", provider.full_name, outcome.data.to_dict())
                outcome.failures = failures
                return outcome
            failures.append(outcome.error)

        if not self._providers:
            logger.error("No vision providers configured")
        else:
            logger.error("All %d vision providers failed", total)
        return AnalysisOutcome.failed(ALL_MODELS_FAILED, failures)
