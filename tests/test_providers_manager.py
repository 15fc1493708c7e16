"""
Tests for providers/manager.py.

Covers:
  - build_providers(): one provider per model, in order; no key → none
  - AnalysisDispatcher.analyse(): first success wins, later providers untouched
  - Failures are collected; all-fail / no-provider → placeholder failure outcome
  - photo_count defaults to the number of image refs
"""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from config import DEFAULT_QWEN_MODELS
from providers.base import (
    ALL_MODELS_FAILED,
    FAILURE_PLACEHOLDER,
    BackendError,
    ProductFields,
    VisionProvider,
)
from providers.manager import AnalysisDispatcher, build_providers
from providers.qwen_provider import QwenProvider


def make_provider(model: str, result=None, error: Exception | None = None) -> VisionProvider:
    p = MagicMock(spec=VisionProvider)
    p.name = "dashscope"
    p.model_id = model
    p.full_name = f"dashscope/{model}"
    if error is not None:
        p.analyse = AsyncMock(side_effect=error)
    else:
        p.analyse = AsyncMock(return_value=result or ProductFields(name=f"from {model}"))
    return p


# ── build_providers ───────────────────────────────────────────────────────────

class TestBuildProviders:
    def test_no_key_gives_no_providers(self, uploads_dir):
        assert build_providers(None, DEFAULT_QWEN_MODELS, uploads_dir) == []

    def test_one_provider_per_model_in_order(self, uploads_dir):
        providers = build_providers("sk-test", DEFAULT_QWEN_MODELS, uploads_dir, timeout=12)
        assert [p.model_id for p in providers] == DEFAULT_QWEN_MODELS
        assert all(isinstance(p, QwenProvider) for p in providers)

    def test_default_model_list_has_six_entries(self):
        assert len(DEFAULT_QWEN_MODELS) == 6
        assert DEFAULT_QWEN_MODELS[0] == "qwen-vl-plus"


# ── AnalysisDispatcher ────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestAnalyse:
    async def test_first_provider_success(self):
        providers = [make_provider(m) for m in DEFAULT_QWEN_MODELS]
        outcome = await AnalysisDispatcher(providers).analyse(["/uploads/a.jpg"], 1)

        assert outcome.success
        assert outcome.model_id == "dashscope/qwen-vl-plus"
        assert outcome.failures == []
        for p in providers[1:]:
            p.analyse.assert_not_called()

    async def test_third_succeeds_after_two_failures(self):
        providers = [
            make_provider("m1", error=BackendError("HTTP 500")),
            make_provider("m2", error=TimeoutError()),
            make_provider("m3", result=ProductFields(name="Tea", barcode="6920459905012")),
            make_provider("m4"),
            make_provider("m5"),
            make_provider("m6"),
        ]
        outcome = await AnalysisDispatcher(providers).analyse(["/uploads/a.jpg"], 1)

        assert outcome.success
        assert outcome.data.name == "Tea"
        assert outcome.model_id == "dashscope/m3"
        assert len(outcome.failures) == 2
        assert outcome.failures[0].startswith("dashscope/m1")
        for p in providers[:3]:
            p.analyse.assert_awaited_once()
        for p in providers[3:]:
            p.analyse.assert_not_called()

    async def test_all_fail_returns_placeholder_failure(self):
        providers = [make_provider(f"m{i}", error=BackendError(f"bad {i}")) for i in range(6)]
        outcome = await AnalysisDispatcher(providers).analyse(["/uploads/a.jpg"], 1)

        assert not outcome.success
        assert outcome.error == ALL_MODELS_FAILED
        assert outcome.data == ProductFields.placeholder()
        assert outcome.data.name == FAILURE_PLACEHOLDER
        assert len(outcome.failures) == 6
        for p in providers:
            p.analyse.assert_awaited_once()

    async def test_unexpected_exception_does_not_abort(self):
        providers = [
            make_provider("m1", error=KeyError("boom")),
            make_provider("m2"),
        ]
        outcome = await AnalysisDispatcher(providers).analyse(["/uploads/a.jpg"], 1)
        assert outcome.success
        assert outcome.model_id == "dashscope/m2"

    async def test_no_providers_fails(self):
        outcome = await AnalysisDispatcher([]).analyse(["/uploads/a.jpg"], 1)
        assert not outcome.success
        assert outcome.failures == []

    async def test_attempts_are_sequential_in_order(self):
        calls: list[str] = []

        def provider(model, fail):
            async def _analyse(refs, count):
                calls.append(model)
                if fail:
                    raise BackendError(model)
                return ProductFields(name=model)
            p = make_provider(model)
            p.analyse = AsyncMock(side_effect=_analyse)
            return p

        providers = [provider("a", True), provider("b", True), provider("c", False)]
        await AnalysisDispatcher(providers).analyse(["x.jpg"], 1)
        assert calls == ["a", "b", "c"]

    async def test_photo_count_defaults_to_ref_count(self):
        p = make_provider("m1")
        await AnalysisDispatcher([p]).analyse(["a.jpg", "b.jpg", "c.jpg"])
        p.analyse.assert_awaited_once_with(["a.jpg", "b.jpg", "c.jpg"], 3)
