"""
Qwen vision provider — Alibaba DashScope multimodal-generation API.

One instance per model id; the dispatcher walks through them in order.
Console / keys: https://dashscope.console.aliyun.com

Request shape (result_format=message):
  {"model": "...",
   "input": {"messages": [
       {"role": "system", "content": [{"text": SYSTEM_PROMPT}]},
       {"role": "user",   "content": [{"text": prompt}, {"image": "data:..."}, ...]}]},
   "parameters": {"result_format": "message"}}

The text-only models in the default list (qwen-plus / turbo / max) usually
reject image input; they stay in the list as last-resort fallbacks.
"""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Sequence

import aiohttp

from images import ImagePayload, load_images
from providers.base import (
    SYSTEM_PROMPT, build_user_prompt,
    BackendError, ProductFields, VisionProvider,
    extract_text_content, parse_product_fields,
)

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://dashscope.aliyuncs.com/api/v1/services/aigc/multimodal-generation/generation"


class QwenProvider(VisionProvider):

    def __init__(
        self,
        api_key: str,
        model: str,
        uploads_dir: Path,
        api_url: str = DEFAULT_API_URL,
        timeout: float = 30.0,
    ):
        self.name        = "dashscope"
        self.model_id    = model
        self._api_key    = api_key
        self._api_url    = api_url
        self._timeout    = timeout
        self._uploads_dir = Path(uploads_dir)

    def build_payload(self, images: Sequence[ImagePayload], photo_count: int) -> dict:
        content: list[dict] = [{"text": build_user_prompt(photo_count)}]
        content.extend({"image": img.data_uri} for img in images)
        return {
            "model": self.model_id,
            "input": {
                "messages": [
                    {"role": "system", "content": [{"text": SYSTEM_PROMPT}]},
                    {"role": "user",   "content": content},
                ],
            },
            "parameters": {"result_format": "message"},
        }

    async def analyse(self, image_refs: Sequence[str], photo_count: int) -> ProductFields:
        images = load_images(image_refs, self._uploads_dir)
        if not images:
            raise BackendError(f"[{self.full_name}] no readable images among {len(image_refs)} reference(s)")

        payload = self.build_payload(images, photo_count)
        t0 = time.monotonic()
        data = await self._post(payload)
        latency_ms = int((time.monotonic() - t0) * 1000)

        text = extract_text_content(data, self.full_name)
        logger.info("[%s] %d image(s), %dms, %d chars of output", self.full_name, len(images), latency_ms, len(text))
        logger.debug("[%s] raw output: %s", self.full_name, text[:500])

        fields = parse_product_fields(text, self.full_name)
        if fields is None:
            raise BackendError(f"[{self.full_name}] no product fields in response: {text[:200]!r}")
        return fields

    # ── HTTP helper ───────────────────────────────────────────────────────────

    async def _post(self, payload: dict) -> dict:
        """Single call to the generation endpoint.  Non-200 → BackendError."""
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type":  "application/json",
        }
        async with aiohttp.ClientSession() as session:
            async with session.post(
                self._api_url,
                json=payload,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise BackendError(f"[{self.full_name}] HTTP {resp.status}: {text[:200]}")
                return await resp.json(content_type=None)
