"""
Shared types, prompt and response parsing for all vision providers.
"""
from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

logger = logging.getLogger(__name__)

# ── Prompt (shared across all providers) ──────────────────────────────────────

SYSTEM_PROMPT = (
    "你是一个专业的条形码和产品信息识别专家。"
    "请仔细检查图片中的每个细节，找出条形码数字和产品信息。"
)


def build_user_prompt(photo_count: int) -> str:
    return (
        f"请分析这{photo_count}张产品图片，识别产品名称、品牌、价格和条形码。\n"
        "条形码通常位于包装底部、背面或标签上，是黑白条纹下方的一串数字（多为12-13位）。"
        "即使数字模糊或只能看到一部分，也请记录看到的数字序列。\n"
        "只返回一个JSON对象，不要其他文字：\n"
        '{"name": "产品名称", "brand": "品牌", "price": "价格", "barcode": "条形码数字"}'
    )


# Shown in every field when all models fail, so the UI has something to render.
FAILURE_PLACEHOLDER = "分析失败"

ALL_MODELS_FAILED = "所有可用模型都分析失败"

# Barcodes outside this shape are still accepted (OCR output is often
# slightly off); they are only logged.
BARCODE_PATTERN = re.compile(r"^\d{8,18}$")

# Label synonyms for the free-text fallback, most specific first.
FIELD_LABELS: dict[str, tuple[str, ...]] = {
    "name":    ("产品名称", "商品名称", "名称", "品名", "product name", "name"),
    "brand":   ("品牌", "brand"),
    "price":   ("价格", "售价", "price"),
    "barcode": ("条形码", "条码", "barcode"),
}

_QUOTES = "\"“”"
_VALUE_END = "\n,，。;；"


class BackendError(RuntimeError):
    """One backend model failed; the dispatcher moves on to the next."""


# ── Result types ──────────────────────────────────────────────────────────────

@dataclass
class ProductFields:
    name: str = ""
    brand: str = ""
    price: str = ""
    barcode: str = ""

    @classmethod
    def placeholder(cls) -> "ProductFields":
        return cls(
            name=FAILURE_PLACEHOLDER,
            brand=FAILURE_PLACEHOLDER,
            price=FAILURE_PLACEHOLDER,
            barcode=FAILURE_PLACEHOLDER,
        )

    @property
    def is_empty(self) -> bool:
        return not (self.name or self.brand or self.price or self.barcode)

    def to_dict(self) -> dict[str, str]:
        return {
            "name":    self.name,
            "brand":   self.brand,
            "price":   self.price,
            "barcode": self.barcode,
        }


@dataclass
class AnalysisOutcome:
    """Either the fields from the first model that worked, or a total failure."""
    success: bool
    data: ProductFields
    model_id: Optional[str] = None
    error: Optional[str] = None
    failures: list[str] = field(default_factory=list)   # "<model>: <error>" per attempt

    @classmethod
    def succeeded(cls, data: ProductFields, model_id: str, failures: Sequence[str] = ()) -> "AnalysisOutcome":
        return cls(success=True, data=data, model_id=model_id, failures=list(failures))

    @classmethod
    def failed(cls, error: str, failures: Sequence[str] = ()) -> "AnalysisOutcome":
        return cls(success=False, data=ProductFields.placeholder(), error=error, failures=list(failures))

    def to_response(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data.to_dict(), "model": self.model_id}
        return {"success": False, "error": self.error, "data": self.data.to_dict()}


# ── Response parsing ──────────────────────────────────────────────────────────

def extract_text_content(response: Any, provider_name: str) -> str:
    """
    Pull the assistant text out of a DashScope-style response:
        {"output": {"choices": [{"message": {"content": ...}}]}}
    `content` is either a string or a list of fragments, each a string or a
    {"text": "..."} dict; fragments are concatenated.
    Raises BackendError when the wrapper does not have that shape.
    """
    try:
        message = response["output"]["choices"][0]["message"]
        content = message["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise BackendError(f"[{provider_name}] unexpected response shape: {exc!r}") from exc

    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
        return "".join(parts)
    if content is None:
        return ""
    return str(content)


def find_json_object(text: str) -> Optional[str]:
    """
    Return the first balanced {...} literal in *text*, or None.
    Braces inside JSON string literals are ignored.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for pos in range(start, len(text)):
            ch = text[pos]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
            elif ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:pos + 1]
        start = text.find("{", start + 1)
    return None


def _clean_value(value: Any) -> str:
    if value is None:
        return ""
    text = value if isinstance(value, str) else str(value)
    return text.translate({ord(q): None for q in _QUOTES}).strip()


def _parse_strict(text: str) -> Optional[ProductFields]:
    literal = find_json_object(text)
    if literal is None:
        return None
    try:
        data = json.loads(literal)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    return ProductFields(
        name=_clean_value(data.get("name")),
        brand=_clean_value(data.get("brand")),
        price=_clean_value(data.get("price")),
        barcode=_clean_value(data.get("barcode")),
    )


def extract_labelled(text: str, labels: Sequence[str]) -> str:
    """First value written as '<label>: value' for any of *labels*, else ''."""
    for label in labels:
        pattern = re.compile(
            rf"{re.escape(label)}\s*[:：]+\s*([^{re.escape(_VALUE_END)}]+)",
            re.IGNORECASE,
        )
        match = pattern.search(text)
        if match:
            value = _clean_value(match.group(1))
            if value:
                return value
    return ""


def _parse_labelled(text: str) -> ProductFields:
    return ProductFields(**{
        field_name: extract_labelled(text, labels)
        for field_name, labels in FIELD_LABELS.items()
    })


def parse_product_fields(text: str, provider_name: str = "") -> Optional[ProductFields]:
    """
    Turn model output into ProductFields.

    Tries the first embedded JSON object; if there is none (or it yields
    nothing), falls back to 'label: value' lines.  Returns None when neither
    produces a single non-empty field.
    """
    if not text or not text.strip():
        return None

    fields = _parse_strict(text)
    if fields is None or fields.is_empty:
        logger.info("[%s] no usable JSON object, trying label extraction", provider_name)
        fields = _parse_labelled(text)
    if fields.is_empty:
        return None

    if fields.barcode and not BARCODE_PATTERN.match(re.sub(r"\s", "", fields.barcode)):
        logger.info("[%s] barcode looks malformed, keeping as-is: %s", provider_name, fields.barcode)
    return fields


# ── Abstract base ─────────────────────────────────────────────────────────────

class VisionProvider(ABC):
    """Base class all vision providers must implement."""

    name: str           # e.g. "dashscope"
    model_id: str       # e.g. "qwen-vl-plus"

    @abstractmethod
    async def analyse(self, image_refs: Sequence[str], photo_count: int) -> ProductFields:
        """
        Run vision inference on the referenced photos.
        Must return ProductFields or raise (BackendError for expected failures).
        """
        ...

    @property
    def full_name(self) -> str:
        return f"{self.name}/{self.model_id}"
