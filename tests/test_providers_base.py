"""
Tests for providers/base.py — response parsing and result types.

Covers:
  - extract_text_content: string content, fragment lists, bad wrappers
  - find_json_object: nested braces, braces inside strings, no object
  - parse_product_fields: strict JSON, quote stripping, label fallback, nothing usable
  - AnalysisOutcome.to_response for success and failure
"""
from __future__ import annotations

import pytest

from providers.base import (
    FAILURE_PLACEHOLDER,
    AnalysisOutcome,
    BackendError,
    ProductFields,
    extract_labelled,
    extract_text_content,
    find_json_object,
    parse_product_fields,
)


def wrap(content) -> dict:
    return {"output": {"choices": [{"message": {"role": "assistant", "content": content}}]}}


# ── extract_text_content ──────────────────────────────────────────────────────

class TestExtractTextContent:
    def test_plain_string(self):
        assert extract_text_content(wrap("hello"), "p") == "hello"

    def test_fragment_dicts_concatenated(self):
        content = [{"text": '{"name": '}, {"text": '"Tea"}'}]
        assert extract_text_content(wrap(content), "p") == '{"name": "Tea"}'

    def test_mixed_fragments(self):
        content = ["a", {"text": "b"}, {"image": "ignored"}, 3]
        assert extract_text_content(wrap(content), "p") == "ab"

    def test_none_content_is_empty(self):
        assert extract_text_content(wrap(None), "p") == ""

    @pytest.mark.parametrize("response", [
        {},
        {"output": {}},
        {"output": {"choices": []}},
        {"output": {"choices": [{}]}},
        None,
        "not a dict",
    ])
    def test_bad_wrapper_raises(self, response):
        with pytest.raises(BackendError, match="unexpected response shape"):
            extract_text_content(response, "p")


# ── find_json_object ──────────────────────────────────────────────────────────

class TestFindJsonObject:
    def test_object_in_prose(self):
        text = '识别结果如下：{"name": "Tea"} 以上。'
        assert find_json_object(text) == '{"name": "Tea"}'

    def test_nested_object(self):
        text = 'x {"a": {"b": 1}, "c": 2} y {"d": 3}'
        assert find_json_object(text) == '{"a": {"b": 1}, "c": 2}'

    def test_braces_inside_strings_ignored(self):
        text = '{"name": "Box {large}", "brand": "}"}'
        assert find_json_object(text) == text

    def test_no_object(self):
        assert find_json_object("no json here") is None

    def test_unbalanced(self):
        assert find_json_object('{"name": "Tea"') is None


# ── parse_product_fields ──────────────────────────────────────────────────────

class TestParseProductFields:
    def test_strict_json(self):
        text = '{"name": "绿茶", "brand": "康师傅", "price": "3.5元", "barcode": "6920459905012"}'
        fields = parse_product_fields(text)
        assert fields == ProductFields("绿茶", "康师傅", "3.5元", "6920459905012")

    def test_json_inside_markdown_fence(self):
        text = '```json\n{"name": "Tea", "brand": "Lipton"}\n```'
        fields = parse_product_fields(text)
        assert fields.name == "Tea"
        assert fields.brand == "Lipton"
        assert fields.price == ""

    def test_quotes_and_whitespace_stripped(self):
        text = '{"name": "  “Tea”  ", "brand": "\\"Lipton\\""}'
        fields = parse_product_fields(text)
        assert fields.name == "Tea"
        assert fields.brand == "Lipton"

    def test_numeric_values_stringified(self):
        fields = parse_product_fields('{"name": "Tea", "price": 3.5, "barcode": 6920459905012}')
        assert fields.price == "3.5"
        assert fields.barcode == "6920459905012"

    def test_malformed_barcode_kept(self):
        fields = parse_product_fields('{"name": "Tea", "barcode": "69-2045"}')
        assert fields.barcode == "69-2045"

    def test_label_fallback_chinese(self):
        text = "产品名称：红烧牛肉面\n品牌：康师傅\n价格：4.5元\n条形码：6920152400777"
        fields = parse_product_fields(text)
        assert fields == ProductFields("红烧牛肉面", "康师傅", "4.5元", "6920152400777")

    def test_label_fallback_english_case_insensitive(self):
        text = "Name: Cola, Brand: Coca-Cola, Price: $1.99"
        fields = parse_product_fields(text)
        assert fields.name == "Cola"
        assert fields.brand == "Coca-Cola"
        assert fields.price == "$1.99"
        assert fields.barcode == ""

    def test_empty_json_falls_back_to_labels(self):
        text = '{"name": "", "brand": ""}\n品牌：雀巢'
        fields = parse_product_fields(text)
        assert fields.brand == "雀巢"

    def test_nothing_usable_returns_none(self):
        assert parse_product_fields("对不起，我看不清图片。") is None

    def test_blank_text_returns_none(self):
        assert parse_product_fields("   ") is None


class TestExtractLabelled:
    def test_stops_at_delimiters(self):
        assert extract_labelled("品牌：雀巢，价格：5元", ("品牌",)) == "雀巢"

    def test_first_matching_label_wins(self):
        text = "名称：短名\n产品名称：完整名称"
        assert extract_labelled(text, ("产品名称", "名称")) == "完整名称"

    def test_missing_label(self):
        assert extract_labelled("价格：5元", ("品牌",)) == ""


# ── AnalysisOutcome ───────────────────────────────────────────────────────────

class TestAnalysisOutcome:
    def test_success_response(self):
        outcome = AnalysisOutcome.succeeded(ProductFields(name="Tea"), "dashscope/qwen-vl-plus")
        resp = outcome.to_response()
        assert resp["success"] is True
        assert resp["data"] == {"name": "Tea", "brand": "", "price": "", "barcode": ""}
        assert resp["model"] == "dashscope/qwen-vl-plus"

    def test_failure_response_has_placeholders(self):
        outcome = AnalysisOutcome.failed("all failed", ["a: x", "b: y"])
        resp = outcome.to_response()
        assert resp["success"] is False
        assert resp["error"] == "all failed"
        assert set(resp["data"].values()) == {FAILURE_PLACEHOLDER}
        assert outcome.failures == ["a: x", "b: y"]
