"""Tests for size mapping and size negotiation."""

import asyncio

import pytest

from image_engine.errors import ProviderHTTPError
from image_engine.sizing import (
    ImageConfig,
    build_image_config,
    is_invalid_size_error,
    map_image_size,
    negotiate_size,
    parse_aspect_ratio,
    parse_model_name_params,
    render_chat_fields,
    render_images_fields,
)


class TestMapImageSize:
    """Tests for resolution tier to pixel mapping."""

    @pytest.mark.parametrize(
        "tier, ratio, expected",
        [
            ("1K", "1:1", "1024x1024"),
            ("1K", "9:16", "1024x1536"),
            ("1K", "16:9", "1536x1024"),
            ("1K", "auto", "1024x1024"),
            ("2K", "1:1", "2048x2048"),
            ("2K", "3:4", "2048x3072"),
            ("4K", "21:9", "6144x4096"),
            ("1024x768", "16:9", "1024x768"),
            ("8K", "1:1", "8K"),
        ],
    )
    def test_mapping(self, tier, ratio, expected):
        assert map_image_size(tier, ratio) == expected

    def test_empty_size(self):
        assert map_image_size(None, "1:1") is None

    def test_ratio_edge_cases(self):
        assert map_image_size("1K", "5:4") == "1536x1024"
        assert parse_aspect_ratio("1:0") is None
        assert parse_aspect_ratio("wide") is None


class TestModelNameParams:
    """Tests for orientation and resolution hints embedded in model names."""

    def test_orientation_and_resolution(self):
        params = parse_model_name_params("gemini-3.0-pro-image-landscape-4k")

        assert params.detected_ratio == "16:9"
        assert params.detected_size == "4K"

    def test_ratio_pattern(self):
        assert parse_model_name_params("flux-pro-16x9").detected_ratio == "16:9"
        assert parse_model_name_params("flux-pro-2-3").detected_ratio == "2:3"

    def test_unknown_ratio_is_ignored(self):
        assert parse_model_name_params("model-9x9").detected_ratio is None

    def test_plain_model(self):
        params = parse_model_name_params("gpt-image-1")

        assert params.detected_ratio is None
        assert params.detected_size is None


class TestBuildImageConfig:
    """Tests for request to image config conversion."""

    def test_model_without_size_support_drops_size(self):
        config = build_image_config("16:9", "2K", "gemini-2.5-flash-image")

        assert config == ImageConfig(aspect_ratio="16:9", image_size=None)

    def test_model_name_hints_drop_fields(self):
        config = build_image_config("1:1", "2K", "gemini-3-pro-image-portrait-4k")

        assert config == ImageConfig(aspect_ratio=None, image_size=None)

    def test_auto_ratio_is_omitted(self):
        assert build_image_config("auto", "1K", "gpt-image-1").aspect_ratio is None


class TestRenderers:
    """Tests for per-endpoint field rendering."""

    def test_chat_sends_raw_tier_and_ratio(self):
        fields = render_chat_fields(ImageConfig("16:9", "2K"))

        assert fields == {"aspect_ratio": "16:9", "size": "2K"}

    def test_images_sends_pixel_size_only(self):
        fields = render_images_fields(ImageConfig("16:9", "2K"))

        assert fields == {"size": "3072x2048"}

    def test_none_config_renders_nothing(self):
        assert render_chat_fields(None) == {}
        assert render_images_fields(None) == {}


class TestNegotiateSize:
    """Tests for the size fallback chain."""

    def test_falls_back_to_mapped_then_omitted(self):
        sent = []

        async def send(fields):
            sent.append(dict(fields))
            if "size" in fields:
                raise ProviderHTTPError(400, "invalid size")
            return {"ok": True}

        result = asyncio.run(negotiate_size(send, ImageConfig("16:9", "2K"), render_chat_fields))

        assert result == {"ok": True}
        assert sent == [
            {"aspect_ratio": "16:9", "size": "2K"},
            {"aspect_ratio": "16:9", "size": "3072x2048"},
            {"aspect_ratio": "16:9"},
        ]

    def test_identical_attempts_are_skipped(self):
        sent = []

        async def send(fields):
            sent.append(dict(fields))
            if "size" in fields:
                raise ProviderHTTPError(400, "不合法的size")
            return "ok"

        asyncio.run(negotiate_size(send, ImageConfig("1:1", "1K"), render_images_fields))

        # 档位和规范映射在 images 风格下渲染结果相同，只发送一次
        assert sent == [{"size": "1024x1024"}, {}]

    def test_other_errors_propagate_immediately(self):
        sent = []

        async def send(fields):
            sent.append(fields)
            raise ProviderHTTPError(401, "invalid api key")

        with pytest.raises(ProviderHTTPError, match="401"):
            asyncio.run(negotiate_size(send, ImageConfig("1:1", "2K"), render_chat_fields))
        assert len(sent) == 1

    def test_invalid_size_error_detection(self):
        assert is_invalid_size_error(ProviderHTTPError(400, '{"error": "Invalid  size: 2K"}'))
        assert is_invalid_size_error(RuntimeError("不合法的size参数"))
        assert not is_invalid_size_error(RuntimeError("invalid response_format"))
