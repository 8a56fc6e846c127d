"""Tests for request validation and result models."""

import pytest

from image_engine.models import (
    Failure,
    GeneratedImage,
    GenerationRequest,
    ProviderConfig,
    Success,
)


class TestGenerationRequest:
    """Tests for GenerationRequest validation."""

    @pytest.mark.parametrize("overrides, message", [
        ({"prompt": "   "}, "请输入图像描述"),
        ({"model": ""}, "请选择模型"),
        ({"count": 0}, "图像数量必须在1-4之间"),
        ({"count": 5}, "图像数量必须在1-4之间"),
        ({"count": True}, "图像数量必须是整数"),
        ({"aspect_ratio": "7:3"}, "不支持的宽高比"),
        ({"image_size": "8K"}, "不支持的分辨率"),
        ({"output_format": "bmp"}, "不支持的输出格式"),
    ])
    def test_invalid_fields(self, make_request, overrides, message):
        with pytest.raises(ValueError, match=message):
            make_request(**overrides)

    def test_reference_images_become_tuple(self, make_request, png_data_uri):
        request = make_request(reference_images=[png_data_uri])

        assert request.reference_images == (png_data_uri,)
        assert request.has_reference_images is True

    def test_full_prompt_appends_negative_prompt(self, make_request):
        assert make_request(negative_prompt="  text, watermark ").full_prompt == (
            "a red fox in the snow\n\nAvoid: text, watermark"
        )
        assert make_request(negative_prompt="   ").full_prompt == "a red fox in the snow"

    def test_from_dict_reads_camel_case(self, png_data_uri):
        request = GenerationRequest.from_dict({
            "prompt": "  castle at dusk ",
            "model": "gpt-image-1",
            "aspectRatio": "16:9",
            "imageSize": "2K",
            "count": "2",
            "referenceImages": [png_data_uri],
            "negativePrompt": "fog",
            "outputFormat": "jpg",
        })

        assert request.prompt == "castle at dusk"
        assert request.aspect_ratio == "16:9"
        assert request.image_size == "2K"
        assert request.count == 2
        assert request.reference_images == (png_data_uri,)
        assert request.to_dict()["referenceImageCount"] == 1

    def test_from_dict_rejects_non_numeric_count(self):
        with pytest.raises(ValueError, match="图像数量必须是整数"):
            GenerationRequest.from_dict({"prompt": "x", "model": "m", "count": "many"})


class TestProviderConfig:
    """Tests for ProviderConfig."""

    def test_requires_credentials(self):
        with pytest.raises(ValueError, match="请提供 API Key"):
            ProviderConfig(api_key="", base_url="https://relay.example.com")
        with pytest.raises(ValueError, match="请提供 API 地址"):
            ProviderConfig(api_key="k", base_url="")

    @pytest.mark.parametrize("base_url, expected", [
        ("https://relay.example.com", "https://relay.example.com/v1/chat/completions"),
        ("https://relay.example.com/", "https://relay.example.com/v1/chat/completions"),
        ("https://relay.example.com/v1", "https://relay.example.com/v1/chat/completions"),
        ("https://relay.example.com/v1/", "https://relay.example.com/v1/chat/completions"),
    ])
    def test_url_for(self, base_url, expected):
        assert ProviderConfig(api_key="k", base_url=base_url).url_for("/v1/chat/completions") == expected

    def test_repr_hides_key(self):
        assert "sk-secret" not in repr(ProviderConfig(api_key="sk-secret", base_url="https://x.example.com"))


class TestOutcomes:
    """Tests for GeneratedImage and outcome serialization."""

    def test_image_requires_data_uri(self, make_request, png_b64):
        with pytest.raises(ValueError):
            GeneratedImage(base64=png_b64, prompt="p", model="m", params=make_request())

    def test_outcome_dicts(self, make_request, png_data_uri):
        image = GeneratedImage(base64=png_data_uri, prompt="p", model="m", params=make_request())

        assert Success(image).to_dict()["ok"] is True
        assert Success(image).to_dict()["image"]["base64"] == png_data_uri
        assert Failure("已停止").to_dict() == {"reason": "已停止", "ok": False}
