"""Tests for the Flask API routes."""

import pytest

from app import create_app
from image_engine.models import Failure, GeneratedImage, Success
from routes.api import images as image_routes


@pytest.fixture
def client():
    app = create_app()
    app.config["TESTING"] = True
    return app.test_client()


CREDENTIALS = {"apiKey": "sk-test", "baseUrl": "https://relay.example.com"}


class TestConfigRoute:
    """Tests for GET /api/config."""

    def test_returns_frontend_config(self, client):
        response = client.get("/api/config")

        assert response.status_code == 200
        data = response.get_json()
        assert data["success"] is True
        assert "openai_proxy" in data["config"]["providers"]


class TestGenerateRoute:
    """Tests for POST /api/generate."""

    def test_empty_body(self, client):
        response = client.post("/api/generate", json={})

        assert response.status_code == 400
        assert response.get_json()["error"] == "请求体不能为空"

    def test_missing_prompt(self, client):
        response = client.post("/api/generate", json={**CREDENTIALS, "model": "gpt-image-1"})

        assert response.status_code == 400
        assert response.get_json()["error"] == "请输入图像描述"

    def test_missing_api_key(self, client):
        response = client.post("/api/generate", json={"prompt": "fox", "model": "gpt-image-1"})

        assert response.status_code == 400
        assert response.get_json()["error"] == "请提供 API Key"

    def test_outcomes_are_serialized(self, client, monkeypatch, png_data_uri):
        def fake_generate(request, provider):
            image = GeneratedImage(base64=png_data_uri, prompt=request.prompt, model=request.model, params=request)
            return [Success(image), Failure("请求超时")]

        monkeypatch.setattr(image_routes, "generate_images_sync", fake_generate)

        response = client.post("/api/generate", json={
            **CREDENTIALS, "prompt": "fox", "model": "gpt-image-1", "count": 2,
        })

        data = response.get_json()
        assert response.status_code == 200
        assert data["success"] is True
        assert data["count"] == 1
        assert data["outcomes"][0]["image"]["base64"] == png_data_uri
        assert data["outcomes"][1] == {"ok": False, "reason": "请求超时"}

    def test_provider_scope_picks_default_base_url(self, client, monkeypatch):
        captured = {}

        def fake_generate(request, provider):
            captured["provider"] = provider
            return [Failure("已停止")]

        monkeypatch.setattr(image_routes, "generate_images_sync", fake_generate)

        client.post("/api/generate", json={
            "apiKey": "kie-key", "provider": "kie", "prompt": "fox", "model": "nano-banana-pro", "count": 1,
        })

        assert captured["provider"].scope == "kie"
        assert captured["provider"].base_url == "https://api.kie.ai"


class TestBatchRoute:
    """Tests for POST /api/generate-batch."""

    def test_blank_prompt(self, client):
        response = client.post("/api/generate-batch", json={**CREDENTIALS, "prompt": "  ", "model": "gpt-image-1"})

        assert response.status_code == 400


class TestOptimizeRoute:
    """Tests for POST /api/optimize-prompt."""

    def test_missing_model(self, client):
        response = client.post("/api/optimize-prompt", json={**CREDENTIALS, "prompt": "fox"})

        assert response.status_code == 400
        assert response.get_json()["error"] == "请先设置提示词优化模型"
