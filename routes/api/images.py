"""
图像生成 API 路由
"""

import asyncio
from datetime import datetime

from flask import request, jsonify

from image_engine.batch import parse_prompts_to_batch, run_batch
from image_engine.config import get_default_base_url, get_frontend_config
from image_engine.errors import GenerationError
from image_engine.logging_config import log_error, api_logger
from image_engine.models import GenerationRequest, ProviderConfig
from image_engine.optimizer import optimize_prompt
from image_engine.orchestrator import generate_images_sync

# 从当前包导入 api_bp
from . import api_bp


def _provider_from_payload(data: dict) -> ProviderConfig:
    """读取 apiKey/baseUrl，未提供 baseUrl 时使用 provider 类别的默认地址"""
    scope = data.get('provider') or 'openai_proxy'
    base_url = data.get('baseUrl') or get_default_base_url(scope)
    return ProviderConfig(api_key=data.get('apiKey') or '', base_url=base_url, scope=scope)


@api_bp.route('/generate', methods=['POST'])
def generate():
    """
    生成图片

    Body (JSON):
        - apiKey / baseUrl / provider: 服务端配置
        - prompt, model, aspectRatio, imageSize, count, referenceImages,
          negativePrompt, outputFormat: 生成参数
    """
    start_time = datetime.now()
    api_logger.info("开始处理图像生成请求")

    try:
        data = request.get_json(silent=True)
        if not data:
            return jsonify({'success': False, 'error': '请求体不能为空'}), 400

        provider = _provider_from_payload(data)
        generation_request = GenerationRequest.from_dict(data)
        api_logger.info(
            f"请求参数: model={generation_request.model}, count={generation_request.count}, "
            f"aspectRatio={generation_request.aspect_ratio}, imageSize={generation_request.image_size}"
        )

        outcomes = generate_images_sync(generation_request, provider)

        success_count = sum(1 for outcome in outcomes if outcome.ok)
        total_duration = (datetime.now() - start_time).total_seconds()
        api_logger.info(f"图像生成完成: 成功{success_count}/{len(outcomes)}张, 总耗时: {total_duration:.2f}秒")

        return jsonify({
            'success': success_count > 0,
            'outcomes': [outcome.to_dict() for outcome in outcomes],
            'count': success_count,
        })

    except ValueError as e:
        # 参数验证错误 (400)
        return jsonify({'success': False, 'error': str(e)}), 400

    except Exception as e:
        log_error("图像生成失败", str(e), "")
        return jsonify({'success': False, 'error': str(e)}), 500


@api_bp.route('/generate-batch', methods=['POST'])
def generate_batch():
    """
    批量生成：prompt 中用 --- 分隔多条提示词

    Body (JSON): 同 /generate，另加 concurrency、countPerPrompt
    """
    api_logger.info("开始处理批量生成请求")

    try:
        data = request.get_json(silent=True)
        if not data:
            return jsonify({'success': False, 'error': '请求体不能为空'}), 400

        prompts = parse_prompts_to_batch(data.get('prompt') or '')
        if not prompts:
            return jsonify({'success': False, 'error': '请输入图像描述'}), 400

        provider = _provider_from_payload(data)
        base_request = GenerationRequest.from_dict({**data, 'prompt': prompts[0], 'count': 1})
        results = asyncio.run(run_batch(
            prompts,
            base_request,
            provider,
            concurrency=data.get('concurrency') or 1,
            count_per_prompt=data.get('countPerPrompt') or 1,
        ))

        return jsonify({
            'success': any(result.status == 'success' for result in results),
            'tasks': [result.to_dict() for result in results],
        })

    except ValueError as e:
        return jsonify({'success': False, 'error': str(e)}), 400

    except Exception as e:
        log_error("批量生成失败", str(e), "")
        return jsonify({'success': False, 'error': str(e)}), 500


@api_bp.route('/optimize-prompt', methods=['POST'])
def optimize():
    """
    优化提示词

    Body (JSON):
        - prompt: 原始提示词（必需）
        - model: 文本模型（必需）
        - apiKey / baseUrl / provider: 服务端配置
    """
    api_logger.info("开始处理提示词优化请求")

    try:
        data = request.get_json(silent=True)
        if not data:
            return jsonify({'success': False, 'error': '请求体不能为空'}), 400

        provider = _provider_from_payload(data)
        optimized = asyncio.run(optimize_prompt(data.get('prompt') or '', provider, data.get('model') or ''))
        return jsonify({'success': True, 'prompt': optimized})

    except ValueError as e:
        return jsonify({'success': False, 'error': str(e)}), 400

    except GenerationError as e:
        log_error("提示词优化失败", str(e), "")
        return jsonify({'success': False, 'error': str(e)}), 502

    except Exception as e:
        log_error("提示词优化失败", str(e), "")
        return jsonify({'success': False, 'error': str(e)}), 500


@api_bp.route('/config', methods=['GET'])
def get_config():
    """获取前端配置（供应商、图像参数取值、限额）"""
    try:
        config = get_frontend_config()
        return jsonify({'success': True, 'config': config})
    except Exception as e:
        log_error("获取配置失败", str(e), "")
        return jsonify({'success': False, 'error': str(e)}), 500
