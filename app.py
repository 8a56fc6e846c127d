from flask import Flask, request
from routes.api import api_bp
from image_engine.config import AppConfig
from image_engine.logging_config import log_http_request, flask_logger

def create_app():
    app = Flask(__name__)

    # 添加请求日志中间件
    @app.before_request
    def before_request():
        flask_logger.info(f"开始处理请求: {request.method} {request.path}")

    @app.after_request
    def after_request(response):
        log_http_request(
            remote_addr=request.remote_addr or '127.0.0.1',
            method=request.method,
            path=request.path,
            status_code=response.status_code
        )

        if response.status_code >= 400:
            flask_logger.warning(f"HTTP错误响应 {response.status_code}: {request.method} {request.path}")

        return response

    flask_logger.info("图像生成服务启动")
    flask_logger.info(
        f"并发: {AppConfig.MAX_CONCURRENCY}, 超时: {AppConfig.REQUEST_TIMEOUT_SECONDS}秒, "
        f"最大尝试次数: {AppConfig.MAX_ATTEMPTS}"
    )
    flask_logger.info("已注册蓝图: api")

    app.register_blueprint(api_bp)

    return app

if __name__ == '__main__':
    flask_logger.info("启动Flask开发服务器...")
    flask_logger.info("服务器地址: http://127.0.0.1:5000")
    flask_logger.info("按 CTRL+C 退出")

    app = create_app()
    app.run(debug=True, host='127.0.0.1', port=5000)
