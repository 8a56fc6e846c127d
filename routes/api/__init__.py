"""
API 蓝图模块

- images.py: 图像生成、批量生成、提示词优化与前端配置路由
"""

from flask import Blueprint

# 创建 API Blueprint
api_bp = Blueprint('api', __name__, url_prefix='/api')

# 导入子模块以注册路由
# 注意：必须在创建 api_bp 之后导入，避免循环依赖
from . import images

# 导出 api_bp 供 app.py 使用
__all__ = ['api_bp']
