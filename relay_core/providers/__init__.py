"""推理后端集成层。

该包下的模块负责：
- 定义推理后端抽象接口 (base)。
- 维护后端与模型配置 (registry)。
- 提供具体后端实现 (如 workers_ai)。
"""

from typing import Callable, Dict, Optional

from relay_core.config.settings import settings
from relay_core.providers.base import InferenceClient
from relay_core.providers.registry import get_provider_config
from relay_core.providers.workers_ai import WorkersAIClient


# registry 中的后端名 -> 客户端构造函数
PROVIDER_CLIENTS: Dict[str, Callable[..., InferenceClient]] = {
    "workers_ai": WorkersAIClient,
}


def create_provider(name: Optional[str] = None) -> InferenceClient:
    """根据名称创建推理后端实例，默认取配置中的 provider；未登记的名称抛出 KeyError。"""

    provider_name = name or getattr(settings, "default_provider", "workers_ai")
    provider_cfg = get_provider_config(provider_name)
    return PROVIDER_CLIENTS[provider_cfg.name](settings)
