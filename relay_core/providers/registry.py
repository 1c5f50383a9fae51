"""推理后端与模型配置。

本模块将“逻辑模型名”与“具体后端模型名”解耦：

- 逻辑名（logical_name）：在代码和配置里使用的统一名称，例如 "chat"。
- provider_model：后端实际提供的模型 ID，例如 "@cf/meta/llama-2-7b-chat-int8"。

上层只关心逻辑名，具体用哪个底层模型由这里集中配置，便于后续升级或切换。"""

from dataclasses import dataclass
from typing import Dict, Mapping

from relay_core.domain.exceptions import ValidationError


@dataclass
class ModelConfig:
    """单个逻辑模型的配置。"""

    logical_name: str
    provider_model: str
    max_tokens: int
    default_temperature: float


@dataclass
class ProviderConfig:
    """某个推理后端的整体配置。"""

    name: str
    base_url: str
    models: Dict[str, ModelConfig]

    def resolve(self, model: str) -> ModelConfig:
        """按逻辑名查找模型；以 "@" 开头的名称视为后端原生模型 ID 直接透传。"""

        cfg = self.models.get(model)
        if cfg is not None:
            return cfg
        if model.startswith("@"):
            return ModelConfig(logical_name=model, provider_model=model, max_tokens=1024, default_temperature=0.6)
        raise ValidationError(code="UNKNOWN_MODEL", message=f"Unknown model: {model!r}")


# Cloudflare Workers AI 配置
WORKERS_AI_CONFIG = ProviderConfig(
    name="workers_ai",
    base_url="https://api.cloudflare.com/client/v4",
    models={
        "chat": ModelConfig(
            logical_name="chat",
            provider_model="@cf/meta/llama-2-7b-chat-int8",
            max_tokens=1024,
            default_temperature=0.6,
        ),
        "chat-large": ModelConfig(
            logical_name="chat-large",
            provider_model="@cf/meta/llama-3-8b-instruct",
            max_tokens=2048,
            default_temperature=0.6,
        ),
    },
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "workers_ai": WORKERS_AI_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")
