"""系统提示词加载工具。

按语言(locale) 从 prompts/<locale> 目录读取中继使用的 system prompt，
配置项 system_prompt 非空时直接使用配置值。
"""

from pathlib import Path
from typing import Optional

from relay_core.config.settings import settings


PROMPTS_DIR = Path(__file__).resolve().parent


def load_system_prompt(locale: str = "en", override: Optional[str] = None) -> str:
    """加载系统提示词文本，每次推理调用都会重新合成，不进入持久化历史。"""

    text = override if override is not None else settings.system_prompt
    if text:
        return text
    fname = PROMPTS_DIR / locale / "relay_system.md"
    return fname.read_text(encoding="utf-8").strip()
