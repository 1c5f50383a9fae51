"""Relay Core 顶层包。

该包提供流式聊天中继的核心实现，
包括配置加载、领域模型、推理后端适配、流解码、
会话历史存储、逐连接会话中继与客户端重连能力。
"""

from relay_core.api.app import create_app

__all__ = ["create_app"]
