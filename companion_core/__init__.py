"""Companion Core 顶层包。

该包提供心理健康陪伴聊天应用的 AI 回复编排核心，
包括配置加载、领域模型、Provider 适配、回退编排、
会话持久化与对话轮次服务等能力。
"""

from companion_core.api.service import get_chat_history, run_chat_turn

__all__ = ["get_chat_history", "run_chat_turn"]
