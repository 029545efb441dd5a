"""Chat Core 顶层包。

该包提供多后端流式聊天客户端的核心实现，
包括配置加载、领域模型、后端协议适配、流式传输、
本地会话副本、离线变更日志与对账同步等能力。
"""

from chat_core.agents.session_controller import ChatSessionController, SendOutcome
from chat_core.api.service import build_controller

__all__ = ["ChatSessionController", "SendOutcome", "build_controller"]
