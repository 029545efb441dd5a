"""统一的会话与后端数据模型。

本模块定义了客户端内部在传输层、本地副本与同步引擎之间共享的标准数据结构：

- Message / Conversation: 会话及其消息，时间戳均为带时区的 UTC datetime。
- Attachment: 消息附带的图片/音频/视频。
- BackendProfile / RequestTemplate: 一个后端的连接配置与可选的声明式请求模板。
- ChangeRecord / ConflictRecord: 同步子系统使用的变更记录与冲突记录。

所有 dataclass 都不直接做 JSON 序列化，序列化统一在 domain.codec 中完成。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional


# 消息角色（与 OpenAI 等厂商的 role 字段对应）
Role = Literal["user", "assistant", "system"]

AttachmentType = Literal["image", "audio", "video"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Attachment:
    """消息附件。url 既可以是远程地址，也可以是 data: 形式的内联内容。"""

    type: AttachmentType
    url: str
    file_name: Optional[str] = None
    file_size: Optional[int] = None


@dataclass
class Message:
    """一条会话消息。

    - model_name / model_id: 生成该消息时所用模型的快照，创建时固定，
      之后切换模型不会改写已展示的历史。
    """

    id: str
    role: Role
    content: str
    timestamp: datetime
    model_name: Optional[str] = None
    model_id: Optional[str] = None
    attachments: List[Attachment] = field(default_factory=list)


@dataclass
class Conversation:
    """一个会话。messages 始终按 timestamp 排序。

    is_saved 在第一次成功问答后变为 True。
    """

    id: str
    title: str
    messages: List[Message]
    created_at: datetime
    updated_at: datetime
    is_saved: bool = False


@dataclass
class RequestTemplate:
    """用户声明的请求/响应模板。

    - body: 请求体模板，支持 {{modelName}} {{messages}} {{maxTokens}}
      {{temperature}} {{apiKey}} 占位符，替换后必须是合法 JSON。
    - headers: 额外请求头，值中可使用 {{apiKey}}。
    - content_path: 响应增量的字段路径，如 "choices[0].delta.content"。
    """

    body: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    content_path: Optional[str] = None
    enabled: bool = True


@dataclass
class BackendProfile:
    """一个后端的配置：端点、凭据、线协议族与生成参数。

    family 选择已知的线协议方言（openai/claude/gemini/local/baidu），
    或 "custom" 表示完全依赖 template。
    """

    id: str
    name: str
    family: str
    endpoint: str
    credential: Optional[str] = None
    model_name: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    supports_multimodal: bool = False
    template: Optional[RequestTemplate] = None

    @property
    def display_model(self) -> str:
        return self.model_name or self.name


class ChangeKind(str, Enum):
    """离线期间记录的变更类型。"""

    CREATE_CONVERSATION = "create_conversation"
    UPDATE_TITLE = "update_title"
    DELETE_CONVERSATION = "delete_conversation"
    UPDATE_MESSAGES = "update_messages"


@dataclass
class ChangeRecord:
    """离线变更日志中的一条记录，回放成功后单独移除。"""

    id: str
    kind: ChangeKind
    target_id: str
    payload: Dict[str, Any]
    timestamp: datetime


class ConflictStrategy(str, Enum):
    LOCAL_WINS = "local"
    REMOTE_WINS = "remote"
    LATEST_WINS = "latest"
    MERGE = "merge"


@dataclass
class ConflictRecord:
    """一次同步过程中检测到的冲突，持久化解决结果后即丢弃。"""

    conversation_id: str
    local: Conversation
    remote: Conversation
    strategy: ConflictStrategy
    resolved: bool = False
    resolved_snapshot: Optional[Conversation] = None
