"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在会话控制层或 UI 层做统一捕获与用户提示。

传输层与配置层的处理策略不同：
- 解析/提取边界偏向健壮：上游后端格式并不完全规范，ExtractionError 只在内部使用，
  对外表现为"本事件无内容"。
- 配置边界偏向严格：TemplateError 代表配置缺陷，立即暴露，从不重试。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 conversation_id、family 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class TransportError(BusinessError):
    """与后端通信失败（网络或 HTTP 层面）。"""


class NetworkError(TransportError):
    """网络层错误，例如连接失败、读中断等。"""


class ApiError(TransportError):
    """后端返回非 2xx 状态码时抛出。"""


class RateLimitError(ApiError):
    """后端限流 (HTTP 429)。"""


class ExtractionError(BusinessError):
    """无法识别的响应负载。只在提取器内部抛出并被吞掉。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class TemplateError(ValidationError):
    """声明式请求模板替换后无法解析为结构化数据。"""


class RemoteStoreError(BusinessError):
    """远端存储读写失败，触发离线降级与变更记录。"""


class ConversationNotFoundError(BusinessError):
    """本地副本中不存在该会话。"""


class MessageNotFoundError(BusinessError):
    """会话中不存在该消息。"""
