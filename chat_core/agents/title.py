"""会话标题自动生成。"""

import re
from typing import Optional

from chat_core.domain.models import BackendProfile, Message, utcnow
from chat_core.providers.transport import StreamState, StreamTransport

TITLE_PROMPT = (
    "用户用以下问题开启了一次对话，请根据用户的问题，生成一个简短的对话标题，"
    "反应用户对话的主题（不超过20个字，不要加引号，只返回标题本身，不要其他任何说明）："
    "用户问题内容：\n\n{message}"
)
FALLBACK_TITLE = "New Conversation"

# 推理模型会先输出思维链，标题只取 </think> 之后的部分
_THINK_BLOCK = re.compile(r"[\s\S]*?</think>", re.IGNORECASE)
_EDGE_QUOTES = re.compile(r"^[\"'\s“”‘’]+|[\"'\s“”‘’]+$")


def display_width(text: str) -> int:
    return sum(2 if ord(ch) > 255 else 1 for ch in text)


def truncate_width(text: str, max_width: int) -> str:
    total = 0
    out = []
    for ch in text:
        total += 2 if ord(ch) > 255 else 1
        if total > max_width:
            break
        out.append(ch)
    return "".join(out)


def clean_title(raw: str, first_message: str, max_width: int = 40) -> str:
    title = _THINK_BLOCK.sub("", raw or "")
    lines = title.strip().split("\n")
    title = _EDGE_QUOTES.sub("", lines[0] if lines else "").strip()
    if not title:
        title = first_message.strip()[:12] or FALLBACK_TITLE
    if display_width(title) > max_width:
        title = truncate_width(title, max_width)
    return title


async def generate_title(
    transport: StreamTransport,
    profile: BackendProfile,
    first_message: str,
    max_width: int = 40,
) -> Optional[str]:
    """请求后端生成标题；后端失败或被中止时返回 None。"""

    prompt = Message(
        id="title-prompt",
        role="user",
        content=TITLE_PROMPT.format(message=first_message),
        timestamp=utcnow(),
    )
    result = await transport.send(profile, [prompt], on_update=lambda _content: None)
    if result.state is not StreamState.COMPLETED:
        return None
    return clean_title(result.content, first_message, max_width)
