"""基于当前后端的文本翻译。

翻译复用聊天的流式传输：把带语言标记的前缀和原文拼成一条用户消息单独发送，
不携带任何会话历史。on_update 收到的同样是累积的译文全文。

参数缺失属于调用错误，直接抛出 ValidationError；
超时、中止、后端失败通过 TranslationResult.error 返回。
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Optional

from chat_core.config.settings import settings
from chat_core.domain.exceptions import ValidationError
from chat_core.domain.models import BackendProfile, Message, utcnow
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.transport import StreamState, StreamTransport

TRANSLATION_PROMPT_PREFIX = "TRANSLATE_FROM_{source}_TO_{target}:"

TIMEOUT_ERROR = "翻译超时，请重试"
ABORTED_ERROR = "翻译请求已被中止"


@dataclass
class TranslationResult:
    translated_text: str = ""
    success: bool = True
    error: Optional[str] = None


def translation_prefix(source_language: str, target_language: str) -> str:
    return TRANSLATION_PROMPT_PREFIX.format(source=source_language.upper(), target=target_language.upper())


def build_translation_prompt(text: str, source_language: str, target_language: str) -> str:
    return f"{translation_prefix(source_language, target_language)}\n\n{text}"


async def translate_text(
    transport: StreamTransport,
    profile: Optional[BackendProfile],
    text: str,
    source_language: str,
    target_language: str,
    on_update: Optional[Callable[[str], None]] = None,
    cancel: Optional[asyncio.Event] = None,
    timeout: Optional[float] = None,
) -> TranslationResult:
    """翻译一段文本。

    - 原文为空时直接返回空译文。
    - 源语言与目标语言相同（不区分大小写）时原样返回，不发请求。
    - 超时后会设置 cancel，让传输层停止读取。
    """

    source = (source_language or "").strip()
    target = (target_language or "").strip()
    if not source or not target:
        raise ValidationError(code="LANGUAGE_REQUIRED", message="源语言和目标语言不能为空")
    if profile is None or not profile.endpoint:
        raise ValidationError(code="PROFILE_REQUIRED", message="请提供有效的模型配置")

    if not text or not text.strip():
        return TranslationResult()
    if source.lower() == target.lower():
        return TranslationResult(translated_text=text)

    cancel = cancel or asyncio.Event()
    if cancel.is_set():
        return TranslationResult(success=False, error=ABORTED_ERROR)

    timeout = timeout if timeout is not None else settings.translation_timeout
    log_ctx = {"profile_id": profile.id, "source": source.upper(), "target": target.upper(), "chars": len(text)}
    prompt = Message(
        id="translation-prompt",
        role="user",
        content=build_translation_prompt(text, source, target),
        timestamp=utcnow(),
    )
    started = time.monotonic()
    try:
        result = await asyncio.wait_for(
            transport.send(profile, [prompt], on_update=on_update or (lambda _content: None), cancel=cancel),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        cancel.set()
        logger.warning("Translation timed out", extra={"extra": {**log_ctx, "timeout": timeout}})
        return TranslationResult(success=False, error=TIMEOUT_ERROR)

    if result.state is StreamState.COMPLETED:
        logger.info(
            "Translation completed",
            extra={"extra": {**log_ctx, "elapsed_seconds": round(time.monotonic() - started, 2)}},
        )
        return TranslationResult(translated_text=result.content)
    if result.state is StreamState.ABORTED:
        return TranslationResult(translated_text=result.content, success=False, error=ABORTED_ERROR)

    message = result.error.message if result.error else "unknown error"
    logger.warning("Translation failed", extra={"extra": {**log_ctx, "error": message}})
    return TranslationResult(success=False, error=f"翻译失败: {message}")
