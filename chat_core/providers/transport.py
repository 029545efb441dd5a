"""一次聊天补全调用的完整编排。

状态机：Idle → Sending → Streaming → {Completed | Failed | Aborted}

- 每次 on_update 传给调用方的都是"到目前为止累积的全文"，而不是最新增量，
  调用方每次直接替换显示内容即可。
- 除非被中止，每次 send 恰好触发 on_complete / on_error 之一；
  每次读取都与中止信号竞争，停滞的流也能立即中止；观察到中止之后不再触发任何回调。
- 只有声明了 fallback_statuses 的族（百度千帆，HTTP 401）会自动用非流式请求重试一次。
- 模板错误属于配置缺陷：通过 on_error 报告，状态为 Failed，不重试。

当前使用的后端通过参数显式传入，传输层本身不持有任何全局可变状态。
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import (
    ApiError,
    BusinessError,
    ExtractionError,
    NetworkError,
    RateLimitError,
    TemplateError,
    TransportError,
)
from chat_core.domain.models import BackendProfile, Message
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.extractor import ResponseExtractor, decode_payload, first_text, resolve_path
from chat_core.providers.families import BackendFamily, family_for_profile
from chat_core.providers.request_builder import BuiltRequest, RequestBuilder
from chat_core.providers.wire import WireFormatParser, framing_for_content_type


class StreamState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


UpdateCallback = Callable[[str], None]
CompleteCallback = Callable[[str], None]
ErrorCallback = Callable[[BusinessError], None]


@dataclass
class StreamResult:
    """一次 send 的最终结果。content 为已交付给调用方的累积文本。"""

    state: StreamState
    content: str = ""
    error: Optional[BusinessError] = None
    used_fallback: bool = False


class StreamTransport:
    def __init__(self, builder: Optional[RequestBuilder] = None, http_timeout: Optional[float] = None):
        self._builder = builder or RequestBuilder()
        self._http_timeout = http_timeout or settings.http_timeout

    async def send(
        self,
        profile: BackendProfile,
        history: List[Message],
        *,
        on_update: UpdateCallback,
        on_complete: Optional[CompleteCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> StreamResult:
        cancel = cancel or asyncio.Event()
        family = family_for_profile(profile)
        result = StreamResult(state=StreamState.SENDING)
        started = time.monotonic()
        log_ctx = {"profile_id": profile.id, "family": family.tag}

        try:
            request = self._builder.build(profile, history, stream=True)
        except TemplateError as e:
            return self._fail(result, e, on_error, log_ctx)

        logger.info(
            "Calling backend (stream)",
            extra={"extra": {
                **log_ctx,
                "url": request.url,
                "headers": request.redacted_headers(),
                "message_count": len(history),
            }},
        )

        try:
            await self._stream(request, profile, family, result, on_update, cancel)
        except asyncio.CancelledError:
            result.state = StreamState.ABORTED
            raise
        except TransportError as e:
            if cancel.is_set():
                return self._abort(result, log_ctx)
            if not self._should_fallback(family, e):
                return self._fail(result, e, on_error, log_ctx)
            logger.warning(
                "Streaming rejected, retrying without stream",
                extra={"extra": {**log_ctx, "http_status": e.http_status}},
            )
            try:
                await self._fallback(profile, history, family, result, on_update, cancel)
            except (TemplateError, TransportError) as fallback_error:
                if cancel.is_set():
                    return self._abort(result, log_ctx)
                return self._fail(result, fallback_error, on_error, log_ctx)

        if cancel.is_set():
            return self._abort(result, log_ctx)
        result.state = StreamState.COMPLETED
        logger.info(
            "Stream completed",
            extra={"extra": {
                **log_ctx,
                "chars": len(result.content),
                "fallback": result.used_fallback,
                "elapsed_seconds": round(time.monotonic() - started, 2),
            }},
        )
        if on_complete:
            on_complete(result.content)
        return result

    # ---- 流式 ----

    async def _stream(
        self,
        request: BuiltRequest,
        profile: BackendProfile,
        family: BackendFamily,
        result: StreamResult,
        on_update: UpdateCallback,
        cancel: asyncio.Event,
    ) -> None:
        content_path = profile.template.content_path if profile.template and profile.template.enabled else None
        extractor = ResponseExtractor(family=family.tag, content_path=content_path)
        # 主流式请求没有读超时，只受调用方取消控制
        timeout = httpx.Timeout(None, connect=self._http_timeout)
        try:
            async with httpx.AsyncClient(timeout=timeout, trust_env=False) as client:
                async with client.stream(
                    "POST",
                    request.url,
                    json=request.body,
                    headers=request.headers,
                ) as resp:
                    await self._raise_for_status(resp)
                    result.state = StreamState.STREAMING
                    parser = WireFormatParser(framing_for_content_type(resp.headers.get("content-type")))
                    payloads = 0
                    unrecognized = 0
                    stream = parser.parse(resp.aiter_bytes()).__aiter__()
                    cancel_wait = asyncio.ensure_future(cancel.wait())
                    try:
                        while True:
                            payload = await self._next_payload(stream, cancel_wait)
                            if payload is None or cancel.is_set():
                                break
                            payloads += 1
                            try:
                                parsed = decode_payload(payload)
                            except ExtractionError:
                                unrecognized += 1
                                continue
                            delta = extractor.extract_parsed(parsed)
                            if delta:
                                result.content += delta
                                on_update(result.content)
                    finally:
                        cancel_wait.cancel()
                    if cancel.is_set():
                        return
                    if payloads and unrecognized == payloads:
                        raise ApiError(
                            code="UNRECOGNIZED_STREAM",
                            message="No payload in the stream could be decoded",
                            http_status=resp.status_code,
                        )
        except (httpx.RequestError, httpx.StreamError) as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or type(e).__name__)

    @staticmethod
    async def _next_payload(stream, cancel_wait: "asyncio.Future") -> Optional[str]:
        """读取下一个负载，同时等待取消信号；流结束或先收到取消时返回 None。"""

        next_task = asyncio.ensure_future(stream.__anext__())
        try:
            done, _ = await asyncio.wait({next_task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            next_task.cancel()
            raise
        if next_task not in done:
            # 停滞的读取不会自己返回
            next_task.cancel()
            await asyncio.wait({next_task})
            return None
        try:
            return next_task.result()
        except StopAsyncIteration:
            return None

    # ---- 非流式回退 ----

    @staticmethod
    def _should_fallback(family: BackendFamily, error: TransportError) -> bool:
        return isinstance(error, ApiError) and error.http_status in family.fallback_statuses

    async def _fallback(
        self,
        profile: BackendProfile,
        history: List[Message],
        family: BackendFamily,
        result: StreamResult,
        on_update: UpdateCallback,
        cancel: asyncio.Event,
    ) -> None:
        request = self._builder.build(profile, history, stream=False)
        result.used_fallback = True
        try:
            async with httpx.AsyncClient(timeout=self._http_timeout, trust_env=False) as client:
                resp = await client.post(request.url, json=request.body, headers=request.headers)
                await self._raise_for_status(resp)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or type(e).__name__)
        try:
            data = resp.json()
        except ValueError:
            raise ApiError(code="INVALID_RESPONSE", message="Response body is not JSON", http_status=resp.status_code)

        content_path = profile.template.content_path if profile.template and profile.template.enabled else None
        content = first_text(data, family.final_paths)
        if not content and content_path:
            value = resolve_path(data, content_path)
            content = value if isinstance(value, str) else ""
        if not content:
            error = data.get("error") if isinstance(data, dict) else None
            if error:
                message = error.get("message") if isinstance(error, dict) else str(error)
                raise ApiError(code="API_ERROR", message=message or "Backend returned an error", http_status=resp.status_code)
            raise ApiError(code="EMPTY_RESPONSE", message="未收到有效响应", http_status=resp.status_code)
        if cancel.is_set():
            return
        result.content = content
        on_update(result.content)

    @staticmethod
    async def _raise_for_status(resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return
        await resp.aread()
        detail = resp.text[:500]
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="Backend rate limit", http_status=429)
        raise ApiError(code="API_ERROR", message=f"HTTP {resp.status_code}: {detail}", http_status=resp.status_code)

    # ---- 终态 ----

    @staticmethod
    def _fail(result: StreamResult, error: BusinessError, on_error: Optional[ErrorCallback], log_ctx) -> StreamResult:
        result.state = StreamState.FAILED
        result.error = error
        logger.error(
            "Stream failed",
            extra={"extra": {**log_ctx, "code": error.code, "error": error.message}},
        )
        if on_error:
            on_error(error)
        return result

    @staticmethod
    def _abort(result: StreamResult, log_ctx) -> StreamResult:
        result.state = StreamState.ABORTED
        logger.info("Stream aborted", extra={"extra": {**log_ctx, "chars": len(result.content)}})
        return result
