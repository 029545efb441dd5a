"""后端线协议族。

每个族是一个小的 tagged variant，只携带自身的三样东西：
- 请求体形状 (shape_body)
- 认证请求头 (auth_headers)
- 增量提取规则 (content_paths / final_paths)

这是一个封闭的分发表而不是类层次：新增一个族只需在 FAMILIES 中加一项。
未知的 tag 一律落到 GENERIC（OpenAI 兼容形状），保证总能构造出合法的默认请求。
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from chat_core.domain.models import BackendProfile

# 通用规则的固定优先级：OpenAI → Claude → Gemini → Ollama → 百度 → 其他常见字段
DEFAULT_CONTENT_PATHS: Tuple[str, ...] = (
    "choices[0].delta.content",
    "delta.text",
    "candidates[0].content.parts[0].text",
    "message.content",
    "result",
    "output",
    "content",
    "text",
)

# 非流式响应（回退路径）的完整内容位置
DEFAULT_FINAL_PATHS: Tuple[str, ...] = (
    "choices[0].message.content",
    "result",
)

QIANFAN_HOST = "qianfan.baidubce.com"


@dataclass(frozen=True)
class GenerationParams:
    model: Optional[str]
    max_tokens: Optional[int]
    temperature: Optional[float]


ShapeBody = Callable[[GenerationParams, List[Dict[str, Any]]], Dict[str, Any]]
AuthHeaders = Callable[[str], Dict[str, str]]


@dataclass(frozen=True)
class BackendFamily:
    tag: str
    default_model: Optional[str]
    shape_body: ShapeBody
    auth_headers: AuthHeaders
    content_paths: Tuple[str, ...] = DEFAULT_CONTENT_PATHS
    final_paths: Tuple[str, ...] = DEFAULT_FINAL_PATHS
    # 只有该族需要把附件渲染成类型化的多模态 content parts
    multimodal_parts: bool = False
    # 流式请求遇到这些状态码时，自动改用非流式请求重试一次
    fallback_statuses: Tuple[int, ...] = ()


def _bearer(credential: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {credential}"}


def _anthropic_key(credential: str) -> Dict[str, str]:
    return {"x-api-key": credential, "anthropic-version": "2023-06-01"}


def _openai_body(params: GenerationParams, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "model": params.model,
        "messages": messages,
        "stream": True,
        "max_tokens": params.max_tokens,
        "temperature": params.temperature,
    }


def _claude_body(params: GenerationParams, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "messages": messages,
        "stream": True,
        "max_tokens": params.max_tokens,
        "temperature": params.temperature,
    }
    if params.model:
        body["model"] = params.model
    return body


def _gemini_body(params: GenerationParams, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "messages": messages,
        "stream": True,
        "maxOutputTokens": params.max_tokens,
        "temperature": params.temperature,
    }


def _ollama_body(params: GenerationParams, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
    body: Dict[str, Any] = {"model": params.model, "messages": messages, "stream": True}
    generation: Dict[str, Any] = {}
    if params.temperature is not None:
        generation["temperature"] = params.temperature
    if params.max_tokens and params.max_tokens > 0:
        generation["num_predict"] = params.max_tokens
    # deepseek-r1 只接受 options 内的生成参数
    if params.model and "deepseek-r1" in params.model:
        body["options"] = generation
    else:
        body.update(generation)
    return body


def _baidu_body(params: GenerationParams, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
    body: Dict[str, Any] = {"model": params.model, "messages": messages, "stream": True}
    if params.max_tokens:
        body["max_output_tokens"] = params.max_tokens
    if params.temperature is not None:
        body["temperature"] = params.temperature
    return body


OPENAI = BackendFamily(tag="openai", default_model="gpt-4", shape_body=_openai_body, auth_headers=_bearer)
CLAUDE = BackendFamily(tag="claude", default_model=None, shape_body=_claude_body, auth_headers=_anthropic_key)
GEMINI = BackendFamily(tag="gemini", default_model=None, shape_body=_gemini_body, auth_headers=_bearer)
LOCAL = BackendFamily(tag="local", default_model="llama2", shape_body=_ollama_body, auth_headers=_bearer)
BAIDU = BackendFamily(
    tag="baidu",
    default_model="ernie-4.0-turbo-8k",
    shape_body=_baidu_body,
    auth_headers=_bearer,
    content_paths=(
        "choices[0].delta.content",
        "choices[0].message.content",
        "result",
    ),
    multimodal_parts=True,
    fallback_statuses=(401,),
)
CUSTOM = BackendFamily(tag="custom", default_model="gpt-4", shape_body=_openai_body, auth_headers=_bearer)
GENERIC = BackendFamily(tag="generic", default_model="gpt-4", shape_body=_openai_body, auth_headers=_bearer)

FAMILIES: Dict[str, BackendFamily] = {
    f.tag: f for f in (OPENAI, CLAUDE, GEMINI, LOCAL, BAIDU, CUSTOM)
}

FAMILY_ALIASES: Dict[str, str] = {
    "anthropic": "claude",
    "ollama": "local",
    "baidu-qianfan": "baidu",
}


def get_family(tag: Optional[str]) -> BackendFamily:
    """按 tag 查找族，大小写不敏感；未知 tag 返回 GENERIC。"""

    key = (tag or "").lower()
    key = FAMILY_ALIASES.get(key, key)
    return FAMILIES.get(key, GENERIC)


def family_for_profile(profile: BackendProfile) -> BackendFamily:
    """千帆端点无论声明成什么族，都按百度族处理。"""

    if QIANFAN_HOST in (profile.endpoint or ""):
        return BAIDU
    return get_family(profile.family)
