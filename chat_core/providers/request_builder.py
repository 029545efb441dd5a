"""根据后端配置、历史消息和可选模板构造出站请求。

- 附件只对需要多模态 content parts 的族（百度千帆）渲染为类型化分段，
  其他族只发送纯文本，附件被静默丢弃。
- 模板按字面量替换占位符后再解析为 JSON，解析失败立即抛 TemplateError，从不吞掉。
- 凭据只在发送时替换进请求，日志中只出现 redacted_headers()。
- stream=False 生成同一逻辑请求的非流式版本，供传输层回退使用。
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from chat_core.config.settings import settings
from chat_core.domain.exceptions import TemplateError
from chat_core.domain.models import BackendProfile, Message, RequestTemplate
from chat_core.providers.families import BackendFamily, GenerationParams, family_for_profile

# 回退路径在没有模板时使用的最小请求体
FALLBACK_BODY_TEMPLATE = '{"model": "{{modelName}}", "messages": {{messages}}}'

_SENSITIVE_HEADERS = {"authorization", "x-api-key", "api-key"}


@dataclass
class BuiltRequest:
    url: str
    body: Dict[str, Any]
    headers: Dict[str, str]
    stream: bool = True
    secrets: List[str] = field(default_factory=list, repr=False)

    def redacted_headers(self) -> Dict[str, str]:
        """用于日志的请求头副本，凭据全部打码。"""

        out: Dict[str, str] = {}
        for key, value in self.headers.items():
            if key.lower() in _SENSITIVE_HEADERS or any(s and s in value for s in self.secrets):
                out[key] = "***"
            else:
                out[key] = value
        return out


def render_message(message: Message, multimodal: bool) -> Dict[str, Any]:
    """把一条消息转换成请求中的 {role, content}。"""

    if not multimodal or not message.attachments:
        return {"role": message.role, "content": message.content}

    parts: List[Dict[str, Any]] = []
    for att in message.attachments:
        if att.type == "image":
            parts.append({"type": "image_url", "image_url": {"url": att.url}})
        elif att.type == "audio":
            parts.append({"type": "audio", "audio": {"url": att.url}})
        elif att.type == "video":
            parts.append({"type": "video", "video": {"url": att.url}})
    if message.content.strip():
        parts.append({"type": "text", "text": message.content})
    return {"role": message.role, "content": parts}


class RequestBuilder:
    def __init__(self, default_max_tokens: Optional[int] = None, default_temperature: Optional[float] = None):
        self._default_max_tokens = default_max_tokens or settings.default_max_tokens
        self._default_temperature = (
            default_temperature if default_temperature is not None else settings.default_temperature
        )

    def build(
        self,
        profile: BackendProfile,
        history: List[Message],
        template: Optional[RequestTemplate] = None,
        stream: bool = True,
    ) -> BuiltRequest:
        family = family_for_profile(profile)
        template = template or profile.template
        if template is not None and not template.enabled:
            template = None
        messages = [render_message(m, family.multimodal_parts) for m in history]
        params = self._params(profile, family)

        if template and template.body:
            body = self._render_template(template.body, profile, params, messages)
        elif not stream and family.fallback_statuses:
            body = self._render_template(FALLBACK_BODY_TEMPLATE, profile, params, messages)
        else:
            body = family.shape_body(params, messages)

        if stream:
            body.setdefault("stream", True)
        else:
            body.pop("stream", None)

        headers = self._headers(profile, family, template)
        secrets = [profile.credential] if profile.credential else []
        return BuiltRequest(url=profile.endpoint, body=body, headers=headers, stream=stream, secrets=secrets)

    def _params(self, profile: BackendProfile, family: BackendFamily) -> GenerationParams:
        return GenerationParams(
            model=profile.model_name or family.default_model,
            max_tokens=profile.max_tokens or self._default_max_tokens,
            temperature=profile.temperature if profile.temperature is not None else self._default_temperature,
        )

    @staticmethod
    def _render_template(
        raw: str,
        profile: BackendProfile,
        params: GenerationParams,
        messages: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        # {{messages}} 最后替换，消息正文里出现的占位符不会被展开
        text = (
            raw.replace("{{modelName}}", profile.model_name or profile.name)
            .replace("{{maxTokens}}", str(params.max_tokens))
            .replace("{{temperature}}", str(params.temperature))
            .replace("{{apiKey}}", profile.credential or "")
            .replace("{{messages}}", json.dumps(messages, ensure_ascii=False))
        )
        try:
            body = json.loads(text)
        except json.JSONDecodeError as e:
            raise TemplateError(
                code="TEMPLATE_INVALID",
                message=f"Request body template is not valid JSON after substitution: {e.msg}",
                profile_id=profile.id,
            )
        if not isinstance(body, dict):
            raise TemplateError(
                code="TEMPLATE_INVALID",
                message="Request body template must render to a JSON object",
                profile_id=profile.id,
            )
        return body

    @staticmethod
    def _headers(
        profile: BackendProfile,
        family: BackendFamily,
        template: Optional[RequestTemplate],
    ) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        credential = profile.credential or ""
        if template and template.headers:
            for key, value in template.headers.items():
                headers[key] = str(value).replace("{{apiKey}}", credential)
        elif template and credential:
            headers["Authorization"] = f"Bearer {credential}"
        elif credential:
            headers.update(family.auth_headers(credential))
        return headers
