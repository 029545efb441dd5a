"""后端预设。

预设只提供端点占位、线协议族与默认模型名，凭据与生成参数由用户补全。
通过 profile_from_preset 生成具体的 BackendProfile。
"""

from dataclasses import dataclass
from typing import Mapping, Optional
from uuid import uuid4

from chat_core.domain.models import BackendProfile


@dataclass(frozen=True)
class BackendPreset:
    id: str
    name: str
    family: str
    endpoint: str
    model_name: Optional[str] = None
    supports_multimodal: bool = False


PRESETS: Mapping[str, BackendPreset] = {
    p.id: p
    for p in (
        BackendPreset("openai-gpt4", "OpenAI GPT-4", "openai", "https://api.openai.com/v1/chat/completions", "gpt-4"),
        BackendPreset(
            "openai-gpt4v",
            "OpenAI GPT-4V",
            "openai",
            "https://api.openai.com/v1/chat/completions",
            "gpt-4-vision-preview",
        ),
        BackendPreset(
            "claude-3-sonnet",
            "Claude 3 Sonnet",
            "claude",
            "https://api.anthropic.com/v1/messages",
            "claude-3-sonnet-20240229",
        ),
        BackendPreset(
            "gemini-pro",
            "Google Gemini Pro",
            "gemini",
            "https://generativelanguage.googleapis.com/v1beta/models/gemini-pro:generateContent",
        ),
        BackendPreset(
            "baidu-wenxin",
            "百度文心（千帆）",
            "baidu",
            "https://qianfan.baidubce.com/v2/chat/completions",
            "ernie-4.0-turbo-8k",
        ),
        BackendPreset(
            "baidu-qwen-vl",
            "百度千问 VL",
            "baidu",
            "https://qianfan.baidubce.com/v2/chat/completions",
            "qwen3-vl-8b-thinking",
            supports_multimodal=True,
        ),
        BackendPreset("deepseek-coder", "DeepSeek Coder", "deepseek", "https://api.deepseek.com/v1/chat/completions", "deepseek-coder"),
        BackendPreset("local-ollama", "本地 Ollama", "local", "http://localhost:11434/api/chat", "llama3"),
        BackendPreset("custom", "自定义模型", "custom", "https://your-api-endpoint.com/v1/chat/completions"),
    )
}


def get_preset(preset_id: str) -> BackendPreset:
    """根据 id 获取预设，不区分大小写。"""

    key = preset_id.lower()
    for k, preset in PRESETS.items():
        if k.lower() == key:
            return preset
    raise KeyError(f"Unknown backend preset: {preset_id!r}")


def profile_from_preset(
    preset_id: str,
    credential: Optional[str] = None,
    endpoint: Optional[str] = None,
    **overrides,
) -> BackendProfile:
    preset = get_preset(preset_id)
    fields = {
        "id": f"b-{uuid4().hex}",
        "name": preset.name,
        "family": preset.family,
        "endpoint": endpoint or preset.endpoint,
        "credential": credential,
        "model_name": preset.model_name,
        "supports_multimodal": preset.supports_multimodal,
    }
    fields.update(overrides)
    return BackendProfile(**fields)
