import pytest

from chat_core.providers import profile_from_preset
from chat_core.providers.families import BAIDU, CLAUDE, LOCAL, family_for_profile
from chat_core.providers.registry import PRESETS, get_preset


def test_presets_cover_known_families():
    families = {p.family for p in PRESETS.values()}
    assert {"openai", "claude", "gemini", "baidu", "local", "custom"} <= families


def test_profile_from_preset_with_overrides():
    profile = profile_from_preset("OpenAI-GPT4", credential="sk-x", max_tokens=512)
    assert profile.family == "openai"
    assert profile.model_name == "gpt-4"
    assert profile.credential == "sk-x"
    assert profile.max_tokens == 512
    assert profile.id.startswith("b-")
    assert profile_from_preset("openai-gpt4").id != profile.id


def test_multimodal_preset():
    profile = profile_from_preset("baidu-qwen-vl")
    assert profile.supports_multimodal
    assert family_for_profile(profile) is BAIDU


def test_unknown_preset():
    with pytest.raises(KeyError):
        get_preset("nope")


def test_family_resolution_for_profiles():
    assert family_for_profile(profile_from_preset("claude-3-sonnet")) is CLAUDE
    assert family_for_profile(profile_from_preset("local-ollama")) is LOCAL
    custom_on_qianfan = profile_from_preset("custom", endpoint="https://qianfan.baidubce.com/v2/chat/completions")
    assert family_for_profile(custom_on_qianfan) is BAIDU
