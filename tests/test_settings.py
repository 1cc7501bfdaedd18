import pytest

from main import DEFAULT_API_BASE, load_settings


def test_defaults():
    settings = load_settings({})
    assert settings.key_pool.slots == (None, None, None, None)
    assert settings.key_pool.prefix == "GEMINI_API_KEY"
    assert settings.model == "gemini-2.5-flash"
    assert settings.generation.temperature == 0.9
    assert settings.generation.max_output_tokens == 2048
    assert settings.endpoint == f"{DEFAULT_API_BASE}/models/gemini-2.5-flash:generateContent"


def test_blank_values_are_unset():
    settings = load_settings({"GEMINI_API_KEY1": "abc", "GEMINI_API_KEY2": "   ", "GEMINI_API_KEY3": ""})
    assert settings.key_pool.slots == ("abc", None, None, None)


def test_overrides():
    settings = load_settings({
        "GEMINI_KEY_PREFIX": "MY_KEY_",
        "GEMINI_KEY_COUNT": "2",
        "MY_KEY_1": "x",
        "MY_KEY_2": "y",
        "GEMINI_MODEL": "gemini-2.0-flash",
        "GEMINI_API_BASE": "http://localhost:9000/v1beta/",
        "GEMINI_TEMPERATURE": "0.2",
        "GEMINI_MAX_OUTPUT_TOKENS": "256",
        "UPSTREAM_TIMEOUT": "5",
    })
    assert settings.key_pool.slots == ("x", "y")
    assert settings.endpoint == "http://localhost:9000/v1beta/models/gemini-2.0-flash:generateContent"
    assert settings.generation.temperature == 0.2
    assert settings.generation.max_output_tokens == 256
    assert settings.timeout == 5.0


@pytest.mark.parametrize("env", [
    {"GEMINI_KEY_COUNT": "0"},
    {"GEMINI_KEY_COUNT": "four"},
    {"GEMINI_TEMPERATURE": "hot"},
])
def test_invalid_numbers_rejected(env):
    with pytest.raises(ValueError):
        load_settings(env)
