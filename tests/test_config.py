"""
Tests for configuration loading and prompt resolution.
"""

import dataclasses
import os
from unittest.mock import patch

import pytest

from src.relay.config import (
    DEFAULT_SYSTEM_PROMPT,
    ConfigError,
    get_config,
    init_config,
)
from src.relay.prompt_utils import get_system_prompt, resolve_prompt


class TestGetConfig:
    def test_values_from_environment(self):
        config = get_config()

        assert config.public_host == "test.ngrok.io"
        assert config.language == "lt-LT"
        assert config.openai_base_url == "https://api.test/v1"
        assert config.generation_timeout_seconds == 25.0
        assert config.segment_soft_limit == 80
        assert config.segment_hard_limit == 190
        assert config.send_language_on_setup is True
        assert config.uses_elevenlabs is False

    def test_config_is_cached(self):
        assert get_config() is get_config()

    def test_legacy_lang_variable(self):
        with patch.dict(os.environ, {"RELAY_LANGUAGE": "", "LANG": "en-US"}):
            get_config.cache_clear()
            assert get_config().language == "en-US"

    def test_posix_locale_is_not_a_language(self):
        with patch.dict(os.environ, {"RELAY_LANGUAGE": "", "LANG": "en_US.UTF-8"}):
            get_config.cache_clear()
            assert get_config().language == "lt-LT"

    def test_bad_numbers_use_defaults(self):
        with patch.dict(os.environ, {"PORT": "abc", "GENERATION_TIMEOUT_SECONDS": "soon"}):
            get_config.cache_clear()
            config = get_config()

        assert config.port == 8080
        assert config.generation_timeout_seconds == 25.0

    def test_base_url_trailing_slash_is_stripped(self):
        with patch.dict(os.environ, {"OPENAI_BASE_URL": "https://proxy.example/v1/"}):
            get_config.cache_clear()
            assert get_config().openai_base_url == "https://proxy.example/v1"


class TestValidate:
    def test_init_config_accepts_test_environment(self):
        assert init_config().openai_model == "gpt-5-mini"

    def test_missing_api_key(self):
        config = dataclasses.replace(get_config(), openai_api_key="")

        with pytest.raises(ConfigError, match="OPENAI_API_KEY"):
            config.validate()

    def test_invalid_tts_provider(self):
        config = dataclasses.replace(get_config(), tts_provider="azure")

        with pytest.raises(ConfigError, match="TTS_PROVIDER"):
            config.validate()

    def test_non_positive_timeout(self):
        config = dataclasses.replace(get_config(), generation_timeout_seconds=0)

        with pytest.raises(ConfigError, match="GENERATION_TIMEOUT_SECONDS"):
            config.validate()

    def test_soft_limit_above_hard_limit(self):
        config = dataclasses.replace(get_config(), segment_soft_limit=200)

        with pytest.raises(ConfigError, match="SEGMENT_SOFT_LIMIT"):
            config.validate()


class TestPrompts:
    def test_default_system_prompt(self):
        assert get_system_prompt(get_config()) == DEFAULT_SYSTEM_PROMPT

    def test_inline_prompt_wins(self, tmp_path):
        prompt_file = tmp_path / "prompt.txt"
        prompt_file.write_text("Iš failo", encoding="utf-8")

        assert resolve_prompt(inline_text=" Tiesiogiai ", file_path=str(prompt_file)) == "Tiesiogiai"

    def test_prompt_from_file(self, tmp_path):
        prompt_file = tmp_path / "prompt.txt"
        prompt_file.write_text("\nIš failo\n", encoding="utf-8")
        config = dataclasses.replace(get_config(), system_prompt_file=str(prompt_file))

        assert get_system_prompt(config) == "Iš failo"

    def test_missing_file_falls_back(self, tmp_path):
        config = dataclasses.replace(get_config(), system_prompt_file=str(tmp_path / "nope.txt"))

        assert get_system_prompt(config) == DEFAULT_SYSTEM_PROMPT

    def test_long_prompt_is_truncated(self):
        assert resolve_prompt(inline_text="a" * 50, file_path="", max_chars=10) == "a" * 10
