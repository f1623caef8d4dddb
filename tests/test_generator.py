"""Tests for the chat-completion generator client."""

import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from gitmind.config import Config
from gitmind.errors import ConfigurationMissing, GeneratorError, GeneratorUnavailable
from gitmind.integrations.generator import ChatCompletionGenerator, get_generator


def _response(status_code=200, body=None, text=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = text
    if isinstance(body, Exception):
        resp.json.side_effect = body
    else:
        resp.json.return_value = body
    return resp


def _completion(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


@pytest.fixture
def generator():
    return ChatCompletionGenerator(
        api_key="test-key",
        model="test-model",
        base_url="https://ai.example.test/v1/",
        timeout=5,
    )


class TestGenerate:
    def test_returns_content(self, generator):
        with patch("gitmind.integrations.generator.requests.post") as post:
            post.return_value = _response(body=_completion("[GitMind] Fix\n--- a/x"))
            out = generator.generate("system text", "user text")

        assert out == "[GitMind] Fix\n--- a/x"
        args, kwargs = post.call_args
        assert args[0] == "https://ai.example.test/v1/chat/completions"
        assert kwargs["headers"]["Authorization"] == "Bearer test-key"
        assert kwargs["timeout"] == 5

        payload = json.loads(kwargs["data"])
        assert payload["model"] == "test-model"
        assert payload["messages"] == [
            {"role": "system", "content": "system text"},
            {"role": "user", "content": "user text"},
        ]
        assert payload["max_tokens"] == 4096

    def test_null_content_is_empty(self, generator):
        with patch("gitmind.integrations.generator.requests.post") as post:
            post.return_value = _response(body=_completion(None))
            assert generator.generate("s", "u") == ""

    @pytest.mark.parametrize("status", [429, 402])
    def test_rate_limit_and_quota(self, generator, status):
        with patch("gitmind.integrations.generator.requests.post") as post:
            post.return_value = _response(status_code=status)
            with pytest.raises(GeneratorUnavailable) as exc_info:
                generator.generate("s", "u")
        assert exc_info.value.message == "AI rate limit exceeded. Try again later."
        assert exc_info.value.details["status"] == status
        assert exc_info.value.status_code == 503

    def test_server_error(self, generator):
        with patch("gitmind.integrations.generator.requests.post") as post:
            post.return_value = _response(status_code=500, text="boom")
            with pytest.raises(GeneratorError) as exc_info:
                generator.generate("s", "u")
        assert exc_info.value.message == "AI error: 500"

    def test_timeout(self, generator):
        with patch("gitmind.integrations.generator.requests.post", side_effect=requests.Timeout()):
            with pytest.raises(GeneratorUnavailable):
                generator.generate("s", "u")

    def test_connection_error(self, generator):
        with patch("gitmind.integrations.generator.requests.post", side_effect=requests.ConnectionError("down")):
            with pytest.raises(GeneratorUnavailable):
                generator.generate("s", "u")

    def test_invalid_json(self, generator):
        with patch("gitmind.integrations.generator.requests.post") as post:
            post.return_value = _response(body=ValueError("not json"))
            with pytest.raises(GeneratorError):
                generator.generate("s", "u")

    def test_missing_choices(self, generator):
        with patch("gitmind.integrations.generator.requests.post") as post:
            post.return_value = _response(body={"choices": []})
            with pytest.raises(GeneratorError):
                generator.generate("s", "u")


class TestChat:
    def test_history_follows_system_prompt(self, generator):
        history = [
            {"role": "user", "content": "what does app.py do?", "id": 1},
            {"role": "assistant", "content": "It answers."},
        ]
        with patch("gitmind.integrations.generator.requests.post") as post:
            post.return_value = _response(body=_completion("Sure."))
            assert generator.chat(history, "be brief") == "Sure."

        payload = json.loads(post.call_args.kwargs["data"])
        assert payload["messages"][0] == {"role": "system", "content": "be brief"}
        assert payload["messages"][1] == {"role": "user", "content": "what does app.py do?"}
        assert payload["max_tokens"] == 2048


class TestFactory:
    def test_requires_api_key(self):
        with pytest.raises(ConfigurationMissing):
            get_generator(Config())

    def test_builds_from_config(self):
        config = Config(generator_api_key="k", generator_model="m", generator_base_url="https://x/v1")
        gen = get_generator(config)
        assert gen.model == "m"
        assert gen.base_url == "https://x/v1"
