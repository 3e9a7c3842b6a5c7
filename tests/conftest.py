"""Shared test fixtures for lmchat tests."""

import pytest

from lmchat.schemas import ChatMessage
from lmchat.tools import tool_from_function
from tests.scripted_backend import ScriptedBackend


# ─────────────────────────────────────────────────────────────────────
# MOCK DATA
# ─────────────────────────────────────────────────────────────────────

MOCK_SERVER_URL = "http://llama-test:8080"
MOCK_MODEL_PATH = "/models/qwen2.5-7b-instruct-q4_k_m.gguf"
MOCK_MODEL_ID = "qwen2.5-7b-instruct-q4_k_m"
MOCK_N_CTX = 4096
MOCK_EOS_ID = 151645

MOCK_PROPS_RESPONSE = {
    "default_generation_settings": {
        "n_ctx": MOCK_N_CTX,
        "temperature": 0.8,
    },
    "total_slots": 1,
    "model_path": MOCK_MODEL_PATH,
    "chat_template": "{% for message in messages %}...{% endfor %}",
}

MOCK_COMPLETION_PROBS_RESPONSE = {
    "content": "Paris",
    "stop": True,
    "completion_probabilities": [
        {
            "id": 59604,
            "token": "Paris",
            "logprob": -0.05,
            "top_logprobs": [
                {"id": 59604, "token": "Paris", "bytes": [80, 97, 114, 105, 115], "logprob": -0.05},
                {"id": 785, "token": " The", "bytes": [32, 84, 104, 101], "logprob": -3.2},
                {"id": MOCK_EOS_ID, "token": "<|im_end|>", "bytes": [], "logprob": -7.5},
            ],
        }
    ],
}

WEATHER_CALL = '{"name": "get_weather", "arguments": {"city": "Paris"}}'
WEATHER_RESULT = "Sunny, 22C in Paris"


# ─────────────────────────────────────────────────────────────────────
# FIXTURES - Messages
# ─────────────────────────────────────────────────────────────────────

@pytest.fixture
def sample_messages():
    """Return a short system + user exchange."""
    return [
        ChatMessage.system("You are a helpful assistant."),
        ChatMessage.user("What is the capital of France?"),
    ]


@pytest.fixture
def weather_messages():
    return [ChatMessage.user("What's the weather in Paris?")]


# ─────────────────────────────────────────────────────────────────────
# FIXTURES - Tools
# ─────────────────────────────────────────────────────────────────────

@pytest.fixture
def weather_calls():
    """Arguments received by the weather tool, in call order."""
    return []


@pytest.fixture
def weather_tool(weather_calls):
    def get_weather(city: str) -> str:
        """Current weather for a city."""
        weather_calls.append(city)
        return f"Sunny, 22C in {city}"

    return tool_from_function(get_weather)


@pytest.fixture
def time_tool():
    def get_time() -> str:
        """Current local time."""
        return "12:00"

    return tool_from_function(get_time)


# ─────────────────────────────────────────────────────────────────────
# FIXTURES - Backends
# ─────────────────────────────────────────────────────────────────────

@pytest.fixture
def hello_backend():
    """Backend whose single reply is "Hello, world!" in four tokens."""
    return ScriptedBackend([["Hello", ",", " world", "!"]])


@pytest.fixture
def weather_backend():
    """Backend that calls get_weather for Paris, then answers with the result."""
    return ScriptedBackend([
        ["<tool_call>", WEATHER_CALL, "</tool_call>"],
        ["It is ", WEATHER_RESULT, "."],
    ])
