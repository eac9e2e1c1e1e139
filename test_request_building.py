#!/usr/bin/env python3
"""
Test suite for request validation, provider resolution and request shaping.
"""

from conversation import AUTH_COOKIE_NAME, Message, last_human_text, read_credential, validate_generate_request
from gateway_errors import PromptTooLong, UnsupportedModel, ValidationError
from prompt_builder import (
    MAX_TOKENS,
    PROMPT_PREAMBLE,
    SAFETY_MARGIN,
    SYSTEM_PREAMBLE,
    build_request,
    render_prompt,
)
from providers import ApiStyle, ProviderRegistry, SystemPreamble
from settings import GatewaySettings

SETTINGS = GatewaySettings(
    openai_api_key="sk-openai",
    openai_base_url="https://openai.test/v1",
    openrouter_api_key="sk-openrouter",
    openrouter_base_url="https://openrouter.test/api/v1",
    auth_key="server-secret",
)


def human(text: str, id=None) -> dict:
    return {"text": text, "speaker": "human", "displayName": "You", "id": id or text}


def bot(text: str, id=None) -> dict:
    return {"text": text, "speaker": "bot", "displayName": "Bot", "id": id or text}


def conversation_of(*raw) -> tuple[Message, ...]:
    return tuple(Message.model_validate(m) for m in raw)


def expect(exc_type, fn, *args, **kwargs):
    try:
        fn(*args, **kwargs)
    except exc_type as e:
        return e
    raise AssertionError(f"expected {exc_type.__name__}")


# ─────────────────────────────────────────────────────────────────────────────
# Conversation validation
# ─────────────────────────────────────────────────────────────────────────────

def test_valid_request_parses():
    body = {"messages": [human("Hi"), bot("Hello!"), human("How are you?")], "model": "gpt-3.5-turbo"}
    request = validate_generate_request({AUTH_COOKIE_NAME: "abc"}, body, "text-davinci-002")
    assert request.model == "gpt-3.5-turbo"
    assert [m.speaker for m in request.conversation] == ["human", "bot", "human"]
    assert request.credential == "abc"
    assert last_human_text(request.conversation) == "How are you?"
    assert "abc" not in repr(request)
    print("✓ valid_request_parses passed")


def test_legacy_field_names_and_default_model():
    body = {"messages": [{"text": "Hi", "party": "human", "name": "You", "id": 1}]}
    request = validate_generate_request({}, body, "text-davinci-002")
    assert request.model == "text-davinci-002"
    assert request.conversation[0].speaker == "human"
    assert request.conversation[0].display_name == "You"
    assert request.conversation[0].id == 1
    assert request.credential is None
    print("✓ legacy_field_names_and_default_model passed")


def test_first_message_from_bot_is_rejected():
    body = {"messages": [bot("I speak first"), human("Hi")], "model": "gpt-3.5-turbo"}
    err = expect(ValidationError, validate_generate_request, {}, body, "gpt-3.5-turbo")
    assert "first message" in err.message
    print("✓ first_message_from_bot_is_rejected passed")


def test_conversation_without_human_is_rejected():
    expect(ValidationError, validate_generate_request, {}, {"messages": []}, "gpt-3.5-turbo")
    print("✓ conversation_without_human_is_rejected passed")


def test_malformed_bodies_are_rejected():
    bad_bodies = [
        None,
        [],
        "messages",
        {},
        {"messages": "hi"},
        {"messages": [{"text": "Hi", "speaker": "robot"}]},
        {"messages": [{"speaker": "human"}]},
        {"messages": [human("Hi")], "model": 42},
    ]
    for body in bad_bodies:
        expect(ValidationError, validate_generate_request, {}, body, "gpt-3.5-turbo")
    print("✓ malformed_bodies_are_rejected passed")


def test_malformed_cookie_is_rejected():
    body = {"messages": [human("Hi")]}
    expect(ValidationError, validate_generate_request, {AUTH_COOKIE_NAME: "has space"}, body, "gpt-4")
    expect(ValidationError, read_credential, {AUTH_COOKIE_NAME: "bad\x00value"})
    assert read_credential({AUTH_COOKIE_NAME: ""}) is None
    assert read_credential({"other": "value"}) is None
    print("✓ malformed_cookie_is_rejected passed")


# ─────────────────────────────────────────────────────────────────────────────
# Provider registry
# ─────────────────────────────────────────────────────────────────────────────

def test_registry_resolves_known_models():
    registry = ProviderRegistry(SETTINGS)

    legacy = registry.resolve("text-davinci-002")
    assert legacy.api_style is ApiStyle.SINGLE_PROMPT
    assert legacy.endpoint == "https://openai.test/v1/completions"
    assert legacy.stop_sequence == "END_OF_STREAM"
    assert legacy.credential == "sk-openai"

    gpt4 = registry.resolve("gpt-4")
    assert gpt4.api_style is ApiStyle.CHAT
    assert gpt4.endpoint == "https://openai.test/v1/chat/completions"
    assert gpt4.requires_auth
    assert gpt4.system_preamble is SystemPreamble.CUSTOM

    claude = registry.resolve("anthropic/claude-2")
    assert claude.endpoint == "https://openrouter.test/api/v1/chat/completions"
    assert claude.credential == "sk-openrouter"
    assert not claude.requires_auth

    assert not registry.resolve("o1-mini").streaming
    assert "sk-openai" not in repr(legacy)
    print("✓ registry_resolves_known_models passed")


def test_registry_rejects_unknown_model():
    err = expect(UnsupportedModel, ProviderRegistry(SETTINGS).resolve, "gpt-17")
    assert err.model == "gpt-17"
    print("✓ registry_rejects_unknown_model passed")


def test_registry_listing_has_no_secrets():
    registry = ProviderRegistry(SETTINGS)
    listing = registry.models()
    ids = [m["id"] for m in listing]
    assert "gpt-4" in ids and "text-davinci-003" in ids
    assert "sk-openai" not in str(listing)
    assert registry.configured_hosts() == {"openai": True, "openrouter": True}
    print("✓ registry_listing_has_no_secrets passed")


# ─────────────────────────────────────────────────────────────────────────────
# Request builder
# ─────────────────────────────────────────────────────────────────────────────

def test_chat_request_maps_roles():
    registry = ProviderRegistry(SETTINGS)
    conversation = conversation_of(human("Hi"), bot("Hello!"), human("Tell me a joke"))

    request = build_request(conversation, "gpt-3.5-turbo", registry.resolve("gpt-3.5-turbo"), temperature=0.7)
    assert request.url == "https://openai.test/v1/chat/completions"
    assert request.streaming
    assert request.payload["stream"] is True
    assert request.payload["temperature"] == 0.7
    assert request.payload["messages"] == [
        {"role": "user", "content": "Hi"},
        {"role": "assistant", "content": "Hello!"},
        {"role": "user", "content": "Tell me a joke"},
    ]
    assert "stop" not in request.payload
    print("✓ chat_request_maps_roles passed")


def test_custom_preamble_adds_system_turn():
    registry = ProviderRegistry(SETTINGS)
    conversation = conversation_of(human("Hi"))
    request = build_request(conversation, "gpt-4", registry.resolve("gpt-4"))
    assert request.payload["messages"][0] == {"role": "system", "content": SYSTEM_PREAMBLE}
    assert len(request.payload["messages"]) == 2
    print("✓ custom_preamble_adds_system_turn passed")


def test_buffered_model_requests_no_stream():
    registry = ProviderRegistry(SETTINGS)
    request = build_request(conversation_of(human("Hi")), "o1-mini", registry.resolve("o1-mini"))
    assert request.payload["stream"] is False
    assert not request.streaming
    assert all(m["role"] != "system" for m in request.payload["messages"])
    print("✓ buffered_model_requests_no_stream passed")


def test_prompt_keeps_last_25_messages():
    raw = [human(f"question {i}") if i % 2 == 0 else bot(f"answer {i}") for i in range(30)]
    prompt = render_prompt(conversation_of(*raw))

    assert prompt.startswith(PROMPT_PREAMBLE)
    assert prompt.endswith("Bot: ")
    for i in range(5):
        assert f"question {i}\n" not in prompt and f"answer {i}\n" not in prompt
    for i in range(5, 30):
        assert (f"Human: question {i}\n\n" if i % 2 == 0 else f"Bot: answer {i}\n\n") in prompt
    assert prompt.count("Human: ") + prompt.count("Bot: ") == 26
    print("✓ prompt_keeps_last_25_messages passed")


def test_prompt_strips_message_text():
    prompt = render_prompt(conversation_of(human("  padded question \n")))
    assert prompt.endswith("Human: padded question\n\nBot: ")
    print("✓ prompt_strips_message_text passed")


def test_single_prompt_token_budget():
    registry = ProviderRegistry(SETTINGS)
    provider = registry.resolve("text-davinci-002")
    conversation = conversation_of(human("Hi"))

    request = build_request(conversation, "text-davinci-002", provider, tokenizer=lambda text, model: 100)
    assert request.prompt_tokens == 100
    assert request.payload["max_tokens"] == MAX_TOKENS - 100 - SAFETY_MARGIN
    assert request.payload["stop"] == "END_OF_STREAM"
    assert request.payload["prompt"].endswith("Human: Hi\n\nBot: ")
    assert request.url == "https://openai.test/v1/completions"

    limit = MAX_TOKENS - SAFETY_MARGIN
    # One token below the limit still leaves room for a completion
    request = build_request(conversation, "text-davinci-002", provider, tokenizer=lambda text, model: limit - 1)
    assert request.payload["max_tokens"] == 1

    for tokens in (limit, limit + 1, 10_000):
        err = expect(
            PromptTooLong, build_request, conversation, "text-davinci-002", provider,
            tokenizer=lambda text, model, n=tokens: n,
        )
        assert err.prompt_tokens == tokens
    print("✓ single_prompt_token_budget passed")


def test_settings_from_env():
    settings = GatewaySettings.from_env({
        "OPENAI_API_KEY": "sk-1",
        "AUTH_KEY": "top-secret",
        "FRONTEND_URL_1": "https://chat.example.com/",
        "FRONTEND_URLS": "https://a.example.com, https://chat.example.com",
        "TIMEOUT_S": "99999",
        "TEMPERATURE": "warm",
        "PORT": "8080",
    })
    assert settings.allowed_origins == ("https://chat.example.com", "https://a.example.com")
    assert settings.timeout_s == 3600
    assert settings.temperature == 0.5
    assert settings.port == 8080
    assert settings.default_model == "text-davinci-002"
    assert "top-secret" not in repr(settings)
    assert "sk-1" not in repr(settings)
    print("✓ settings_from_env passed")


def run_all_tests():
    """Run all tests."""
    try:
        test_valid_request_parses()
        test_legacy_field_names_and_default_model()
        test_first_message_from_bot_is_rejected()
        test_conversation_without_human_is_rejected()
        test_malformed_bodies_are_rejected()
        test_malformed_cookie_is_rejected()
        test_registry_resolves_known_models()
        test_registry_rejects_unknown_model()
        test_registry_listing_has_no_secrets()
        test_chat_request_maps_roles()
        test_custom_preamble_adds_system_turn()
        test_buffered_model_requests_no_stream()
        test_prompt_keeps_last_25_messages()
        test_prompt_strips_message_text()
        test_single_prompt_token_budget()
        test_settings_from_env()
        print("\n✅ All tests passed!")
    except AssertionError as e:
        print(f"\n❌ Test failed: {e}")
        raise


if __name__ == "__main__":
    run_all_tests()
