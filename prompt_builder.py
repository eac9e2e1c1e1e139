"""
Outbound request shaping.

Chat-style providers get a list of role/content turns. Single-prompt
providers get one flattened prompt over a sliding window of the
conversation, checked against the legacy token budget before dispatch.
"""

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Iterable, Optional

import tiktoken

from conversation import Message
from gateway_errors import PromptTooLong
from providers import ApiStyle, ProviderConfig, SystemPreamble

logger = logging.getLogger(__name__)

MAX_TOKENS = 4097
SAFETY_MARGIN = 25
HISTORY_WINDOW = 25

SYSTEM_PREAMBLE = "You are a helpful assistant."

PROMPT_PREAMBLE = """Hello, I am a chatbot powered by GPT-3. You can ask me anything and I will try my best to answer your questions.

To format my responses with code blocks, you can use the following markdown syntax:

```
Your code goes here
```

To format my responses with inline code, you can use the following markdown syntax:

`Your code goes here`

Feel free to ask me anything and I will do my best to help.

"""

_ROLE_BY_SPEAKER = {"human": "user", "bot": "assistant"}
_PREFIX_BY_SPEAKER = {"human": "Human", "bot": "Bot"}


@dataclass(frozen=True)
class OutboundRequest:
    url: str
    payload: dict[str, Any]
    streaming: bool
    api_style: ApiStyle
    prompt_tokens: Optional[int] = None


@lru_cache(maxsize=None)
def _tiktoken_for_model(model: str) -> tiktoken.Encoding:
    """Tokenizer selection for an upstream model slug."""
    if "/" in model:
        model = model.split("/", 1)[1]
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        return tiktoken.get_encoding("cl100k_base")


def count_tokens(text: str, model: str = "text-davinci-002") -> int:
    return len(_tiktoken_for_model(model).encode(text))


def chat_messages(conversation: Iterable[Message], preamble: SystemPreamble) -> list[dict[str, str]]:
    messages = []
    if preamble is SystemPreamble.CUSTOM:
        messages.append({"role": "system", "content": SYSTEM_PREAMBLE})
    for message in conversation:
        messages.append({"role": _ROLE_BY_SPEAKER[message.speaker], "content": message.text})
    return messages


def render_prompt(conversation: Iterable[Message]) -> str:
    """Render the last HISTORY_WINDOW messages into a single prompt ending with a `Bot: ` cue."""
    window = list(conversation)[-HISTORY_WINDOW:]
    parts = [PROMPT_PREAMBLE]
    for message in window:
        parts.append(f"{_PREFIX_BY_SPEAKER[message.speaker]}: {message.text.strip()}\n\n")
    parts.append("Bot: ")
    return "".join(parts)


def build_request(
    conversation: Iterable[Message],
    model: str,
    provider: ProviderConfig,
    temperature: float = 0.5,
    tokenizer: Callable[[str, str], int] = count_tokens,
) -> OutboundRequest:
    """
    Build the upstream request for a resolved provider.

    Raises:
        PromptTooLong: the rendered single prompt leaves no room for a completion.
    """
    if provider.api_style is ApiStyle.CHAT:
        payload: dict[str, Any] = {
            "model": model,
            "messages": chat_messages(conversation, provider.system_preamble),
            "stream": provider.streaming,
        }
        # o1-style buffered models only accept the default temperature
        if provider.streaming:
            payload["temperature"] = temperature
        if provider.stop_sequence:
            payload["stop"] = provider.stop_sequence
        return OutboundRequest(provider.endpoint, payload, provider.streaming, provider.api_style)

    prompt = render_prompt(conversation)
    prompt_tokens = tokenizer(prompt, model)
    limit = MAX_TOKENS - SAFETY_MARGIN
    if prompt_tokens >= limit:
        raise PromptTooLong(prompt_tokens, limit)
    max_tokens = MAX_TOKENS - prompt_tokens - SAFETY_MARGIN
    logger.debug(f"Prompt tokens: {prompt_tokens}, completion budget: {max_tokens}")

    payload = {
        "model": model,
        "prompt": prompt,
        "temperature": temperature,
        "max_tokens": max_tokens,
        "stream": provider.streaming,
    }
    if provider.stop_sequence:
        payload["stop"] = provider.stop_sequence
    return OutboundRequest(
        provider.endpoint, payload, provider.streaming, provider.api_style, prompt_tokens=prompt_tokens
    )
