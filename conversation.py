"""
Conversation validation for the generate endpoint.

Turns the decoded body and cookies into a typed GenerateRequest, or raises
ValidationError before any upstream call or auth check happens.
"""

from dataclasses import dataclass
from typing import Any, Literal, Mapping, Optional, Union

import pydantic
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from gateway_errors import ValidationError

AUTH_COOKIE_NAME = "__Secure-authKey"


class Message(BaseModel):
    """One conversation turn as sent by the client.

    `party` and `name` are accepted as the older spellings of `speaker` and
    `displayName`.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    text: str
    speaker: Literal["human", "bot"] = Field(validation_alias=AliasChoices("speaker", "party"))
    display_name: str = Field(default="", validation_alias=AliasChoices("displayName", "name"))
    id: Union[str, int] = ""


class GenerateBody(BaseModel):
    messages: list[Message]
    model: Optional[str] = None


@dataclass(frozen=True)
class GenerateRequest:
    conversation: tuple[Message, ...]
    model: str
    credential: Optional[str]

    def __repr__(self) -> str:
        return (
            f"GenerateRequest(messages={len(self.conversation)}, model={self.model!r}, "
            f"credential={'<set>' if self.credential else None})"
        )


def _format_pydantic_error(exc: pydantic.ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "Invalid request body: " + "; ".join(parts)


def read_credential(cookies: Mapping[str, str]) -> Optional[str]:
    """Extract the auth credential cookie. An empty cookie counts as absent."""
    value = cookies.get(AUTH_COOKIE_NAME)
    if value is None or value == "":
        return None
    if not isinstance(value, str) or any(ch.isspace() or not ch.isprintable() for ch in value):
        raise ValidationError(f"Malformed {AUTH_COOKIE_NAME} cookie")
    return value


def last_human_text(conversation: tuple[Message, ...]) -> str:
    for message in reversed(conversation):
        if message.speaker == "human":
            return message.text
    return ""


def validate_generate_request(
    cookies: Mapping[str, str],
    body: Any,
    default_model: str,
) -> GenerateRequest:
    """
    Validate a generate request.

    Rules, in order:
    - body matches {messages: Message[], model?: string}
    - a non-empty conversation starts with a human message
    - at least one human message exists
    - the credential cookie, if present, is well formed
    """
    if not isinstance(body, dict):
        raise ValidationError("Invalid request body: expected a JSON object")
    try:
        parsed = GenerateBody.model_validate(body)
    except pydantic.ValidationError as e:
        raise ValidationError(_format_pydantic_error(e)) from e

    conversation = tuple(parsed.messages)
    if conversation and conversation[0].speaker != "human":
        raise ValidationError("The first message must be from the human")
    if not any(m.speaker == "human" for m in conversation):
        raise ValidationError("The conversation must contain at least one human message")

    credential = read_credential(cookies)
    model = parsed.model or default_model
    return GenerateRequest(conversation=conversation, model=model, credential=credential)
