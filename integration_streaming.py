#!/usr/bin/env python3
"""Integration checks for a running gateway against real upstream providers.

Framework-free (no pytest); point it at a deployed gateway. Runs sequential
checks and exits non-zero on the first failure.

Env vars:
- GATEWAY_BASE_URL (default: http://127.0.0.1:3000)
- GATEWAY_AUTH_KEY (default: empty; privileged checks are skipped without it)
- TEST_MODEL       (default: gpt-3.5-turbo)
- LEGACY_MODEL     (default: text-davinci-003)
- FLAKE_RUNS       (default: 10)
- STREAM_TIMEOUT_S (default: 90)
- READ_IDLE_TIMEOUT_S (default: 30)
"""

from __future__ import annotations

import asyncio
import os
import time
from typing import Any, Optional

import httpx


GATEWAY_BASE_URL = os.environ.get("GATEWAY_BASE_URL", "http://127.0.0.1:3000").rstrip("/")
GATEWAY_AUTH_KEY = os.environ.get("GATEWAY_AUTH_KEY", "")
TEST_MODEL = os.environ.get("TEST_MODEL", "gpt-3.5-turbo")
LEGACY_MODEL = os.environ.get("LEGACY_MODEL", "text-davinci-003")
FLAKE_RUNS = int(os.environ.get("FLAKE_RUNS", "10"))
STREAM_TIMEOUT_S = float(os.environ.get("STREAM_TIMEOUT_S", "90"))
READ_IDLE_TIMEOUT_S = float(os.environ.get("READ_IDLE_TIMEOUT_S", "30"))

GENERATE_PATH = "/generate-chat-completion-streaming"
AUTH_COOKIE_NAME = "__Secure-authKey"


def _url(path: str) -> str:
    if not path.startswith("/"):
        path = "/" + path
    return f"{GATEWAY_BASE_URL}{path}"


def _cookie_headers(auth_key: str) -> dict[str, str]:
    return {"Cookie": f"{AUTH_COOKIE_NAME}={auth_key}"} if auth_key else {}


def conversation(prompt: str) -> list[dict[str, Any]]:
    return [{"text": prompt, "speaker": "human", "displayName": "You", "id": "1"}]


async def wait_for_health(timeout_s: float = 20.0) -> None:
    deadline = time.time() + timeout_s
    last_err: Optional[str] = None

    async with httpx.AsyncClient(timeout=5.0) as client:
        while time.time() < deadline:
            try:
                r = await client.get(_url("/"))
                if r.status_code == 200 and r.text == "OK":
                    return
                last_err = f"status_code={r.status_code} body={r.text[:200]!r}"
            except Exception as e:
                last_err = repr(e)
            await asyncio.sleep(0.3)

    raise AssertionError(f"Gateway not healthy at {GATEWAY_BASE_URL}. Last error: {last_err}")


async def post_json(path: str, payload: Optional[dict[str, Any]] = None, auth_key: str = "") -> httpx.Response:
    async with httpx.AsyncClient(timeout=20.0) as client:
        return await client.post(_url(path), headers=_cookie_headers(auth_key), json=payload)


async def run_stream_request(model: str, prompt: str, auth_key: str = "") -> tuple[list[str], dict[str, str]]:
    """Run one generate request and return (text chunks as received, response headers)."""
    timeout = httpx.Timeout(STREAM_TIMEOUT_S, connect=10.0, read=READ_IDLE_TIMEOUT_S, write=10.0, pool=10.0)
    body = {"model": model, "messages": conversation(prompt)}

    async with httpx.AsyncClient(timeout=timeout) as client:
        async with client.stream(
            "POST", _url(GENERATE_PATH), headers=_cookie_headers(auth_key), json=body
        ) as resp:
            if resp.status_code != 200:
                raw = await resp.aread()
                raise AssertionError(f"generate failed: status={resp.status_code} body={raw[:400]!r}")
            if resp.headers.get("content-type", "").startswith("application/json"):
                raw = await resp.aread()
                raise AssertionError(f"generate returned an error payload: {raw[:400]!r}")

            chunks = [chunk async for chunk in resp.aiter_text() if chunk]
            return chunks, dict(resp.headers)


async def step(name: str, fn) -> None:
    print(f"[TEST] {name} ...", flush=True)
    await fn()
    print(f"[OK]   {name}", flush=True)


async def main() -> int:
    print(
        f"gateway={GATEWAY_BASE_URL} model={TEST_MODEL} legacy_model={LEGACY_MODEL} "
        f"flake_runs={FLAKE_RUNS} auth={'yes' if GATEWAY_AUTH_KEY else 'no'}",
        flush=True,
    )

    await step("1/8 health is ok", lambda: wait_for_health())

    async def _unknown_model():
        r = await post_json(GENERATE_PATH, {"model": "no-such-model", "messages": conversation("hi")})
        data = r.json()
        assert r.status_code == 200 and data.get("success") is False, data
        assert "Unsupported model" in data["error"]["message"], data

    await step("2/8 unknown model is rejected as JSON", _unknown_model)

    async def _bot_first():
        messages = [{"text": "I go first", "speaker": "bot", "displayName": "Bot", "id": "0"}]
        r = await post_json(GENERATE_PATH, {"model": TEST_MODEL, "messages": messages + conversation("hi")})
        assert r.json().get("success") is False, r.text

    await step("3/8 bot-first conversation is rejected", _bot_first)

    async def _chat_stream():
        chunks, hdrs = await run_stream_request(TEST_MODEL, "Say: streaming-ok")
        assert "".join(chunks).strip(), chunks
        assert hdrs.get("content-type", "").startswith("text/event-stream"), hdrs
        assert hdrs.get("x-request-id"), hdrs

    await step("4/8 chat model streams text", _chat_stream)

    async def _legacy_stream():
        chunks, _ = await run_stream_request(LEGACY_MODEL, "Write one short sentence about the sea.")
        assert "".join(chunks).strip(), chunks

    await step("5/8 legacy completion model streams text", _legacy_stream)

    async def _flake_runs():
        for i in range(1, FLAKE_RUNS + 1):
            chunks, _ = await run_stream_request(TEST_MODEL, f"Say: flake-{i}")
            assert "".join(chunks).strip(), f"run {i} returned no text"

    await step(f"6/8 flake detector ({FLAKE_RUNS} runs)", _flake_runs)

    async def _is_authed():
        r = await post_json("/is-authed", auth_key="definitely-wrong")
        assert r.json() == {"success": True, "isAuthed": False}, r.text
        if GATEWAY_AUTH_KEY:
            r = await post_json("/is-authed", auth_key=GATEWAY_AUTH_KEY)
            assert r.json() == {"success": True, "isAuthed": True}, r.text

    await step("7/8 is-authed answers for wrong and right keys", _is_authed)

    async def _privileged():
        r = await post_json(GENERATE_PATH, {"model": "gpt-4", "messages": conversation("hi")})
        assert r.json().get("success") is False, r.text
        if GATEWAY_AUTH_KEY:
            chunks, _ = await run_stream_request("gpt-4", "Say: privileged-ok", auth_key=GATEWAY_AUTH_KEY)
            assert "".join(chunks).strip(), chunks

    await step("8/8 privileged model requires the auth cookie", _privileged)

    print("ALL TESTS PASSED", flush=True)
    return 0


if __name__ == "__main__":
    try:
        raise SystemExit(asyncio.run(main()))
    except KeyboardInterrupt:
        raise SystemExit(130)
