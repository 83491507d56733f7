from __future__ import annotations

import asyncio
from typing import Literal, TypedDict

import httpx

STRICT_SYSTEM_PROMPT = "Return STRICT JSON matching the provided schema. No markdown. No commentary."
RETRY_DELAYS_S = (0.5, 1.5)
RETRYABLE_STATUS = frozenset({408, 409, 429, 500, 502, 503, 504})


class ChatMessage(TypedDict):
    role: Literal["system", "user", "assistant"]
    content: str


class ProviderCallError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


def json_schema_response_format(*, name: str, schema: dict, strict: bool = True) -> dict:
    return {
        "type": "json_schema",
        "json_schema": {"name": name, "schema": schema, "strict": strict},
    }


def _endpoint_url(*, base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


def _with_strict_system(messages: list[ChatMessage]) -> list[ChatMessage]:
    rest = [m for m in messages if not (m["role"] == "system" and m["content"].strip() == STRICT_SYSTEM_PROMPT)]
    return [{"role": "system", "content": STRICT_SYSTEM_PROMPT}, *rest]


def extract_message_content(data: dict) -> str:
    choices = data.get("choices") if isinstance(data, dict) else None
    if not isinstance(choices, list) or not choices:
        raise ProviderCallError("response has no choices", retryable=False)
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str) or not content.strip():
        raise ProviderCallError("empty model content")
    return content


async def _post_once(
    client: httpx.AsyncClient,
    *,
    endpoint: str,
    api_key: str,
    payload: dict,
) -> str:
    response = await client.post(
        endpoint,
        headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
        json=payload,
    )
    if response.status_code != 200:
        raise ProviderCallError(
            f"chat/completions returned {response.status_code}",
            status_code=response.status_code,
            retryable=response.status_code in RETRYABLE_STATUS,
        )
    try:
        data = response.json()
    except ValueError as exc:
        raise ProviderCallError("chat/completions returned a non-json body") from exc
    return extract_message_content(data)


async def call_chat_completions(
    *,
    api_key: str,
    base_url: str,
    path: str,
    model: str,
    messages: list[ChatMessage],
    response_format: dict,
    timeout_s: float,
    temperature: float = 0.7,
    max_attempts: int = 3,
) -> str:
    endpoint = _endpoint_url(base_url=base_url, path=path)
    payload = {
        "model": model,
        "messages": _with_strict_system(messages),
        "temperature": temperature,
        "response_format": response_format,
    }
    attempts = max(1, int(max_attempts))
    last_error: Exception | None = None
    async with httpx.AsyncClient(timeout=httpx.Timeout(timeout_s)) as client:
        for attempt in range(attempts):
            try:
                return await _post_once(client, endpoint=endpoint, api_key=api_key, payload=payload)
            except ProviderCallError as exc:
                last_error = exc
                if not exc.retryable:
                    break
            except httpx.HTTPError as exc:
                last_error = exc
            if attempt >= attempts - 1:
                break
            await asyncio.sleep(RETRY_DELAYS_S[min(attempt, len(RETRY_DELAYS_S) - 1)])
    raise ProviderCallError(f"chat completions failed after {attempt + 1} attempt(s): {last_error}")
