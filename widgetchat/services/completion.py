import json
import logging
import re
from typing import AsyncIterator, Dict, List, Optional

import httpx

from widgetchat.services.errors import CompletionError
from widgetchat.settings import settings

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?|\n?```\s*$")


def _headers() -> Dict[str, str]:
    api_key = settings.get_api_key().strip()
    auth_val = api_key if api_key.lower().startswith("bearer ") else f"Bearer {api_key}"
    return {
        "Authorization": auth_val,
        "Content-Type": "application/json",
    }


def _url() -> str:
    return f"{settings.get_llm_base_url()}/chat/completions"


def strip_code_fences(text: str) -> str:
    """Remove a single wrapping ```lang ... ``` fence, if present."""
    text = text.strip()
    if text.startswith("```"):
        text = _FENCE_RE.sub("", text).strip()
    return text


async def complete(
    messages: List[Dict[str, str]],
    model: Optional[str] = None,
    temperature: float = 0.7,
    json_mode: bool = False,
    max_tokens: Optional[int] = None,
    timeout: float = 60.0,
) -> str:
    """One non-streamed completion; returns the assistant text."""
    payload = {
        "model": model or settings.get_chat_model(),
        "messages": messages,
        "temperature": temperature,
    }
    if json_mode:
        payload["response_format"] = {"type": "json_object"}
    if max_tokens:
        payload["max_tokens"] = max_tokens

    async with httpx.AsyncClient() as client:
        try:
            response = await client.post(_url(), headers=_headers(), json=payload, timeout=timeout)
        except httpx.HTTPError as e:
            raise CompletionError(f"Completion request failed: {e}") from e

    if response.status_code != 200:
        raise CompletionError(f"Completion API returned {response.status_code}: {response.text[:200]}")

    try:
        data = response.json()
        content = data["choices"][0]["message"]["content"]
    except (ValueError, KeyError, IndexError, TypeError) as e:
        raise CompletionError(f"Unexpected completion payload: {e}") from e
    if not content:
        raise CompletionError("Completion returned no content")
    return content


async def complete_json(
    messages: List[Dict[str, str]],
    model: Optional[str] = None,
    temperature: float = 0.3,
    max_tokens: Optional[int] = None,
    timeout: float = 120.0,
) -> dict:
    """Completion constrained to a JSON object; raises CompletionError if it does not parse."""
    raw = await complete(
        messages, model=model, temperature=temperature, json_mode=True, max_tokens=max_tokens, timeout=timeout
    )
    try:
        parsed = json.loads(strip_code_fences(raw))
    except json.JSONDecodeError as e:
        raise CompletionError(f"Malformed JSON from completion: {e}") from e
    if not isinstance(parsed, dict):
        raise CompletionError("Completion JSON is not an object")
    return parsed


async def stream_completion(
    messages: List[Dict[str, str]],
    model: Optional[str] = None,
    temperature: float = 0.7,
    timeout: float = 60.0,
) -> AsyncIterator[str]:
    """Yield assistant text fragments as the API streams them."""
    payload = {
        "model": model or settings.get_chat_model(),
        "messages": messages,
        "temperature": temperature,
        "stream": True,
    }

    async with httpx.AsyncClient() as client:
        try:
            async with client.stream("POST", _url(), headers=_headers(), json=payload, timeout=timeout) as response:
                if response.status_code != 200:
                    error_text = (await response.aread()).decode(errors="replace")
                    raise CompletionError(f"Completion API returned {response.status_code}: {error_text[:200]}")

                async for chunk in response.aiter_lines():
                    if not chunk or not chunk.startswith("data: "):
                        continue
                    if chunk == "data: [DONE]":
                        break
                    try:
                        data = json.loads(chunk[6:])
                    except json.JSONDecodeError:
                        logger.debug("[Completion] Skipping undecodable chunk: %s", chunk[:80])
                        continue
                    choices = data.get("choices") or []
                    if not choices:
                        continue
                    content = (choices[0].get("delta") or {}).get("content")
                    if content:
                        yield content
        except httpx.HTTPError as e:
            raise CompletionError(f"Completion stream failed: {e}") from e
