from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Optional

import httpx


logger = logging.getLogger("skincare-sanctuary.llm")


async def stream_chat_completion(
    *,
    base_url: str,
    api_key: str,
    model: str,
    system_prompt: str,
    messages: list[dict[str, Any]],
    timeout_s: float,
    temperature: float = 0.7,
    max_tokens: Optional[int] = None,
) -> AsyncIterator[str]:
    """Yield assistant text deltas from an OpenAI-compatible streaming endpoint."""
    url = f"{base_url.rstrip('/')}/chat/completions"
    payload: dict[str, Any] = {
        "model": model,
        "messages": [{"role": "system", "content": system_prompt}, *messages],
        "temperature": temperature,
        "stream": True,
    }
    if max_tokens:
        payload["max_tokens"] = max_tokens
    headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}

    async with httpx.AsyncClient(timeout=timeout_s) as client:
        async with client.stream("POST", url, headers=headers, json=payload) as res:
            if res.status_code >= 400:
                await res.aread()
                logger.warning("llm_request_failed status=%s body=%s", res.status_code, res.text[:500])
                raise httpx.HTTPStatusError("LLM returned error", request=res.request, response=res)

            async for line in res.aiter_lines():
                delta = parse_sse_delta(line)
                if not delta:
                    continue
                yield delta


def parse_sse_delta(line: str) -> Optional[str]:
    """Text delta carried by one server-sent-event line, or None."""
    if not line or not line.startswith("data:"):
        return None
    data = line[len("data:") :].strip()
    if not data or data == "[DONE]":
        return None
    try:
        obj = json.loads(data)
    except ValueError:
        logger.warning("llm_stream_chunk_unparseable chunk=%s", data[:200])
        return None
    choices = obj.get("choices") if isinstance(obj, dict) else None
    if not isinstance(choices, list) or not choices:
        return None
    delta = choices[0].get("delta") if isinstance(choices[0], dict) else None
    content = delta.get("content") if isinstance(delta, dict) else None
    return content if isinstance(content, str) else None
