import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from .errors import ProviderError, ProviderTimeout

logger = logging.getLogger(__name__)

ALLOWED_ROLES = {"system", "user", "assistant"}
RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}


@dataclass
class ProviderCompletion:
    text: str
    usage: Dict[str, int] = field(default_factory=dict)
    model: Optional[str] = None


def _usage_from_response(data: Dict[str, Any]) -> Dict[str, int]:
    usage = data.get("usage") or {}
    prompt_tokens = int(usage.get("prompt_tokens") or 0)
    completion_tokens = int(usage.get("completion_tokens") or 0)
    total = int(usage.get("total_tokens") or prompt_tokens + completion_tokens)
    return {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens, "total_tokens": total}


class ProviderClient:
    """Single request/response boundary to an OpenAI-compatible chat endpoint.

    No retries happen here; callers decide what to do with a failure.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        timeout_s: float = 60.0,
        max_output_tokens: Optional[int] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.max_output_tokens = max_output_tokens
        self.client = httpx.AsyncClient(timeout=timeout_s)
        self.set_api_key(api_key)

    def set_api_key(self, api_key: Optional[str]) -> None:
        if api_key:
            self.client.headers["Authorization"] = f"Bearer {api_key}"
        else:
            self.client.headers.pop("Authorization", None)

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if not isinstance(msg, dict):
                continue
            role = msg.get("role")
            content = msg.get("content")
            if role not in ALLOWED_ROLES or not isinstance(content, str) or not content.strip():
                continue
            sanitized.append({"role": role, "content": content})
        return sanitized

    def _build_payload(self, prompt: Dict[str, Any]) -> Dict[str, Any]:
        max_tokens = int(prompt.get("max_tokens") or 800)
        if self.max_output_tokens:
            max_tokens = min(max_tokens, self.max_output_tokens)
        payload: Dict[str, Any] = {
            "model": prompt.get("model") or self.model,
            "messages": self._sanitize_messages(prompt.get("messages")),
            "temperature": prompt.get("temperature", 0.1),
            "max_tokens": max_tokens,
            "stream": False,
        }
        if prompt.get("response_format"):
            payload["response_format"] = prompt["response_format"]
        return payload

    async def complete(self, prompt: Dict[str, Any]) -> ProviderCompletion:
        payload = self._build_payload(prompt)
        if not payload["messages"]:
            raise ProviderError("Prompt has no usable messages.", retryable=False)
        url = f"{self.base_url}/chat/completions"
        try:
            resp = await self.client.post(url, json=payload)
            resp.raise_for_status()
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(f"Model provider timed out: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise ProviderError(
                f"Model provider returned HTTP {status}.",
                status_code=status,
                retryable=status in RETRYABLE_STATUS,
            ) from exc
        except httpx.RequestError as exc:
            raise ProviderError(f"Model provider unreachable: {exc}") from exc
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError("Model provider returned a non-JSON envelope.", retryable=False) from exc
        choices = (data.get("choices") or []) if isinstance(data, dict) else []
        if not choices:
            raise ProviderError("Model provider returned no choices.", retryable=False)
        message = choices[0].get("message") or {}
        content = message.get("content")
        if content is None or content == "":
            # Some local servers put the whole reply in a reasoning field.
            content = message.get("reasoning") or message.get("reasoning_content") or ""
        completion = ProviderCompletion(
            text=str(content),
            usage=_usage_from_response(data),
            model=data.get("model") or payload["model"],
        )
        logger.debug("provider completion model=%s tokens=%s", completion.model, completion.usage)
        return completion

    async def close(self) -> None:
        await self.client.aclose()
