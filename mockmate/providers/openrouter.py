import os
import json
from typing import AsyncIterator, Optional, List, Dict, Any
import httpx

from .base import GenerationClient
from mockmate import config

OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"


class OpenRouterGenerationClient(GenerationClient):
    provider_name: str = "openrouter"

    def __init__(self, model: Optional[str] = None):
        super().__init__(model=model or os.getenv("AI_GENERATION_MODEL") or "deepseek/deepseek-chat")
        api_key = os.getenv("OPENROUTER_API_KEY", "").strip()
        if not api_key:
            raise RuntimeError("OPENROUTER_API_KEY is required for OpenRouter provider")
        self._api_key = api_key
        self._timeout = float(config.AI_HTTP_TIMEOUT_SECONDS)
        self._max_tokens = config.AI_GENERATION_MAX_TOKENS
        try:
            self._temperature = float(os.getenv("AI_GENERATION_TEMPERATURE") or 0.7)
        except Exception:
            self._temperature = 0.7
        # Origin metadata (optional but recommended by OpenRouter)
        self._referer = os.getenv("PUBLIC_APP_ORIGIN", "http://localhost:3000").strip() or "http://localhost:3000"
        self._title = os.getenv("OPENROUTER_APP_TITLE", "MockMate AI API").strip() or "MockMate AI API"

    def _headers(self, request_id: Optional[str], stream: bool) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "User-Agent": "mockmate-ai-api/0.1.0",
            "HTTP-Referer": self._referer,
            "X-Title": self._title,
        }
        if stream:
            headers["Accept"] = "text/event-stream"
        if request_id:
            headers["X-Request-Id"] = request_id
        return headers

    def _payload(self, prompt: str, system: Optional[str], stream: bool, json_mode: bool) -> Dict[str, Any]:
        messages: List[Dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "stream": stream,
            "temperature": self._temperature,
        }
        if self._max_tokens > 0:
            payload["max_tokens"] = self._max_tokens
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        return payload

    async def stream_chat(
        self,
        prompt: str,
        system: Optional[str] = None,
        request_id: Optional[str] = None,
        json_mode: bool = False,
    ) -> AsyncIterator[str]:
        # OpenAI-compatible SSE streaming
        headers = self._headers(request_id, stream=True)
        payload = self._payload(prompt, system, stream=True, json_mode=json_mode)

        # Use a short-lived AsyncClient per request to ensure proper cleanup
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            async with client.stream("POST", OPENROUTER_URL, headers=headers, json=payload) as resp:
                if resp.status_code >= 400:
                    text = await resp.aread()
                    raise RuntimeError(f"OpenRouter error {resp.status_code}: {text!r}")
                async for line in resp.aiter_lines():
                    if not line:
                        continue
                    # SSE comment or keepalive
                    if line.startswith(":"):
                        continue
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if not data:
                        continue
                    if data == "[DONE]":
                        break
                    try:
                        obj = json.loads(data)
                    except json.JSONDecodeError:
                        continue
                    if obj.get("error"):
                        raise RuntimeError(f"OpenRouter stream error: {obj['error']}")
                    choices = obj.get("choices") or []
                    if not choices:
                        continue
                    delta = choices[0].get("delta") or {}
                    token = delta.get("content")
                    if token is None:
                        # Some providers use different field names
                        token = choices[0].get("text") or ""
                    if token:
                        yield token
