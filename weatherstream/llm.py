import json
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple

import httpx


class LMStudioClient:
    """OpenAI-compatible chat client (LM Studio, vLLM, llama.cpp server)."""

    def __init__(self, base_url: str, timeout: float = 60):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(timeout=timeout)

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=True)
        except Exception:
            pass
        try:
            return response.text
        except Exception:
            return ""

    async def check_chat(self, model: str) -> Tuple[bool, str]:
        """Send a one-token completion to confirm the endpoint accepts requests."""
        payload = {
            "model": model,
            "messages": [{"role": "user", "content": "Hello"}],
            "max_tokens": 1,
            "stream": False,
        }
        try:
            resp = await self.client.post(f"{self.base_url}/chat/completions", json=payload, timeout=10.0)
            resp.raise_for_status()
            return True, ""
        except httpx.HTTPStatusError as exc:
            return False, self._extract_error_detail(exc.response)
        except httpx.RequestError as exc:
            return False, str(exc) or exc.__class__.__name__

    def _build_payload(
        self,
        model: str,
        messages: List[Dict[str, str]],
        temperature: float,
        top_p: Optional[float],
        max_tokens: int,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": True,
        }
        if top_p is not None:
            payload["top_p"] = top_p
        return payload

    async def stream_text(
        self,
        model: str,
        messages: List[Dict[str, str]],
        temperature: float = 0.7,
        top_p: Optional[float] = None,
        max_tokens: int = 1024,
    ) -> AsyncGenerator[str, None]:
        payload = self._build_payload(model, messages, temperature, top_p, max_tokens)
        # Closing this generator early exits the context manager and drops the connection.
        async with self.client.stream("POST", f"{self.base_url}/chat/completions", json=payload) as response:
            if response.is_error:
                await response.aread()
                raise RuntimeError(
                    f"Model endpoint error ({response.status_code}): {self._extract_error_detail(response)}"
                )
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                chunk = line.replace("data:", "", 1).strip()
                if chunk == "[DONE]":
                    break
                try:
                    data = json.loads(chunk)
                except json.JSONDecodeError:
                    continue
                choices = data.get("choices") or [{}]
                delta = (choices[0] or {}).get("delta") or {}
                text = delta.get("content")
                if text:
                    yield text

    def stream_prompt(
        self,
        prompt: str,
        model: str,
        temperature: float = 0.7,
        top_p: Optional[float] = None,
        max_tokens: int = 1024,
    ) -> AsyncGenerator[str, None]:
        """Stream a completion for a single flattened prompt (system text inline)."""
        return self.stream_text(
            model=model,
            messages=[{"role": "user", "content": prompt}],
            temperature=temperature,
            top_p=top_p,
            max_tokens=max_tokens,
        )

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
