import asyncio
import json
import mimetypes
import os
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence, Union

import httpx
from sqlalchemy.orm import Session

from vita.core.security import decrypt_provider_key
from vita.db.models import UserAIConfig

LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))
LLM_CONNECT_TIMEOUT_SECONDS = float(os.getenv("LLM_CONNECT_TIMEOUT_SECONDS", "10"))
LLM_WRITE_TIMEOUT_SECONDS = float(os.getenv("LLM_WRITE_TIMEOUT_SECONDS", "30"))
LLM_POOL_TIMEOUT_SECONDS = float(os.getenv("LLM_POOL_TIMEOUT_SECONDS", "60"))
LLM_RETRY_COUNT = int(os.getenv("LLM_RETRY_COUNT", "1"))
LLM_RETRY_BACKOFF_SECONDS = float(os.getenv("LLM_RETRY_BACKOFF_SECONDS", "0.75"))
LLM_MAX_OUTPUT_TOKENS = int(os.getenv("LLM_MAX_OUTPUT_TOKENS", "700"))

Completion = Union[str, dict[str, Any]]


def _http_timeout() -> httpx.Timeout:
    return httpx.Timeout(
        connect=LLM_CONNECT_TIMEOUT_SECONDS,
        read=LLM_TIMEOUT_SECONDS,
        write=LLM_WRITE_TIMEOUT_SECONDS,
        pool=LLM_POOL_TIMEOUT_SECONDS,
    )


class LLMRequestError(RuntimeError):
    def __init__(self, provider: str, model: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.model = model
        self.status_code = status_code


def parse_llm_json(raw_text: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw_text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    start = raw_text.find("{")
    end = raw_text.rfind("}")
    if start != -1 and end != -1 and end > start:
        try:
            parsed = json.loads(raw_text[start : end + 1])
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass
    raise ValueError("Invalid JSON response from LLM")


@dataclass(frozen=True)
class AIConfig:
    provider: str
    model: str
    api_key: str


def resolve_ai_config(db: Session, user_id: int) -> Optional[AIConfig]:
    """Per-user stored config first, then the DEFAULT_AI_* environment."""
    cfg = db.query(UserAIConfig).filter(UserAIConfig.user_id == user_id).first()
    if cfg:
        return AIConfig(provider=cfg.ai_provider, model=cfg.ai_model, api_key=decrypt_provider_key(cfg.encrypted_api_key))

    provider = os.getenv("DEFAULT_AI_PROVIDER", "").strip().lower()
    model = os.getenv("DEFAULT_AI_MODEL", "").strip()
    if provider == "openai":
        key = os.getenv("OPENAI_API_KEY", "")
    elif provider == "gemini":
        key = os.getenv("GEMINI_API_KEY", "")
    else:
        key = ""
    if provider and model and key:
        return AIConfig(provider=provider, model=model, api_key=key)
    return None


def _schema_instruction(response_schema: dict[str, Any]) -> str:
    return "Return strict JSON matching this schema: " + json.dumps(response_schema, sort_keys=True)


async def _openai_request(
    client: httpx.AsyncClient,
    config: AIConfig,
    prompt: str,
    file_urls: Sequence[str],
    response_schema: Optional[dict[str, Any]],
) -> str:
    content: Union[str, list[dict[str, Any]]] = prompt
    if file_urls:
        content = [{"type": "text", "text": prompt}] + [
            {"type": "image_url", "image_url": {"url": url}} for url in file_urls
        ]
    messages: list[dict[str, Any]] = []
    if response_schema:
        messages.append({"role": "system", "content": _schema_instruction(response_schema)})
    messages.append({"role": "user", "content": content})
    payload: dict[str, Any] = {
        "model": config.model,
        "messages": messages,
        "max_completion_tokens": LLM_MAX_OUTPUT_TOKENS,
    }
    if response_schema:
        payload["response_format"] = {"type": "json_object"}
    response = await client.post(
        "https://api.openai.com/v1/chat/completions",
        headers={"Authorization": f"Bearer {config.api_key}", "Content-Type": "application/json"},
        json=payload,
    )
    response.raise_for_status()
    data = response.json()
    return str(data["choices"][0]["message"].get("content") or "").strip()


async def _gemini_request(
    client: httpx.AsyncClient,
    config: AIConfig,
    prompt: str,
    file_urls: Sequence[str],
    response_schema: Optional[dict[str, Any]],
) -> str:
    parts: list[dict[str, Any]] = [{"text": prompt}]
    for url in file_urls:
        mime_type = mimetypes.guess_type(url)[0] or "image/jpeg"
        parts.append({"fileData": {"fileUri": url, "mimeType": mime_type}})
    generation_config: dict[str, Any] = {"temperature": 0.7, "maxOutputTokens": LLM_MAX_OUTPUT_TOKENS}
    if response_schema:
        generation_config["responseMimeType"] = "application/json"
        parts.insert(0, {"text": _schema_instruction(response_schema)})
    response = await client.post(
        f"https://generativelanguage.googleapis.com/v1beta/models/{config.model}:generateContent",
        params={"key": config.api_key},
        headers={"Content-Type": "application/json"},
        json={"generationConfig": generation_config, "contents": [{"parts": parts}]},
    )
    response.raise_for_status()
    data = response.json()
    candidate_parts = data["candidates"][0]["content"]["parts"]
    return "".join(str(part.get("text") or "") for part in candidate_parts).strip()


class TextGenerationClient(Protocol):
    async def complete(
        self,
        prompt: str,
        *,
        file_urls: Optional[Sequence[str]] = None,
        response_schema: Optional[dict[str, Any]] = None,
    ) -> Completion:
        ...


class RealTextGenerationClient:
    def __init__(self, config: Optional[AIConfig]) -> None:
        self.config = config

    async def complete(
        self,
        prompt: str,
        *,
        file_urls: Optional[Sequence[str]] = None,
        response_schema: Optional[dict[str, Any]] = None,
    ) -> Completion:
        if self.config is None:
            raise LLMRequestError(provider="", model="", message="AI config missing")
        config = self.config
        if config.provider == "openai":
            request = _openai_request
        elif config.provider == "gemini":
            request = _gemini_request
        else:
            raise LLMRequestError(provider=config.provider, model=config.model, message="Unsupported AI provider")

        raw = await self._with_retries(request, config, prompt, list(file_urls or []), response_schema)
        if response_schema:
            return parse_llm_json(raw)
        return raw

    async def _with_retries(self, request, config: AIConfig, prompt, file_urls, response_schema) -> str:
        attempts = max(1, LLM_RETRY_COUNT + 1)
        last_error = "unknown error"
        async with httpx.AsyncClient(timeout=_http_timeout()) as client:
            for idx in range(attempts):
                try:
                    return await request(client, config, prompt, file_urls, response_schema)
                except httpx.HTTPStatusError as exc:
                    status = exc.response.status_code if exc.response is not None else None
                    detail = (exc.response.text or "").strip()[:220] if exc.response is not None else ""
                    # Only throttling and provider-side errors are worth another attempt.
                    if status is not None and (status == 429 or status >= 500) and idx < attempts - 1:
                        await asyncio.sleep(LLM_RETRY_BACKOFF_SECONDS * (idx + 1))
                        continue
                    raise LLMRequestError(
                        provider=config.provider,
                        model=config.model,
                        status_code=status,
                        message=f"{config.provider} request failed (status={status}): {detail or 'no response body'}",
                    ) from exc
                except httpx.TransportError as exc:
                    last_error = str(exc)[:220] or exc.__class__.__name__
                    if idx < attempts - 1:
                        await asyncio.sleep(LLM_RETRY_BACKOFF_SECONDS * (idx + 1))
                        continue
                    raise LLMRequestError(
                        provider=config.provider,
                        model=config.model,
                        message=f"{config.provider} request failed: {last_error}",
                    ) from exc
                except (KeyError, IndexError, TypeError, ValueError) as exc:
                    raise LLMRequestError(
                        provider=config.provider,
                        model=config.model,
                        message=f"{config.provider} returned an unexpected payload: {str(exc)[:220]}",
                    ) from exc
        raise LLMRequestError(
            provider=config.provider, model=config.model, message=f"{config.provider} request failed: {last_error}"
        )


def build_text_generation_client(db: Session, user_id: int) -> TextGenerationClient:
    return RealTextGenerationClient(resolve_ai_config(db, user_id))
