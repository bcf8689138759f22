"""Text generation backends used to answer grounded prompts."""

from __future__ import annotations

import logging

import httpx
from openai import OpenAI

from .config import Settings

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are Witzo AI assistant."


class GenerationService:
    """Send a prompt to the configured chat backend and return plain text."""

    def __init__(self, settings: Settings, *, openai_client: OpenAI | None = None) -> None:
        self._settings = settings
        self._openai_client = openai_client

    def generate(self, prompt: str) -> str:
        """Return the model's reply to ``prompt``; raises ``RuntimeError`` on backend failure."""

        if self._settings.is_openai_chat_backend:
            logger.info("generation.openai.invoke model=%s", self._settings.openai_chat_model)
            return self._invoke_openai(prompt)
        if self._settings.is_ollama_chat_backend:
            logger.info("generation.ollama.invoke model=%s", self._settings.ollama_model)
            return self._invoke_ollama(prompt)
        raise RuntimeError(f"Unsupported chat backend: {self._settings.chat_backend}")

    def _invoke_openai(self, prompt: str) -> str:
        client = self._get_openai_client()
        try:
            response = client.responses.create(
                model=self._settings.openai_chat_model,
                input=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=self._settings.chat_temperature,
                max_output_tokens=self._settings.chat_max_tokens,
            )
        except Exception as exc:
            logger.warning("generation.openai.error model=%s error=%s", self._settings.openai_chat_model, exc)
            raise RuntimeError(f"OpenAI request failed: {exc}") from exc

        text = str(getattr(response, "output_text", "") or "").strip()
        logger.info(
            "generation.openai.success model=%s chars=%s",
            self._settings.openai_chat_model,
            len(text),
        )
        return text

    def _invoke_ollama(self, prompt: str) -> str:
        model = (self._settings.ollama_model or "").strip()
        if not model:
            raise RuntimeError("OLLAMA_MODEL must be set when using the Ollama chat backend")

        payload: dict = {
            "model": model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "stream": False,
        }
        options: dict[str, float | int] = {}
        if self._settings.chat_temperature > 0.0:
            options["temperature"] = self._settings.chat_temperature
        if self._settings.chat_max_tokens is not None:
            options["num_predict"] = self._settings.chat_max_tokens
        if options:
            payload["options"] = options

        url = f"{self._settings.ollama_base_url.rstrip('/')}/api/chat"
        try:
            response = httpx.post(url, json=payload, timeout=self._settings.ollama_request_timeout)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("generation.ollama.error model=%s error=%s", model, exc)
            raise RuntimeError(f"Ollama request failed: {exc}") from exc

        data = response.json()
        message = data.get("message") or {}
        text = str(message.get("content") or data.get("response") or "").strip()
        logger.info("generation.ollama.success model=%s chars=%s", model, len(text))
        return text

    def _get_openai_client(self) -> OpenAI:
        if self._openai_client is None:
            if not self._settings.openai_api_key:
                raise RuntimeError("OPENAI_API_KEY must be set for the OpenAI chat backend")
            self._openai_client = OpenAI(
                api_key=self._settings.openai_api_key,
                timeout=self._settings.generation_timeout,
            )
        return self._openai_client


__all__ = ["GenerationService", "SYSTEM_PROMPT"]
