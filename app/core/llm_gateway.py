"""Gateway for chat-completion calls.

All stage calls go through ``LLMGateway.call``: it checks the generation
cache, splits oversized prompts into windows, wraps the HTTP request in
retries and a circuit breaker, and caches the raw text on success.
"""

import json
import time
from functools import partial
from typing import Any

import httpx

from app.core.chunking import split_prompt
from app.core.config import Settings, get_settings
from app.core.errors import ConfigurationError, EmptyResponseError, RemoteServiceError
from app.core.generation_cache import GenerationCache, make_cache_key
from app.core.logging import get_logger
from app.core.metrics import MetricsRecorder
from app.core.recovery_parser import RecoveryParser
from app.core.retry import RetryExecutor

logger = get_logger(__name__)


class LLMGateway:
    """
    Cached, retried access to the remote completion service.

    Collaborators are injectable; tests typically pass an
    ``httpx.MockTransport`` and a ``RetryExecutor`` with a no-op sleep. An
    injected executor must share the gateway's ``MetricsRecorder`` so retry
    and circuit events show up in ``stats()``.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        cache: GenerationCache | None = None,
        executor: RetryExecutor | None = None,
        parser: RecoveryParser | None = None,
        metrics: MetricsRecorder | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self.metrics = metrics or (executor.metrics if executor else None) or MetricsRecorder()
        if executor is not None and executor.metrics is not self.metrics:
            raise ValueError("executor must record into the gateway's MetricsRecorder")
        self.cache = cache or GenerationCache(
            ttl_seconds=self.settings.CACHE_TTL_SECONDS,
            max_size=self.settings.CACHE_MAX_SIZE,
            metrics=self.metrics,
        )
        self.executor = executor or RetryExecutor(metrics=self.metrics)
        self.parser = parser or RecoveryParser(metrics=self.metrics)
        self._transport = transport

    def ensure_configured(self) -> None:
        """
        Raises:
            ConfigurationError: If LLM_API_KEY is not set
        """
        if not self.settings.LLM_API_KEY:
            raise ConfigurationError("LLM_API_KEY not configured")

    async def call(
        self,
        prompt: str,
        system_message: str | None = None,
        use_cache: bool = True,
        context: str | None = None,
    ) -> str:
        """
        Send one prompt and return the raw completion text.

        Args:
            prompt: User prompt
            system_message: Optional system message
            use_cache: Whether to read and write the generation cache
            context: Call-site label (stage name); also names the circuit

        Returns:
            Completion text. In chunked mode, JSON text of the merged
            per-window objects.

        Raises:
            ConfigurationError: If the API key is missing
            RetryFailedError: If the call failed after retries
            CircuitOpenError: If the circuit for ``context`` is open
        """
        self.ensure_configured()
        context = context or "llm_call"
        cache_key = make_cache_key(prompt, system_message, context)

        if use_cache:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.info(f"Cache hit for {context}", extra={"context": context})
                return cached

        prompt_bytes = len(prompt.encode("utf-8"))
        if prompt_bytes > self.settings.CHUNK_THRESHOLD_BYTES:
            self.metrics.record_event("large_prompt_detected", context=context, size=prompt_bytes)
            logger.info(
                f"Prompt of {prompt_bytes} bytes exceeds threshold, using chunked mode",
                extra={"context": context},
            )
            text = await self._call_chunked(prompt, system_message, context)
        else:
            text = await self.executor.execute_with_circuit_breaker(
                partial(self._request, prompt, system_message, self.settings.LLM_MAX_TOKENS, context),
                context=context,
                failure_threshold=self.settings.CIRCUIT_FAILURE_THRESHOLD,
                recovery_timeout=self.settings.CIRCUIT_RECOVERY_TIMEOUT_SECONDS,
                max_retries=self.settings.RETRY_MAX_RETRIES,
                base_delay=self.settings.RETRY_BASE_DELAY_SECONDS,
                max_delay=self.settings.RETRY_MAX_DELAY_SECONDS,
            )

        if use_cache:
            self.cache.set(cache_key, text, context=context)
        return text

    async def _call_chunked(self, prompt: str, system_message: str | None, context: str) -> str:
        """Call once per window and shallow-merge the parsed objects."""
        windows = split_prompt(
            prompt,
            max_chars=self.settings.CHUNK_SIZE_CHARS,
            overlap=self.settings.CHUNK_OVERLAP_CHARS,
        )
        merged: dict[str, Any] = {}
        raw_texts: list[str] = []

        for window in windows:
            chunk_context = f"{context}_chunk_{window.index}"
            chunk_prompt = f"[Part {window.index + 1} of {window.total}]\n\n{window.content}"
            text = await self.executor.execute_with_retry(
                partial(
                    self._request,
                    chunk_prompt,
                    system_message,
                    self.settings.LLM_CHUNK_MAX_TOKENS,
                    chunk_context,
                ),
                max_retries=self.settings.CHUNK_MAX_RETRIES,
                base_delay=self.settings.CHUNK_BASE_DELAY_SECONDS,
                max_delay=self.settings.RETRY_MAX_DELAY_SECONDS,
                context=chunk_context,
            )
            raw_texts.append(text)
            parsed = self.parser.parse(text, context=chunk_context)
            if isinstance(parsed, dict) and not parsed.get("fallback"):
                merged.update(parsed)
            else:
                logger.warning(
                    f"Window {window.index + 1}/{window.total} produced no object, skipped",
                    extra={"context": context},
                )

        if not merged:
            logger.warning(
                f"No window of {len(windows)} produced an object, returning joined text",
                extra={"context": context},
            )
            return json.dumps({"content": "\n".join(raw_texts)}, ensure_ascii=False)

        logger.info(
            f"Merged {len(windows)} windows into {len(merged)} fields",
            extra={"context": context},
        )
        return json.dumps(merged, ensure_ascii=False)

    async def _request(
        self,
        prompt: str,
        system_message: str | None,
        max_tokens: int,
        context: str,
    ) -> str:
        """
        One POST to the completion endpoint.

        Raises:
            RemoteServiceError: On a non-2xx response
            EmptyResponseError: When the response carries no content
            httpx.TransportError: On network failures
        """
        messages: list[dict[str, str]] = []
        if system_message:
            messages.append({"role": "system", "content": system_message})
        messages.append({"role": "user", "content": prompt})

        payload = {
            "model": self.settings.LLM_MODEL,
            "messages": messages,
            "temperature": self.settings.LLM_TEMPERATURE,
            "max_tokens": max_tokens,
            "stream": False,
        }

        start = time.perf_counter()
        self.metrics.record_event("api_calls", context=context)

        async with httpx.AsyncClient(
            timeout=self.settings.LLM_TIMEOUT_SECONDS,
            transport=self._transport,
        ) as client:
            response = await client.post(
                self.settings.LLM_API_URL,
                headers={
                    "Authorization": f"Bearer {self.settings.LLM_API_KEY}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )

        if response.status_code < 200 or response.status_code >= 300:
            logger.warning(
                f"Completion API returned HTTP {response.status_code}",
                extra={"context": context, "status_code": response.status_code},
            )
            raise RemoteServiceError(
                response.status_code,
                f"Completion API call failed: HTTP {response.status_code} {response.text[:200]}",
            )

        data = response.json()
        choices = data.get("choices") or []
        content = ""
        if choices:
            content = (choices[0].get("message") or {}).get("content") or ""
        if not content.strip():
            raise EmptyResponseError(f"[{context}] completion API returned empty content")

        tokens = (data.get("usage") or {}).get("total_tokens", 0)
        logger.info(
            f"Completion for {context}: {len(content)} chars, {tokens} tokens "
            f"in {(time.perf_counter() - start) * 1000:.0f}ms",
            extra={"context": context},
        )
        return content

    def stats(self) -> dict[str, Any]:
        return {
            "cache": self.cache.stats(),
            "parser": self.parser.stats(),
            "events": self.metrics.snapshot(),
        }
