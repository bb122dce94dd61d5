"""Generation provider adapters and their startup-time construction."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, List, Protocol

from grcrag.config import Settings
from grcrag.errors import GenerationError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenerationRequest:
    system_prompt: str
    context: str
    question: str
    max_tokens: int = 1000
    temperature: float = 0.3
    model: str | None = None


@dataclass(frozen=True)
class GenerationResult:
    text: str
    provider: str
    model: str | None = None
    tokens: int | None = None
    elapsed_ms: float = 0.0


class GenerationProvider(Protocol):
    """Uniform interface over one external text-generation backend."""

    name: str

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Return a completion or raise; any exception counts as a failed attempt."""


def build_user_prompt(request: GenerationRequest) -> str:
    return f"Context:\n{request.context}\n\nQuestion: {request.question}"


def build_completion_prompt(request: GenerationRequest) -> str:
    return f"{request.system_prompt}\n\nContext:\n{request.context}\n\nQuestion: {request.question}\n\nAnswer:"


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


def _require_text(text: str | None, provider: str) -> str:
    cleaned = (text or "").strip()
    if not cleaned:
        raise GenerationError(f"{provider} returned an empty completion")
    return cleaned


class OpenAIProvider:
    """Chat completions via the OpenAI API."""

    name = "openai"

    def __init__(self, api_key: str | None = None, model: str = "gpt-3.5-turbo", *, client: Any = None) -> None:
        if client is None:
            from openai import AsyncOpenAI

            client = AsyncOpenAI(api_key=api_key)
        self._client = client
        self._model = model

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        start = time.perf_counter()
        response = await self._client.chat.completions.create(
            model=request.model or self._model,
            messages=[
                {"role": "system", "content": request.system_prompt},
                {"role": "user", "content": build_user_prompt(request)},
            ],
            max_tokens=request.max_tokens,
            temperature=request.temperature,
        )
        text = _require_text(response.choices[0].message.content, self.name)
        usage = getattr(response, "usage", None)
        return GenerationResult(
            text=text,
            provider=self.name,
            model=getattr(response, "model", None) or request.model or self._model,
            tokens=getattr(usage, "total_tokens", None),
            elapsed_ms=_elapsed_ms(start),
        )


class CohereProvider:
    """Chat via the Cohere v2 API. Uses its own configured model."""

    name = "cohere"

    def __init__(self, api_key: str | None = None, model: str = "command-r", *, client: Any = None) -> None:
        if client is None:
            import cohere

            client = cohere.AsyncClientV2(api_key=api_key)
        self._client = client
        self._model = model

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        start = time.perf_counter()
        response = await self._client.chat(
            model=self._model,
            messages=[
                {"role": "system", "content": request.system_prompt},
                {"role": "user", "content": build_user_prompt(request)},
            ],
            max_tokens=request.max_tokens,
            temperature=request.temperature,
        )
        content = getattr(response.message, "content", None) or []
        text = _require_text("".join(getattr(item, "text", "") or "" for item in content), self.name)
        tokens = None
        billed = getattr(getattr(response, "usage", None), "billed_units", None)
        if billed is not None and getattr(billed, "output_tokens", None) is not None:
            tokens = int(billed.output_tokens)
        return GenerationResult(
            text=text,
            provider=self.name,
            model=self._model,
            tokens=tokens,
            elapsed_ms=_elapsed_ms(start),
        )


class HuggingFaceProvider:
    """Text generation through the Hugging Face Inference API."""

    name = "huggingface"

    def __init__(self, api_key: str | None = None, model: str = "HuggingFaceH4/zephyr-7b-beta", *, client: Any = None) -> None:
        if client is None:
            from huggingface_hub import AsyncInferenceClient

            client = AsyncInferenceClient(token=api_key)
        self._client = client
        self._model = model

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        start = time.perf_counter()
        model = request.model or self._model
        # TGI rejects a zero temperature; None selects greedy decoding.
        generated = await self._client.text_generation(
            build_completion_prompt(request),
            model=model,
            max_new_tokens=request.max_tokens,
            temperature=request.temperature or None,
        )
        return GenerationResult(
            text=_require_text(generated, self.name),
            provider=self.name,
            model=model,
            tokens=None,
            elapsed_ms=_elapsed_ms(start),
        )


class LocalTransformersProvider:
    """Local causal LM via Transformers, run off the event loop."""

    name = "local"

    def __init__(self, model: str = "Qwen/Qwen2.5-1.8B-Instruct", device: str | None = None) -> None:
        from transformers import AutoModelForCausalLM, AutoTokenizer

        self._model_name = model
        self._device = device
        self._tokenizer = AutoTokenizer.from_pretrained(model, trust_remote_code=True)
        self._model = AutoModelForCausalLM.from_pretrained(model, trust_remote_code=True)
        if self._tokenizer.pad_token is None and self._tokenizer.eos_token is not None:
            self._tokenizer.pad_token = self._tokenizer.eos_token
        if getattr(self._model.config, "pad_token_id", None) is None and self._tokenizer.pad_token_id is not None:
            self._model.config.pad_token_id = self._tokenizer.pad_token_id
        if device:
            self._model.to(device)
        LOGGER.info("Loaded generation model %s", model)

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        start = time.perf_counter()
        text = await asyncio.to_thread(self._generate_sync, request)
        return GenerationResult(
            text=_require_text(text, self.name),
            provider=self.name,
            model=self._model_name,
            tokens=None,
            elapsed_ms=_elapsed_ms(start),
        )

    def _generate_sync(self, request: GenerationRequest) -> str:
        import torch

        if hasattr(self._tokenizer, "apply_chat_template"):
            messages = [
                {"role": "system", "content": request.system_prompt},
                {"role": "user", "content": build_user_prompt(request)},
            ]
            prompt = self._tokenizer.apply_chat_template(messages, tokenize=False, add_generation_prompt=True)
        else:
            prompt = build_completion_prompt(request)
        tokenized = self._tokenizer(prompt, return_tensors="pt", padding=True)
        input_ids = tokenized.input_ids
        attention_mask = tokenized.attention_mask
        prompt_length = input_ids.shape[1]
        if self._device:
            input_ids = input_ids.to(self._device)
            attention_mask = attention_mask.to(self._device)
        with torch.no_grad():
            output = self._model.generate(
                input_ids,
                attention_mask=attention_mask,
                max_new_tokens=request.max_tokens,
                temperature=request.temperature,
                do_sample=request.temperature > 0,
            )
        return self._tokenizer.decode(output[0][prompt_length:], skip_special_tokens=True)


def build_providers(settings: Settings) -> List[GenerationProvider]:
    """Build the provider fallback chain once, in configured priority order.

    Providers lacking credentials are skipped, as are providers whose client
    cannot be constructed.
    """

    factories = {
        "openai": (
            settings.openai_api_key,
            lambda: OpenAIProvider(settings.openai_api_key, settings.openai_model),
        ),
        "cohere": (
            settings.cohere_api_key,
            lambda: CohereProvider(settings.cohere_api_key, settings.cohere_model),
        ),
        "huggingface": (
            settings.huggingface_api_key,
            lambda: HuggingFaceProvider(settings.huggingface_api_key, settings.huggingface_model),
        ),
        "local": (
            settings.use_local_generator,
            lambda: LocalTransformersProvider(settings.local_generator_model, settings.local_generator_device),
        ),
    }
    providers: List[GenerationProvider] = []
    for name in settings.provider_order:
        entry = factories.get(name)
        if entry is None:
            LOGGER.warning("Unknown generation provider %r ignored", name)
            continue
        enabled, factory = entry
        if not enabled:
            continue
        if any(provider.name == name for provider in providers):
            continue
        try:
            providers.append(factory())
            LOGGER.info("Generation provider %s initialized", name)
        except Exception as exc:
            LOGGER.warning("Generation provider %s unavailable: %s", name, exc)
    if not providers:
        LOGGER.warning("No generation providers configured; answers will be extractive only.")
    return providers
