from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from compressor_prompts import (
    get_discovery_system,
    get_generation_system,
    get_validation_system,
)

from .errors import ConfigurationError
from .settings import Settings


class ModelProvider(ABC):
    @abstractmethod
    async def complete(self, prompt: str, system: Optional[str] = None, temperature: float = 0.7, max_tokens: int = 1000) -> str:
        """Generates text from the model."""
        pass


_CHECK_RE = re.compile(r'^\d+\. "(.+)" -> "(.+)"$', re.MULTILINE)
_TARGET_RE = re.compile(r"^- (\S+) \(\d+ tokens", re.MULTILINE)


class MockProvider(ModelProvider):
    """Canned, deterministic responses keyed on the prompt shape."""

    async def complete(self, prompt: str, system: Optional[str] = None, temperature: float = 0.7, max_tokens: int = 1000) -> str:
        if "--- COMPRESSIONS TO CHECK ---" in prompt:
            return "\n".join(
                f"<verdict><original>{o}</original><compressed>{c}</compressed>"
                f"<ambiguous>false</ambiguous><reason>clear</reason></verdict>"
                for o, c in _CHECK_RE.findall(prompt)
            )
        if "--- TARGET WORDS ---" in prompt:
            return "\n".join(
                f"<compression><original>{w}</original><compressed>♦{w[:4]}</compressed>"
                f"<reasoning>marker plus stem</reasoning></compression>"
                for w in _TARGET_RE.findall(prompt)
            )
        if "TEXT:" in prompt:
            return "implementation|3|2\ncomprehensive|3|1\nunfortunately|3|1"
        return ""


class OpenAIChatCompatProvider(ModelProvider):
    """Generic provider for vLLM, TGI, or OpenAI-compatible endpoints."""

    def __init__(self, base_url: str, api_key: str, model: str = "default", timeout: float = 20.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    async def complete(self, prompt: str, system: Optional[str] = None, temperature: float = 0.7, max_tokens: int = 1000) -> str:
        msgs = []
        if system:
            msgs.append({"role": "system", "content": system})
        msgs.append({"role": "user", "content": prompt})
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(
                f"{self.base_url}/chat/completions",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={"model": self.model, "messages": msgs, "temperature": temperature, "max_tokens": max_tokens},
            )
            resp.raise_for_status()
            data = resp.json()
        return data["choices"][0]["message"]["content"] or ""


def get_provider(
    kind: str = "mock", url: Optional[str] = None, api_key: str = "", model: str = "default", timeout: float = 20.0
) -> ModelProvider:
    if kind == "mock":
        return MockProvider()
    elif kind == "openai_compat":
        return OpenAIChatCompatProvider(url, api_key, model, timeout=timeout)
    raise ConfigurationError(f"unknown provider: {kind}")


class AnalyticCollaborator:
    """Careful, low-temperature role: discovery fallback and semantic checks."""

    def __init__(self, provider: ModelProvider):
        self.provider = provider

    async def analyze(self, prompt: str) -> str:
        return await self.provider.complete(prompt, system=get_discovery_system(), temperature=0.2, max_tokens=500)

    async def check(self, prompt: str) -> str:
        return await self.provider.complete(prompt, system=get_validation_system(), temperature=0.0, max_tokens=800)


class CreativeCollaborator:
    """High-temperature role for generation suggestions."""

    def __init__(self, provider: ModelProvider):
        self.provider = provider

    async def generate(self, prompt: str) -> str:
        return await self.provider.complete(prompt, system=get_generation_system(), temperature=0.9, max_tokens=800)


def build_collaborators(settings: Settings):
    analytic = AnalyticCollaborator(get_provider(
        settings.analytic_provider, settings.analytic_url, settings.analytic_api_key, settings.analytic_model,
        timeout=settings.call_timeout_s,
    ))
    creative = CreativeCollaborator(get_provider(
        settings.creative_provider, settings.creative_url, settings.creative_api_key, settings.creative_model,
        timeout=settings.call_timeout_s,
    ))
    return analytic, creative
