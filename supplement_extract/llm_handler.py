"""
LLM Handler Module
==================

Claude access for the normalizer and the vision fallback:
- Prompt execution (text or image + text)
- Structured output through a tool schema built from a pydantic model
- JSON response parsing
- Latency measurement

Calls are made once. Retrying is the fallback chain's job, not this module's.
"""

import json
import re
import time
from typing import Any, Dict, Optional, Type

from anthropic import Anthropic
from pydantic import BaseModel, ValidationError

from .config import config
from .logger import get_stage_logger

log = get_stage_logger('llm')


class ClaudeInterface:
    """Anthropic Claude interface"""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.api_key = api_key or config.ANTHROPIC_API_KEY
        if not self.api_key:
            raise ValueError("Claude API key not found")
        # one attempt per call, bounded by the stage timeout
        self.client = Anthropic(api_key=self.api_key, timeout=timeout or config.MODEL_TIMEOUT_S, max_retries=0)
        self.model = model or config.CLAUDE_MODEL
        self._last_usage = None

    def get_last_usage(self) -> Optional[Dict[str, int]]:
        """Return token usage from last call: {input_tokens, output_tokens}"""
        return self._last_usage

    def generate(self, prompt: str, max_tokens: int = 1000, temperature: float = 0.1,
                 response_model: Optional[Type[BaseModel]] = None, system: Optional[str] = None):
        """Text in; dict out when response_model is given, else text."""
        content = [{"type": "text", "text": prompt}]
        return self._create(content, max_tokens, temperature, response_model, system)

    def generate_with_image(self, prompt: str, image_b64: str, media_type: str = "image/png",
                            max_tokens: int = 1000, temperature: float = 0.1,
                            response_model: Optional[Type[BaseModel]] = None,
                            system: Optional[str] = None):
        content = [
            {"type": "image", "source": {"type": "base64", "media_type": media_type, "data": image_b64}},
            {"type": "text", "text": prompt},
        ]
        return self._create(content, max_tokens, temperature, response_model, system)

    def _create(self, content, max_tokens, temperature, response_model, system):
        kwargs = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": content}],
        }
        if system:
            kwargs["system"] = system
        if response_model:
            # Use structured output with tools
            kwargs["tool_choice"] = {"type": "tool", "name": "structured_output"}
            kwargs["tools"] = [{
                "name": "structured_output",
                "description": "Return structured data matching the schema",
                "input_schema": response_model.model_json_schema(),
            }]

        response = self.client.messages.create(**kwargs)

        # Capture token usage
        if getattr(response, 'usage', None):
            self._last_usage = {
                'input_tokens': response.usage.input_tokens,
                'output_tokens': response.usage.output_tokens
            }

        if response_model:
            for block in response.content or []:
                if getattr(block, 'type', None) == 'tool_use':
                    return block.input
            raise ValueError("No structured output received from API")

        return ''.join(b.text for b in response.content or [] if getattr(b, 'type', None) == 'text')


def parse_json_response(text: str) -> Dict[str, Any]:
    """Parse a JSON object from model text, tolerating markdown fences."""
    text = (text or '').strip()
    if text.startswith('```'):
        text = re.sub(r'^```(?:json)?\s*', '', text)
        text = re.sub(r'\s*```$', '', text)
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = re.search(r'\{.*\}', text, re.DOTALL)
        if not match:
            raise
        data = json.loads(match.group(0))
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


class LLMHandler:
    """
    Generic handler for LLM interactions.

    Returns result dicts instead of raising:
        {"success": True, "data": {...}, "latency_ms": ...}
        {"success": False, "error": "...", "latency_ms": ...}
    """

    def __init__(self, model: Optional[str] = None, client: Optional[ClaudeInterface] = None,
                 timeout: Optional[float] = None):
        self.model = model or config.CLAUDE_MODEL
        self.client = client
        if self.client is None:
            try:
                self.client = ClaudeInterface(model=self.model, timeout=timeout)
            except ValueError as e:
                log.warning(f"Claude client unavailable: {e}")

    @property
    def available(self) -> bool:
        return self.client is not None

    def call(self, prompt: str, response_model: Optional[Type[BaseModel]] = None,
             max_tokens: int = 1000, system: Optional[str] = None) -> Dict[str, Any]:
        return self._run(lambda: self.client.generate(
            prompt, max_tokens=max_tokens, response_model=response_model, system=system
        ), response_model)

    def call_with_image(self, prompt: str, image_b64: str,
                        response_model: Optional[Type[BaseModel]] = None,
                        max_tokens: int = 1000, system: Optional[str] = None) -> Dict[str, Any]:
        return self._run(lambda: self.client.generate_with_image(
            prompt, image_b64, max_tokens=max_tokens, response_model=response_model, system=system
        ), response_model)

    def _run(self, invoke, response_model) -> Dict[str, Any]:
        start_time = time.time()
        if not self.client:
            return {"success": False, "error": "No LLM client available", "latency_ms": 0.0}

        try:
            response = invoke()
        except Exception as e:
            latency_ms = (time.time() - start_time) * 1000
            log.event('llm_call_failed', error_type=type(e).__name__, error=str(e)[:200])
            return {"success": False, "error": str(e), "latency_ms": latency_ms}

        latency_ms = (time.time() - start_time) * 1000

        if not response_model:
            return {"success": True, "response": response, "latency_ms": latency_ms}

        if not response:
            return {"success": False, "error": "LLM returned empty structured output ({})",
                    "latency_ms": latency_ms}

        try:
            data = response_model(**response).model_dump()
        except ValidationError as e:
            return {"success": False, "error": f"Validation failed: {e}",
                    "latency_ms": latency_ms, "raw_response": response}

        log.event('llm_call_succeeded', latency_ms=round(latency_ms))
        return {"success": True, "data": data, "latency_ms": latency_ms}
