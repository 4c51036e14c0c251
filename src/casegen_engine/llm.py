from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Protocol

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI
from pydantic import BaseModel

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT: int = 120
_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


class MalformedOutputError(ValueError):
    """Raised when generated text cannot be parsed into the expected shape."""


class TextGenerationGateway(Protocol):
    """Opaque text-generation capability.

    Implementations must not retry internally; callers own the retry policy.
    """

    def generate(self, case_id: str, system_prompt: str, user_prompt: str) -> str:
        ...

    def generate_structured(
        self,
        case_id: str,
        system_prompt: str,
        user_prompt: str,
        schema: type[BaseModel],
    ) -> str:
        ...


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or .env and return it.

    Args:
        repo_root: Optional directory searched for a ``.env`` file (cwd by default).

    Returns:
        The API key string.

    Raises:
        RuntimeError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for text generation")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.7,
    timeout: int = _DEFAULT_TIMEOUT,
    max_completion_tokens: int | None = None,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI client with client-side retries disabled.

    Raises:
        ValueError: If model_name is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    kwargs: dict[str, Any] = {
        "model": model_name,
        "temperature": temperature,
        "timeout": timeout,
        "max_retries": 0,
    }
    if max_completion_tokens is not None:
        kwargs["max_completion_tokens"] = max_completion_tokens
    return ChatOpenAI(**kwargs)


def _message_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [part.get("text", "") if isinstance(part, dict) else str(part) for part in content]
        return "".join(parts)
    return str(content)


class OpenAIGateway:
    """TextGenerationGateway backed by langchain-openai chat models."""

    def __init__(
        self,
        *,
        model_name: str,
        temperature: float = 0.7,
        timeout: int = _DEFAULT_TIMEOUT,
        repo_root: Path | None = None,
    ) -> None:
        self.model_name = model_name
        self._model = get_chat_model(
            model_name=model_name,
            temperature=temperature,
            timeout=timeout,
            repo_root=repo_root,
        )

    def generate(self, case_id: str, system_prompt: str, user_prompt: str) -> str:
        logger.debug("case=%s model=%s free-text generation", case_id, self.model_name)
        response = self._model.invoke([("system", system_prompt), ("human", user_prompt)])
        return _message_text(response)

    def generate_structured(
        self,
        case_id: str,
        system_prompt: str,
        user_prompt: str,
        schema: type[BaseModel],
    ) -> str:
        logger.debug("case=%s model=%s structured generation schema=%s", case_id, self.model_name, schema.__name__)
        runnable = self._model.with_structured_output(
            schema,
            method="json_schema",
            include_raw=True,
            strict=False,
        )
        envelope = runnable.invoke([("system", system_prompt), ("human", user_prompt)])
        parsing_error = envelope.get("parsing_error")
        if parsing_error is not None:
            raise MalformedOutputError(
                f"Structured output parsing failed for {schema.__name__}: {parsing_error!r}"
            ) from parsing_error
        parsed = envelope.get("parsed")
        if isinstance(parsed, BaseModel):
            return parsed.model_dump_json()
        if isinstance(parsed, dict):
            return json.dumps(parsed)
        raw_text = _message_text(envelope.get("raw"))
        if not raw_text.strip():
            raise MalformedOutputError(f"Structured output for {schema.__name__} was empty")
        return raw_text


def strip_code_fences(text: str) -> str:
    """Extract the JSON payload from a response that may wrap it in markdown or prose.

    Returns an empty string when no JSON object can be located.
    """
    cleaned = text.strip()
    fenced = _FENCE_RE.search(cleaned)
    if fenced:
        cleaned = fenced.group(1).strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end < start:
        return ""
    return cleaned[start : end + 1]
