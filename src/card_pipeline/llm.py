from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT: int = 120
_DEFAULT_MAX_RETRIES: int = 3


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or .env and return it.

    Searches the environment first, then falls back to a ``.env`` file at the
    given ``repo_root`` (or cwd if not specified).

    Raises:
        RuntimeError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for the deepagents runtime")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI instance with validated API key and production defaults.

    Args:
        model_name: OpenAI model identifier (e.g. 'gpt-4o').
        temperature: Sampling temperature.
        timeout: Request timeout in seconds.
        max_retries: Maximum number of retry attempts on transient failures.
        repo_root: Optional repo root for .env file resolution.

    Raises:
        ValueError: If ``model_name`` is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    kwargs: dict[str, Any] = {
        "model": model_name,
        "temperature": temperature,
        "timeout": timeout,
        "max_retries": max_retries,
    }
    return ChatOpenAI(**kwargs)


def content_to_text(content: Any) -> str:
    """Flatten heterogeneous chat message content into plain text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                chunks.append(item["text"])
            elif isinstance(item, dict) and item.get("content") is not None:
                chunks.append(content_to_text(item["content"]))
        return "\n".join(chunk for chunk in chunks if chunk.strip())
    if isinstance(content, dict) and "content" in content:
        return content_to_text(content["content"])
    return str(content)


def extract_agent_text(response: Any) -> str:
    """Final text of an agent response (last message of a ``messages`` payload)."""
    if isinstance(response, str):
        return response
    if isinstance(response, dict):
        messages = response.get("messages")
        if isinstance(messages, list) and messages:
            return extract_agent_text(messages[-1])
        if "content" in response:
            return content_to_text(response["content"])
    content = getattr(response, "content", None)
    if content is not None:
        return content_to_text(content)
    return content_to_text(response)
