"""
Runtime settings, read from the environment (and a local .env file).
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-20250514"


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"[Config] {name}={raw!r} is not an integer, using {default}")
        return default
    return max(value, minimum)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"[Config] {name}={raw!r} is not a number, using {default}")
        return default


@dataclass
class AgentSettings:
    anthropic_api_key: Optional[str] = None
    model: str = DEFAULT_MODEL
    max_tokens: int = 1024
    temperature: float = 0.1  # Lower temp keeps tool calling reliable
    timeout: int = 120
    max_retries: int = 3
    max_read_rounds: int = 3
    max_clarification_rounds: int = 2
    supabase_url: Optional[str] = None
    supabase_service_role_key: Optional[str] = None
    user_id: Optional[str] = None
    finnhub_api_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> 'AgentSettings':
        load_dotenv()
        return cls(
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
            model=os.getenv("MNE_MODEL") or DEFAULT_MODEL,
            max_tokens=_env_int("MNE_MAX_TOKENS", 1024, minimum=1),
            temperature=_env_float("MNE_TEMPERATURE", 0.1),
            timeout=_env_int("MNE_LLM_TIMEOUT", 120, minimum=1),
            max_retries=_env_int("MNE_LLM_MAX_RETRIES", 3),
            max_read_rounds=_env_int("MNE_MAX_READ_ROUNDS", 3, minimum=1),
            max_clarification_rounds=_env_int("MNE_MAX_CLARIFICATION_ROUNDS", 2),
            supabase_url=os.getenv("SUPABASE_URL"),
            supabase_service_role_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY"),
            user_id=os.getenv("MNE_USER_ID"),
            finnhub_api_key=os.getenv("FINNHUB_API_KEY"),
        )
