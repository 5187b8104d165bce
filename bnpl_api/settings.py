"""
Process settings for the API, read from the environment.

A ``.env`` file in the working directory is loaded first (python-dotenv);
real environment variables win over it.

    BNPL_DATABASE_URL        SQLAlchemy URL (default: local SQLite file)
    BNPL_AUTH_TOKEN_SECRET   HMAC key for checkout authorization tokens
    BNPL_LOG_LEVEL           logging level name (default INFO)
    BNPL_POLICY_PATH         optional override of the policy YAML
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


@dataclass(frozen=True)
class ApiSettings:
    database_url: str
    auth_token_secret: str
    log_level: int = logging.INFO
    policy_path: Path | None = None

    @classmethod
    def from_env(cls, env_file: Path | None = None) -> "ApiSettings":
        load_dotenv(env_file or Path.cwd() / ".env", override=False)
        secret = os.getenv("BNPL_AUTH_TOKEN_SECRET", "")
        if not secret:
            raise RuntimeError("BNPL_AUTH_TOKEN_SECRET must be set")
        level_name = os.getenv("BNPL_LOG_LEVEL", "INFO").upper()
        policy_path = os.getenv("BNPL_POLICY_PATH")
        return cls(
            database_url=os.getenv("BNPL_DATABASE_URL", "sqlite:///bnpl.db"),
            auth_token_secret=secret,
            log_level=getattr(logging, level_name, logging.INFO),
            policy_path=Path(policy_path) if policy_path else None,
        )
