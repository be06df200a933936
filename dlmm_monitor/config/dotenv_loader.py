"""
Explicit dotenv loader.

Rules:
- In production (`ENVIRONMENT=prod`): do not load `.env` / `.env.local`.
- Otherwise: load `.env` then `.env.local` (local overrides).

Secrets such as TELEGRAM_BOT_TOKEN and DATABASE_URL usually come from here
in development. This must remain dependency-light and MUST NOT import
`dlmm_monitor.config.config`.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

ENV_FILES = (".env", ".env.local")


def _is_prod_env() -> bool:
    return str(os.getenv("ENVIRONMENT", "dev") or "dev").strip().lower() == "prod"


def load_dotenv_files(*, repo_root: Path | None = None) -> list[Path]:
    """
    Load dotenv files for local/dev usage. No-op in prod.

    Returns the files that were loaded, in load order.
    """
    if _is_prod_env():
        return []

    root = repo_root or Path.cwd()
    loaded = []
    for name in ENV_FILES:
        path = root / name
        if path.exists():
            # .env never overrides the real environment; .env.local overrides both
            load_dotenv(dotenv_path=path, override=(name == ".env.local"))
            loaded.append(path)
    return loaded
