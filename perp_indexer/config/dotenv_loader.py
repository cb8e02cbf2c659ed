"""
Explicit dotenv loader, called by run.py before the CLI is imported.

- ENVIRONMENT unset or `dev`: load `.env`, then `.env.local` (local wins).
- ENVIRONMENT=prod: load nothing; the process environment is authoritative.

Importing this module, or perp_indexer.config.config, never reads a dotenv
file; only load_dotenv_files() does.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv

DEFAULT_ENVIRONMENT = "dev"
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


def current_environment() -> str:
    return (os.getenv("ENVIRONMENT") or DEFAULT_ENVIRONMENT).strip().lower()


def load_dotenv_files(*, repo_root: Path | None = None) -> List[Path]:
    """
    Load the project's dotenv files for local runs.

    Args:
        repo_root: directory holding .env / .env.local (default: project root)

    Returns:
        The files that were loaded, in load order
    """
    if current_environment() == "prod":
        return []

    root = repo_root or PROJECT_ROOT
    loaded = []
    # .env never overrides the shell; .env.local overrides both
    for name, override in ((".env", False), (".env.local", True)):
        path = root / name
        if path.is_file():
            load_dotenv(dotenv_path=path, override=override)
            loaded.append(path)
    return loaded
