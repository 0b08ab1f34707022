"""
Dotenv loading for broker credentials and local overrides.

Outside prod, ``.env`` then ``.env.local`` are read from the project root.
``STOPGUARD_ENV_FILE`` names one more file (for example a per-account
credentials file) loaded last, in any environment. Prod never reads the
project-root files.

Must not import `stopguard.config.config` (runs before config is read).
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

ENV_FILE_VAR = "STOPGUARD_ENV_FILE"


def _is_prod_env() -> bool:
    return (os.getenv("ENVIRONMENT") or "prod").strip().lower() == "prod"


def load_dotenv_files(*, repo_root: Path | None = None) -> list[Path]:
    """
    Load dotenv files and return the ones that were read, in load order.

    Raises:
        FileNotFoundError: ``STOPGUARD_ENV_FILE`` is set but names no file
    """
    root = repo_root or Path(__file__).resolve().parent.parent.parent
    loaded: list[Path] = []

    if not _is_prod_env():
        for name, override in ((".env", False), (".env.local", True)):
            path = root / name
            if path.exists():
                load_dotenv(dotenv_path=path, override=override)
                loaded.append(path)

    explicit = os.getenv(ENV_FILE_VAR)
    if explicit:
        path = Path(explicit)
        if not path.is_file():
            raise FileNotFoundError(f"{ENV_FILE_VAR} points at a missing file: {path}")
        load_dotenv(dotenv_path=path, override=True)
        loaded.append(path)

    return loaded
