from __future__ import annotations

from pathlib import Path


def get_repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def get_project_config_path() -> Path:
    return get_repo_root() / "config.yaml"


def get_user_dir() -> Path:
    return Path.home() / ".scrapeprep"


def get_global_config_path() -> Path:
    return get_user_dir() / "config.yaml"


def get_default_store_url() -> str:
    return f"sqlite:///{get_user_dir() / 'scrapeprep.db'}"
