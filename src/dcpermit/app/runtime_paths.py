from __future__ import annotations

import sys
from pathlib import Path


def is_frozen_runtime() -> bool:
    return bool(getattr(sys, "frozen", False))


def source_root() -> Path:
    # src/dcpermit/app/runtime_paths.py -> repository root
    return Path(__file__).resolve().parents[3]


def app_root() -> Path:
    if is_frozen_runtime():
        return Path(sys.executable).resolve().parent
    return source_root()


def app_path(*parts: str) -> Path:
    return app_root().joinpath(*parts)


def default_data_root() -> Path:
    return app_path("data")
