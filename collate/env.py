from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


def read_env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value not in {None, ""}:
        return value

    file_var = os.getenv(f"{name}_FILE")
    if not file_var:
        return default

    try:
        content = Path(file_var).read_text(encoding="utf-8").rstrip("\r\n")
    except OSError:
        return default
    return content or default


def read_env_bool(name: str, default: bool) -> bool:
    value = (read_env(name) or "").strip().lower()
    if value in TRUE_VALUES:
        return True
    if value in FALSE_VALUES:
        return False
    return default


def read_env_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = (read_env(name) or "").strip()
    if not raw:
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        return default


@dataclass(frozen=True)
class MergeSettings:
    log_level: str = "INFO"
    workers: int = 1
    check_pages: bool = True
    exempt_pages: tuple[str, ...] = ()

    @classmethod
    def from_env(cls) -> "MergeSettings":
        exempt_raw = read_env("COLLATE_EXEMPT_PAGES") or ""
        return cls(
            log_level=(read_env("COLLATE_LOG_LEVEL") or "INFO").strip().upper(),
            workers=read_env_int("COLLATE_WORKERS", 1, minimum=1),
            check_pages=read_env_bool("COLLATE_CHECK_PAGES", True),
            exempt_pages=tuple(name.strip() for name in exempt_raw.split(",") if name.strip()),
        )
