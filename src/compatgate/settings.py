from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Mapping, Optional

from .artifacts import DEFAULT_ARTIFACT_DIR
from .errors import ConfigurationError
from .runners import Resource, parse_runners

DEFAULT_RUNNERS = "local*4"
DEFAULT_TARGET_REF = "origin/master"


@dataclass(frozen=True)
class Settings:
    workers: Optional[int] = None
    artifact_dir: str = DEFAULT_ARTIFACT_DIR
    retention_days: float = 1
    target_ref: str = DEFAULT_TARGET_REF
    job_timeout: Optional[float] = None
    acquire_timeout: Optional[float] = None
    runners: str = DEFAULT_RUNNERS

    def resources(self) -> List[Resource]:
        return parse_runners(self.runners)


def _number(env: Mapping[str, str], key: str, cast):
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return None
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}") from None


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ
    retention = _number(env, "COMPATGATE_RETENTION_DAYS", float)
    return Settings(
        workers=_number(env, "COMPATGATE_WORKERS", int),
        artifact_dir=env.get("COMPATGATE_ARTIFACT_DIR", DEFAULT_ARTIFACT_DIR),
        retention_days=retention if retention is not None else 1,
        target_ref=env.get("COMPATGATE_TARGET_REF", DEFAULT_TARGET_REF),
        job_timeout=_number(env, "COMPATGATE_JOB_TIMEOUT", float),
        acquire_timeout=_number(env, "COMPATGATE_ACQUIRE_TIMEOUT", float),
        runners=env.get("COMPATGATE_RUNNERS", DEFAULT_RUNNERS),
    )
