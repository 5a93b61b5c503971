# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import List

from .definition import load_pipeline
from .errors import ConfigurationError
from .model import Job


# ----------------------------------------------------------------------
# Workflow loading (local file)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path, *, retention_days: float = 1) -> List[Job]:
    """
    Load a pipeline from a python workflow file or a JSON definition.

    A python file must define either:
      - workflow() -> List[Job]
      - JOBS = [Job, ...]

    `retention_days` is the default for JSON outputs that do not set their own.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix == ".json":
        return load_pipeline(wf_path, retention_days=retention_days)
    if wf_path.suffix != ".py":
        raise ConfigurationError(f"Workflow must be a .py or .json file, got: {wf_path.name}")

    module_name = f"compatgate_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    jobs = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            jobs = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise ConfigurationError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from compatgate import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`"
                ) from e
            raise
    elif "JOBS" in globals_dict:
        jobs = globals_dict["JOBS"]

    if not isinstance(jobs, list) or not all(isinstance(j, Job) for j in jobs):
        raise ConfigurationError(
            "Workflow must return/define a List[Job]. "
            "Define workflow() -> List[Job] or JOBS = [Job, ...].",
            details={"file": str(wf_path)},
        )

    return jobs
