import dataclasses
import os
import sys
from dataclasses import dataclass
from typing import Mapping, Optional

import yaml

from worker_sizing.common.logger import get_logger, emoji
from worker_sizing.core.system_resources import MB, ResourceSnapshot, detect_resources
from worker_sizing.core.worker_calculator import SizingDecision, decide, parse_override
from worker_sizing.framework.sizing_config import (
    get_cgroup_paths,
    get_override_env,
    get_policy,
    load_config,
    select_mode,
)

logger = get_logger("launcher")


@dataclass(frozen=True)
class RunnerSettings:
    """Worker-pool settings handed to the test execution engine."""

    workers: int
    file_parallelism: bool
    max_concurrency: int
    min_threads: int
    max_threads: int

    @classmethod
    def from_worker_count(cls, workers: int) -> "RunnerSettings":
        return cls(
            workers=workers,
            file_parallelism=workers > 1,
            max_concurrency=workers,
            min_threads=1,
            max_threads=workers,
        )


def log_resource_info(decision: SizingDecision, snapshot: ResourceSnapshot) -> None:
    if snapshot.is_container_constrained:
        memory_mb = snapshot.container_memory_limit_bytes // MB
    elif decision.effective_memory_bytes is not None:
        memory_mb = decision.effective_memory_bytes // MB
    else:
        memory_mb = snapshot.free_memory_bytes // MB

    mode = decision.mode.value if decision.mode else "-"
    message = (
        f"{decision.memory_source.capitalize()} memory: {memory_mb}MB "
        f"(cpus={snapshot.cpu_count}, mode={mode}) → {decision.workers} worker(s)"
    )
    if decision.override is not None:
        message += f" [override={decision.override}]"
    logger.info(emoji("MEMORY", message))


def initialize(config_path: Optional[str] = None, environ: Optional[Mapping] = None) -> RunnerSettings:
    """Size the worker pool once for this process.

    Reads the config, probes the cgroup and host resources, picks the
    deployment mode and applies the manual override from the environment.
    The returned settings are immutable; callers pass them down rather than
    recomputing.
    """
    environ = os.environ if environ is None else environ
    config = load_config(config_path)

    v2_path, v1_path = get_cgroup_paths(config)
    snapshot = detect_resources(v2_path, v1_path)
    mode = select_mode(snapshot, config, environ)
    policy = get_policy(mode, config)
    override = parse_override(environ.get(get_override_env(config)))

    decision = decide(snapshot, policy, override, mode=mode)
    log_resource_info(decision, snapshot)
    return RunnerSettings.from_worker_count(decision.workers)


def main() -> int:
    logger.info(emoji("STARTUP", "sizing test workers"))
    settings = initialize()
    yaml.safe_dump(dataclasses.asdict(settings), sys.stdout, sort_keys=False)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
