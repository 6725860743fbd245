from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import psutil

from worker_sizing.common.logger import get_logger

logger = get_logger("system_resources")

CGROUP_V2_MEMORY_MAX = "/sys/fs/cgroup/memory.max"
CGROUP_V1_MEMORY_LIMIT = "/sys/fs/cgroup/memory/memory.limit_in_bytes"

# cgroup v1 reports an unlimited group as LONG_MAX rounded down to a page;
# anything this close to it is unlimited on 4 KiB and 64 KiB page kernels alike
CGROUP_V1_UNLIMITED = 2**63 - 2**20

MB = 1024 * 1024


@dataclass(frozen=True)
class ResourceSnapshot:
    host_memory_bytes: int
    free_memory_bytes: int
    cpu_count: int
    container_memory_limit_bytes: Optional[int] = None

    @property
    def is_container_constrained(self) -> bool:
        return self.container_memory_limit_bytes is not None

    @property
    def memory_source(self) -> str:
        return "container" if self.is_container_constrained else "host"


def _read_limit(path: str) -> Optional[str]:
    try:
        return Path(path).read_text(encoding="utf-8").strip()
    except (OSError, ValueError) as e:
        logger.debug(f"cgroup probe {path} unavailable: {e}")
        return None


def read_cgroup_v2_limit(path: str = CGROUP_V2_MEMORY_MAX) -> Optional[int]:
    raw = _read_limit(path)
    if not raw or raw == "max":
        return None
    try:
        value = int(raw)
    except ValueError:
        logger.debug(f"cgroup v2 limit {raw!r} in {path} is not a byte count")
        return None
    return value if value > 0 else None


def read_cgroup_v1_limit(path: str = CGROUP_V1_MEMORY_LIMIT) -> Optional[int]:
    raw = _read_limit(path)
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        logger.debug(f"cgroup v1 limit {raw!r} in {path} is not a byte count")
        return None
    if value <= 0 or value >= CGROUP_V1_UNLIMITED:
        return None
    return value


def detect_container_limit(
    v2_path: str = CGROUP_V2_MEMORY_MAX,
    v1_path: str = CGROUP_V1_MEMORY_LIMIT,
) -> Optional[int]:
    """Memory ceiling enforced on this process by its cgroup, or None.

    cgroup v2 wins over v1; the first tier reporting a finite limit is used.
    """
    limit = read_cgroup_v2_limit(v2_path)
    if limit is not None:
        return limit
    return read_cgroup_v1_limit(v1_path)


def detect_resources(
    v2_path: str = CGROUP_V2_MEMORY_MAX,
    v1_path: str = CGROUP_V1_MEMORY_LIMIT,
) -> ResourceSnapshot:
    vm = psutil.virtual_memory()
    logical_cpu = psutil.cpu_count(logical=True) or 1

    snapshot = ResourceSnapshot(
        host_memory_bytes=vm.total,
        free_memory_bytes=vm.available,
        cpu_count=logical_cpu,
        container_memory_limit_bytes=detect_container_limit(v2_path, v1_path),
    )
    logger.debug(
        f"resources: host={snapshot.host_memory_bytes // MB}MB free={snapshot.free_memory_bytes // MB}MB "
        f"cpus={snapshot.cpu_count} container_limit={snapshot.container_memory_limit_bytes}"
    )
    return snapshot
