import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from worker_sizing.common.logger import get_logger
from worker_sizing.core.system_resources import MB, ResourceSnapshot

logger = get_logger("worker_calculator")

HOST_MEMORY_BASES = ("free", "total")


class DeploymentMode(Enum):
    HOST = "host"
    CONTAINER = "container"
    SESSION_LIMITED = "session_limited"


@dataclass(frozen=True)
class SizingPolicy:
    memory_per_worker_bytes: int
    utilization_threshold: float = 0.8
    min_workers: int = 1
    max_workers: int = 10
    forced_sequential: bool = False
    use_cpu_candidate: bool = True
    host_memory_basis: str = "free"
    host_memory_cap_bytes: Optional[int] = None

    def __post_init__(self):
        for name in ("min_workers", "max_workers"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{name} must be an integer, got {value!r}")
        for name in ("forced_sequential", "use_cpu_candidate"):
            value = getattr(self, name)
            if not isinstance(value, bool):
                raise ValueError(f"{name} must be true or false, got {value!r}")
        if self.memory_per_worker_bytes <= 0:
            raise ValueError(f"memory_per_worker_bytes must be positive, got {self.memory_per_worker_bytes}")
        if not 0 < self.utilization_threshold <= 1:
            raise ValueError(f"utilization_threshold must be in (0, 1], got {self.utilization_threshold}")
        if self.min_workers < 1:
            raise ValueError(f"min_workers must be at least 1, got {self.min_workers}")
        if self.max_workers < self.min_workers:
            raise ValueError(f"max_workers ({self.max_workers}) is below min_workers ({self.min_workers})")
        if self.host_memory_basis not in HOST_MEMORY_BASES:
            raise ValueError(f"host_memory_basis must be one of {HOST_MEMORY_BASES}, got {self.host_memory_basis!r}")
        if self.host_memory_cap_bytes is not None and self.host_memory_cap_bytes <= 0:
            raise ValueError(f"host_memory_cap_bytes must be positive, got {self.host_memory_cap_bytes}")


DEFAULT_POLICIES = {
    DeploymentMode.HOST: SizingPolicy(
        memory_per_worker_bytes=200 * MB,
        max_workers=10,
        use_cpu_candidate=True,
    ),
    DeploymentMode.CONTAINER: SizingPolicy(
        memory_per_worker_bytes=250 * MB,
        max_workers=3,
        use_cpu_candidate=False,
    ),
    # the remote browser backend allows a single concurrent session
    DeploymentMode.SESSION_LIMITED: SizingPolicy(
        memory_per_worker_bytes=250 * MB,
        max_workers=1,
        forced_sequential=True,
        use_cpu_candidate=False,
    ),
}


@dataclass(frozen=True)
class SizingDecision:
    workers: int
    memory_source: str
    effective_memory_bytes: Optional[int] = None
    memory_candidate: Optional[int] = None
    cpu_candidate: Optional[int] = None
    override: Optional[int] = None
    mode: Optional[DeploymentMode] = None


def clamp(n: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, n))


def parse_override(raw: Optional[str]) -> Optional[int]:
    """Positive integer from a manual override value, or None if it should be ignored."""
    if raw is None:
        return None
    raw = str(raw).strip()
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"ignoring non-numeric worker override {raw!r}")
        return None
    if value <= 0:
        logger.warning(f"ignoring non-positive worker override {value}")
        return None
    return value


def _effective_memory(snapshot: ResourceSnapshot, policy: SizingPolicy) -> int:
    if snapshot.is_container_constrained:
        return snapshot.container_memory_limit_bytes
    # host mode sizes on free memory by default; total may already be partly in use
    if policy.host_memory_basis == "total":
        memory = snapshot.host_memory_bytes
    else:
        memory = snapshot.free_memory_bytes
    if policy.host_memory_cap_bytes is not None:
        memory = min(memory, policy.host_memory_cap_bytes)
    return memory


def decide(
    snapshot: ResourceSnapshot,
    policy: SizingPolicy,
    override: Optional[int] = None,
    mode: Optional[DeploymentMode] = None,
) -> SizingDecision:
    """Work out the worker count for ``snapshot`` under ``policy``.

    A manual override wins but never exceeds ``policy.max_workers``. Otherwise
    forced sequential execution pins the count to 1, and the automatic path
    takes the smaller of the memory and CPU candidates, clamped to the policy
    bounds. The CPU candidate only applies outside a container, where the
    cgroup limit is already the hard ceiling.
    """
    source = snapshot.memory_source

    if override is not None and override > 0:
        return SizingDecision(
            workers=1 if policy.forced_sequential else min(override, policy.max_workers),
            memory_source=source,
            override=override,
            mode=mode,
        )

    if policy.forced_sequential:
        return SizingDecision(workers=1, memory_source=source, mode=mode)

    effective = _effective_memory(snapshot, policy)
    memory_candidate = math.floor(effective * policy.utilization_threshold / policy.memory_per_worker_bytes)
    candidates = [memory_candidate]

    cpu_candidate = None
    if policy.use_cpu_candidate and not snapshot.is_container_constrained:
        cpu_candidate = math.floor(snapshot.cpu_count * policy.utilization_threshold)
        candidates.append(cpu_candidate)

    workers = clamp(min(candidates), policy.min_workers, policy.max_workers)
    return SizingDecision(
        workers=workers,
        memory_source=source,
        effective_memory_bytes=effective,
        memory_candidate=memory_candidate,
        cpu_candidate=cpu_candidate,
        mode=mode,
    )


def calculate_workers(
    snapshot: ResourceSnapshot,
    policy: SizingPolicy,
    override: Optional[int] = None,
) -> int:
    return decide(snapshot, policy, override).workers
