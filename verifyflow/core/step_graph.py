"""
Static step dependency graph.

Loaded once per process; read-only afterwards. A step may only be worked on
once every step it depends on has succeeded.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, Optional, Tuple

from verifyflow.settings import settings
from verifyflow.store import models as m


@dataclass(frozen=True)
class StepSpec:
    step_id: str
    depends_on: FrozenSet[str]
    max_attempts: int
    required: bool = True


class StepDependencyGraph:
    def __init__(self, specs: Iterable[StepSpec], order: Optional[Tuple[str, ...]] = None):
        self._specs: Dict[str, StepSpec] = {s.step_id: s for s in specs}
        self.order: Tuple[str, ...] = tuple(order or self._specs.keys())
        self._validate()

    def _validate(self) -> None:
        for spec in self._specs.values():
            unknown = spec.depends_on - set(self._specs)
            if unknown:
                raise ValueError(f"{spec.step_id} depends on unknown steps: {sorted(unknown)}")
        if set(self.order) != set(self._specs) or len(self.order) != len(self._specs):
            raise ValueError("step order must list every step exactly once")

        # Kahn's algorithm: every step must be reachable without a cycle
        indegree = {sid: len(s.depends_on) for sid, s in self._specs.items()}
        ready = [sid for sid, n in indegree.items() if n == 0]
        seen = 0
        while ready:
            sid = ready.pop()
            seen += 1
            for other in self._specs.values():
                if sid in other.depends_on:
                    indegree[other.step_id] -= 1
                    if indegree[other.step_id] == 0:
                        ready.append(other.step_id)
        if seen != len(self._specs):
            raise ValueError("step dependency graph contains a cycle")

    def __contains__(self, step_id: str) -> bool:
        return step_id in self._specs

    def spec(self, step_id: str) -> StepSpec:
        return self._specs[step_id]

    def dependencies(self, step_id: str) -> FrozenSet[str]:
        return self._specs[step_id].depends_on

    def roots(self) -> Tuple[str, ...]:
        return tuple(sid for sid in self.order if not self._specs[sid].depends_on)

    def required_steps(self) -> Tuple[str, ...]:
        return tuple(sid for sid in self.order if self._specs[sid].required)


def _default_specs() -> Tuple[StepSpec, ...]:
    optional = settings.OPTIONAL_STEPS

    def spec(step_id: str, deps: Tuple[str, ...], max_attempts: int) -> StepSpec:
        return StepSpec(step_id, frozenset(deps), int(max_attempts), step_id not in optional)

    return (
        spec(m.PHONE_OTP, (), settings.OTP_MAX_ATTEMPTS),
        spec(m.EMAIL_OTP, (), settings.OTP_MAX_ATTEMPTS),
        spec(m.DOCUMENT, (), settings.DOCUMENT_MAX_ATTEMPTS),
        spec(m.SELFIE_LIVENESS, (), settings.SELFIE_MAX_ATTEMPTS),
        spec(m.FACE_MATCH, (m.DOCUMENT, m.SELFIE_LIVENESS), settings.FACE_MATCH_MAX_ATTEMPTS),
        spec(m.REGISTRY_CSO, (m.DOCUMENT,), settings.REGISTRY_MAX_ATTEMPTS),
        spec(m.REGISTRY_NTRA, (m.PHONE_OTP, m.DOCUMENT), settings.REGISTRY_MAX_ATTEMPTS),
        spec(m.HEADSHOT, (m.SELFIE_LIVENESS,), settings.HEADSHOT_MAX_ATTEMPTS),
    )


_GRAPH: Optional[StepDependencyGraph] = None


def get_graph() -> StepDependencyGraph:
    global _GRAPH
    if _GRAPH is None:
        _GRAPH = StepDependencyGraph(_default_specs(), order=m.STEP_ORDER)
    return _GRAPH
