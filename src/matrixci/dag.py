# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Set

from .errors import SpecificationError
from .matrix import expand
from .model import JobInstance, Pipeline, RunContext, StageSpec


@dataclass(frozen=True)
class StageGraph:
    """
    Stage DAG with `needs` resolved to indices at load time.

    needs[i]      -> indices stage i waits for
    dependents[i] -> indices waiting for stage i
    order         -> deterministic topological order
    """
    stages: List[StageSpec]
    index: Dict[str, int]
    needs: List[List[int]]
    dependents: List[List[int]]
    order: List[int]

    def ancestors(self, idx: int) -> Set[int]:
        seen: Set[int] = set()
        stack = list(self.needs[idx])
        while stack:
            n = stack.pop()
            if n not in seen:
                seen.add(n)
                stack.extend(self.needs[n])
        return seen

    def levels(self) -> List[List[str]]:
        """Stages grouped into waves that could run side by side."""
        depth: Dict[int, int] = {}
        for i in self.order:
            depth[i] = 1 + max((depth[n] for n in self.needs[i]), default=-1)
        out: List[List[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for i in self.order:
            out[depth[i]].append(self.stages[i].name)
        return out


def build_graph(stages: List[StageSpec]) -> StageGraph:
    """
    Requires:
      - stage.name unique
      - stage.needs naming declared stages only
      - no cycles
    Anything else is a SpecificationError.
    """
    names = [s.name for s in stages]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise SpecificationError(f"Duplicate stage names found: {dupes}")

    index = {name: i for i, name in enumerate(names)}
    needs: List[List[int]] = [[] for _ in stages]
    dependents: List[List[int]] = [[] for _ in stages]

    problems: List[str] = []
    for i, stage in enumerate(stages):
        for dep in stage.needs:
            if dep not in index:
                problems.append(
                    f"Stage '{stage.name}' needs missing stage '{dep}'. Known stages: {sorted(index)}"
                )
                continue
            j = index[dep]
            # Edge dep -> stage (dep must finish before stage)
            if j not in needs[i]:
                needs[i].append(j)
                dependents[j].append(i)
    if problems:
        raise SpecificationError("Dangling needs reference", problems)

    order = topo_order(needs, dependents)
    if len(order) != len(stages):
        stuck = sorted(names[i] for i in range(len(stages)) if i not in set(order))
        raise SpecificationError(f"Stage graph has a cycle. Stuck stages: {stuck}")

    return StageGraph(stages=list(stages), index=index, needs=needs, dependents=dependents, order=order)


def topo_order(needs: List[List[int]], dependents: List[List[int]]) -> List[int]:
    """Kahn's algorithm with declaration order as tie-break. Short result = cycle."""
    indeg = [len(n) for n in needs]
    q = deque(i for i, d in enumerate(indeg) if d == 0)
    order: List[int] = []
    while q:
        node = q.popleft()
        order.append(node)
        for child in sorted(dependents[node]):
            indeg[child] -= 1
            if indeg[child] == 0:
                q.append(child)
    return order


@dataclass
class RunGraph:
    """
    Stage graph plus the arena of expanded JobInstances, keyed by stage name.

    Every job of a stage depends on every job of each stage in its `needs`.
    """
    graph: StageGraph
    jobs: Dict[str, List[JobInstance]] = field(default_factory=dict)
    context: Optional[RunContext] = None

    @classmethod
    def build(cls, pipeline: Pipeline, context: Optional[RunContext] = None) -> "RunGraph":
        stages = pipeline.stages
        if pipeline.env:
            # pipeline env is the base, stage env wins
            stages = [replace(s, env={**pipeline.env, **s.env}) for s in stages]
        graph = build_graph(stages)
        jobs = {s.name: expand(s, context) for s in graph.stages}
        return cls(graph=graph, jobs=jobs, context=context)

    def all_jobs(self) -> List[JobInstance]:
        out: List[JobInstance] = []
        for i in self.graph.order:
            out.extend(self.jobs[self.graph.stages[i].name])
        return out

    def prerequisites(self, job: JobInstance) -> List[JobInstance]:
        idx = self.graph.index[job.stage]
        out: List[JobInstance] = []
        for n in self.graph.needs[idx]:
            out.extend(self.jobs[self.graph.stages[n].name])
        return out
