# matrix.py
"""
Matrix expansion: StageSpec -> concrete JobInstances.

    axes      os: [linux, mac] x py: [3.11, 3.12]  -> 4 combinations
    exclude   drops every combination agreeing with all keys of an entry
    include   merged into every combination it does not contradict on an
              original axis; appended as a new combination if it merges nowhere

Afterwards `${{ matrix.<key> }}` and run-context variables are substituted
into step names/params/env, `produces`, `runs_on` and the stage env.
"""

from __future__ import annotations

import itertools
import re
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from .conditions import KNOWN_VARIABLES
from .errors import SpecificationError
from .model import ArtifactRef, JobInstance, MatrixSpec, RunContext, StageSpec

_TEMPLATE_RE = re.compile(r"\$\{\{\s*([A-Za-z_][A-Za-z0-9_.\-]*)\s*\}\}")
_SCALARS = (str, int, float, bool)


def _agrees(combo: Mapping[str, Any], entry: Mapping[str, Any]) -> bool:
    return all(k in combo and combo[k] == v for k, v in entry.items())


def _non_scalars(spec: MatrixSpec) -> List[str]:
    found: List[str] = []
    for axis, values in spec.axes.items():
        found.extend(f"axis {axis}: {v!r}" for v in values if v is not None and not isinstance(v, _SCALARS))
    for where, entries in (("include", spec.include), ("exclude", spec.exclude)):
        for entry in entries:
            found.extend(
                f"{where} {k}: {v!r}" for k, v in entry.items() if v is not None and not isinstance(v, _SCALARS)
            )
    return found


def combinations(stage: StageSpec) -> List[Dict[str, Any]]:
    """
    Ordered list of matrix assignments for a stage ([{}] when it has no matrix).
    Raises SpecificationError for empty axes, non-scalar values, duplicates
    and empty expansions.
    """
    spec = stage.matrix
    if spec is None or (not spec.axes and not spec.include):
        if spec is not None and spec.exclude:
            raise SpecificationError(f"Stage '{stage.name}' matrix has exclude entries but no axes")
        return [{}]

    for axis, values in spec.axes.items():
        if not values:
            raise SpecificationError(
                f"Stage '{stage.name}' matrix axis '{axis}' has no values",
                ["an empty axis would silently drop the whole stage"],
            )

    bad = _non_scalars(spec)
    if bad:
        raise SpecificationError(
            f"Stage '{stage.name}' matrix values must be strings, numbers or booleans", bad
        )

    for entry in spec.exclude:
        unknown = sorted(set(entry) - set(spec.axes))
        if unknown:
            raise SpecificationError(
                f"Stage '{stage.name}' matrix exclude uses unknown axes: {unknown}"
            )

    names = list(spec.axes)
    combos: List[Dict[str, Any]] = []
    if names:
        for values in itertools.product(*(spec.axes[n] for n in names)):
            combo = dict(zip(names, values))
            if not any(_agrees(combo, ex) for ex in spec.exclude):
                combos.append(combo)

    original = set(names)
    extra: List[Dict[str, Any]] = []
    for entry in spec.include:
        merged = False
        for combo in combos:
            if all(combo[k] == v for k, v in entry.items() if k in original):
                combo.update(entry)
                merged = True
        if not merged:
            extra.append(dict(entry))
    combos.extend(extra)

    if not combos:
        raise SpecificationError(f"Stage '{stage.name}' matrix expands to zero jobs")

    # job ids and artifact producers are built from the text of each value
    seen: Set[Tuple[Tuple[str, str], ...]] = set()
    for combo in combos:
        marker = tuple(sorted((k, str(v)) for k, v in combo.items()))
        if marker in seen:
            raise SpecificationError(
                f"Stage '{stage.name}' matrix has duplicate combination {combo}",
                ["values are compared as text, so 1 and '1' name the same job"],
            )
        seen.add(marker)
    return combos


def common_keys(combos: Iterable[Mapping[str, Any]]) -> Set[str]:
    """Matrix keys set by every combination."""
    keys: Optional[Set[str]] = None
    for combo in combos:
        keys = set(combo) if keys is None else keys & set(combo)
    return keys or set()


# ---------------------------------------------------------------------
# ${{ }} templates
# ---------------------------------------------------------------------

def template_names(value: Any) -> Set[str]:
    """All variable names referenced by templates inside value (recursively)."""
    out: Set[str] = set()
    if isinstance(value, str):
        out.update(_TEMPLATE_RE.findall(value))
    elif isinstance(value, Mapping):
        for v in value.values():
            out |= template_names(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            out |= template_names(v)
    return out


def allowed_template_names(stage: StageSpec) -> Set[str]:
    keys = stage.matrix.keys() if stage.matrix else []
    return set(KNOWN_VARIABLES) | {f"matrix.{k}" for k in keys}


def render(value: Any, variables: Mapping[str, Any], *, strict_context: bool = True) -> Any:
    """
    Substitute templates. Unknown matrix keys always raise; context variables
    are left untouched when strict_context is False (no event known yet).
    """
    if isinstance(value, str):
        def sub(m: "re.Match[str]") -> str:
            name = m.group(1)
            if name in variables:
                v = variables[name]
                return "" if v is None else str(v)
            if name.startswith("matrix.") or strict_context or name not in KNOWN_VARIABLES:
                raise SpecificationError(f"Unknown template variable '{name}' in {value!r}")
            return m.group(0)
        return _TEMPLATE_RE.sub(sub, value)
    if isinstance(value, Mapping):
        return {k: render(v, variables, strict_context=strict_context) for k, v in value.items()}
    if isinstance(value, list):
        return [render(v, variables, strict_context=strict_context) for v in value]
    if isinstance(value, tuple):
        return tuple(render(v, variables, strict_context=strict_context) for v in value)
    return value


def _variables(combo: Mapping[str, Any], context: Optional[RunContext]) -> Dict[str, Any]:
    variables: Dict[str, Any] = dict(context.variables()) if context is not None else {}
    variables.update({f"matrix.{k}": v for k, v in combo.items()})
    return variables


def expand(stage: StageSpec, context: Optional[RunContext] = None) -> List[JobInstance]:
    """
    One JobInstance per matrix combination, in deterministic order.
    A stage without a matrix gives exactly one job.
    """
    jobs: List[JobInstance] = []
    strict = context is not None
    for index, combo in enumerate(combinations(stage)):
        variables = _variables(combo, context)

        def r(value: Any) -> Any:
            return render(value, variables, strict_context=strict)

        steps = tuple(
            replace(s, name=r(s.name), params=r(s.params), env=r(s.env))
            for s in stage.steps
        )
        consumes = tuple(
            ArtifactRef(stage=ref.stage, name=r(ref.name), matrix=r(ref.matrix) if ref.matrix else None)
            for ref in stage.consumes
        )
        jobs.append(
            JobInstance(
                stage=stage.name,
                index=index,
                assignment=tuple(combo.items()),
                steps=steps,
                produces=tuple(r(p) for p in stage.produces),
                consumes=consumes,
                env=r(stage.env),
                runs_on=r(stage.runs_on) if stage.runs_on else None,
                timeout=stage.timeout,
            )
        )
    return jobs
