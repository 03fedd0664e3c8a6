# triggers.py
from __future__ import annotations

from typing import Iterable, List, Optional

from .conditions import evaluate, glob_match
from .model import RunContext, TriggerClause

TRIGGER_EVENTS = ("push", "pull_request")


def _matches_any(value: str, patterns: Optional[List[str]]) -> bool:
    return any(glob_match(value, p) for p in patterns or [])


def _filter(value: str, include: Optional[List[str]], ignore: Optional[List[str]]) -> bool:
    if include is not None and not _matches_any(value, include):
        return False
    return not _matches_any(value, ignore)


def clause_matches(clause: TriggerClause, context: RunContext) -> bool:
    """
    push:
      - matches push and tag_push events
      - branches only -> tag pushes never match (and vice versa)
      - neither -> every push matches
    pull_request:
      - branches are matched against the PR target (base_ref)
    """
    if clause.event == "pull_request":
        if not evaluate("event == 'pull_request'", context):
            return False
        target = context.base_ref or context.ref_name
        return _filter(target, clause.branches, clause.branches_ignore)

    if clause.event != "push" or not evaluate("github.event_name == 'push'", context):
        return False

    has_branch_filter = clause.branches is not None or clause.branches_ignore is not None
    has_tag_filter = clause.tags is not None or clause.tags_ignore is not None

    if context.ref_kind == "tag":
        if has_branch_filter and not has_tag_filter:
            return False
        return _filter(context.ref_name, clause.tags, clause.tags_ignore)

    if has_tag_filter and not has_branch_filter:
        return False
    return _filter(context.ref_name, clause.branches, clause.branches_ignore)


def should_run(triggers: Iterable[TriggerClause], context: RunContext) -> bool:
    """Fails closed: no matching clause (or no clauses at all) means no run."""
    return any(clause_matches(c, context) for c in triggers)


def matching_clauses(triggers: Iterable[TriggerClause], context: RunContext) -> List[TriggerClause]:
    return [c for c in triggers if clause_matches(c, context)]
