"""Trigger clauses decide whether an event starts the pipeline at all."""

import pytest

from matrixci.dsl import on_pull_request, on_push
from matrixci.model import RunContext
from matrixci.triggers import matching_clauses, should_run

TRIGGERS = [on_push(branches=["main"], tags=["v*.*.*"]), on_pull_request(branches=["main"])]


def push(ref: str) -> RunContext:
    return RunContext.from_ref("push", ref)


@pytest.mark.parametrize(
    "context,expected",
    [
        (push("refs/heads/main"), True),
        (push("refs/heads/feature/x"), False),
        (push("refs/tags/v1.2.3"), True),
        (push("refs/tags/latest"), False),
        (RunContext(event="pull_request", ref_name="feature/x", base_ref="main"), True),
        (RunContext(event="pull_request", ref_name="feature/x", base_ref="develop"), False),
    ],
)
def test_observed_trigger_set(context, expected):
    assert should_run(TRIGGERS, context) is expected


def test_no_triggers_never_fire():
    assert should_run([], push("refs/heads/main")) is False


def test_branch_only_clause_ignores_tags():
    assert not should_run([on_push(branches=["**"])], push("refs/tags/v1.0.0"))


def test_tag_only_clause_ignores_branches():
    assert not should_run([on_push(tags=["*"])], push("refs/heads/main"))


def test_bare_push_clause_matches_every_push():
    clause = [on_push()]
    assert should_run(clause, push("refs/heads/anything"))
    assert should_run(clause, push("refs/tags/v9"))
    assert not should_run(clause, RunContext(event="pull_request", ref_name="x", base_ref="main"))


def test_ignore_lists():
    clause = [on_push(branches=["**"], branches_ignore=["wip/**"], tags_ignore=["*-rc*"])]
    assert should_run(clause, push("refs/heads/feature/a"))
    assert not should_run(clause, push("refs/heads/wip/a/b"))
    # branches given, tags not: tag pushes stay out even with tags_ignore present
    assert not should_run([on_push(branches_ignore=["wip/**"])], push("refs/tags/v1"))
    assert should_run([on_push(tags_ignore=["*-rc*"])], push("refs/tags/v1"))
    assert not should_run([on_push(tags_ignore=["*-rc*"])], push("refs/tags/v1-rc1"))


def test_pull_request_falls_back_to_ref_name():
    assert should_run([on_pull_request(branches=["main"])], RunContext(event="pull_request", ref_name="main"))


def test_pull_request_clause_does_not_match_push():
    assert not should_run([on_pull_request(branches=["main"])], push("refs/heads/main"))


def test_matching_clauses_lists_every_match():
    ctx = push("refs/heads/main")
    clauses = [on_push(branches=["main"]), on_push(branches=["m*"]), on_push(tags=["v*"])]
    assert matching_clauses(clauses, ctx) == clauses[:2]
