# conditions.py
"""
Tiny expression language used for stage gates (`if:`) and trigger checks.

    startsWith(github.ref, 'refs/tags/v') && event != 'pull_request'
    glob(ref_name, 'v*.*.*') || ref_name == 'main'
    !(actor == 'dependabot')

Supported: string/boolean literals, `==` / `!=`, `&&` / `||` / `!`,
parentheses, and the functions startsWith, endsWith, contains, glob.
An expression may be wrapped in `${{ ... }}`.

Variables are looked up by name in a mapping (RunContext.variables()).
Any lookup problem raises ConditionEvaluationError; callers that gate work
on a condition treat that as "closed".
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from .errors import ConditionEvaluationError, SpecificationError

KNOWN_VARIABLES = frozenset({
    "event", "ref", "ref_name", "ref_kind", "actor", "base_ref", "sha",
    "github.event_name", "github.ref", "github.ref_name", "github.ref_type",
    "github.actor", "github.base_ref", "github.sha",
})

Resolver = Callable[[str], Any]


# ---------------------------------------------------------------------
# Glob matching (shared with triggers)
# ---------------------------------------------------------------------

@lru_cache(maxsize=256)
def _compile_glob(pattern: str) -> "re.Pattern[str]":
    out: List[str] = []
    i = 0
    while i < len(pattern):
        c = pattern[i]
        if c == "*":
            if pattern[i + 1:i + 2] == "*":
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("".join(out))


def glob_match(value: str, pattern: str) -> bool:
    """
    Anchored glob match: `*` = any run of non-'/' chars, `**` = anything,
    `?` = one non-'/' char. A pattern with no wildcard is an exact match.
    """
    return _compile_glob(pattern).fullmatch(value) is not None


# ---------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------

def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value != ""
    return bool(value)


class Expression:
    def evaluate(self, resolve: Resolver) -> Any:
        raise NotImplementedError

    def names(self) -> Set[str]:
        return set()


@dataclass(frozen=True)
class Literal(Expression):
    value: Any

    def evaluate(self, resolve: Resolver) -> Any:
        return self.value


@dataclass(frozen=True)
class Var(Expression):
    name: str

    def evaluate(self, resolve: Resolver) -> Any:
        return resolve(self.name)

    def names(self) -> Set[str]:
        return {self.name}


@dataclass(frozen=True)
class Not(Expression):
    operand: Expression

    def evaluate(self, resolve: Resolver) -> Any:
        return not _truthy(self.operand.evaluate(resolve))

    def names(self) -> Set[str]:
        return self.operand.names()


@dataclass(frozen=True)
class BinOp(Expression):
    op: str
    left: Expression
    right: Expression

    def evaluate(self, resolve: Resolver) -> Any:
        if self.op == "&&":
            return _truthy(self.left.evaluate(resolve)) and _truthy(self.right.evaluate(resolve))
        if self.op == "||":
            return _truthy(self.left.evaluate(resolve)) or _truthy(self.right.evaluate(resolve))
        a = self.left.evaluate(resolve)
        b = self.right.evaluate(resolve)
        return (a == b) if self.op == "==" else (a != b)

    def names(self) -> Set[str]:
        return self.left.names() | self.right.names()


def _as_str(fn: str, value: Any) -> str:
    if isinstance(value, bool):
        raise TypeError(f"{fn}() expects strings, got boolean")
    return str(value)


FUNCTIONS: Dict[str, Tuple[int, Callable[..., bool]]] = {
    "startsWith": (2, lambda s, p: _as_str("startsWith", s).startswith(_as_str("startsWith", p))),
    "endsWith": (2, lambda s, p: _as_str("endsWith", s).endswith(_as_str("endsWith", p))),
    "contains": (2, lambda s, p: _as_str("contains", p) in _as_str("contains", s)),
    "glob": (2, lambda s, p: glob_match(_as_str("glob", s), _as_str("glob", p))),
}


@dataclass(frozen=True)
class Call(Expression):
    func: str
    args: Tuple[Expression, ...]

    def evaluate(self, resolve: Resolver) -> Any:
        _arity, fn = FUNCTIONS[self.func]
        values = [a.evaluate(resolve) for a in self.args]
        return fn(*values)

    def names(self) -> Set[str]:
        out: Set[str] = set()
        for a in self.args:
            out |= a.names()
        return out


# ---------------------------------------------------------------------
# Parser (recursive descent)
# ---------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<string>'(?:[^']|'')*'|"(?:[^"\\]|\\.)*")
      | (?P<op>==|!=|&&|\|\||!|\(|\)|,)
      | (?P<ident>[A-Za-z_][A-Za-z0-9_.\-]*)
    )""",
    re.VERBOSE,
)

_WRAPPED_RE = re.compile(r"^\s*\$\{\{(.*)\}\}\s*$", re.DOTALL)


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(text):
        if text[pos:].strip() == "":
            break
        m = _TOKEN_RE.match(text, pos)
        if m is None:
            raise ConditionEvaluationError(text, f"unexpected character {text[pos:].lstrip()[:1]!r}")
        kind = m.lastgroup or ""
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


def _unquote(raw: str) -> str:
    if raw.startswith("'"):
        return raw[1:-1].replace("''", "'")
    return re.sub(r"\\(.)", r"\1", raw[1:-1])


class _Parser:
    def __init__(self, source: str, tokens: List[Tuple[str, str]]):
        self.source = source
        self.tokens = tokens
        self.pos = 0

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _error(self, msg: str) -> ConditionEvaluationError:
        return ConditionEvaluationError(self.source, msg)

    def _accept(self, value: str) -> bool:
        tok = self._peek()
        if tok is not None and tok[0] == "op" and tok[1] == value:
            self.pos += 1
            return True
        return False

    def _expect(self, value: str) -> None:
        if not self._accept(value):
            tok = self._peek()
            found = tok[1] if tok else "end of expression"
            raise self._error(f"expected {value!r}, found {found!r}")

    def parse(self) -> Expression:
        if not self.tokens:
            raise self._error("empty expression")
        expr = self._or()
        tok = self._peek()
        if tok is not None:
            raise self._error(f"unexpected {tok[1]!r}")
        return expr

    def _or(self) -> Expression:
        left = self._and()
        while self._accept("||"):
            left = BinOp("||", left, self._and())
        return left

    def _and(self) -> Expression:
        left = self._unary()
        while self._accept("&&"):
            left = BinOp("&&", left, self._unary())
        return left

    def _unary(self) -> Expression:
        if self._accept("!"):
            return Not(self._unary())
        return self._cmp()

    def _cmp(self) -> Expression:
        left = self._primary()
        for op in ("==", "!="):
            if self._accept(op):
                return BinOp(op, left, self._primary())
        return left

    def _primary(self) -> Expression:
        tok = self._peek()
        if tok is None:
            raise self._error("unexpected end of expression")
        kind, value = tok
        if kind == "op" and value == "(":
            self.pos += 1
            inner = self._or()
            self._expect(")")
            return inner
        if kind == "string":
            self.pos += 1
            return Literal(_unquote(value))
        if kind == "ident":
            self.pos += 1
            if value in ("true", "false"):
                return Literal(value == "true")
            if self._accept("("):
                return self._call(value)
            return Var(value)
        raise self._error(f"unexpected {value!r}")

    def _call(self, name: str) -> Expression:
        if name not in FUNCTIONS:
            raise self._error(f"unknown function {name!r}")
        args: List[Expression] = []
        if not self._accept(")"):
            args.append(self._or())
            while self._accept(","):
                args.append(self._or())
            self._expect(")")
        arity, _fn = FUNCTIONS[name]
        if len(args) != arity:
            raise self._error(f"{name}() takes {arity} arguments, got {len(args)}")
        return Call(name, tuple(args))


@lru_cache(maxsize=512)
def parse(expr: str) -> Expression:
    """Parse an expression, raising ConditionEvaluationError on bad syntax."""
    m = _WRAPPED_RE.match(expr)
    body = m.group(1) if m else expr
    return _Parser(expr, _tokenize(body)).parse()


# ---------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------

def _variables_of(context: Any) -> Mapping[str, Any]:
    if hasattr(context, "variables"):
        return context.variables()
    return context


def evaluate(expr: str, context: Any) -> bool:
    """
    Evaluate `expr` against a RunContext (or a plain mapping of variables).

    Raises ConditionEvaluationError on syntax errors, unknown variables and
    variables without a value.
    """
    tree = parse(expr)
    variables = _variables_of(context)

    def resolve(name: str) -> Any:
        if name not in variables:
            raise ConditionEvaluationError(expr, f"unknown variable {name!r}")
        value = variables[name]
        if value is None:
            raise ConditionEvaluationError(expr, f"variable {name!r} has no value for this event")
        return value

    try:
        return _truthy(tree.evaluate(resolve))
    except TypeError as e:
        raise ConditionEvaluationError(expr, str(e)) from e


def check(expr: str, known: Iterable[str] = KNOWN_VARIABLES, *, where: str = "condition") -> None:
    """Load-time validation: syntax plus variable names. Raises SpecificationError."""
    try:
        tree = parse(expr)
    except ConditionEvaluationError as e:
        raise SpecificationError(f"Invalid {where}", [str(e)]) from e
    unknown = sorted(tree.names() - set(known))
    if unknown:
        raise SpecificationError(
            f"Invalid {where}",
            [f"unknown variable {n!r} in {expr!r}" for n in unknown],
        )
