"""
Static check for code that bypasses the soft delete lifecycle.

Walks Python sources and reports:

* ``hard-delete``: calls to ``delete_one``, ``delete_many``,
  ``find_one_and_delete`` or ``find_by_id_and_delete``
* ``raw-aggregate``: calls to ``aggregate`` instead of ``aggregate_safe``
* ``search-stage``: ``aggregate_safe`` called with a literal pipeline that
  contains a search stage, where deleted filtering is not applied

A call can be exempted with a ``# softpurge: allow-<rule>`` comment on its
first line, or ``# softpurge: allow`` for every rule.
"""

import ast
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Set, Union

from .storage.base import SEARCH_STAGES

HARD_DELETE = "hard-delete"
RAW_AGGREGATE = "raw-aggregate"
SEARCH_STAGE = "search-stage"

FORBIDDEN_METHODS = frozenset(
    {"delete_one", "delete_many", "find_one_and_delete", "find_by_id_and_delete"}
)

_PRAGMA = re.compile(r"#\s*softpurge:\s*allow(?:-(?P<rule>[\w-]+))?")


@dataclass(frozen=True)
class Violation:
    """One reported call site."""

    path: str
    line: int
    column: int
    rule: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}:{self.line}:{self.column}: {self.rule}: {self.message}"


def _stage_name(node: ast.expr) -> Optional[str]:
    if not isinstance(node, ast.Dict) or len(node.keys) != 1:
        return None
    key = node.keys[0]
    if isinstance(key, ast.Constant) and isinstance(key.value, str):
        return key.value
    return None


def _allowed_rules(line: str) -> Optional[Set[str]]:
    """Rules exempted on a source line. An empty set means all of them."""
    match = _PRAGMA.search(line)
    if match is None:
        return None
    rule = match.group("rule")
    return {rule} if rule else set()


class _PolicyVisitor(ast.NodeVisitor):
    def __init__(self, path: str, lines: List[str]):
        self.path = path
        self.lines = lines
        self.violations: List[Violation] = []

    def _report(self, node: ast.AST, rule: str, message: str) -> None:
        lineno = getattr(node, "lineno", 1)
        line = self.lines[lineno - 1] if 0 < lineno <= len(self.lines) else ""
        allowed = _allowed_rules(line)
        if allowed is not None and (not allowed or rule in allowed):
            return
        self.violations.append(
            Violation(
                self.path, lineno, getattr(node, "col_offset", 0) + 1, rule, message
            )
        )

    def visit_Call(self, node: ast.Call) -> None:
        if isinstance(node.func, ast.Attribute):
            method = node.func.attr

            if method in FORBIDDEN_METHODS:
                self._report(
                    node,
                    HARD_DELETE,
                    f"Hard delete ({method}) is not allowed. Use soft delete methods "
                    "instead (e.g. soft_delete, update_active).",
                )
            elif method == "aggregate":
                self._report(
                    node,
                    RAW_AGGREGATE,
                    "Do not use aggregate(). Use aggregate_safe() to enforce soft "
                    "delete policy.",
                )
            elif method == "aggregate_safe" and node.args:
                pipeline = node.args[0]
                if isinstance(pipeline, (ast.List, ast.Tuple)):
                    for stage in pipeline.elts:
                        name = _stage_name(stage)
                        if name in SEARCH_STAGES:
                            self._report(
                                stage,
                                SEARCH_STAGE,
                                f"This aggregation uses {name}. Soft delete cannot be "
                                "enforced automatically. Ensure deleted filtering is "
                                "handled explicitly.",
                            )
                            break

        self.generic_visit(node)


def check_source(source: str, path: str = "<string>") -> List[Violation]:
    """
    Check one module's source text.

    Raises:
        SyntaxError: The source does not parse
    """
    tree = ast.parse(source, filename=path)
    visitor = _PolicyVisitor(path, source.splitlines())
    visitor.visit(tree)
    return sorted(visitor.violations, key=lambda v: (v.line, v.column))


def _iter_python_files(paths: Iterable[Union[str, Path]]) -> Iterator[Path]:
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            yield from sorted(p for p in path.rglob("*.py") if p.is_file())
        else:
            yield path


def check_paths(paths: Iterable[Union[str, Path]]) -> List[Violation]:
    """Check every Python file under the given files and directories."""
    violations: List[Violation] = []
    for file_path in _iter_python_files(paths):
        source = file_path.read_text(encoding="utf-8")
        violations.extend(check_source(source, str(file_path)))
    return violations
