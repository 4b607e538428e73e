"""Source rewriting that lets selected names outlive a single snippet.

Every snippet runs inside its own ``async def`` (see :func:`wrap_async_unit`),
so plain assignments create function locals that vanish when the call ends.
:func:`promote_tracked_bindings` follows each simple assignment to a tracked
name with a write into the persistent table, e.g.::

    page = await context.new_page()
    __persistent__['page'] = page

Only bare-name targets are followed.  Destructuring, attribute/subscript
targets, ``for`` and ``with ... as`` targets are left alone.

At the snippet's own level the promoted names are also declared ``global``
by :func:`wrap_async_unit`, so ``page = await page.context.new_page()``
reads the stored page before rebinding it.
"""

from __future__ import annotations

import ast
import logging
from types import CodeType
from typing import AbstractSet, Iterator, List, Set

logger = logging.getLogger(__name__)

TRACKED_IDENTIFIERS: frozenset[str] = frozenset({"browser", "context", "page", "session_manager"})

# Name under which the persistent table is reachable from inside a snippet.
PERSISTENT_TABLE_NAME = "__persistent__"

SNIPPET_FUNCTION_NAME = "__snippet__"

_PARSE_FLAGS = ast.PyCF_ONLY_AST | ast.PyCF_ALLOW_TOP_LEVEL_AWAIT

_NEW_SCOPES = (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)


def _nested_blocks(stmt: ast.stmt) -> Iterator[List[ast.stmt]]:
    """Yield the statement lists directly inside ``stmt``."""
    for _, value in ast.iter_fields(stmt):
        if not isinstance(value, list) or not value:
            continue
        if all(isinstance(item, ast.stmt) for item in value):
            yield value
            continue
        # except handlers and match cases carry their own statement lists
        for item in value:
            body = getattr(item, "body", None)
            if isinstance(item, ast.AST) and isinstance(body, list):
                yield body


def parse_snippet(source: str, filename: str = "<snippet>") -> ast.Module:
    """Parse ``source`` allowing top-level ``await``, ``async for/with`` and ``return``."""
    return compile(source, filename, "exec", flags=_PARSE_FLAGS, dont_inherit=True)


class BindingPromoter:
    """Insert persistent-table writes after assignments to tracked names."""

    def __init__(self, tracked: AbstractSet[str] = TRACKED_IDENTIFIERS) -> None:
        self.tracked = frozenset(tracked)
        self.promotions = 0

    def rewrite_block(self, statements: List[ast.stmt]) -> List[ast.stmt]:
        rewritten: List[ast.stmt] = []
        for stmt in statements:
            self._rewrite_nested_blocks(stmt)
            rewritten.append(stmt)
            for name in self._names_bound_by(stmt):
                rewritten.append(self._promotion(name, stmt))
                self.promotions += 1
        return rewritten

    def scope_bindings(self, statements: List[ast.stmt]) -> Set[str]:
        """Tracked names bound in this scope, not counting nested def/class bodies."""
        bound: Set[str] = set()
        for stmt in statements:
            if isinstance(stmt, _NEW_SCOPES):
                continue
            bound.update(self._names_bound_by(stmt))
            for block in _nested_blocks(stmt):
                bound |= self.scope_bindings(block)
        return bound

    def _rewrite_nested_blocks(self, stmt: ast.stmt) -> None:
        for block in _nested_blocks(stmt):
            block[:] = self.rewrite_block(block)

    def _names_bound_by(self, stmt: ast.stmt) -> Iterator[str]:
        if isinstance(stmt, ast.Assign):
            for target in stmt.targets:
                if isinstance(target, ast.Name) and target.id in self.tracked:
                    yield target.id
        elif isinstance(stmt, ast.AnnAssign):
            if (
                stmt.value is not None
                and isinstance(stmt.target, ast.Name)
                and stmt.target.id in self.tracked
            ):
                yield stmt.target.id
        elif isinstance(stmt, ast.AugAssign):
            if isinstance(stmt.target, ast.Name) and stmt.target.id in self.tracked:
                yield stmt.target.id
        for node in self._own_expressions(stmt):
            if (
                isinstance(node, ast.NamedExpr)
                and isinstance(node.target, ast.Name)
                and node.target.id in self.tracked
            ):
                yield node.target.id

    def _own_expressions(self, stmt: ast.stmt) -> Iterator[ast.AST]:
        """Walk the expressions of ``stmt`` itself, not of nested blocks or lambdas."""
        pending: List[ast.AST] = []
        for _, value in ast.iter_fields(stmt):
            items = value if isinstance(value, list) else [value]
            for item in items:
                if isinstance(item, ast.stmt) or not isinstance(item, ast.AST):
                    continue
                if isinstance(getattr(item, "body", None), list):
                    continue
                pending.append(item)
        while pending:
            node = pending.pop(0)
            if isinstance(node, ast.Lambda):
                continue
            yield node
            pending.extend(ast.iter_child_nodes(node))

    def _promotion(self, name: str, anchor: ast.stmt) -> ast.stmt:
        stmt = ast.Assign(
            targets=[
                ast.Subscript(
                    value=ast.Name(id=PERSISTENT_TABLE_NAME, ctx=ast.Load()),
                    slice=ast.Constant(value=name),
                    ctx=ast.Store(),
                )
            ],
            value=ast.Name(id=name, ctx=ast.Load()),
        )
        stmt.lineno = getattr(anchor, "end_lineno", None) or anchor.lineno
        stmt.col_offset = anchor.col_offset
        return ast.fix_missing_locations(stmt)


def promote_tracked_bindings(
    source: str,
    tracked: AbstractSet[str] = TRACKED_IDENTIFIERS,
    filename: str = "<snippet>",
) -> str:
    """Return ``source`` with a persistent-table write after each tracked binding.

    Source without tracked bindings is returned untouched.  If the snippet
    cannot be parsed or rewritten, a warning is logged and the original text
    is returned so the caller can still try to run it.
    """
    try:
        tree = parse_snippet(source, filename)
        promoter = BindingPromoter(tracked)
        tree.body = promoter.rewrite_block(tree.body)
        if not promoter.promotions:
            return source
        rewritten = ast.unparse(tree)
    except Exception as exc:
        logger.warning("Could not rewrite snippet, running it unmodified: %s", exc)
        return source
    logger.debug("Inserted %d promotion(s) into snippet", promoter.promotions)
    return rewritten


def _drop_annotations(statements: List[ast.stmt], names: AbstractSet[str]) -> List[ast.stmt]:
    # ``global`` names cannot carry annotations; keep the assignment only.
    result: List[ast.stmt] = []
    for stmt in statements:
        if (
            isinstance(stmt, ast.AnnAssign)
            and isinstance(stmt.target, ast.Name)
            and stmt.target.id in names
        ):
            if stmt.value is None:
                stmt = ast.copy_location(ast.Pass(), stmt)
            else:
                target = ast.Name(id=stmt.target.id, ctx=ast.Store())
                stmt = ast.copy_location(ast.Assign(targets=[target], value=stmt.value), stmt)
        elif not isinstance(stmt, _NEW_SCOPES):
            for block in _nested_blocks(stmt):
                block[:] = _drop_annotations(block, names)
        result.append(stmt)
    return result


def wrap_async_unit(
    source: str,
    filename: str = "<snippet>",
    tracked: AbstractSet[str] = TRACKED_IDENTIFIERS,
) -> CodeType:
    """Compile ``source`` as the body of ``async def __snippet__()``.

    A trailing bare expression becomes the function's return value.  Tracked
    names bound at the snippet's own level are declared ``global``, so they
    can be read before being reassigned in the same snippet.  Syntax errors
    propagate to the caller.
    """
    tree = parse_snippet(source, filename)
    body: List[ast.stmt] = list(tree.body) or [ast.Pass()]
    shared = BindingPromoter(tracked).scope_bindings(body)
    if shared:
        body = _drop_annotations(body, shared)
    last = body[-1]
    if isinstance(last, ast.Expr):
        body[-1] = ast.copy_location(ast.Return(value=last.value), last)
    if shared:
        body.insert(0, ast.Global(names=sorted(shared)))

    module = ast.parse(f"async def {SNIPPET_FUNCTION_NAME}():\n    pass\n", filename)
    function = module.body[0]
    assert isinstance(function, ast.AsyncFunctionDef)
    function.body = body
    ast.fix_missing_locations(module)
    return compile(module, filename, "exec", dont_inherit=True)


__all__ = [
    "BindingPromoter",
    "PERSISTENT_TABLE_NAME",
    "SNIPPET_FUNCTION_NAME",
    "TRACKED_IDENTIFIERS",
    "parse_snippet",
    "promote_tracked_bindings",
    "wrap_async_unit",
]
