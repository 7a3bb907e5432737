"""Rewrites upstream asset host references inside JSON payloads."""

from __future__ import annotations

from typing import Any, Optional

JSONValue = Any


def _recreates_source(source: str, target: str) -> bool:
    """True when a rewritten string could contain ``source`` again.

    That happens when either host contains the other, or when a proper prefix
    of ``source`` ends ``target`` or a proper suffix of ``source`` starts it.
    """
    if source in target or target in source:
        return True
    return any(
        target.startswith(source[size:]) or target.endswith(source[:size]) for size in range(1, len(source))
    )


class AssetUrlRewriter:
    """Replace every literal ``source_host`` with ``target_host`` in string leaves.

    The walk covers the JSON shapes ``None``, ``bool``, numbers, ``str``,
    ``list`` and ``dict``. Containers are rebuilt, never modified, and dict
    keys are left alone. Traversal uses an explicit stack so deeply nested
    payloads do not hit the interpreter recursion limit.
    """

    def __init__(self, source_host: str, target_host: Optional[str] = None) -> None:
        if not source_host:
            raise ValueError("source_host must not be empty")
        if target_host and _recreates_source(source_host, target_host):
            raise ValueError(
                f"public asset host {target_host!r} can recreate upstream host {source_host!r} "
                "next to surrounding text; rewriting would not be idempotent"
            )
        self.source_host = source_host
        self.target_host = target_host or None

    @property
    def enabled(self) -> bool:
        return self.target_host is not None

    def rewrite(self, value: JSONValue) -> JSONValue:
        if self.target_host is None:
            return value

        root: list[JSONValue] = [None]
        stack: list[tuple[JSONValue, Any, Any]] = [(value, root, 0)]
        while stack:
            node, parent, slot = stack.pop()
            if isinstance(node, str):
                parent[slot] = node.replace(self.source_host, self.target_host)
            elif isinstance(node, dict):
                rebuilt = dict.fromkeys(node)
                parent[slot] = rebuilt
                stack.extend((child, rebuilt, key) for key, child in node.items())
            elif isinstance(node, (list, tuple)):
                rebuilt_list: list[JSONValue] = [None] * len(node)
                parent[slot] = rebuilt_list
                stack.extend((child, rebuilt_list, index) for index, child in enumerate(node))
            else:
                parent[slot] = node
        return root[0]

    __call__ = rewrite
