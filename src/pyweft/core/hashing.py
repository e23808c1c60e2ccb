"""Version hashes for workflow definitions.

Uses xxHash64 for speed. The hash only has to identify a definition, not
resist tampering.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from types import CodeType
from typing import Any

import xxhash

from pyweft.models.graph import WorkflowMeta


def hash_graph(meta: WorkflowMeta) -> str:
    """Hash a graph definition through its canonical JSON form."""
    canonical = json.dumps(meta.to_dict(), sort_keys=True, separators=(",", ":"), default=str)
    return xxhash.xxh64(canonical.encode("utf-8")).hexdigest()


def hash_function(name: str, func: Callable[..., Any]) -> str:
    """Hash an imperative workflow by its name, qualified name and bytecode.

    Changing the function body changes the hash, which pins in-flight runs
    to the version they were started on.
    """
    hasher = xxhash.xxh64()
    hasher.update(name.encode("utf-8"))
    hasher.update(getattr(func, "__qualname__", repr(func)).encode("utf-8"))
    code = getattr(func, "__code__", None)
    if code is not None:
        _update_code(hasher, code)
    return hasher.hexdigest()


def _update_code(hasher: xxhash.xxh64, code: CodeType) -> None:
    # Nested code objects repr with their address; hash their contents instead
    hasher.update(code.co_code)
    for const in code.co_consts:
        if isinstance(const, CodeType):
            _update_code(hasher, const)
        else:
            hasher.update(repr(const).encode("utf-8"))
