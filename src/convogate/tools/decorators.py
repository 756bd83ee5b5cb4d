"""
``@tool``: turn a typed Python function into a Tool served by a LocalToolRegistry.

The input schema is inferred from the signature. Descriptions come from the
decorator arguments first, then from the function's docstring: its first
paragraph describes the tool and a Google-style ``Args:`` section describes
the parameters.
"""

from __future__ import annotations

import inspect
import re
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union, get_args, get_origin, get_type_hints

from .base import ParamMetadata, Tool, ToolParameter

_ARG_LINE = re.compile(r"^\s*(\*{0,2}\w+)\s*(?:\([^)]*\))?\s*:\s*(.*)$")
_SECTION = re.compile(r"^\s*(Args|Arguments|Parameters|Returns|Raises|Yields|Example|Examples)\s*:\s*$")


def _unwrap_type(type_hint: Any) -> Any:
    """Reduce ``Optional[T]`` to ``T`` and parametrized ``list``/``dict`` to the bare container."""
    origin = get_origin(type_hint)
    if origin is Union:
        members = [arg for arg in get_args(type_hint) if arg is not type(None)]
        if len(members) == 1:
            return _unwrap_type(members[0])
    if origin in (list, dict):
        return origin
    return type_hint


def _split_docstring(doc: str) -> Tuple[str, Dict[str, str]]:
    """Return the summary paragraph and the per-argument descriptions of ``doc``."""
    summary: List[str] = []
    args: Dict[str, str] = {}
    section = ""
    current = ""
    for line in doc.splitlines():
        header = _SECTION.match(line)
        if header:
            section = header.group(1)
            current = ""
            continue
        if not section:
            if not line.strip() and summary:
                section = "body"
            elif line.strip():
                summary.append(line.strip())
            continue
        if section not in ("Args", "Arguments", "Parameters"):
            continue
        match = _ARG_LINE.match(line)
        if match and not line.startswith(" " * 8):
            current = match.group(1).lstrip("*")
            args[current] = match.group(2).strip()
        elif current and line.strip():
            args[current] = f"{args[current]} {line.strip()}".strip()
    return " ".join(summary), args


def _parameters(
    func: Callable[..., Any],
    metadata: Dict[str, ParamMetadata],
    doc_args: Dict[str, str],
    hidden: Set[str],
) -> List[ToolParameter]:
    hints = get_type_hints(func)
    parameters: List[ToolParameter] = []
    for name, param in inspect.signature(func).parameters.items():
        if name in ("self", "cls") or name in hidden:
            continue
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        meta = metadata.get(name, {})
        parameters.append(
            ToolParameter(
                name=name,
                param_type=_unwrap_type(hints.get(name, str)),
                description=meta.get("description") or doc_args.get(name) or f"Parameter {name}",
                required=param.default is inspect.Parameter.empty,
                enum=meta.get("enum"),
            )
        )
    return parameters


def tool(
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
    param_metadata: Optional[Dict[str, ParamMetadata]] = None,
    injected_kwargs: Optional[Dict[str, Any]] = None,
) -> Callable[[Callable[..., Any]], Tool]:
    """
    Decorator to convert a function into a Tool.

    Args:
        name: Tool name; defaults to the function name.
        description: Tool description; defaults to the docstring summary.
        param_metadata: Per-parameter ``description``/``enum`` overrides.
        injected_kwargs: Keyword arguments supplied at call time and hidden
            from the model (database handles, API clients).

    Example:
        >>> @tool()
        ... def add(a: int, b: int) -> int:
        ...     '''Add two integers.
        ...
        ...     Args:
        ...         a: First addend.
        ...         b: Second addend.
        ...     '''
        ...     return a + b
        >>> add.description
        'Add two integers.'
    """

    def decorator(func: Callable[..., Any]) -> Tool:
        tool_name = name or func.__name__
        summary, doc_args = _split_docstring(inspect.getdoc(func) or "")
        return Tool(
            name=tool_name,
            description=description or summary or f"Tool {tool_name}",
            parameters=_parameters(func, param_metadata or {}, doc_args, set(injected_kwargs or {})),
            function=func,
            injected_kwargs=injected_kwargs,
        )

    return decorator


__all__ = ["tool"]
