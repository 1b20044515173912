from __future__ import annotations

from dataclasses import replace
from typing import Sequence

from .decl_types import ParamDecl, TypeRef
from .type_graph import TypeGraph


def _normalized_type_signature(graph: TypeGraph, type_ref: TypeRef) -> tuple:
    resolved = graph.canonical(type_ref)
    qualifiers = tuple(sorted(resolved.qualifiers))
    if resolved.kind == "named":
        return ("named", resolved.ref_kind, resolved.name, qualifiers)
    target = resolved.target or TypeRef(kind="named", name="void", ref_kind="base")
    if resolved.kind == "pointer":
        return ("ptr", qualifiers, _normalized_type_signature(graph, target))
    if resolved.kind == "array":
        return ("arr", resolved.count, _normalized_type_signature(graph, target))
    return ("unknown",)


def parameter_signature(graph: TypeGraph, type_ref: TypeRef) -> tuple:
    """Signature of one parameter type as native overload resolution sees it.

    Aliases collapse to their target, arrays decay to pointers and top-level
    cv-qualifiers are dropped, so ``f(Alias)``, ``f(const Target)`` and
    ``f(Target)`` all share a signature.
    """
    resolved = graph.canonical(type_ref)
    if resolved.kind == "array":
        resolved = TypeRef(kind="pointer", target=resolved.target)
    resolved = replace(resolved, qualifiers=())
    return _normalized_type_signature(graph, resolved)


def parameter_key(graph: TypeGraph, params: Sequence[ParamDecl]) -> tuple:
    return tuple(parameter_signature(graph, param.type_ref) for param in params)
