from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence

from .decl_errors import AmbiguousOverload
from .decl_types import FunctionDecl, MethodDecl, ParamDecl, SourceLocation, StructDecl
from .decl_utils import _sanitize_identifier
from .signatures import parameter_key
from .type_graph import TypeGraph


@dataclass(frozen=True)
class OverloadInfo:
    owner: str
    name: str
    overload_index: int
    external_name: str
    key: tuple


@dataclass
class NameTable:
    types: dict[str, str] = field(default_factory=dict)
    values: dict[str, str] = field(default_factory=dict)
    methods: dict[tuple[str, int], OverloadInfo] = field(default_factory=dict)
    functions: dict[tuple[str, int], OverloadInfo] = field(default_factory=dict)

    def external_names(self) -> list[str]:
        names = list(self.values.values())
        names.extend(info.external_name for info in self.methods.values())
        names.extend(info.external_name for info in self.functions.values())
        return names


class _NameAllocator:
    """Hands out identifiers unique per bucket, suffixing ``_2``, ``_3`` on clashes."""

    def __init__(self) -> None:
        self._owner: dict[tuple[str, str], str] = {}

    def assign(self, bucket: str, base: str, owner: str) -> str:
        base = _sanitize_identifier(base) or "_"
        key = (bucket, base)
        current = self._owner.get(key)
        if current is None or current == owner:
            self._owner[key] = owner
            return base
        idx = 2
        while True:
            candidate = f"{base}_{idx}"
            key = (bucket, candidate)
            current = self._owner.get(key)
            if current is None or current == owner:
                self._owner[key] = owner
                return candidate
            idx += 1


def mangle_path(parts: Sequence[str]) -> str:
    return "_".join(_sanitize_identifier(part) for part in parts if part)


def overload_suffix(index: int) -> str:
    return "" if index == 0 else f"_{index}"


def _group_overloads(
    graph: TypeGraph,
    owner: str,
    name: str,
    members: list[tuple[int, Sequence[ParamDecl], Optional[SourceLocation]]],
) -> list[tuple[int, int, tuple]]:
    """Assign overload indexes in declaration order; identical parameter lists are fatal."""
    seen: dict[tuple, int] = {}
    out: list[tuple[int, int, tuple]] = []
    for overload_index, (position, params, location) in enumerate(members):
        key = parameter_key(graph, params)
        first = seen.get(key)
        if first is not None:
            raise AmbiguousOverload(
                f"overload {overload_index} of '{name}' repeats the parameter list of overload {first}",
                decl=f"{owner}::{name}" if owner else name,
                location=location,
            )
        seen[key] = overload_index
        out.append((position, overload_index, key))
    return out


def _method_groups(decl: StructDecl) -> dict[str, list[tuple[int, MethodDecl]]]:
    groups: dict[str, list[tuple[int, MethodDecl]]] = {}
    for position, method in enumerate(decl.methods):
        name = decl.name if method.is_constructor else method.name
        groups.setdefault(name, []).append((position, method))
    return groups


def resolve_names(graph: TypeGraph, log=None) -> NameTable:
    table = NameTable()
    allocator = _NameAllocator()

    for key, decl in graph.iter_decls():
        path = decl.namespace + (decl.name,)
        if decl.kind == "var":
            table.values[key] = allocator.assign("value", mangle_path(path), key)
        else:
            table.types[key] = allocator.assign("type", mangle_path(path), key)

    for key in graph.order:
        decl = graph.decls.get(key)
        if isinstance(decl, StructDecl):
            for name, group in _method_groups(decl).items():
                members = [(position, method.params, method.location or decl.location) for position, method in group]
                for position, overload_index, sig in _group_overloads(graph, key, name, members):
                    base = mangle_path(decl.namespace + (decl.name, name)) + overload_suffix(overload_index)
                    owner = f"{key}::{name}#{overload_index}"
                    info = OverloadInfo(
                        owner=key,
                        name=name,
                        overload_index=overload_index,
                        external_name=allocator.assign("value", base, owner),
                        key=sig,
                    )
                    table.methods[(key, position)] = info
                    if log is not None:
                        log(f"{key}::{name}[{overload_index}] -> {info.external_name}")
        funcs: list[FunctionDecl] = graph.functions.get(key, [])
        if not funcs:
            continue
        first = funcs[0]
        members = [(position, func.params, func.location) for position, func in enumerate(funcs)]
        for position, overload_index, sig in _group_overloads(graph, "", key, members):
            base = mangle_path(first.namespace + (first.name,)) + overload_suffix(overload_index)
            info = OverloadInfo(
                owner=key,
                name=first.name,
                overload_index=overload_index,
                external_name=allocator.assign("value", base, f"{key}#{overload_index}"),
                key=sig,
            )
            table.functions[(key, position)] = info
            if log is not None:
                log(f"{key}[{overload_index}] -> {info.external_name}")

    return table
