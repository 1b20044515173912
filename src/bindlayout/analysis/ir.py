from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass
from types import MappingProxyType
from typing import Iterator, Optional

from .abi import AbiProfile
from .decl_errors import IncompleteIR
from .decl_types import (
    RECORD_REF_KINDS,
    EnumDecl,
    LayoutInfo,
    SourceLocation,
    StructDecl,
    TypedefDecl,
    TypeRef,
    VarDecl,
)
from .layout import LayoutEngine
from .names import NameTable
from .type_graph import TypeGraph


@dataclass(frozen=True)
class FieldIR:
    name: str
    index: int
    type_ref: TypeRef
    layout: Optional[LayoutInfo]


@dataclass(frozen=True)
class ParamIR:
    name: str
    type_ref: TypeRef


@dataclass(frozen=True)
class MethodIR:
    name: str
    overload_index: int
    external_name: str
    params: tuple[ParamIR, ...]
    return_type: Optional[TypeRef]
    is_static: bool = False
    is_constructor: bool = False


@dataclass(frozen=True)
class EnumeratorIR:
    name: str
    value: int


@dataclass(frozen=True)
class DeclIR:
    key: str
    kind: str
    name: str
    namespace: tuple[str, ...]
    canonical_name: str
    location: Optional[SourceLocation] = None
    layout: Optional[LayoutInfo] = None
    fields: tuple[FieldIR, ...] = ()
    methods: tuple[MethodIR, ...] = ()
    enumerators: tuple[EnumeratorIR, ...] = ()
    backing: Optional[str] = None
    target: Optional[TypeRef] = None
    canonical_target: Optional[TypeRef] = None
    type_ref: Optional[TypeRef] = None
    packed: bool = False
    opaque: bool = False


class IR(Mapping):
    """Frozen analysis result: qualified name -> DeclIR, in declaration order."""

    def __init__(self, abi: str, decls: dict[str, DeclIR]) -> None:
        self.abi = abi
        self._decls = MappingProxyType(dict(decls))

    def __getitem__(self, key: str) -> DeclIR:
        return self._decls[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._decls)

    def __len__(self) -> int:
        return len(self._decls)

    def resolve(self, key: str) -> DeclIR:
        """Return the declaration ``key`` denotes, looking through aliases of records."""
        decl = self._decls[key]
        target = decl.canonical_target
        if decl.kind == "typedef" and target is not None and target.kind == "named" and target.ref_kind in RECORD_REF_KINDS:
            return self._decls[target.name or ""]
        return decl

    def to_dict(self) -> dict:
        return {
            "abi": self.abi,
            "decls": [_decl_dict(decl) for decl in self._decls.values()],
        }


def _type_ref_dict(type_ref: Optional[TypeRef]) -> Optional[dict]:
    if type_ref is None:
        return None
    out: dict = {"kind": type_ref.kind}
    if type_ref.kind == "named":
        out["name"] = type_ref.name
        out["ref_kind"] = type_ref.ref_kind
    else:
        out["target"] = _type_ref_dict(type_ref.target)
    if type_ref.kind == "array":
        out["count"] = type_ref.count
    if type_ref.qualifiers:
        out["qualifiers"] = list(type_ref.qualifiers)
    return out


def _layout_dict(layout: Optional[LayoutInfo]) -> Optional[dict]:
    if layout is None:
        return None
    return {key: value for key, value in asdict(layout).items() if value is not None}


def _method_dict(method: MethodIR) -> dict:
    return {
        "name": method.name,
        "overload_index": method.overload_index,
        "external_name": method.external_name,
        "params": [{"name": param.name, "type": _type_ref_dict(param.type_ref)} for param in method.params],
        "return_type": _type_ref_dict(method.return_type),
        "is_static": method.is_static,
        "is_constructor": method.is_constructor,
    }


def _decl_dict(decl: DeclIR) -> dict:
    out: dict = {
        "key": decl.key,
        "kind": decl.kind,
        "name": decl.name,
        "namespace": list(decl.namespace),
        "canonical_name": decl.canonical_name,
    }
    if decl.location is not None and (decl.location.file or decl.location.line):
        out["location"] = {"file": decl.location.file, "line": decl.location.line}
    if decl.layout is not None:
        out["layout"] = _layout_dict(decl.layout)
    if decl.kind in {"struct", "class", "union"}:
        out["packed"] = decl.packed
        out["opaque"] = decl.opaque
        out["fields"] = [
            {
                "name": member.name,
                "index": member.index,
                "type": _type_ref_dict(member.type_ref),
                "layout": _layout_dict(member.layout),
            }
            for member in decl.fields
        ]
    if decl.methods:
        out["methods"] = [_method_dict(method) for method in decl.methods]
    if decl.kind == "enum":
        out["backing"] = decl.backing
        out["enumerators"] = [{"name": item.name, "value": item.value} for item in decl.enumerators]
    if decl.kind == "typedef":
        out["target"] = _type_ref_dict(decl.target)
        out["canonical_target"] = _type_ref_dict(decl.canonical_target)
    if decl.kind == "var":
        out["type"] = _type_ref_dict(decl.type_ref)
    return out


def _methods_ir(key: str, decl: StructDecl, names: NameTable) -> tuple[MethodIR, ...]:
    out: list[MethodIR] = []
    for position, method in enumerate(decl.methods):
        info = names.methods.get((key, position))
        if info is None:
            raise IncompleteIR(f"method '{method.name}' has no external name", decl=key)
        out.append(
            MethodIR(
                name=info.name,
                overload_index=info.overload_index,
                external_name=info.external_name,
                params=tuple(ParamIR(name=param.name, type_ref=param.type_ref) for param in method.params),
                return_type=method.return_type,
                is_static=method.is_static,
                is_constructor=method.is_constructor,
            )
        )
    return tuple(out)


def _struct_ir(key: str, decl: StructDecl, layouts: LayoutEngine, names: NameTable) -> DeclIR:
    layout = None
    fields: tuple[FieldIR, ...] = tuple(
        FieldIR(name=member.name, index=member.index, type_ref=member.type_ref, layout=None)
        for member in sorted(decl.fields, key=lambda member: member.index)
    )
    struct_layout = layouts.structs.get(key)
    if struct_layout is not None:
        layout = struct_layout.layout
        fields = tuple(
            FieldIR(name=member.name, index=member.index, type_ref=member.type_ref, layout=info)
            for member, info in struct_layout.fields
        )
    return DeclIR(
        key=key,
        kind=decl.kind,
        name=decl.name,
        namespace=decl.namespace,
        canonical_name=names.types[key],
        location=decl.location,
        layout=layout,
        fields=fields,
        methods=_methods_ir(key, decl, names),
        packed=decl.packed,
        opaque=decl.opaque,
    )


def _alias_layout(layouts: LayoutEngine, terminal: TypeRef, key: str) -> Optional[LayoutInfo]:
    if terminal.kind == "named" and terminal.ref_kind in {"struct", "class", "union"}:
        found = layouts.structs.get(terminal.name or "")
        return found.layout if found is not None else None
    if terminal.kind == "named" and terminal.ref_kind == "enum":
        return layouts.enums[terminal.name or ""].layout
    if not layouts.is_complete(terminal):
        return None
    size, align = layouts.size_align(terminal, key)
    return LayoutInfo(size=size, align=align)


def _verify(ir: IR, graph: TypeGraph, names: NameTable) -> None:
    for key, decl in ir.items():
        if decl.kind in {"struct", "class", "union"} and not decl.opaque:
            if decl.layout is None:
                raise IncompleteIR("record has no layout", decl=key)
            source = graph.get(key)
            if len(decl.fields) != len(source.fields):
                raise IncompleteIR("field count changed during layout", decl=key)
            for member in decl.fields:
                if member.layout is None:
                    raise IncompleteIR(f"field '{member.name}' has no layout", decl=key)
        if decl.kind == "enum" and (decl.layout is None or decl.backing is None):
            raise IncompleteIR("enum has no backing type", decl=key)
        for method in decl.methods:
            if not method.external_name:
                raise IncompleteIR(f"method '{method.name}' has no external name", decl=key)

    seen: set[str] = set()
    for name in names.external_names():
        if not name:
            raise IncompleteIR("empty external name")
        if name in seen:
            raise IncompleteIR(f"external name '{name}' assigned twice")
        seen.add(name)
    type_names = list(names.types.values())
    if len(set(type_names)) != len(type_names):
        raise IncompleteIR("type canonical names are not unique")


def assemble_ir(graph: TypeGraph, layouts: LayoutEngine, names: NameTable, profile: AbiProfile) -> IR:
    decls: dict[str, DeclIR] = {}
    for key in graph.order:
        funcs = graph.functions.get(key)
        if funcs:
            overloads = []
            for position, func in enumerate(funcs):
                info = names.functions.get((key, position))
                if info is None:
                    raise IncompleteIR("function overload has no external name", decl=key)
                overloads.append(
                    MethodIR(
                        name=func.name,
                        overload_index=info.overload_index,
                        external_name=info.external_name,
                        params=tuple(ParamIR(name=param.name, type_ref=param.type_ref) for param in func.params),
                        return_type=func.return_type,
                        is_static=False,
                    )
                )
            first = funcs[0]
            decls[key] = DeclIR(
                key=key,
                kind="function",
                name=first.name,
                namespace=first.namespace,
                canonical_name=overloads[0].external_name,
                location=first.location,
                methods=tuple(overloads),
            )
            continue

        decl = graph.decls[key]
        if isinstance(decl, StructDecl):
            decls[key] = _struct_ir(key, decl, layouts, names)
        elif isinstance(decl, EnumDecl):
            enum_layout = layouts.enums.get(key)
            decls[key] = DeclIR(
                key=key,
                kind="enum",
                name=decl.name,
                namespace=decl.namespace,
                canonical_name=names.types[key],
                location=decl.location,
                layout=enum_layout.layout if enum_layout is not None else None,
                enumerators=tuple(EnumeratorIR(name=name, value=value) for name, value in decl.enumerators),
                backing=enum_layout.backing if enum_layout is not None else None,
            )
        elif isinstance(decl, TypedefDecl):
            terminal = graph.canonical(TypeRef(kind="named", name=key, ref_kind="typedef"))
            decls[key] = DeclIR(
                key=key,
                kind="typedef",
                name=decl.name,
                namespace=decl.namespace,
                canonical_name=names.types[key],
                location=decl.location,
                layout=_alias_layout(layouts, terminal, key),
                target=decl.target,
                canonical_target=terminal,
            )
        elif isinstance(decl, VarDecl):
            decls[key] = DeclIR(
                key=key,
                kind="var",
                name=decl.name,
                namespace=decl.namespace,
                canonical_name=names.values[key],
                location=decl.location,
                layout=layouts.vars.get(key),
                type_ref=decl.type_ref,
            )
        else:
            raise IncompleteIR(f"unhandled declaration kind {type(decl).__name__}", decl=key)

    ir = IR(abi=profile.name, decls=decls)
    _verify(ir, graph, names)
    return ir
