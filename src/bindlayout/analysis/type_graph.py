from __future__ import annotations

from dataclasses import replace
from typing import Iterable, Iterator, Optional

from .decl_errors import AliasCycle, DuplicateDeclaration, UnresolvedType
from .decl_types import (
    RECORD_REF_KINDS,
    STRUCT_KINDS,
    Declaration,
    EnumDecl,
    FunctionDecl,
    MethodDecl,
    ParamDecl,
    StructDecl,
    TypedefDecl,
    TypeRef,
    VarDecl,
    qualified_name,
)
from .decl_utils import _split_qualified, canonical_primitive


class TypeGraph:
    """Owner of every resolved declaration, keyed by qualified name.

    Functions are kept apart in ``functions`` because overloads share a key.
    After ``build_type_graph`` returns, every TypeRef stored here names either
    a canonical primitive (``ref_kind="base"``) or a key of ``decls``.
    """

    def __init__(self) -> None:
        self.decls: dict[str, Declaration] = {}
        self.functions: dict[str, list[FunctionDecl]] = {}
        self.order: list[str] = []

    def __contains__(self, key: str) -> bool:
        return key in self.decls or key in self.functions

    def get(self, key: str) -> Declaration:
        return self.decls[key]

    def iter_decls(self) -> Iterator[tuple[str, Declaration]]:
        for key in self.order:
            decl = self.decls.get(key)
            if decl is not None:
                yield key, decl

    def iter_structs(self) -> Iterator[tuple[str, StructDecl]]:
        for key, decl in self.iter_decls():
            if isinstance(decl, StructDecl):
                yield key, decl

    def iter_enums(self) -> Iterator[tuple[str, EnumDecl]]:
        for key, decl in self.iter_decls():
            if isinstance(decl, EnumDecl):
                yield key, decl

    def lookup(self, name: str, scope: tuple[str, ...] = ()) -> Optional[str]:
        """Find the key ``name`` refers to from ``scope``, innermost scope first."""
        rooted, parts = _split_qualified(name)
        if rooted:
            prefixes: list[tuple[str, ...]] = [()]
        else:
            prefixes = [tuple(scope[:depth]) for depth in range(len(scope), -1, -1)]
        for prefix in prefixes:
            key = "::".join(prefix + parts)
            if key in self:
                return key
        return None

    def canonical(self, type_ref: TypeRef) -> TypeRef:
        """Chase typedefs until the outermost ref is no longer an alias."""
        chain: list[str] = []
        current = type_ref
        while current.kind == "named" and current.ref_kind == "typedef":
            name = current.name or ""
            if name in chain:
                raise AliasCycle(chain + [name], location=self._location(chain[0]))
            chain.append(name)
            typedef = self.decls.get(name)
            if not isinstance(typedef, TypedefDecl):
                raise UnresolvedType(name, decl=chain[0])
            target = typedef.target
            if current.qualifiers:
                merged = tuple(dict.fromkeys(current.qualifiers + target.qualifiers))
                target = replace(target, qualifiers=merged)
            current = target
        return current

    def resolve_declaration(self, name: str, scope: tuple[str, ...] = ()) -> Declaration:
        """Look ``name`` up and collapse alias chains to the terminal declaration.

        An alias whose chain ends in a primitive, pointer or array is itself
        the terminal declaration.
        """
        key = self.lookup(name, scope)
        if key is None or key not in self.decls:
            raise UnresolvedType(name)
        decl = self.decls[key]
        if not isinstance(decl, TypedefDecl):
            return decl
        terminal = self.canonical(TypeRef(kind="named", name=key, ref_kind="typedef"))
        if terminal.kind == "named" and terminal.ref_kind in RECORD_REF_KINDS:
            return self.decls[terminal.name or ""]
        last = decl
        while True:
            target = last.target
            if target.kind == "named" and target.ref_kind == "typedef":
                last = self.decls[target.name or ""]
                continue
            return last

    def _location(self, key: str):
        decl = self.decls.get(key)
        return getattr(decl, "location", None)


def _self_alias_candidate(typedef: TypedefDecl) -> bool:
    # typedef struct Foo Foo;
    target = typedef.target
    if target.kind != "named" or target.ref_kind not in RECORD_REF_KINDS or not target.name:
        return False
    _, parts = _split_qualified(target.name)
    return parts[-1] == typedef.name and not target.qualifiers


def _place(graph: TypeGraph, key: str, position: Optional[int]) -> None:
    if position is None:
        graph.order.append(key)
    else:
        graph.order.insert(position, key)


def _register(graph: TypeGraph, decl: Declaration, log=None, position: Optional[int] = None) -> bool:
    """Add ``decl`` to ``graph``; True when it took a new slot in ``order``."""
    key = qualified_name(decl)
    if isinstance(decl, FunctionDecl):
        if key in graph.decls:
            raise DuplicateDeclaration(
                f"function conflicts with {graph.decls[key].kind} of the same name",
                decl=key,
                location=decl.location,
            )
        graph.functions.setdefault(key, []).append(decl)
        if len(graph.functions[key]) == 1:
            _place(graph, key, position)
            return True
        return False

    if key in graph.functions:
        raise DuplicateDeclaration(
            f"{decl.kind} conflicts with a function of the same name",
            decl=key,
            location=decl.location,
        )

    existing = graph.decls.get(key)
    if existing is None:
        graph.decls[key] = decl
        _place(graph, key, position)
        return True

    if isinstance(existing, StructDecl) and isinstance(decl, StructDecl):
        same_family = (existing.kind == "union") == (decl.kind == "union")
        if same_family:
            if decl.opaque:
                return False
            if existing.opaque:
                if log is not None:
                    log(f"{key}: forward declaration completed")
                graph.decls[key] = decl
                return False
    if isinstance(existing, TypedefDecl) and isinstance(decl, TypedefDecl) and existing.target == decl.target:
        return False

    raise DuplicateDeclaration(
        f"{decl.kind} redeclares {existing.kind} with the same qualified name",
        decl=key,
        location=decl.location,
    )


def _register_alias_candidate(
    graph: TypeGraph,
    typedef: TypedefDecl,
    log=None,
    position: Optional[int] = None,
) -> bool:
    """Fold ``typedef struct X X`` into ``X`` when the target is the alias's own key.

    The target is looked up from the typedef's namespace once every other
    declaration is registered, so ``namespace a { typedef struct b::Foo Foo; }``
    stays an alias of ``b::Foo``.
    """
    key = qualified_name(typedef)
    target = typedef.target
    found = graph.lookup(target.name or "", typedef.namespace)
    if found == key and isinstance(graph.decls.get(key), (StructDecl, EnumDecl)):
        if log is not None:
            log(f"{key}: alias of same-named {target.ref_kind}, folded")
        return False
    rooted, parts = _split_qualified(target.name or "")
    if found is None and target.ref_kind in STRUCT_KINDS and not rooted and len(parts) == 1:
        # The elaborated specifier declares the record itself.
        if log is not None:
            log(f"{key}: alias declares incomplete {target.ref_kind}, folded")
        record = StructDecl(
            kind=target.ref_kind,
            name=typedef.name,
            namespace=typedef.namespace,
            opaque=True,
            location=typedef.location,
        )
        return _register(graph, record, log, position)
    return _register(graph, typedef, log, position)


def _resolve_ref(graph: TypeGraph, type_ref: TypeRef, scope: tuple[str, ...], owner: str, location=None) -> TypeRef:
    if type_ref.kind in {"pointer", "array"}:
        target = type_ref.target
        if target is None:
            raise UnresolvedType(f"{type_ref.kind} without target", decl=owner, location=location)
        return replace(type_ref, target=_resolve_ref(graph, target, scope, owner, location))
    if type_ref.kind != "named" or not type_ref.name:
        raise UnresolvedType(type_ref.spelling(), decl=owner, location=location)
    if type_ref.ref_kind == "base":
        prim = canonical_primitive(type_ref.name)
        if prim is None:
            raise UnresolvedType(type_ref.name, decl=owner, location=location, reason="unknown builtin type")
        return replace(type_ref, name=prim)

    key = graph.lookup(type_ref.name, scope)
    if key is None:
        prim = canonical_primitive(type_ref.name)
        if prim is not None and type_ref.ref_kind is None:
            return replace(type_ref, name=prim, ref_kind="base")
        raise UnresolvedType(type_ref.name, decl=owner, location=location)
    decl = graph.decls.get(key)
    if decl is None or isinstance(decl, (FunctionDecl, VarDecl)):
        raise UnresolvedType(type_ref.name, decl=owner, location=location, reason="not a type")
    hint = type_ref.ref_kind
    if hint is not None and decl.kind != "typedef":
        if (hint == "enum") != (decl.kind == "enum"):
            raise UnresolvedType(type_ref.name, decl=owner, location=location, reason=f"{decl.kind} used as {hint}")
    return replace(type_ref, name=key, ref_kind=decl.kind)


def _resolve_params(graph: TypeGraph, params: list[ParamDecl], scope, owner, location) -> list[ParamDecl]:
    return [
        ParamDecl(name=param.name, type_ref=_resolve_ref(graph, param.type_ref, scope, owner, location))
        for param in params
    ]


def _resolve_decl(graph: TypeGraph, key: str, decl: Declaration):
    if isinstance(decl, StructDecl):
        scope = decl.namespace + (decl.name,)
        fields = [
            replace(member, type_ref=_resolve_ref(graph, member.type_ref, scope, f"{key}::{member.name}", decl.location))
            for member in decl.fields
        ]
        methods: list[MethodDecl] = []
        for method in decl.methods:
            owner = f"{key}::{method.name}"
            location = method.location or decl.location
            return_type = None
            if method.return_type is not None:
                return_type = _resolve_ref(graph, method.return_type, scope, owner, location)
            methods.append(
                replace(
                    method,
                    params=_resolve_params(graph, method.params, scope, owner, location),
                    return_type=return_type,
                )
            )
        return replace(decl, fields=fields, methods=methods)
    if isinstance(decl, EnumDecl):
        if decl.underlying is None:
            return decl
        prim = canonical_primitive(decl.underlying)
        if prim is None:
            # enum class E : my_alias
            resolved = graph.canonical(
                _resolve_ref(graph, TypeRef(kind="named", name=decl.underlying), decl.namespace, key, decl.location)
            )
            if resolved.kind != "named" or resolved.ref_kind != "base":
                raise UnresolvedType(decl.underlying, decl=key, location=decl.location, reason="non-integral enum base")
            prim = resolved.name
        return replace(decl, underlying=prim)
    if isinstance(decl, TypedefDecl):
        return replace(decl, target=_resolve_ref(graph, decl.target, decl.namespace, key, decl.location))
    if isinstance(decl, FunctionDecl):
        return replace(
            decl,
            params=_resolve_params(graph, decl.params, decl.namespace, key, decl.location),
            return_type=_resolve_ref(graph, decl.return_type, decl.namespace, key, decl.location),
        )
    if isinstance(decl, VarDecl):
        return replace(decl, type_ref=_resolve_ref(graph, decl.type_ref, decl.namespace, key, decl.location))
    raise TypeError(f"Unsupported declaration {decl!r}")


def build_type_graph(decls: Iterable[Declaration], log=None) -> TypeGraph:
    graph = TypeGraph()
    pending: list[tuple[int, TypedefDecl]] = []
    for decl in decls:
        if isinstance(decl, TypedefDecl) and _self_alias_candidate(decl):
            pending.append((len(graph.order), decl))
            continue
        _register(graph, decl, log)
    # Keep deferred aliases at the place they were declared.
    shift = 0
    for position, typedef in pending:
        if _register_alias_candidate(graph, typedef, log, position + shift):
            shift += 1

    # Typedefs first so enum bases spelled through an alias can be chased.
    typedef_keys = [key for key, decl in graph.iter_decls() if isinstance(decl, TypedefDecl)]
    for key in typedef_keys:
        graph.decls[key] = _resolve_decl(graph, key, graph.decls[key])
    for key in graph.order:
        if key in graph.functions:
            graph.functions[key] = [_resolve_decl(graph, key, func) for func in graph.functions[key]]
            continue
        decl = graph.decls[key]
        if isinstance(decl, TypedefDecl):
            continue
        graph.decls[key] = _resolve_decl(graph, key, decl)

    for key in typedef_keys:
        terminal = graph.canonical(TypeRef(kind="named", name=key, ref_kind="typedef"))
        if log is not None:
            log(f"alias {key} -> {terminal.spelling()}")

    if log is not None:
        structs = sum(1 for _ in graph.iter_structs())
        log(f"{len(graph.decls)} declarations ({structs} records), {len(graph.functions)} function names")
    return graph