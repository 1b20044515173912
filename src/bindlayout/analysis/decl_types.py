from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Union


STRUCT_KINDS = {"struct", "class", "union"}
RECORD_REF_KINDS = STRUCT_KINDS | {"enum"}


@dataclass(frozen=True)
class TypeRef:
    kind: str
    name: Optional[str] = None
    ref_kind: Optional[str] = None
    target: Optional["TypeRef"] = None
    count: Optional[int] = None
    qualifiers: tuple[str, ...] = ()

    def needs_parens(self) -> bool:
        return self.kind == "array"

    def spelling(self) -> str:
        if self.kind == "named":
            quals = " ".join(self.qualifiers)
            return f"{quals} {self.name}" if quals else str(self.name)
        if self.kind == "pointer":
            inner = self.target.spelling() if self.target is not None else "void"
            text = f"{inner} *"
            if self.qualifiers:
                text += " " + " ".join(self.qualifiers)
            return text
        inner = self.target.spelling() if self.target is not None else "void"
        count = "" if self.count is None else str(self.count)
        return f"{inner}[{count}]"


VOID = TypeRef(kind="named", name="void", ref_kind="base")


@dataclass(frozen=True)
class SourceLocation:
    file: Optional[str] = None
    line: Optional[int] = None

    def __str__(self) -> str:
        if self.file and self.line:
            return f"{self.file}:{self.line}"
        if self.line:
            return f"line {self.line}"
        return self.file or ""


@dataclass
class FieldDecl:
    name: str
    type_ref: TypeRef
    bit_width: Optional[int] = None
    index: int = 0
    alignment: Optional[int] = None
    observed_bit_position: Optional[int] = None

    @property
    def is_bitfield(self) -> bool:
        return self.bit_width is not None


@dataclass
class ParamDecl:
    name: str
    type_ref: TypeRef


@dataclass
class MethodDecl:
    name: str
    params: list[ParamDecl]
    return_type: Optional[TypeRef] = None
    is_static: bool = False
    is_constructor: bool = False
    location: Optional[SourceLocation] = None


@dataclass
class StructDecl:
    kind: str
    name: str
    namespace: tuple[str, ...] = ()
    fields: list[FieldDecl] = field(default_factory=list)
    methods: list[MethodDecl] = field(default_factory=list)
    packed: bool = False
    opaque: bool = False
    observed_size: Optional[int] = None
    location: Optional[SourceLocation] = None


@dataclass
class EnumDecl:
    name: str
    enumerators: list[tuple[str, int]]
    namespace: tuple[str, ...] = ()
    underlying: Optional[str] = None
    location: Optional[SourceLocation] = None

    @property
    def kind(self) -> str:
        return "enum"


@dataclass
class TypedefDecl:
    name: str
    target: TypeRef
    namespace: tuple[str, ...] = ()
    location: Optional[SourceLocation] = None

    @property
    def kind(self) -> str:
        return "typedef"


@dataclass
class FunctionDecl:
    name: str
    params: list[ParamDecl]
    return_type: TypeRef = VOID
    namespace: tuple[str, ...] = ()
    location: Optional[SourceLocation] = None

    @property
    def kind(self) -> str:
        return "function"


@dataclass
class VarDecl:
    name: str
    type_ref: TypeRef
    namespace: tuple[str, ...] = ()
    location: Optional[SourceLocation] = None

    @property
    def kind(self) -> str:
        return "var"


Declaration = Union[StructDecl, EnumDecl, TypedefDecl, FunctionDecl, VarDecl]


@dataclass(frozen=True)
class LayoutInfo:
    size: int
    align: int
    offset: Optional[int] = None
    bit_width: Optional[int] = None
    bit_offset: Optional[int] = None
    unit_offset: Optional[int] = None
    unit_size: Optional[int] = None


def qualified_name(decl: Declaration) -> str:
    return "::".join(decl.namespace + (decl.name,))
