from __future__ import annotations

from dataclasses import replace
from typing import Optional

from elftools.dwarf.dwarf_expr import DWARFExprParser

from .decl_types import (
    VOID,
    Declaration,
    EnumDecl,
    FieldDecl,
    FunctionDecl,
    MethodDecl,
    ParamDecl,
    SourceLocation,
    StructDecl,
    TypedefDecl,
    TypeRef,
    VarDecl,
)
from .decl_utils import _attr_int, _decode_attr, _make_logger, canonical_primitive


STRUCT_TAGS = {
    "DW_TAG_structure_type",
    "DW_TAG_union_type",
    "DW_TAG_class_type",
}
STRUCT_KIND_BY_TAG = {
    "DW_TAG_structure_type": "struct",
    "DW_TAG_union_type": "union",
    "DW_TAG_class_type": "class",
}
ENUM_TAG = "DW_TAG_enumeration_type"
TYPEDEF_TAG = "DW_TAG_typedef"
BASE_TAG = "DW_TAG_base_type"
POINTER_TAG = "DW_TAG_pointer_type"
REFERENCE_TAG = "DW_TAG_reference_type"
RV_REFERENCE_TAG = "DW_TAG_rvalue_reference_type"
ARRAY_TAG = "DW_TAG_array_type"
CONST_TAG = "DW_TAG_const_type"
VOLATILE_TAG = "DW_TAG_volatile_type"
RESTRICT_TAG = "DW_TAG_restrict_type"
ATOMIC_TAG = "DW_TAG_atomic_type"
UNSPEC_TAG = "DW_TAG_unspecified_type"
SUBROUTINE_TAG = "DW_TAG_subroutine_type"
NAMESPACE_TAG = "DW_TAG_namespace"
SUBPROGRAM_TAG = "DW_TAG_subprogram"
VARIABLE_TAG = "DW_TAG_variable"
MEMBER_TAG = "DW_TAG_member"
INHERITANCE_TAG = "DW_TAG_inheritance"
PARAM_TAG = "DW_TAG_formal_parameter"

SCOPE_TAGS = STRUCT_TAGS | {NAMESPACE_TAG}


class DeclarationBuilder:
    """Collects Declarations from every compilation unit of a DWARFInfo.

    Types repeated across compilation units are kept once; a definition
    replaces an earlier forward declaration.
    """

    def __init__(self, dwarfinfo, verbose: Optional[set[str]] = None) -> None:
        self.dwarfinfo = dwarfinfo
        self._log = _make_logger(verbose, "dwarf")
        self.expr_parser = DWARFExprParser(dwarfinfo.structs)
        self.little_endian = dwarfinfo.config.little_endian
        self.decls: list[Declaration] = []
        self._index: dict[tuple[str, str], int] = {}
        self._function_sigs: set[tuple[str, tuple]] = set()
        self._anon_names: dict[int, str] = {}
        self._anon_type_counter = 0

    def build(self) -> list[Declaration]:
        for cu in self.dwarfinfo.iter_CUs():
            self._walk(cu.get_top_DIE(), ())
        return list(self.decls)

    def _die_name(self, die) -> Optional[str]:
        attr = die.attributes.get("DW_AT_name")
        if attr is None:
            return None
        name = _decode_attr(attr.value)
        if not name:
            return None
        return name

    def _anon_type_name(self, kind: str) -> str:
        self._anon_type_counter += 1
        return f"__anon_{kind}_{self._anon_type_counter}"

    def _decl_name(self, die) -> str:
        name = self._die_name(die)
        if name:
            return name
        existing = self._anon_names.get(die.offset)
        if existing is None:
            kind = STRUCT_KIND_BY_TAG.get(die.tag, "enum")
            existing = self._anon_type_name(kind)
            self._anon_names[die.offset] = existing
        return existing

    def _scope_of(self, die) -> tuple[str, ...]:
        parts: list[str] = []
        parent = die.get_parent()
        while parent is not None and parent.tag in SCOPE_TAGS:
            if parent.tag == NAMESPACE_TAG:
                name = self._die_name(parent)
                if name:
                    parts.append(name)
            else:
                parts.append(self._decl_name(parent))
            parent = parent.get_parent()
        return tuple(reversed(parts))

    def _qualified_ref_name(self, die) -> str:
        return "::" + "::".join(self._scope_of(die) + (self._decl_name(die),))

    def _location(self, die) -> Optional[SourceLocation]:
        line = _attr_int(die.attributes.get("DW_AT_decl_line"))
        if line is None:
            return None
        return SourceLocation(line=line)

    def _claim(self, bucket: str, key: str) -> bool:
        if (bucket, key) in self._index:
            return False
        self._index[(bucket, key)] = len(self.decls)
        return True

    def _walk(self, die, namespace: tuple[str, ...]) -> None:
        children = list(die.iter_children())
        # typedef struct { ... } name_t; names the anonymous record.
        for child in children:
            if child.tag != TYPEDEF_TAG or "DW_AT_type" not in child.attributes:
                continue
            target = child.get_DIE_from_attribute("DW_AT_type")
            if target is not None and target.tag in STRUCT_TAGS | {ENUM_TAG} and self._die_name(target) is None:
                self._anon_names.setdefault(target.offset, self._die_name(child) or self._anon_type_name("typedef"))

        for child in children:
            tag = child.tag
            if tag == NAMESPACE_TAG:
                name = self._die_name(child)
                self._walk(child, namespace + ((name,) if name else ()))
            elif tag in STRUCT_TAGS:
                self._add_struct(child, namespace)
            elif tag == ENUM_TAG:
                self._add_enum(child, namespace)
            elif tag == TYPEDEF_TAG:
                self._add_typedef(child, namespace)
            elif tag == SUBPROGRAM_TAG:
                self._add_function(child, namespace)
            elif tag == VARIABLE_TAG:
                self._add_variable(child, namespace)

    def type_ref(self, die) -> TypeRef:
        if die is None:
            return VOID
        tag = die.tag

        if tag == TYPEDEF_TAG:
            if self._die_name(die) is None:
                return self.type_ref(self._type_die(die))
            return TypeRef(kind="named", name=self._qualified_ref_name(die))

        if tag in STRUCT_TAGS:
            return TypeRef(kind="named", name=self._qualified_ref_name(die), ref_kind=STRUCT_KIND_BY_TAG[tag])

        if tag == ENUM_TAG:
            return TypeRef(kind="named", name=self._qualified_ref_name(die), ref_kind="enum")

        if tag == BASE_TAG:
            name = self._die_name(die) or ""
            prim = canonical_primitive(name)
            if prim is None:
                size = _attr_int(die.attributes.get("DW_AT_byte_size")) or 1
                if self._log is not None:
                    self._log(f"base type '{name}' has no portable spelling, using opaque {size} bytes")
                return self._opaque_type_for_size(size)
            return TypeRef(kind="named", name=prim, ref_kind="base")

        if tag in {POINTER_TAG, REFERENCE_TAG, RV_REFERENCE_TAG}:
            return TypeRef(kind="pointer", target=self.type_ref(self._type_die(die)))

        if tag == ARRAY_TAG:
            return self._build_array(die)

        if tag in {CONST_TAG, VOLATILE_TAG}:
            qualifier = "const" if tag == CONST_TAG else "volatile"
            return self._apply_qualifier(self.type_ref(self._type_die(die)), qualifier)

        if tag == UNSPEC_TAG:
            prim = canonical_primitive(self._die_name(die) or "")
            if prim is not None and prim != "void":
                return TypeRef(kind="named", name=prim, ref_kind="base")
            return VOID

        if tag == SUBROUTINE_TAG:
            return VOID

        if tag in {RESTRICT_TAG, ATOMIC_TAG} or "DW_AT_type" in die.attributes:
            # restrict, _Atomic and vendor wrappers (e.g. ptrauth) are transparent.
            target = self._type_die(die)
            if target is None:
                return VOID
            if target is not die:
                return self.type_ref(target)

        size = _attr_int(die.attributes.get("DW_AT_byte_size"))
        if size:
            return self._opaque_type_for_size(size)
        return VOID

    def _type_die(self, die):
        if "DW_AT_type" not in die.attributes:
            return None
        return die.get_DIE_from_attribute("DW_AT_type")

    def _apply_qualifier(self, type_ref: TypeRef, qualifier: str) -> TypeRef:
        if type_ref.kind == "array" and type_ref.target is not None:
            return replace(type_ref, target=self._apply_qualifier(type_ref.target, qualifier))
        if qualifier in type_ref.qualifiers:
            return type_ref
        return replace(type_ref, qualifiers=(qualifier,) + type_ref.qualifiers)

    def _build_array(self, die) -> TypeRef:
        element_die = self._type_die(die)
        if element_die is None:
            element_ref = TypeRef(kind="named", name="unsigned char", ref_kind="base")
        else:
            element_ref = self.type_ref(element_die)
        counts: list[Optional[int]] = []
        for child in die.iter_children():
            if child.tag != "DW_TAG_subrange_type":
                continue
            count = _attr_int(child.attributes.get("DW_AT_count"))
            if count is None:
                upper = _attr_int(child.attributes.get("DW_AT_upper_bound"))
                if upper is not None and upper >= 0:
                    count = upper + 1
            counts.append(count)
        if not counts:
            return TypeRef(kind="array", target=element_ref, count=None)
        current = element_ref
        for count in reversed(counts):
            current = TypeRef(kind="array", target=current, count=count)
        return current

    def _opaque_type_for_size(self, size: int) -> TypeRef:
        by_size = {1: "uint8_t", 2: "uint16_t", 4: "uint32_t", 8: "uint64_t"}
        if size in by_size:
            return TypeRef(kind="named", name=by_size[size], ref_kind="base")
        return TypeRef(kind="array", target=TypeRef(kind="named", name="uint8_t", ref_kind="base"), count=size)

    def _member_offset(self, member_die) -> Optional[int]:
        attr = member_die.attributes.get("DW_AT_data_member_location")
        if attr is None:
            return None
        value = attr.value
        if isinstance(value, int):
            return value
        if isinstance(value, (bytes, list)):
            ops = self.expr_parser.parse_expr(value)
            if len(ops) == 1 and ops[0].op_name in {"DW_OP_plus_uconst", "DW_OP_constu", "DW_OP_consts"}:
                return int(ops[0].args[0])
        return None

    def _member_bit_position(self, member_die, bit_size: Optional[int]) -> Optional[int]:
        data_bit_offset = _attr_int(member_die.attributes.get("DW_AT_data_bit_offset"))
        if data_bit_offset is not None:
            return data_bit_offset
        byte_offset = self._member_offset(member_die)
        if byte_offset is None:
            return None
        legacy = _attr_int(member_die.attributes.get("DW_AT_bit_offset"))
        if legacy is None or bit_size is None:
            return byte_offset * 8
        # DWARF 2/3 count from the most significant bit of the storage unit.
        unit_size = _attr_int(member_die.attributes.get("DW_AT_byte_size"))
        if unit_size is None:
            type_die = self._type_die(member_die)
            unit_size = _attr_int(type_die.attributes.get("DW_AT_byte_size")) if type_die is not None else None
        if unit_size is None:
            return None
        if self.little_endian:
            return byte_offset * 8 + unit_size * 8 - legacy - bit_size
        return byte_offset * 8 + legacy

    def _params(self, die) -> tuple[list[ParamDecl], bool]:
        params: list[ParamDecl] = []
        has_this = False
        for child in die.iter_children():
            if child.tag != PARAM_TAG:
                continue
            if _attr_int(child.attributes.get("DW_AT_artificial")):
                has_this = True
                continue
            params.append(ParamDecl(name=self._die_name(child) or "", type_ref=self.type_ref(self._type_die(child))))
        return params, has_this

    def _add_struct(self, die, namespace: tuple[str, ...]) -> None:
        kind = STRUCT_KIND_BY_TAG[die.tag]
        name = self._decl_name(die)
        key = "::".join(namespace + (name,))
        opaque = bool(_attr_int(die.attributes.get("DW_AT_declaration")))
        slot = self._index.get(("type", key))
        if slot is not None:
            existing = self.decls[slot]
            if opaque or not (isinstance(existing, StructDecl) and existing.opaque):
                return

        decl = StructDecl(
            kind=kind,
            name=name,
            namespace=namespace,
            opaque=opaque,
            observed_size=_attr_int(die.attributes.get("DW_AT_byte_size")),
            location=self._location(die),
        )
        if slot is None:
            self._claim("type", key)
            self.decls.append(decl)
        else:
            self.decls[slot] = decl
        if opaque:
            return

        scope = namespace + (name,)
        bases = 0
        for child in die.iter_children():
            tag = child.tag
            if tag == INHERITANCE_TAG:
                field_name = "_base" if bases == 0 else f"_base_{bases}"
                bases += 1
                offset = self._member_offset(child)
                decl.fields.append(
                    FieldDecl(
                        name=field_name,
                        type_ref=self.type_ref(self._type_die(child)),
                        index=len(decl.fields),
                        observed_bit_position=offset * 8 if offset is not None else None,
                    )
                )
            elif tag == MEMBER_TAG:
                if _attr_int(child.attributes.get("DW_AT_artificial")):
                    continue
                if _attr_int(child.attributes.get("DW_AT_external")) or _attr_int(
                    child.attributes.get("DW_AT_declaration")
                ):
                    # DWARF 4 spells static data members as declared members.
                    self._add_variable(child, scope)
                    continue
                bit_size = _attr_int(child.attributes.get("DW_AT_bit_size"))
                alignment = _attr_int(child.attributes.get("DW_AT_alignment"))
                if alignment is not None and alignment <= 1:
                    alignment = None
                decl.fields.append(
                    FieldDecl(
                        name=self._die_name(child) or "",
                        type_ref=self.type_ref(self._type_die(child)),
                        bit_width=bit_size,
                        index=len(decl.fields),
                        alignment=alignment,
                        observed_bit_position=self._member_bit_position(child, bit_size),
                    )
                )
            elif tag == SUBPROGRAM_TAG:
                method = self._method(child, name)
                if method is not None:
                    decl.methods.append(method)
            elif tag == VARIABLE_TAG:
                self._add_variable(child, scope)
            elif tag in STRUCT_TAGS:
                self._add_struct(child, scope)
            elif tag == ENUM_TAG:
                self._add_enum(child, scope)
            elif tag == TYPEDEF_TAG:
                self._add_typedef(child, scope)

    def _method(self, die, struct_name: str) -> Optional[MethodDecl]:
        if _attr_int(die.attributes.get("DW_AT_artificial")):
            return None
        name = self._die_name(die)
        if not name:
            return None
        params, has_this = self._params(die)
        is_constructor = name == struct_name and "DW_AT_type" not in die.attributes
        return_type = None
        if not is_constructor:
            return_type = self.type_ref(self._type_die(die))
        return MethodDecl(
            name=name,
            params=params,
            return_type=return_type,
            is_static=not has_this and not is_constructor,
            is_constructor=is_constructor,
            location=self._location(die),
        )

    def _add_enum(self, die, namespace: tuple[str, ...]) -> None:
        name = self._decl_name(die)
        key = "::".join(namespace + (name,))
        if _attr_int(die.attributes.get("DW_AT_declaration")) or not self._claim("type", key):
            return
        underlying: Optional[str] = None
        target = self._type_die(die)
        if target is not None:
            target_ref = self.type_ref(target)
            if target_ref.kind == "named":
                underlying = target_ref.name
        enumerators: list[tuple[str, int]] = []
        for child in die.iter_children():
            if child.tag != "DW_TAG_enumerator":
                continue
            enum_name = self._die_name(child) or self._anon_type_name("enum_value")
            value_attr = child.attributes.get("DW_AT_const_value")
            if value_attr is None:
                value = 0
            else:
                value = value_attr.value
                if isinstance(value, bytes):
                    value = int.from_bytes(value, "little" if self.little_endian else "big", signed=False)
            enumerators.append((enum_name, int(value)))
        self.decls.append(
            EnumDecl(
                name=name,
                enumerators=enumerators,
                namespace=namespace,
                underlying=underlying,
                location=self._location(die),
            )
        )

    def _add_typedef(self, die, namespace: tuple[str, ...]) -> None:
        name = self._die_name(die)
        if not name:
            return
        target = self._type_die(die)
        if target is not None and target.tag in STRUCT_TAGS | {ENUM_TAG} and self._die_name(target) is None:
            # The anonymous record already carries this name; no alias needed.
            if self._anon_names.get(target.offset) == name:
                if target.tag == ENUM_TAG:
                    self._add_enum(target, self._scope_of(target))
                else:
                    self._add_struct(target, self._scope_of(target))
                return
        key = "::".join(namespace + (name,))
        if not self._claim("type", key):
            return
        target_ref = self.type_ref(target)
        self.decls.append(TypedefDecl(name=name, target=target_ref, namespace=namespace, location=self._location(die)))

    def _add_function(self, die, namespace: tuple[str, ...]) -> None:
        attrs = die.attributes
        if "DW_AT_specification" in attrs or "DW_AT_abstract_origin" in attrs:
            return
        name = self._die_name(die)
        if not name:
            return
        params, _ = self._params(die)
        key = "::".join(namespace + (name,))
        sig = (key, tuple(param.type_ref for param in params))
        if sig in self._function_sigs:
            return
        self._function_sigs.add(sig)
        self.decls.append(
            FunctionDecl(
                name=name,
                params=params,
                return_type=self.type_ref(self._type_die(die)),
                namespace=namespace,
                location=self._location(die),
            )
        )

    def _add_variable(self, die, namespace: tuple[str, ...]) -> None:
        if "DW_AT_specification" in die.attributes:
            return
        name = self._die_name(die)
        if not name:
            return
        key = "::".join(namespace + (name,))
        if not self._claim("value", key):
            return
        self.decls.append(
            VarDecl(
                name=name,
                type_ref=self.type_ref(self._type_die(die)),
                namespace=namespace,
                location=self._location(die),
            )
        )


def declarations_from_dwarf(dwarfinfo, verbose: Optional[set[str]] = None) -> list[Declaration]:
    return DeclarationBuilder(dwarfinfo, verbose=verbose).build()
