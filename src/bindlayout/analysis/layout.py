from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from .abi import ENUM_CANDIDATES, AbiProfile
from .decl_errors import BitfieldOverflow, IncompatibleBackingType, UnresolvedType
from .decl_types import STRUCT_KINDS, EnumDecl, FieldDecl, LayoutInfo, StructDecl, TypeRef, VarDecl
from .type_graph import TypeGraph


@dataclass(frozen=True)
class MemberType:
    size: int
    align: int
    integral: bool = False
    enum_values: Optional[tuple[int, ...]] = None
    incomplete: bool = False
    spelling: str = ""


@dataclass(frozen=True)
class StructLayout:
    key: str
    layout: LayoutInfo
    fields: tuple[tuple[FieldDecl, LayoutInfo], ...]

    def field(self, name: str) -> LayoutInfo:
        for member, info in self.fields:
            if member.name == name:
                return info
        raise KeyError(name)


@dataclass(frozen=True)
class EnumLayout:
    key: str
    backing: str
    layout: LayoutInfo


class _Run:
    """One bitfield storage unit being filled."""

    def __init__(self, unit_offset: int, backing_size: int, unit_size: Optional[int] = None) -> None:
        self.unit_offset = unit_offset
        self.backing_size = backing_size
        self.fixed_size = unit_size
        self.used = 0
        self.end_bit = unit_offset * 8

    @property
    def unit_size(self) -> int:
        if self.fixed_size is not None:
            return self.fixed_size
        return _ceil_div(self.end_bit, 8) - self.unit_offset


def _ceil_div(value: int, divisor: int) -> int:
    return -(-value // divisor)


def _round_up(value: int, align: int) -> int:
    if align <= 1:
        return value
    return _ceil_div(value, align) * align


def _enum_fits(values: Sequence[int], width: int) -> bool:
    if not values:
        return True
    if min(values) < 0:
        lo, hi = -(1 << (width - 1)), (1 << (width - 1)) - 1
    else:
        lo, hi = 0, (1 << width) - 1
    return all(lo <= value <= hi for value in values)


def _check_bitfield(member: FieldDecl, mtype: MemberType, owner: str) -> None:
    width = member.bit_width or 0
    label = f"{owner}::{member.name}" if member.name else f"{owner}::<unnamed {member.index}>"
    if not mtype.integral:
        raise IncompatibleBackingType(f"bitfield backing type '{mtype.spelling}' is not integral", decl=label)
    if width < 0:
        raise BitfieldOverflow(f"negative bit width {width}", decl=label)
    if width > mtype.size * 8:
        raise BitfieldOverflow(
            f"width {width} exceeds the {mtype.size * 8} bits of '{mtype.spelling}'",
            decl=label,
        )
    if width and mtype.enum_values is not None and not _enum_fits(mtype.enum_values, width):
        raise BitfieldOverflow(
            f"enumerators of '{mtype.spelling}' do not fit in {width} bits",
            decl=label,
        )


def _layout_union(
    ordered: list[FieldDecl],
    describe: Callable[[FieldDecl], MemberType],
    profile: AbiProfile,
    packed: bool,
    owner: str,
) -> tuple[LayoutInfo, list[tuple[FieldDecl, LayoutInfo]]]:
    size = 0
    union_align = 1
    out: list[tuple[FieldDecl, LayoutInfo]] = []
    for member in ordered:
        mtype = describe(member)
        align = 1 if packed else mtype.align
        if member.alignment:
            align = max(align, member.alignment)
        if member.bit_width is not None:
            _check_bitfield(member, mtype, owner)
            width = member.bit_width
            unit_size = _ceil_div(width, 8)
            out.append(
                (
                    member,
                    LayoutInfo(
                        size=mtype.size,
                        align=mtype.align,
                        offset=0,
                        bit_width=width,
                        bit_offset=0,
                        unit_offset=0,
                        unit_size=unit_size,
                    ),
                )
            )
            if width:
                size = max(size, unit_size)
                if member.name or profile.unnamed_bitfields_align:
                    union_align = max(union_align, align)
            continue
        out.append((member, LayoutInfo(size=mtype.size, align=align, offset=0)))
        size = max(size, mtype.size)
        union_align = max(union_align, align)
    if not ordered:
        size = 1
    return LayoutInfo(size=_round_up(size, union_align), align=union_align), out


def layout_fields(
    fields: Sequence[FieldDecl],
    kind: str,
    describe: Callable[[FieldDecl], MemberType],
    profile: AbiProfile,
    packed: bool = False,
    owner: str = "",
) -> tuple[LayoutInfo, list[tuple[FieldDecl, LayoutInfo]]]:
    """Lay out ``fields`` in declaration order.

    Pure with respect to its inputs: ``describe`` supplies the size,
    alignment and integral-ness of each member's type and nothing is cached,
    so calling it twice on the same field list gives the same answer.
    """
    ordered = sorted(fields, key=lambda member: member.index)
    if kind == "union":
        return _layout_union(ordered, describe, profile, packed, owner)

    policy = profile.bitfield_policy
    bit_pos = 0
    struct_align = 1
    run: Optional[_Run] = None
    placed: list[tuple[FieldDecl, MemberType, int, Optional[int], Optional[_Run]]] = []

    for position, member in enumerate(ordered):
        mtype = describe(member)
        align = 1 if packed else mtype.align
        if member.alignment:
            align = max(align, member.alignment)

        if member.bit_width is None:
            run = None
            if mtype.incomplete and position != len(ordered) - 1:
                raise UnresolvedType(
                    mtype.spelling,
                    decl=f"{owner}::{member.name}",
                    reason="array of unknown length before the last member:",
                )
            offset = _round_up(_ceil_div(bit_pos, 8), align)
            placed.append((member, mtype, offset * 8, None, None))
            bit_pos = (offset + mtype.size) * 8
            struct_align = max(struct_align, align)
            continue

        _check_bitfield(member, mtype, owner)
        width = member.bit_width
        unit_bits = mtype.size * 8

        if width == 0:
            if policy == "new_unit":
                if run is not None:
                    bit_pos = (run.unit_offset + run.unit_size) * 8
            else:
                bit_pos = _round_up(bit_pos, mtype.align * 8)
            if profile.zero_width_aligns_struct:
                struct_align = max(struct_align, mtype.align)
            run = None
            placed.append((member, mtype, bit_pos, 0, None))
            continue

        if policy == "new_unit":
            if run is None or run.backing_size != mtype.size or run.used + width > unit_bits:
                start = _ceil_div(bit_pos, 8)
                if run is not None:
                    start = run.unit_offset + run.unit_size
                offset = _round_up(start, align)
                run = _Run(unit_offset=offset, backing_size=mtype.size, unit_size=mtype.size)
            bit_offset = run.used
            run.used += width
            run.end_bit = (run.unit_offset + run.unit_size) * 8
            placed.append((member, mtype, run.unit_offset * 8 + bit_offset, bit_offset, run))
            bit_pos = run.end_bit
            if member.name or profile.unnamed_bitfields_align:
                struct_align = max(struct_align, align)
            continue

        if not packed and bit_pos // unit_bits != (bit_pos + width - 1) // unit_bits:
            bit_pos = _round_up(bit_pos, mtype.align * 8)
            run = None
        if run is not None and run.backing_size != mtype.size and policy == "reject":
            raise IncompatibleBackingType(
                f"bitfield run changes backing type size from {run.backing_size} to {mtype.size} bytes "
                "without a zero-width separator",
                decl=f"{owner}::{member.name}",
            )
        if run is None:
            run = _Run(unit_offset=bit_pos // 8, backing_size=mtype.size)
        bit_offset = bit_pos - run.unit_offset * 8
        placed.append((member, mtype, bit_pos, bit_offset, run))
        bit_pos += width
        run.end_bit = bit_pos
        if member.name or profile.unnamed_bitfields_align:
            struct_align = max(struct_align, align)

    out: list[tuple[FieldDecl, LayoutInfo]] = []
    for member, mtype, start_bit, bit_offset, member_run in placed:
        if member.bit_width is None:
            info = LayoutInfo(size=mtype.size, align=1 if packed else mtype.align, offset=start_bit // 8)
        elif member_run is None:
            info = LayoutInfo(
                size=0,
                align=1,
                offset=start_bit // 8,
                bit_width=0,
                bit_offset=0,
                unit_offset=start_bit // 8,
                unit_size=0,
            )
        else:
            info = LayoutInfo(
                size=mtype.size,
                align=mtype.align,
                offset=member_run.unit_offset,
                bit_width=member.bit_width,
                bit_offset=bit_offset,
                unit_offset=member_run.unit_offset,
                unit_size=member_run.unit_size,
            )
        out.append((member, info))

    size = _ceil_div(bit_pos, 8)
    if not ordered:
        # C++ gives empty classes a distinct address.
        size = 1
    return LayoutInfo(size=_round_up(size, struct_align), align=struct_align), out


def enum_backing(decl: EnumDecl, profile: AbiProfile, key: str = "") -> str:
    if decl.underlying is not None:
        return decl.underlying
    values = [value for _, value in decl.enumerators] or [0]
    lo, hi = min(values), max(values)
    signed = lo < 0
    candidates = ENUM_CANDIDATES if profile.short_enums else ENUM_CANDIDATES[4:]
    for name, is_signed in candidates:
        if is_signed != signed:
            continue
        prim = profile.primitive(name)
        if prim is None:
            continue
        bits = prim[0] * 8
        if signed and -(1 << (bits - 1)) <= lo and hi < (1 << (bits - 1)):
            return name
        if not signed and hi < (1 << bits):
            return name
    raise IncompatibleBackingType(f"enumerator range [{lo}, {hi}] fits no integral type", decl=key or decl.name)


class LayoutEngine:
    def __init__(self, graph: TypeGraph, profile: AbiProfile, log=None) -> None:
        self.graph = graph
        self.profile = profile
        self._log = log
        self.structs: dict[str, StructLayout] = {}
        self.enums: dict[str, EnumLayout] = {}
        self.vars: dict[str, Optional[LayoutInfo]] = {}
        self._expanding: set[str] = set()

    def size_align(self, type_ref: TypeRef, owner: str = "") -> tuple[int, int]:
        ref = self.graph.canonical(type_ref)
        if ref.kind == "pointer":
            return self.profile.pointer_size, self.profile.pointer_align
        if ref.kind == "array":
            if ref.count is None:
                raise UnresolvedType(ref.spelling(), decl=owner, reason="array of unknown length")
            size, align = self.size_align(ref.target, owner)
            return size * ref.count, align
        if ref.ref_kind == "base":
            name = ref.name or ""
            if name == "void":
                raise UnresolvedType(name, decl=owner, reason="incomplete type")
            prim = self.profile.primitive(name)
            if prim is None:
                raise UnresolvedType(name, decl=owner, reason=f"type not available on ABI '{self.profile.name}':")
            return prim
        if ref.ref_kind == "enum":
            layout = self.enum_layout(ref.name or "").layout
            return layout.size, layout.align
        if ref.ref_kind in STRUCT_KINDS:
            layout = self.struct_layout(ref.name or "", owner).layout
            return layout.size, layout.align
        raise UnresolvedType(ref.spelling(), decl=owner)

    def is_complete(self, type_ref: TypeRef) -> bool:
        ref = self.graph.canonical(type_ref)
        if ref.kind == "pointer":
            return True
        if ref.kind == "array":
            return ref.count is not None and self.is_complete(ref.target)
        if ref.ref_kind == "base":
            return ref.name != "void"
        if ref.ref_kind in STRUCT_KINDS:
            return not self.graph.get(ref.name or "").opaque
        return True

    def describe(self, member: FieldDecl, owner: str) -> MemberType:
        label = f"{owner}::{member.name}"
        ref = self.graph.canonical(member.type_ref)
        if ref.kind == "array" and ref.count is None:
            _, align = self.size_align(ref.target, label)
            return MemberType(size=0, align=align, incomplete=True, spelling=ref.spelling())
        size, align = self.size_align(ref, label)
        integral = False
        enum_values = None
        if ref.kind == "named" and ref.ref_kind == "base":
            integral = self.profile.is_integral(ref.name or "")
        elif ref.kind == "named" and ref.ref_kind == "enum":
            integral = True
            decl = self.graph.get(ref.name or "")
            enum_values = tuple(value for _, value in decl.enumerators)
        return MemberType(
            size=size,
            align=align,
            integral=integral,
            enum_values=enum_values,
            spelling=ref.spelling(),
        )

    def relayout(self, key: str) -> tuple[LayoutInfo, list[tuple[FieldDecl, LayoutInfo]]]:
        """Recompute ``key`` from its field list without consulting the cache."""
        decl = self.graph.get(key)
        return layout_fields(
            decl.fields,
            decl.kind,
            lambda member: self.describe(member, key),
            self.profile,
            packed=decl.packed,
            owner=key,
        )

    def struct_layout(self, key: str, owner: str = "") -> StructLayout:
        cached = self.structs.get(key)
        if cached is not None:
            return cached
        decl = self.graph.get(key)
        if not isinstance(decl, StructDecl):
            raise UnresolvedType(key, decl=owner or key, reason="not a record type")
        if decl.opaque:
            raise UnresolvedType(key, decl=owner or key, location=decl.location, reason="incomplete type")
        if key in self._expanding:
            raise UnresolvedType(key, decl=owner or key, location=decl.location, reason="recursive by-value use of")
        self._expanding.add(key)
        try:
            info, fields = self.relayout(key)
        finally:
            self._expanding.discard(key)
        result = StructLayout(key=key, layout=info, fields=tuple(fields))
        self.structs[key] = result
        if self._log is not None:
            self._log(f"{key}: size {info.size} align {info.align}")
            for member, finfo in fields:
                if finfo.bit_width == 0:
                    self._log(f"  <separator>: next unit at byte {finfo.unit_offset}")
                elif finfo.bit_width is not None:
                    last_bit = finfo.bit_offset + finfo.bit_width - 1
                    self._log(
                        f"  {member.name or '<unnamed>'}: unit @{finfo.unit_offset}+{finfo.unit_size} "
                        f"bits {finfo.bit_offset}..{last_bit}"
                    )
                else:
                    self._log(f"  {member.name}: offset {finfo.offset} size {finfo.size}")
        return result

    def enum_layout(self, key: str) -> EnumLayout:
        cached = self.enums.get(key)
        if cached is not None:
            return cached
        decl = self.graph.get(key)
        backing = enum_backing(decl, self.profile, key)
        prim = self.profile.primitive(backing)
        if prim is None or not self.profile.is_integral(backing):
            raise IncompatibleBackingType(f"enum backing type '{backing}' is not integral", decl=key)
        result = EnumLayout(key=key, backing=backing, layout=LayoutInfo(size=prim[0], align=prim[1]))
        self.enums[key] = result
        if self._log is not None:
            self._log(f"{key}: enum backed by {backing}")
        return result


def compute_layouts(graph: TypeGraph, profile: AbiProfile, log=None) -> LayoutEngine:
    engine = LayoutEngine(graph, profile, log)
    for key, decl in graph.iter_decls():
        if isinstance(decl, StructDecl):
            if not decl.opaque:
                engine.struct_layout(key)
        elif isinstance(decl, EnumDecl):
            engine.enum_layout(key)
        elif isinstance(decl, VarDecl):
            if engine.is_complete(decl.type_ref):
                size, align = engine.size_align(decl.type_ref, key)
                engine.vars[key] = LayoutInfo(size=size, align=align)
            else:
                engine.vars[key] = None
    # Dependencies may have been laid out first; present results in declaration order.
    engine.structs = {key: engine.structs[key] for key in graph.order if key in engine.structs}
    engine.enums = {key: engine.enums[key] for key in graph.order if key in engine.enums}
    return engine
