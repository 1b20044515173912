from __future__ import annotations

from typing import Iterable, Optional

from .decl_types import Declaration, LayoutInfo, StructDecl, qualified_name
from .ir import IR


def field_bit_position(info: LayoutInfo) -> Optional[int]:
    """Absolute bit position of a field from the start of its record."""
    if info.bit_width is not None:
        if info.unit_offset is None or info.bit_offset is None:
            return None
        return info.unit_offset * 8 + info.bit_offset
    if info.offset is None:
        return None
    return info.offset * 8


def check_layouts(decls: Iterable[Declaration], ir: IR) -> list[str]:
    """Compare computed layouts with the sizes and offsets the compiler recorded.

    Returns one message per disagreement; an empty list means every recorded
    size and field position matched.
    """
    mismatches: list[str] = []
    for decl in decls:
        if not isinstance(decl, StructDecl) or decl.opaque:
            continue
        key = qualified_name(decl)
        record = ir.get(key)
        if record is None or record.layout is None:
            continue
        if decl.observed_size is not None and decl.observed_size != record.layout.size:
            mismatches.append(f"{key}: size {record.layout.size} != recorded {decl.observed_size}")
        computed = {member.index: member for member in record.fields}
        for member in decl.fields:
            if member.observed_bit_position is None:
                continue
            field_ir = computed.get(member.index)
            if field_ir is None or field_ir.layout is None:
                continue
            if field_ir.layout.bit_width == 0:
                continue
            position = field_bit_position(field_ir.layout)
            if position != member.observed_bit_position:
                label = member.name or f"<field {member.index}>"
                mismatches.append(f"{key}::{label}: bit {position} != recorded {member.observed_bit_position}")
    return mismatches
