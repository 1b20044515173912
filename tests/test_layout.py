import os
import sys
import unittest


REPO_ROOT = os.path.dirname(os.path.dirname(__file__))
SRC_ROOT = os.path.join(REPO_ROOT, "src")
FIXTURE = os.path.join(REPO_ROOT, "tests", "fixtures", "test_h.json")
sys.path.insert(0, SRC_ROOT)


from bindlayout.analysis.abi import get_profile  # noqa: E402
from bindlayout.analysis.decl_errors import (  # noqa: E402
    BitfieldOverflow,
    IncompatibleBackingType,
    UnresolvedType,
)
from bindlayout.analysis.decl_json import load_declarations, parse_type  # noqa: E402
from bindlayout.analysis.decl_types import EnumDecl, FieldDecl, StructDecl, VarDecl  # noqa: E402
from bindlayout.analysis.layout import compute_layouts, enum_backing  # noqa: E402
from bindlayout.analysis.type_graph import build_type_graph  # noqa: E402


def _fields(*entries):
    out = []
    for idx, entry in enumerate(entries):
        name, type_text = entry[0], entry[1]
        bits = entry[2] if len(entry) > 2 else None
        out.append(FieldDecl(name=name, type_ref=parse_type(type_text), bit_width=bits, index=idx))
    return out


def _layouts(decls, abi=None):
    return compute_layouts(build_type_graph(decls), get_profile(abi))


def _fixture_layouts(abi=None):
    return _layouts(load_declarations(FIXTURE), abi)


class BitfieldFixtureTests(unittest.TestCase):
    def test_first_zero_width_starts_new_byte(self) -> None:
        first = _fixture_layouts().structs["bitfields::First"]

        self.assertEqual(first.layout.size, 2)
        a = first.field("three_bits_byte_one")
        self.assertEqual((a.unit_offset, a.bit_offset, a.bit_width), (0, 0, 3))
        b = first.field("six_bits_byte_two")
        self.assertEqual((b.unit_offset, b.bit_offset, b.bit_width), (1, 0, 6))
        c = first.field("two_bits_byte_two")
        self.assertEqual((c.unit_offset, c.bit_offset, c.bit_width), (1, 6, 2))
        separator = first.fields[1][1]
        self.assertEqual((separator.bit_width, separator.size, separator.unit_size), (0, 0, 0))

    def test_second_bool_shares_int_unit(self) -> None:
        second = _fixture_layouts().structs["bitfields::Second"]

        self.assertEqual(second.layout.size, 4)
        self.assertEqual(second.layout.align, 4)
        one_bit = second.field("one_bit")
        self.assertEqual((one_bit.unit_offset, one_bit.bit_offset), (0, 31))
        self.assertEqual(one_bit.unit_size, 4)

    def test_third_enum_bitfield(self) -> None:
        layouts = _fixture_layouts()
        third = layouts.structs["bitfields::Third"]

        self.assertEqual(third.layout.size, 4)
        self.assertEqual(third.field("is_whatever").bit_offset, 28)
        kind = third.field("kind")
        self.assertEqual((kind.unit_offset, kind.bit_offset, kind.bit_width), (0, 29, 3))
        self.assertEqual(layouts.enums["bitfields::ItemKind"].backing, "unsigned int")

    def test_msvc_opens_new_unit_on_size_change(self) -> None:
        layouts = _fixture_layouts("x86_64-msvc")

        second = layouts.structs["bitfields::Second"]
        self.assertEqual(second.layout.size, 8)
        self.assertEqual(second.field("one_bit").unit_offset, 4)
        self.assertEqual(second.field("one_bit").bit_offset, 0)
        self.assertEqual(layouts.structs["bitfields::First"].layout.size, 2)

    def test_strict_rejects_mixed_backing_sizes(self) -> None:
        with self.assertRaises(IncompatibleBackingType) as ctx:
            _fixture_layouts("strict")

        self.assertEqual(ctx.exception.decl, "bitfields::Second::one_bit")

    def test_enum_values_exceeding_width(self) -> None:
        decls = [
            EnumDecl(name="Wide", enumerators=[("A", 0), ("B", 8)]),
            StructDecl(kind="struct", name="Holder", fields=_fields(("flags", "int", 28), ("kind", "Wide", 3))),
        ]

        with self.assertRaises(BitfieldOverflow) as ctx:
            _layouts(decls)

        self.assertEqual(ctx.exception.decl, "Holder::kind")

    def test_signed_enum_needs_sign_bit(self) -> None:
        decls = [
            EnumDecl(name="Sign", enumerators=[("NEG", -2), ("POS", 1)]),
            StructDecl(kind="struct", name="Holder", fields=_fields(("s", "Sign", 2))),
        ]

        self.assertEqual(_layouts(decls).structs["Holder"].layout.size, 4)

    def test_width_larger_than_type(self) -> None:
        decls = [StructDecl(kind="struct", name="Bad", fields=_fields(("x", "unsigned char", 9)))]

        with self.assertRaises(BitfieldOverflow):
            _layouts(decls)

    def test_non_integral_bitfield(self) -> None:
        decls = [StructDecl(kind="struct", name="Bad", fields=_fields(("x", "double", 3)))]

        with self.assertRaises(IncompatibleBackingType):
            _layouts(decls)

    def test_bitfield_does_not_straddle_unit(self) -> None:
        decls = [StructDecl(kind="struct", name="S", fields=_fields(("a", "int", 30), ("b", "int", 4)))]
        layout = _layouts(decls).structs["S"]

        self.assertEqual(layout.field("b").unit_offset, 4)
        self.assertEqual(layout.field("b").bit_offset, 0)
        self.assertEqual(layout.layout.size, 8)

    def test_unnamed_bitfield_does_not_raise_alignment(self) -> None:
        decls = [StructDecl(kind="struct", name="A", fields=_fields(("c", "char"), ("", "int", 4)))]

        self.assertEqual(_layouts(decls).structs["A"].layout, _layouts(decls, "strict").structs["A"].layout)
        layout = _layouts(decls).structs["A"]
        self.assertEqual((layout.layout.size, layout.layout.align), (2, 1))
        self.assertEqual(layout.fields[1][1].unit_offset, 1)

        msvc = _layouts(decls, "x86_64-msvc").structs["A"]
        self.assertEqual((msvc.layout.size, msvc.layout.align), (8, 4))

    def test_named_bitfield_still_raises_alignment(self) -> None:
        decls = [StructDecl(kind="struct", name="B", fields=_fields(("c", "char"), ("n", "int", 4)))]
        layout = _layouts(decls).structs["B"]

        self.assertEqual((layout.layout.size, layout.layout.align), (4, 4))

    def test_unnamed_bitfield_in_union(self) -> None:
        decls = [StructDecl(kind="union", name="U", fields=_fields(("c", "char"), ("", "int", 12)))]
        layout = _layouts(decls).structs["U"]

        self.assertEqual((layout.layout.size, layout.layout.align), (2, 1))


class RecordLayoutTests(unittest.TestCase):
    def test_class_fields_are_aligned(self) -> None:
        test = _fixture_layouts().structs["Test"]

        self.assertEqual(test.field("m_int").offset, 0)
        self.assertEqual(test.field("m_double").offset, 8)
        self.assertEqual((test.layout.size, test.layout.align), (16, 8))

    def test_i386_double_alignment(self) -> None:
        decls = [StructDecl(kind="struct", name="S", fields=_fields(("c", "char"), ("d", "double")))]

        self.assertEqual(_layouts(decls).structs["S"].layout.size, 16)
        self.assertEqual(_layouts(decls, "i386-sysv").structs["S"].layout.size, 12)

    def test_packed_struct(self) -> None:
        decls = [StructDecl(kind="struct", name="P", fields=_fields(("c", "char"), ("i", "int")), packed=True)]
        layout = _layouts(decls).structs["P"]

        self.assertEqual(layout.field("i").offset, 1)
        self.assertEqual((layout.layout.size, layout.layout.align), (5, 1))

    def test_explicit_field_alignment(self) -> None:
        fields = _fields(("c", "char"), ("i", "int"))
        fields[1].alignment = 16
        layout = _layouts([StructDecl(kind="struct", name="A", fields=fields)]).structs["A"]

        self.assertEqual(layout.field("i").offset, 16)
        self.assertEqual(layout.layout.size, 32)

    def test_union_takes_largest_member(self) -> None:
        decls = [StructDecl(kind="union", name="U", fields=_fields(("i", "int"), ("bytes", "char[6]")))]
        layout = _layouts(decls).structs["U"]

        self.assertEqual((layout.layout.size, layout.layout.align), (8, 4))
        self.assertEqual(layout.field("bytes").offset, 0)

    def test_empty_struct_has_size_one(self) -> None:
        layout = _layouts([StructDecl(kind="struct", name="Empty")]).structs["Empty"]

        self.assertEqual(layout.layout.size, 1)

    def test_flexible_array_member(self) -> None:
        decls = [StructDecl(kind="struct", name="Buf", fields=_fields(("n", "int"), ("data", "int[]")))]
        layout = _layouts(decls).structs["Buf"]

        self.assertEqual(layout.field("data").offset, 4)
        self.assertEqual(layout.layout.size, 4)

    def test_unknown_length_array_must_be_last(self) -> None:
        decls = [StructDecl(kind="struct", name="Buf", fields=_fields(("data", "int[]"), ("n", "int")))]

        with self.assertRaises(UnresolvedType):
            _layouts(decls)

    def test_nested_records_and_pointers(self) -> None:
        decls = [
            StructDecl(kind="struct", name="Inner", fields=_fields(("a", "short"), ("b", "char"))),
            StructDecl(kind="struct", name="Outer", fields=_fields(("inner", "Inner[2]"), ("next", "Outer *"))),
        ]
        layouts = _layouts(decls, "i386-sysv")

        self.assertEqual(layouts.structs["Inner"].layout.size, 4)
        self.assertEqual(layouts.structs["Outer"].field("next").offset, 8)
        self.assertEqual(layouts.structs["Outer"].layout.size, 12)

    def test_recursive_by_value_member(self) -> None:
        decls = [StructDecl(kind="struct", name="Loop", fields=_fields(("self", "Loop")))]

        with self.assertRaises(UnresolvedType):
            _layouts(decls)

    def test_opaque_member_is_rejected(self) -> None:
        decls = [
            StructDecl(kind="struct", name="Hidden", opaque=True),
            StructDecl(kind="struct", name="S", fields=_fields(("h", "Hidden"))),
        ]

        with self.assertRaises(UnresolvedType):
            _layouts(decls)

    def test_primitive_missing_on_abi(self) -> None:
        decls = [StructDecl(kind="struct", name="Wide", fields=_fields(("x", "__int128")))]

        self.assertEqual(_layouts(decls).structs["Wide"].layout.size, 16)
        with self.assertRaises(UnresolvedType):
            _layouts(decls, "i386-sysv")

    def test_incomplete_variable_has_no_layout(self) -> None:
        layouts = _fixture_layouts()

        self.assertIsNone(layouts.vars["Test::COUNTDOWN"])
        self.assertEqual(layouts.vars["Test::COUNTDOWN_PTR"].size, 8)

    def test_relayout_reproduces_layout(self) -> None:
        layouts = _fixture_layouts()

        for key, struct in layouts.structs.items():
            info, fields = layouts.relayout(key)
            self.assertEqual(info, struct.layout, key)
            self.assertEqual(tuple(fields), struct.fields, key)


class EnumBackingTests(unittest.TestCase):
    def test_default_backing(self) -> None:
        profile = get_profile()

        self.assertEqual(enum_backing(EnumDecl(name="E", enumerators=[("A", 0), ("B", 2)]), profile), "unsigned int")
        self.assertEqual(enum_backing(EnumDecl(name="E", enumerators=[("A", -1)]), profile), "int")
        self.assertEqual(enum_backing(EnumDecl(name="E", enumerators=[("A", 1 << 32)]), profile), "unsigned long long")
        self.assertEqual(enum_backing(EnumDecl(name="E", enumerators=[]), profile), "unsigned int")

    def test_short_enums(self) -> None:
        profile = get_profile("arm-eabi-short-enums")

        self.assertEqual(enum_backing(EnumDecl(name="E", enumerators=[("A", 0), ("B", 255)]), profile), "unsigned char")
        self.assertEqual(enum_backing(EnumDecl(name="E", enumerators=[("A", -1), ("B", 1)]), profile), "signed char")
        self.assertEqual(enum_backing(EnumDecl(name="E", enumerators=[("A", 256)]), profile), "unsigned short")

    def test_explicit_underlying_type(self) -> None:
        decls = [EnumDecl(name="E", enumerators=[("A", 1)], underlying="uint8_t")]
        enum = _layouts(decls).enums["E"]

        self.assertEqual(enum.backing, "uint8_t")
        self.assertEqual(enum.layout.size, 1)

    def test_non_integral_underlying_type(self) -> None:
        decls = [EnumDecl(name="E", enumerators=[("A", 1)], underlying="float")]

        with self.assertRaises(IncompatibleBackingType):
            _layouts(decls)

    def test_range_beyond_any_type(self) -> None:
        decls = [EnumDecl(name="E", enumerators=[("A", -1), ("B", 1 << 63)])]

        with self.assertRaises(IncompatibleBackingType):
            _layouts(decls)

    def test_enum_variable(self) -> None:
        decls = [
            EnumDecl(name="E", enumerators=[("A", 1)]),
            VarDecl(name="current", type_ref=parse_type("E")),
        ]

        self.assertEqual(_layouts(decls).vars["current"].size, 4)


if __name__ == "__main__":
    unittest.main()
