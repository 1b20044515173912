import json
import os
import sys
import tempfile
import unittest


REPO_ROOT = os.path.dirname(os.path.dirname(__file__))
SRC_ROOT = os.path.join(REPO_ROOT, "src")
FIXTURE = os.path.join(REPO_ROOT, "tests", "fixtures", "test_h.json")
sys.path.insert(0, SRC_ROOT)


from bindlayout.analysis.decl_json import (  # noqa: E402
    declarations_from_dict,
    is_json_path,
    load_declarations,
    parse_type,
)
from bindlayout.analysis.decl_types import (  # noqa: E402
    EnumDecl,
    FunctionDecl,
    SourceLocation,
    StructDecl,
    TypedefDecl,
    TypeRef,
    VarDecl,
)


class ParseTypeTests(unittest.TestCase):
    def test_builtin_spellings(self) -> None:
        self.assertEqual(parse_type("int"), TypeRef(kind="named", name="int", ref_kind="base"))
        self.assertEqual(parse_type("unsigned  char").name, "unsigned char")
        self.assertEqual(parse_type("long unsigned int").name, "unsigned long")

    def test_pointer_and_qualifiers(self) -> None:
        ref = parse_type("const char * const")

        self.assertEqual(ref.kind, "pointer")
        self.assertEqual(ref.qualifiers, ("const",))
        self.assertEqual(ref.target, TypeRef(kind="named", name="char", ref_kind="base", qualifiers=("const",)))

    def test_references_are_pointers(self) -> None:
        self.assertEqual(parse_type("Test &").kind, "pointer")
        self.assertEqual(parse_type("Test&&").target.name, "Test")

    def test_arrays(self) -> None:
        ref = parse_type("int *[3]")

        self.assertEqual((ref.kind, ref.count), ("array", 3))
        self.assertEqual(ref.target.kind, "pointer")
        grid = parse_type("float[2][4]")
        self.assertEqual((grid.count, grid.target.count), (2, 4))
        self.assertIsNone(parse_type("const int[]").count)

    def test_qualified_and_elaborated_names(self) -> None:
        self.assertEqual(parse_type("testing :: TypeAlias").name, "testing::TypeAlias")
        self.assertEqual(parse_type("::Test").name, "::Test")
        ref = parse_type("enum bitfields::ItemKind")
        self.assertEqual((ref.name, ref.ref_kind), ("bitfields::ItemKind", "enum"))
        self.assertIsNone(parse_type("TypeAlias").ref_kind)

    def test_malformed_types(self) -> None:
        for text in ("", "const", "int int", "Foo Bar", "int ^", "a::"):
            with self.subTest(text=text):
                with self.assertRaises(ValueError):
                    parse_type(text)


class LoadTests(unittest.TestCase):
    def test_fixture(self) -> None:
        decls = load_declarations(FIXTURE)

        test = decls[0]
        self.assertIsInstance(test, StructDecl)
        self.assertEqual((test.kind, test.name), ("class", "Test"))
        self.assertEqual(test.location, SourceLocation("Test.h", 5))
        self.assertEqual([method.is_constructor for method in test.methods], [False, True, True, False])
        self.assertTrue(test.methods[0].is_static)
        countdown = decls[1]
        self.assertIsInstance(countdown, VarDecl)
        self.assertEqual(countdown.namespace, ("Test",))

        first = next(decl for decl in decls if decl.name == "First")
        self.assertEqual(first.namespace, ("bitfields",))
        self.assertEqual(first.observed_size, 2)
        self.assertEqual([member.bit_width for member in first.fields], [3, 0, 6, 2])
        self.assertEqual([member.index for member in first.fields], [0, 1, 2, 3])

    def test_enum_values_continue_from_explicit(self) -> None:
        (enum,) = declarations_from_dict(
            [{"kind": "enum", "name": "E", "items": [{"name": "A"}, {"name": "B", "value": 10}, {"name": "C"}]}]
        )

        self.assertIsInstance(enum, EnumDecl)
        self.assertEqual(enum.enumerators, [("A", 0), ("B", 10), ("C", 11)])

    def test_namespace_string_and_kinds(self) -> None:
        decls = declarations_from_dict(
            {
                "decls": [
                    {"kind": "typedef", "name": "id_t", "namespace": "a::b", "type": "unsigned long"},
                    {"kind": "function", "name": "f", "namespace": ["a"], "params": [{"name": "x", "type": "id_t"}]},
                ]
            }
        )

        self.assertIsInstance(decls[0], TypedefDecl)
        self.assertEqual(decls[0].namespace, ("a", "b"))
        self.assertIsInstance(decls[1], FunctionDecl)
        self.assertEqual(decls[1].return_type.name, "void")
        self.assertEqual(decls[1].params[0].type_ref.name, "id_t")

    def test_unknown_kind(self) -> None:
        with self.assertRaises(ValueError):
            declarations_from_dict([{"kind": "macro", "name": "X"}])

    def test_missing_required_keys(self) -> None:
        cases = [
            ({"kind": "struct", "fields": []}, "'name'"),
            ({"kind": "struct", "name": "S", "fields": [{"name": "x"}]}, "'type'"),
            ({"kind": "typedef", "name": "T"}, "'type'"),
            ({"kind": "enum", "name": "E", "items": [{"value": 1}]}, "'name'"),
            ({"kind": "function", "name": "f", "params": [{"name": "x"}]}, "'type'"),
            ({"kind": "namespace", "decls": []}, "'name'"),
        ]
        for entry, key in cases:
            with self.subTest(entry=entry):
                with self.assertRaises(ValueError) as ctx:
                    declarations_from_dict([entry])
                self.assertIn(f"missing {key}", str(ctx.exception))

    def test_malformed_values(self) -> None:
        cases = [
            {"kind": "struct", "name": "S", "fields": [{"name": "x", "type": "int", "bits": "3"}]},
            {"kind": "struct", "name": "S", "fields": [{"name": "x", "type": "int", "bits": True}]},
            {"kind": "struct", "name": "S", "fields": [{"name": "x", "type": "int", "bits": -1}]},
            {"kind": "struct", "name": "S", "fields": "x"},
            {"kind": "enum", "name": "E", "items": [{"name": "A", "value": "1"}]},
            {"kind": "var", "name": 7, "type": "int"},
            {"kind": "var", "name": "v", "type": ["int"]},
            {"kind": "var", "name": "v", "type": "int", "location": "a.h:3"},
        ]
        for entry in cases:
            with self.subTest(entry=entry):
                with self.assertRaises(ValueError):
                    declarations_from_dict([entry])
        with self.assertRaises(ValueError):
            declarations_from_dict(["struct S"])
        with self.assertRaises(ValueError):
            declarations_from_dict(42)

    def test_json_detection(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "decls.txt")
            with open(path, "w", encoding="utf-8") as f:
                json.dump({"decls": []}, f)
            binary = os.path.join(tmp, "a.out")
            with open(binary, "wb") as f:
                f.write(b"\x7fELF\x02\x01\x01")

            self.assertTrue(is_json_path(path))
            self.assertTrue(is_json_path(FIXTURE))
            self.assertFalse(is_json_path(binary))


if __name__ == "__main__":
    unittest.main()
