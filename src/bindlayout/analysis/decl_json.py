"""
Declaration-list front-end.

Reads the JSON document an external native-source parser produces and turns
it into Declarations. Layout::

    {"decls": [
        {"kind": "namespace", "name": "bitfields", "decls": [...]},
        {"kind": "struct", "name": "First", "fields": [
            {"name": "a", "type": "unsigned char", "bits": 3}, ...],
         "methods": [{"name": "assert", "return": "bool", "params": [...]}]},
        {"kind": "enum", "name": "ItemKind", "items": [{"name": "UNO"}, ...]},
        {"kind": "typedef", "name": "TypeAlias", "type": "testing::TypeAlias"},
        {"kind": "function", "name": "f", "return": "int", "params": []},
        {"kind": "var", "name": "COUNTDOWN", "type": "const int[]"}
    ]}
"""

from __future__ import annotations

import json
import re
from dataclasses import replace
from pathlib import Path
from typing import Optional

from .decl_types import (
    STRUCT_KINDS,
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
from .decl_utils import _split_qualified, canonical_primitive


_KEYWORD_WORDS = {
    "void",
    "bool",
    "_Bool",
    "char",
    "short",
    "int",
    "long",
    "signed",
    "unsigned",
    "float",
    "double",
    "wchar_t",
    "char8_t",
    "char16_t",
    "char32_t",
    "__int128",
}
_QUALIFIERS = {"const", "volatile"}
_ELABORATED = {"struct", "class", "union", "enum"}

_TOKEN_RE = re.compile(r"\s*(?:(?P<name>(?:::)?[A-Za-z_]\w*(?:\s*::\s*[A-Za-z_]\w*)*)|(?P<punct>&&|[*&]))")
_ARRAY_SUFFIX_RE = re.compile(r"\[\s*(\d*)\s*\]\s*$")


def _tokenize(text: str) -> list[str]:
    tokens: list[str] = []
    pos = 0
    text = text.strip()
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None or match.end() == pos:
            raise ValueError(f"Cannot parse type '{text}' near '{text[pos:]}'.")
        token = match.group("name") or match.group("punct")
        tokens.append(re.sub(r"\s+", "", token) if "::" in token else token)
        pos = match.end()
        while pos < len(text) and text[pos].isspace():
            pos += 1
    return tokens


def parse_type(text: str) -> TypeRef:
    """Parse a C/C++ type spelling such as ``const char *`` or ``int *[3]``."""
    if not isinstance(text, str):
        raise ValueError(f"Type spelling must be a string, got {text!r}.")
    body = text.strip()
    dims: list[Optional[int]] = []
    while True:
        match = _ARRAY_SUFFIX_RE.search(body)
        if match is None:
            break
        dims.insert(0, int(match.group(1)) if match.group(1) else None)
        body = body[: match.start()].rstrip()

    tokens = _tokenize(body)
    words: list[str] = []
    qualifiers: list[str] = []
    elaborated: Optional[str] = None
    idx = 0
    while idx < len(tokens) and tokens[idx] not in {"*", "&", "&&"}:
        token = tokens[idx]
        if token in _QUALIFIERS:
            if token not in qualifiers:
                qualifiers.append(token)
        elif token in _ELABORATED and elaborated is None and not words:
            elaborated = token
        else:
            words.append(token)
        idx += 1
    if not words:
        raise ValueError(f"Type '{text}' names no type.")

    name = " ".join(words)
    if elaborated is None and all(word in _KEYWORD_WORDS for word in words):
        prim = canonical_primitive(name)
        if prim is None:
            raise ValueError(f"Invalid builtin type '{name}' in '{text}'.")
        ref = TypeRef(kind="named", name=prim, ref_kind="base", qualifiers=tuple(qualifiers))
    else:
        if len(words) != 1:
            raise ValueError(f"Cannot parse type '{text}'.")
        _split_qualified(name)
        ref = TypeRef(kind="named", name=name, ref_kind=elaborated, qualifiers=tuple(qualifiers))

    for token in tokens[idx:]:
        if token in {"*", "&", "&&"}:
            ref = TypeRef(kind="pointer", target=ref)
        elif token in _QUALIFIERS:
            if token not in ref.qualifiers:
                ref = replace(ref, qualifiers=ref.qualifiers + (token,))
        else:
            raise ValueError(f"Unexpected '{token}' in type '{text}'.")

    for count in reversed(dims):
        ref = TypeRef(kind="array", target=ref, count=count)
    return ref


def _require(entry, key: str) -> str:
    if not isinstance(entry, dict):
        raise ValueError(f"Declaration entry must be an object, got {type(entry).__name__}.")
    if key not in entry:
        raise ValueError(f"Declaration entry missing '{key}': {json.dumps(entry, sort_keys=True)[:80]}")
    value = entry[key]
    if not isinstance(value, str):
        raise ValueError(f"Declaration entry '{key}' must be a string, got {value!r}.")
    return value


def _objects(entry: dict, key: str) -> list[dict]:
    items = entry.get(key, [])
    if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
        raise ValueError(f"Declaration entry '{key}' must be a list of objects.")
    return items


def _int_field(entry: dict, key: str) -> Optional[int]:
    value = entry.get(key)
    if value is None:
        return None
    # bool is an int subclass but never a valid width or value here.
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Declaration entry '{key}' must be an integer, got {value!r}.")
    return value


def _bit_width(raw: dict) -> Optional[int]:
    bits = _int_field(raw, "bits")
    if bits is not None and bits < 0:
        raise ValueError(f"Bitfield '{raw.get('name', '')}' has negative width {bits}.")
    return bits


def _namespace_of(entry: dict, parent: tuple[str, ...]) -> tuple[str, ...]:
    raw = entry.get("namespace", ())
    if isinstance(raw, str):
        extra = _split_qualified(raw)[1] if raw.strip() else ()
    elif isinstance(raw, (list, tuple)):
        extra = tuple(str(part) for part in raw)
    else:
        raise ValueError(f"Declaration entry 'namespace' must be a string or list, got {raw!r}.")
    return parent + tuple(extra)


def _location(entry: dict) -> Optional[SourceLocation]:
    raw = entry.get("location")
    if not raw:
        return None
    if not isinstance(raw, dict):
        raise ValueError(f"Declaration entry 'location' must be an object, got {raw!r}.")
    return SourceLocation(file=raw.get("file"), line=raw.get("line"))


def _params(entry: dict) -> list[ParamDecl]:
    return [
        ParamDecl(name=param.get("name", ""), type_ref=parse_type(_require(param, "type")))
        for param in _objects(entry, "params")
    ]


def _parse_struct(entry: dict, namespace: tuple[str, ...]) -> StructDecl:
    name = _require(entry, "name")
    fields = []
    for index, raw in enumerate(_objects(entry, "fields")):
        fields.append(
            FieldDecl(
                name=raw.get("name", ""),
                type_ref=parse_type(_require(raw, "type")),
                bit_width=_bit_width(raw),
                index=index,
                alignment=_int_field(raw, "align"),
            )
        )
    methods = []
    for raw in _objects(entry, "methods"):
        is_constructor = bool(raw.get("constructor", raw.get("name") == name and "return" not in raw))
        return_type = None
        if not is_constructor:
            return_type = parse_type(raw.get("return", "void"))
        methods.append(
            MethodDecl(
                name=_require(raw, "name"),
                params=_params(raw),
                return_type=return_type,
                is_static=bool(raw.get("static", False)),
                is_constructor=is_constructor,
                location=_location(raw),
            )
        )
    return StructDecl(
        kind=entry["kind"],
        name=name,
        namespace=namespace,
        fields=fields,
        methods=methods,
        packed=bool(entry.get("packed", False)),
        opaque=bool(entry.get("opaque", False)),
        observed_size=_int_field(entry, "size"),
        location=_location(entry),
    )


def _parse_enum(entry: dict, namespace: tuple[str, ...]) -> EnumDecl:
    enumerators: list[tuple[str, int]] = []
    next_value = 0
    for item in _objects(entry, "items"):
        value = _int_field(item, "value")
        if value is None:
            value = next_value
        enumerators.append((_require(item, "name"), value))
        next_value = value + 1
    return EnumDecl(
        name=_require(entry, "name"),
        enumerators=enumerators,
        namespace=namespace,
        underlying=entry.get("underlying"),
        location=_location(entry),
    )


def _parse_entries(entries: list, parent: tuple[str, ...], out: list[Declaration]) -> None:
    for entry in entries:
        kind = entry.get("kind")
        namespace = _namespace_of(entry, parent)
        if kind == "namespace":
            _parse_entries(_objects(entry, "decls"), namespace + (_require(entry, "name"),), out)
        elif kind in STRUCT_KINDS:
            out.append(_parse_struct(entry, namespace))
            _parse_entries(_objects(entry, "decls"), namespace + (_require(entry, "name"),), out)
        elif kind == "enum":
            out.append(_parse_enum(entry, namespace))
        elif kind == "typedef":
            out.append(
                TypedefDecl(
                    name=_require(entry, "name"),
                    target=parse_type(_require(entry, "type")),
                    namespace=namespace,
                    location=_location(entry),
                )
            )
        elif kind == "function":
            out.append(
                FunctionDecl(
                    name=_require(entry, "name"),
                    params=_params(entry),
                    return_type=parse_type(entry.get("return", "void")),
                    namespace=namespace,
                    location=_location(entry),
                )
            )
        elif kind == "var":
            out.append(
                VarDecl(
                    name=_require(entry, "name"),
                    type_ref=parse_type(_require(entry, "type")),
                    namespace=namespace,
                    location=_location(entry),
                )
            )
        else:
            raise ValueError(f"Unsupported declaration kind '{kind}'.")


def declarations_from_dict(data) -> list[Declaration]:
    if isinstance(data, list):
        entries = _objects({"decls": data}, "decls")
    elif isinstance(data, dict):
        entries = _objects(data, "decls")
    else:
        raise ValueError("Declaration list must be a JSON object or array.")
    out: list[Declaration] = []
    _parse_entries(entries, (), out)
    return out


def load_declarations(path: str) -> list[Declaration]:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return declarations_from_dict(data)


def is_json_path(path: str) -> bool:
    if Path(path).suffix.lower() == ".json":
        return True
    with open(path, "rb") as f:
        head = f.read(64).lstrip()
    return head[:1] in {b"{", b"["}
