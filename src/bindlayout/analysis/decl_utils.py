from __future__ import annotations

import sys
from typing import Optional


def _decode_attr(value) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    if isinstance(value, str):
        return value
    return str(value)


def _attr_int(attr) -> Optional[int]:
    if attr is None:
        return None
    value = attr.value
    if isinstance(value, int):
        return value
    return None


def _sanitize_identifier(name: str) -> str:
    if not name:
        return name
    cleaned = []
    for ch in name:
        if ch.isalnum() or ch == "_":
            cleaned.append(ch)
        else:
            cleaned.append("_")
    out = "".join(cleaned)
    if out[0].isdigit():
        out = "_" + out
    return out


def _split_qualified(name: str) -> tuple[bool, tuple[str, ...]]:
    """Split ``a::b::c`` into its parts; the flag is set for ``::``-rooted names."""
    text = name.strip()
    rooted = text.startswith("::")
    if rooted:
        text = text[2:]
    parts = tuple(part.strip() for part in text.split("::"))
    if not parts or any(not part for part in parts):
        raise ValueError(f"Malformed qualified name '{name}'.")
    return rooted, parts


def _make_logger(verbose: Optional[set[str]], channel: str):
    if not verbose or (channel not in verbose and "all" not in verbose):
        return None

    def _log(msg: str) -> None:
        print(f"[bindlayout:{channel}] {msg}", file=sys.stderr)

    return _log


_PLAIN_PRIMITIVES = {
    "void": "void",
    "bool": "bool",
    "_Bool": "bool",
    "float": "float",
    "double": "double",
    "wchar_t": "wchar_t",
    "char8_t": "char8_t",
    "char16_t": "char16_t",
    "char32_t": "char32_t",
    "__int128": "__int128",
    "__int128_t": "__int128",
    "__uint128_t": "unsigned __int128",
    "unsigned __int128": "unsigned __int128",
    "decltype(nullptr)": "decltype(nullptr)",
    "int8_t": "int8_t",
    "uint8_t": "uint8_t",
    "int16_t": "int16_t",
    "uint16_t": "uint16_t",
    "int32_t": "int32_t",
    "uint32_t": "uint32_t",
    "int64_t": "int64_t",
    "uint64_t": "uint64_t",
    "size_t": "size_t",
    "ssize_t": "ssize_t",
    "ptrdiff_t": "ptrdiff_t",
    "intptr_t": "intptr_t",
    "uintptr_t": "uintptr_t",
}

_INTEGER_WORDS = {"signed", "unsigned", "short", "long", "int", "char"}


def canonical_primitive(name: str) -> Optional[str]:
    """Return the canonical spelling of a builtin type, or None.

    Accepts the spellings compilers emit, e.g. ``long unsigned int`` or
    ``short int``.
    """
    text = " ".join(name.split())
    if text in _PLAIN_PRIMITIVES:
        return _PLAIN_PRIMITIVES[text]
    tokens = text.split()
    if sorted(tokens) == ["double", "long"]:
        return "long double"
    if not tokens or any(tok not in _INTEGER_WORDS for tok in tokens):
        return None
    if any(tokens.count(tok) > 1 for tok in tokens if tok != "long"):
        return None
    unsigned = "unsigned" in tokens
    if unsigned and "signed" in tokens:
        return None
    longs = tokens.count("long")
    if "char" in tokens:
        if longs or "short" in tokens or "int" in tokens:
            return None
        if unsigned:
            return "unsigned char"
        if "signed" in tokens:
            return "signed char"
        return "char"
    if "short" in tokens:
        if longs:
            return None
        base = "short"
    elif longs == 1:
        base = "long"
    elif longs == 2:
        base = "long long"
    elif longs == 0:
        base = "int"
    else:
        return None
    return f"unsigned {base}" if unsigned else base
