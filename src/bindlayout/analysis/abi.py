from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


BITFIELD_POLICIES = {"share", "new_unit", "reject"}

INTEGRAL_PRIMITIVES = {
    "bool",
    "char",
    "signed char",
    "unsigned char",
    "short",
    "unsigned short",
    "int",
    "unsigned int",
    "long",
    "unsigned long",
    "long long",
    "unsigned long long",
    "__int128",
    "unsigned __int128",
    "wchar_t",
    "char8_t",
    "char16_t",
    "char32_t",
    "int8_t",
    "uint8_t",
    "int16_t",
    "uint16_t",
    "int32_t",
    "uint32_t",
    "int64_t",
    "uint64_t",
    "size_t",
    "ssize_t",
    "ptrdiff_t",
    "intptr_t",
    "uintptr_t",
}

# Candidate enum backing types, narrowest first.
ENUM_CANDIDATES = (
    ("signed char", True),
    ("unsigned char", False),
    ("short", True),
    ("unsigned short", False),
    ("int", True),
    ("unsigned int", False),
    ("long long", True),
    ("unsigned long long", False),
)


@dataclass(frozen=True)
class AbiProfile:
    """Target ABI conventions the layout engine is parameterized by.

    ``bitfield_policy`` decides what happens when consecutive bitfields use
    backing types of different sizes: ``share`` packs them into the same bytes
    (Itanium C++ ABI), ``new_unit`` opens a fresh storage unit (MSVC) and
    ``reject`` raises ``IncompatibleBackingType``. Unnamed non-zero-width
    bitfields only raise the record alignment when ``unnamed_bitfields_align``
    is set.
    """

    name: str
    pointer_size: int
    pointer_align: int
    primitives: dict[str, tuple[int, int]] = field(default_factory=dict)
    bitfield_policy: str = "share"
    short_enums: bool = False
    zero_width_aligns_struct: bool = False
    unnamed_bitfields_align: bool = False
    description: str = ""

    def primitive(self, name: str) -> Optional[tuple[int, int]]:
        if name in {"decltype(nullptr)", "intptr_t", "uintptr_t"}:
            return self.pointer_size, self.pointer_align
        return self.primitives.get(name)

    def is_integral(self, name: str) -> bool:
        return name in INTEGRAL_PRIMITIVES and self.primitive(name) is not None


def _lp64(**overrides: tuple[int, int]) -> dict[str, tuple[int, int]]:
    table = {
        "void": (0, 1),
        "bool": (1, 1),
        "char": (1, 1),
        "signed char": (1, 1),
        "unsigned char": (1, 1),
        "char8_t": (1, 1),
        "short": (2, 2),
        "unsigned short": (2, 2),
        "char16_t": (2, 2),
        "int": (4, 4),
        "unsigned int": (4, 4),
        "char32_t": (4, 4),
        "wchar_t": (4, 4),
        "long": (8, 8),
        "unsigned long": (8, 8),
        "long long": (8, 8),
        "unsigned long long": (8, 8),
        "__int128": (16, 16),
        "unsigned __int128": (16, 16),
        "float": (4, 4),
        "double": (8, 8),
        "long double": (16, 16),
        "int8_t": (1, 1),
        "uint8_t": (1, 1),
        "int16_t": (2, 2),
        "uint16_t": (2, 2),
        "int32_t": (4, 4),
        "uint32_t": (4, 4),
        "int64_t": (8, 8),
        "uint64_t": (8, 8),
        "size_t": (8, 8),
        "ssize_t": (8, 8),
        "ptrdiff_t": (8, 8),
    }
    table.update(overrides)
    return table


def _ilp32(**overrides: tuple[int, int]) -> dict[str, tuple[int, int]]:
    table = _lp64(
        long=(4, 4),
        size_t=(4, 4),
        ssize_t=(4, 4),
        ptrdiff_t=(4, 4),
    )
    table["unsigned long"] = (4, 4)
    del table["__int128"]
    del table["unsigned __int128"]
    table.update(overrides)
    return table


_I386 = _ilp32(
    double=(8, 4),
    int64_t=(8, 4),
    uint64_t=(8, 4),
)
_I386["long long"] = (8, 4)
_I386["unsigned long long"] = (8, 4)
_I386["long double"] = (12, 4)

_ARM_EABI = _ilp32(wchar_t=(4, 4))
_ARM_EABI["long double"] = (8, 8)

_MSVC64 = _lp64(long=(4, 4), wchar_t=(2, 2))
_MSVC64["unsigned long"] = (4, 4)
_MSVC64["long double"] = (8, 8)
del _MSVC64["__int128"]
del _MSVC64["unsigned __int128"]


PROFILES: dict[str, AbiProfile] = {
    profile.name: profile
    for profile in (
        AbiProfile(
            name="x86_64-sysv",
            pointer_size=8,
            pointer_align=8,
            primitives=_lp64(),
            description="System V AMD64 / Itanium C++ ABI (GCC, Clang on Linux and macOS).",
        ),
        AbiProfile(
            name="i386-sysv",
            pointer_size=4,
            pointer_align=4,
            primitives=_I386,
            description="System V i386 ABI.",
        ),
        AbiProfile(
            name="aarch64-sysv",
            pointer_size=8,
            pointer_align=8,
            primitives=_lp64(),
            zero_width_aligns_struct=True,
            description="AAPCS64 (Linux).",
        ),
        AbiProfile(
            name="x86_64-msvc",
            pointer_size=8,
            pointer_align=8,
            primitives=_MSVC64,
            bitfield_policy="new_unit",
            unnamed_bitfields_align=True,
            description="Microsoft x64 (LLP64, MSVC bitfield units).",
        ),
        AbiProfile(
            name="arm-eabi-short-enums",
            pointer_size=4,
            pointer_align=4,
            primitives=_ARM_EABI,
            short_enums=True,
            zero_width_aligns_struct=True,
            description="32-bit ARM EABI built with -fshort-enums.",
        ),
        AbiProfile(
            name="strict",
            pointer_size=8,
            pointer_align=8,
            primitives=_lp64(),
            bitfield_policy="reject",
            description="x86_64 sizes; bitfield runs must not change backing type size.",
        ),
    )
}

DEFAULT_PROFILE = "x86_64-sysv"


def get_profile(name: Optional[str] = None) -> AbiProfile:
    key = (name or DEFAULT_PROFILE).strip()
    profile = PROFILES.get(key)
    if profile is None:
        known = ", ".join(sorted(PROFILES))
        raise ValueError(f"Unknown ABI profile '{name}' (known: {known}).")
    return profile
