from __future__ import annotations

from typing import Iterable, Optional

from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile

from .abi import get_profile
from .decl_dwarf import declarations_from_dwarf
from .decl_json import is_json_path, load_declarations
from .decl_types import Declaration
from .decl_utils import _make_logger
from .ir import IR, assemble_ir
from .layout import compute_layouts
from .names import resolve_names
from .type_graph import build_type_graph


ELF_MAGIC = b"\x7fELF"


def is_elf_path(path: str) -> bool:
    with open(path, "rb") as f:
        return f.read(len(ELF_MAGIC)) == ELF_MAGIC


def read_dwarfinfo(path: str):
    """Return the DWARFInfo of the ELF object at ``path``.

    Section contents are copied out by pyelftools, so the DWARFInfo stays
    usable after the file is closed.
    """
    with open(path, "rb") as f:
        try:
            elf = ELFFile(f)
            if not elf.has_dwarf_info():
                raise ValueError(f"{path}: ELF object carries no DWARF debug info (build with -g).")
            return elf.get_dwarf_info()
        except ELFError as exc:
            raise ValueError(f"{path}: malformed ELF object: {exc}") from exc


def load_path_declarations(path: str, verbose: Optional[set[str]] = None) -> list[Declaration]:
    """Read Declarations from an ELF object's DWARF or a JSON declaration list."""
    if is_elf_path(path):
        return declarations_from_dwarf(read_dwarfinfo(path), verbose=verbose)
    if is_json_path(path):
        return load_declarations(path)
    raise ValueError("Unsupported file format: expected ELF or a JSON declaration list.")


def analyze_declarations(
    decls: Iterable[Declaration],
    abi: Optional[str] = None,
    verbose: Optional[set[str]] = None,
) -> IR:
    """Resolve, lay out and name ``decls`` for the ``abi`` profile.

    Stages run strictly in order and the first error aborts the run, so a
    returned IR is always complete.
    """
    profile = get_profile(abi)
    graph = build_type_graph(decls, log=_make_logger(verbose, "graph"))
    layouts = compute_layouts(graph, profile, log=_make_logger(verbose, "layout"))
    names = resolve_names(graph, log=_make_logger(verbose, "names"))
    return assemble_ir(graph, layouts, names, profile)


def analyze_path(path: str, abi: Optional[str] = None, verbose: Optional[set[str]] = None) -> IR:
    return analyze_declarations(load_path_declarations(path, verbose=verbose), abi=abi, verbose=verbose)
