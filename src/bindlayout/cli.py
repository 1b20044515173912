import argparse
import json
import sys
from pathlib import Path

from .analysis.abi import DEFAULT_PROFILE, PROFILES
from .analysis.decl import analyze_declarations, load_path_declarations
from .analysis.decl_errors import BindLayoutError
from .analysis.ir import IR, DeclIR
from .analysis.layout_check import check_layouts


def _split_list(value: str) -> set[str]:
    return {item.strip() for item in value.split(",") if item.strip()}


def _describe_field(member) -> str:
    info = member.layout
    label = member.name or "<unnamed>"
    type_text = member.type_ref.spelling()
    if info is None:
        return f"  {label}: {type_text}"
    if info.bit_width == 0:
        return f"  {label}: {type_text} :0 (next unit at {info.unit_offset})"
    if info.bit_width is not None:
        return (
            f"  {label}: {type_text} :{info.bit_width} "
            f"unit @{info.unit_offset}+{info.unit_size} bit {info.bit_offset}"
        )
    return f"  {label}: {type_text} @{info.offset} size {info.size}"


def _describe(decl: DeclIR) -> list[str]:
    lines = []
    if decl.kind in {"struct", "class", "union"}:
        if decl.opaque:
            lines.append(f"{decl.kind} {decl.key} (opaque) -> {decl.canonical_name}")
        else:
            lines.append(
                f"{decl.kind} {decl.key} size {decl.layout.size} align {decl.layout.align} -> {decl.canonical_name}"
            )
        lines.extend(_describe_field(member) for member in decl.fields)
        for method in decl.methods:
            lines.append(f"  {method.name}[{method.overload_index}] -> {method.external_name}")
    elif decl.kind == "enum":
        lines.append(f"enum {decl.key} : {decl.backing} -> {decl.canonical_name}")
        lines.extend(f"  {item.name} = {item.value}" for item in decl.enumerators)
    elif decl.kind == "typedef":
        lines.append(f"typedef {decl.key} = {decl.canonical_target.spelling()} -> {decl.canonical_name}")
    elif decl.kind == "var":
        size = "incomplete" if decl.layout is None else f"size {decl.layout.size}"
        lines.append(f"var {decl.key}: {decl.type_ref.spelling()} {size} -> {decl.canonical_name}")
    elif decl.kind == "function":
        for method in decl.methods:
            lines.append(f"function {decl.key}[{method.overload_index}] -> {method.external_name}")
    return lines


def format_summary(ir: IR, name_filter: str | None = None) -> str:
    needle = name_filter.lower() if name_filter else None
    lines = [f"ABI: {ir.abi}", f"{len(ir)} declarations."]
    for key, decl in ir.items():
        if needle and needle not in key.lower():
            continue
        lines.extend(_describe(decl))
    return "\n".join(lines) + "\n"


def format_json(ir: IR, name_filter: str | None = None) -> str:
    data = ir.to_dict()
    if name_filter:
        needle = name_filter.lower()
        data["decls"] = [entry for entry in data["decls"] if needle in entry["key"].lower()]
    return json.dumps(data, indent=2) + "\n"


def run(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Compute native layouts, overload indexes and binding names from declarations."
    )
    parser.add_argument("path", help="Path to a JSON declaration list or an ELF file with DWARF sections.")
    parser.add_argument(
        "--abi",
        default=DEFAULT_PROFILE,
        help=f"Target ABI profile (default: {DEFAULT_PROFILE}; known: {', '.join(sorted(PROFILES))}).",
    )
    parser.add_argument(
        "--format",
        choices=("summary", "json"),
        default="summary",
        help="Output format (default: summary).",
    )
    parser.add_argument(
        "--filter",
        default=None,
        help="Only show declarations whose qualified name contains this substring (case-insensitive).",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Compare computed layouts with the sizes and offsets recorded in the input.",
    )
    parser.add_argument(
        "--verbose",
        default="",
        help="Comma-separated list of debug logs to enable (graph, layout, names, dwarf, or 'all').",
    )
    parser.add_argument(
        "--output",
        default=None,
        help="Write the result to this path instead of stdout.",
    )
    args = parser.parse_args(argv)
    verbose = _split_list(args.verbose)

    try:
        decls = load_path_declarations(args.path, verbose=verbose)
        ir = analyze_declarations(decls, abi=args.abi, verbose=verbose)
    except (BindLayoutError, ValueError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    if args.check:
        mismatches = check_layouts(decls, ir)
        for line in mismatches:
            print(f"mismatch: {line}", file=sys.stderr)
        if mismatches:
            return 1

    if args.format == "json":
        output = format_json(ir, args.filter)
    else:
        output = format_summary(ir, args.filter)
    if args.output:
        Path(args.output).write_text(output, encoding="utf-8")
    else:
        print(output, end="")
    return 0


def main() -> None:
    sys.exit(run())
