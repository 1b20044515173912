from __future__ import annotations

from typing import Optional, Sequence

from .decl_types import SourceLocation


class BindLayoutError(ValueError):
    """Fatal analysis error attributed to one declaration."""

    def __init__(self, message: str, decl: Optional[str] = None, location: Optional[SourceLocation] = None) -> None:
        self.decl = decl
        self.location = location
        prefix = ""
        if decl:
            prefix = f"{decl}: "
        where = str(location) if location is not None else ""
        if where:
            prefix = f"{where}: {prefix}"
        super().__init__(f"{prefix}{message}")


class DuplicateDeclaration(BindLayoutError):
    pass


class AliasCycle(BindLayoutError):
    def __init__(self, chain: Sequence[str], location: Optional[SourceLocation] = None) -> None:
        self.chain = tuple(chain)
        super().__init__(
            "alias cycle: " + " -> ".join(self.chain),
            decl=self.chain[0] if self.chain else None,
            location=location,
        )


class UnresolvedType(BindLayoutError):
    def __init__(
        self,
        type_name: str,
        decl: Optional[str] = None,
        location: Optional[SourceLocation] = None,
        reason: str = "unknown type",
    ) -> None:
        self.type_name = type_name
        super().__init__(f"{reason} '{type_name}'", decl=decl, location=location)


class AmbiguousOverload(BindLayoutError):
    pass


class BitfieldOverflow(BindLayoutError):
    pass


class IncompatibleBackingType(BindLayoutError):
    pass


class IncompleteIR(BindLayoutError):
    pass
