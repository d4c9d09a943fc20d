"""
Compliance policies.

A policy states how current an installed build has to be. It is a closed set
of variants matched exhaustively by the resolver:

- MinimumBuild(version): at least this exact build
- Latest(): the newest known build of the family
- MaxBehind(sp_behind, cu_behind): at most N Service Packs and M Cumulative
  Updates behind the newest known release
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Union

from autodbpatch.domain.builds import BuildVersion, ResolvedBuild

_MAX_BEHIND = re.compile(r"^\s*(?:(\d+)\s*SP)?\s*(?:(\d+)\s*CU)?\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class MinimumBuild:
    version: BuildVersion


@dataclass(frozen=True)
class Latest:
    pass


@dataclass(frozen=True)
class MaxBehind:
    """
    At most sp_behind Service Packs and cu_behind Cumulative Updates behind.

    cu_behind of None means "any CU of the chosen SP is fine", so the target
    is the bare Service Pack.
    """

    sp_behind: int = 0
    cu_behind: int | None = None

    def __post_init__(self):
        if self.sp_behind < 0 or (self.cu_behind is not None and self.cu_behind < 0):
            raise ValueError("MaxBehind values cannot be negative")

    @classmethod
    def parse(cls, text: str) -> MaxBehind:
        """Parse "1SP", "2CU", "1SP1CU" or "0CU"."""
        match = _MAX_BEHIND.match(text or "")
        if not match or not (match.group(1) or match.group(2)):
            raise ValueError(f"Invalid MaxBehind expression: {text!r} (expected e.g. '1SP1CU')")
        sp, cu = match.groups()
        return cls(sp_behind=int(sp) if sp else 0, cu_behind=int(cu) if cu else None)

    def __str__(self) -> str:
        text = f"{self.sp_behind}SP"
        if self.cu_behind is not None:
            text += f"{self.cu_behind}CU"
        return text


Policy = Union[MinimumBuild, Latest, MaxBehind]


@dataclass(frozen=True)
class ComplianceResult:
    """Outcome of testing one installed build against a policy."""

    installed: ResolvedBuild
    target: BuildVersion
    policy: Policy
    compliant: bool
    warnings: tuple[str, ...] = field(default_factory=tuple)
