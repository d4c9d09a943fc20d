"""
Desired-version specifications.

Operators describe the patch level they want as short strings:

    Latest, 2019Latest, 2019          newest known build (optionally one family)
    15.0.4003.23                      an exact build
    KB5027702, 5027702                the build shipped by a KB
    SP2, CU7, 2016SP2CU17, 2019CU4    a Service Pack / Cumulative Update level
    MaxBehind:1CU, 2016MaxBehind:0CU  at most N SPs / CUs behind the newest release
    MinBuild:13.0.5026                at least this build

parse_version_spec turns each into one of the variants below.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Union

from autodbpatch.domain.builds import BuildTable, BuildVersion, normalize_kb
from autodbpatch.domain.errors import NotFoundError
from autodbpatch.domain.policy import Latest, MaxBehind, MinimumBuild, Policy
from autodbpatch.hotfix.resolver import resolve_by_kb

_BUILD = re.compile(r"^\d+\.\d+(?:\.\d+){0,2}$")
_KB = re.compile(r"^(?:KB)?(\d{6,8})$", re.IGNORECASE)
_LATEST = re.compile(r"^(\d{4}(?:R2)?)?\s*LATEST$", re.IGNORECASE)
_LEVEL = re.compile(r"^(\d{4}(?:R2)?)?\s*(RTM|SP\d+)?\s*(CU\d+)?$", re.IGNORECASE)
_POLICY = re.compile(
    r"^(\d{4}(?:R2)?)?\s*(MAXBEHIND|MINBUILD|MINIMUMBUILD)\s*[:=]\s*(\S+)$", re.IGNORECASE
)


@dataclass(frozen=True)
class LatestSpec:
    family_name: str | None = None

    def __str__(self) -> str:
        return f"{self.family_name or ''}Latest"


@dataclass(frozen=True)
class BuildSpec:
    build: BuildVersion

    def __str__(self) -> str:
        return str(self.build)


@dataclass(frozen=True)
class KbSpec:
    kb: str

    def __str__(self) -> str:
        return f"KB{self.kb}"


@dataclass(frozen=True)
class LevelSpec:
    """SP/CU level; a missing SP means "the SP currently installed"."""

    family_name: str | None = None
    service_pack: str | None = None
    cumulative_update: str | None = None

    def __str__(self) -> str:
        return "".join(p for p in (self.family_name, self.service_pack, self.cumulative_update) if p)


@dataclass(frozen=True)
class PolicySpec:
    """
    Compliance policy used as an update target.

    Each component is brought up to the build the policy requires for its
    family. A MinimumBuild policy is restricted to the family of its build.
    """

    policy: Policy
    family_name: str | None = None

    def __str__(self) -> str:
        match self.policy:
            case MinimumBuild(version=version):
                return f"MinBuild:{version}"
            case MaxBehind():
                return f"{self.family_name or ''}MaxBehind:{self.policy}"
            case _:
                return f"{self.family_name or ''}Latest"


VersionSpec = Union[LatestSpec, BuildSpec, KbSpec, LevelSpec, PolicySpec]


def parse_version_spec(text: str) -> VersionSpec:
    """
    Parse one version specification.

    Raises:
        ValueError: The text is not a recognised specification
    """
    value = (text or "").strip()
    if not value:
        raise ValueError("Empty version specification")

    if _BUILD.match(value):
        return BuildSpec(BuildVersion.parse(value))

    match = _KB.match(value)
    if match:
        return KbSpec(normalize_kb(match.group(1)))

    match = _LATEST.match(value)
    if match:
        return LatestSpec(family_name=_upper(match.group(1)))

    match = _POLICY.match(value)
    if match:
        name, kind, argument = match.groups()
        if kind.upper() == "MAXBEHIND":
            return PolicySpec(MaxBehind.parse(argument), family_name=_upper(name))
        if not _BUILD.match(argument):
            raise ValueError(f"Invalid minimum build in {text!r} (expected e.g. 'MinBuild:13.0.5026')")
        return PolicySpec(MinimumBuild(BuildVersion.parse(argument)))

    match = _LEVEL.match(value)
    if match and any(match.groups()):
        name, sp, cu = (_upper(g) for g in match.groups())
        if not sp and not cu:
            return LatestSpec(family_name=name)
        return LevelSpec(family_name=name, service_pack=sp, cumulative_update=cu)

    raise ValueError(
        f"Invalid version specification: {text!r} "
        "(expected e.g. 'Latest', '2019CU4', 'SP2', '15.0.4003', 'KB5027702' or 'MaxBehind:1CU')"
    )


def parse_version_specs(values: list[str]) -> list[VersionSpec]:
    return [parse_version_spec(value) for value in values]


def as_version_spec(value: VersionSpec | Policy) -> VersionSpec:
    """Wrap a bare compliance policy so it plans like any other specification."""
    if isinstance(value, (MinimumBuild, Latest, MaxBehind)):
        return PolicySpec(value)
    return value


def spec_family(spec: VersionSpec, table: BuildTable) -> str | None:
    """
    Family key ("15.0") a spec is restricted to, or None for every family.

    Raises:
        NotFoundError: The spec names an unknown family or KB
        ValueError: The value is not a version specification
    """
    match spec:
        case BuildSpec(build=build):
            return build.family
        case KbSpec(kb=kb):
            return resolve_by_kb(table, kb).version.family
        case PolicySpec(policy=MinimumBuild(version=version)):
            return version.family
        case LatestSpec(family_name=name) | LevelSpec(family_name=name) | PolicySpec(family_name=name):
            if not name:
                return None
            family = table.family_by_name(name)
            if family is None:
                raise NotFoundError(f"Unknown SQL Server version {name}")
            return family
        case _:
            raise ValueError(f"Unsupported version specification: {spec!r}")


def _upper(value: str | None) -> str | None:
    return value.upper() if value else None
