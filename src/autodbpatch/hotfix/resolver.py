"""
Build resolver.

Pure functions that answer questions about the build reference table:
which known build an installed version corresponds to, which build a KB
ships, where a given SP/CU sits, and which build a compliance policy
targets. Every function takes the BuildTable explicitly and performs no I/O.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import Optional

from autodbpatch.domain.builds import (
    BuildRecord,
    BuildTable,
    BuildVersion,
    MatchType,
    ResolvedBuild,
    normalize_kb,
)
from autodbpatch.domain.errors import NotFoundError
from autodbpatch.domain.policy import (
    ComplianceResult,
    Latest,
    MaxBehind,
    MinimumBuild,
    Policy,
)

logger = logging.getLogger(__name__)

_Step = tuple[BuildRecord, Optional[str], Optional[str]]


def walk_family(records: tuple[BuildRecord, ...]) -> Iterator[_Step]:
    """
    Walk a family in ascending order, yielding (record, sp, cu).

    sp/cu are the accumulated labels: a record without labels inherits the
    previous ones, and a new Service Pack resets the CU context.
    """
    sp: str | None = None
    cu: str | None = None
    for record in records:
        if record.service_pack:
            if sp is None or record.service_pack.upper() != sp.upper():
                cu = None
            sp = record.service_pack
        if record.cumulative_update:
            cu = record.cumulative_update
        yield record, sp, cu


def _same_label(left: str | None, right: str | None) -> bool:
    return (left or "").upper() == (right or "").upper()


def _answer(
    table: BuildTable,
    step: _Step,
    match_type: MatchType,
    warnings: list[str] | None = None,
) -> ResolvedBuild:
    record, sp, cu = step
    warnings = list(warnings or [])
    if record.retired:
        warnings.append(f"Build {record.version} is retired and no longer supported")
    return ResolvedBuild(
        match_type=match_type,
        record=record,
        service_pack=sp,
        cumulative_update=cu,
        family_name=table.name_for_family(record.version.family),
        warning="; ".join(warnings) or None,
    )


def _family_records(table: BuildTable, family: str) -> tuple[BuildRecord, ...]:
    records = table.records_for(family)
    if not records:
        raise NotFoundError(f"No known builds for release family {family}")
    return records


def resolve_by_version(table: BuildTable, build: str | BuildVersion) -> ResolvedBuild:
    """
    Look up an installed build.

    Returns EXACT when the table lists the build, otherwise APPROXIMATE with
    the nearest lower known build.

    Raises:
        NotFoundError: Unknown family, or build older than every known build
    """
    version = BuildVersion.parse(build)
    records = _family_records(table, version.family)

    previous: _Step | None = None
    for step in walk_family(records):
        record = step[0]
        if record.version == version:
            return _answer(table, step, MatchType.EXACT)
        if record.version > version:
            if previous is None:
                raise NotFoundError(
                    f"Build {version} is older than every known build of family {version.family}"
                )
            return _answer(
                table,
                previous,
                MatchType.APPROXIMATE,
                [f"Exact build {version} not found, nearest lower build {previous[0].version} used"],
            )
        previous = step

    return _answer(
        table,
        previous,
        MatchType.APPROXIMATE,
        [
            f"Build {version} is newer than every known build of family {version.family}; "
            "the build reference may be out of date"
        ],
    )


def is_beyond_reference(table: BuildTable, build: str | BuildVersion) -> bool:
    """True when a build is newer than the last known build of its family."""
    version = BuildVersion.parse(build)
    records = table.records_for(version.family)
    return bool(records) and version > records[-1].version


def resolve_by_kb(table: BuildTable, kb: str | int) -> ResolvedBuild:
    """
    Find the build shipped by a KB.

    Raises:
        NotFoundError: No record lists the KB
    """
    wanted = normalize_kb(kb)
    for family in table.families():
        for step in walk_family(table.records_for(family)):
            if wanted in step[0].kb_list:
                return _answer(table, step, MatchType.EXACT)
    raise NotFoundError(f"KB{wanted} not found in the build reference")


def resolve_by_family(
    table: BuildTable, family: str, sp: str, cu: str | None = None
) -> ResolvedBuild:
    """
    Find the first build at a given SP (and optionally CU) level of a family.

    With cu empty this is the bare Service Pack build.

    Raises:
        NotFoundError: The family has no such SP/CU
    """
    records = _family_records(table, family)
    for step in walk_family(records):
        _, step_sp, step_cu = step
        if _same_label(step_sp, sp) and (not cu or _same_label(step_cu, cu)):
            return _answer(table, step, MatchType.EXACT)
    level = f"{sp} {cu}" if cu else sp
    raise NotFoundError(f"No build at level {level} for release family {family}")


def _max_behind_step(
    family: str, steps: list[_Step], policy: MaxBehind
) -> _Step:
    service_packs: list[str] = []
    for _, sp, _ in steps:
        if sp and not any(_same_label(sp, known) for known in service_packs):
            service_packs.append(sp)
    if not service_packs:
        raise NotFoundError(f"Release family {family} has no Service Pack information")

    sp_index = len(service_packs) - policy.sp_behind - 1
    if sp_index < 0:
        # Fewer SPs published than the policy allows to lag; use the earliest.
        logger.debug(
            "MaxBehind %s exceeds the %d known Service Packs of %s, clamping to %s",
            policy, len(service_packs), family, service_packs[0],
        )
        sp_index = 0
    target_sp = service_packs[sp_index]

    lineage = [step for step in steps if _same_label(step[1], target_sp)]
    cumulative_updates: list[str] = []
    for _, _, cu in lineage:
        if cu and not any(_same_label(cu, known) for known in cumulative_updates):
            cumulative_updates.append(cu)

    target_cu: str | None = None
    if policy.cu_behind is not None:
        cu_index = len(cumulative_updates) - policy.cu_behind - 1
        if cu_index >= 0:
            target_cu = cumulative_updates[cu_index]
        else:
            logger.debug(
                "MaxBehind %s leaves no CU of %s %s, targeting the bare Service Pack",
                policy, family, target_sp,
            )

    if target_cu is None:
        return lineage[0]
    return [step for step in lineage if _same_label(step[2], target_cu)][-1]


def resolve_target_record(
    table: BuildTable, family: str, policy: Policy
) -> ResolvedBuild:
    """
    Resolve the reference record a compliance policy targets for a family.

    For MinimumBuild this is the first known build at or above the minimum,
    i.e. the release that has to be installed to satisfy it.

    Raises:
        NotFoundError: Unknown family, or no known build satisfies the policy
    """
    match policy:
        case MinimumBuild(version=version):
            if version.family != family:
                raise NotFoundError(
                    f"Minimum build {version} does not belong to release family {family}"
                )
            for step in walk_family(_family_records(table, family)):
                if step[0].version >= version:
                    return _answer(table, step, MatchType.EXACT)
            raise NotFoundError(f"No known build of release family {family} reaches {version}")
        case Latest():
            steps = list(walk_family(_family_records(table, family)))
            return _answer(table, steps[-1], MatchType.EXACT)
        case MaxBehind():
            steps = list(walk_family(_family_records(table, family)))
            return _answer(table, _max_behind_step(family, steps, policy), MatchType.EXACT)
        case _:
            raise TypeError(f"Unsupported compliance policy: {policy!r}")


def compute_compliance_target(
    table: BuildTable, family: str, policy: Policy
) -> BuildVersion:
    """
    Compute the build a family has to be at to satisfy a policy.

    MinimumBuild targets its own version even when the table does not list it.
    """
    if isinstance(policy, MinimumBuild):
        if policy.version.family != family:
            raise NotFoundError(
                f"Minimum build {policy.version} does not belong to release family {family}"
            )
        _family_records(table, family)
        return policy.version
    return resolve_target_record(table, family, policy).version


def is_compliant(installed: BuildVersion, target: BuildVersion) -> bool:
    return installed >= target


def check_compliance(
    table: BuildTable, installed: str | BuildVersion, policy: Policy
) -> ComplianceResult:
    """Test an installed build against a compliance policy."""
    version = BuildVersion.parse(installed)
    resolved = resolve_by_version(table, version)
    target = compute_compliance_target(table, version.family, policy)
    compliant = is_compliant(version, target)
    warnings = (resolved.warning,) if resolved.warning else ()
    logger.debug(
        "Compliance %s against %s: target %s -> %s",
        version, policy, target, "compliant" if compliant else "not compliant",
    )
    return ComplianceResult(
        installed=resolved,
        target=target,
        policy=policy,
        compliant=compliant,
        warnings=warnings,
    )

