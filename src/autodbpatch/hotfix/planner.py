"""
Hotfix planning module.

Determines which SQL Server updates each host needs and in which order,
based on the installed components and the requested version specifications.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Iterable, Mapping

from autodbpatch.domain.builds import BuildTable, BuildVersion, ResolvedBuild, sp_rank
from autodbpatch.domain.errors import NotFoundError, PlanningError
from autodbpatch.domain.policy import Latest, Policy
from autodbpatch.hotfix.media import MediaRepository, normalize_architecture
from autodbpatch.hotfix.models import Component, ComputerPlan, UpdateAction
from autodbpatch.hotfix.resolver import (
    is_beyond_reference,
    resolve_by_family,
    resolve_by_kb,
    resolve_by_version,
    resolve_target_record,
)
from autodbpatch.hotfix.specs import (
    BuildSpec,
    KbSpec,
    LatestSpec,
    LevelSpec,
    PolicySpec,
    VersionSpec,
    as_version_spec,
    spec_family,
)

logger = logging.getLogger(__name__)


class HotfixPlanner:
    """
    Plans update actions by comparing installed builds to requested levels.

    Workflow per host:
    1. Copy the host's components (the caller's inventory is never touched)
    2. For each specification, resolve a target build per matching component
    3. Emit the bare Service Pack first when the target lies in a later SP
    4. Advance the copied component to each emitted target so the next
       specification starts from the simulated state
    5. Attach installers from the media repository, or queue downloads

    Usage:
        planner = HotfixPlanner(MediaRepository(["\\\\share\\patches"]), allow_download=True)
        plan = planner.plan_host("SQL01", components, [parse_version_spec("Latest")], table)

        for action in plan.actions:
            print(f"{action.description}: {action.from_version} -> {action.target_version}")
    """

    def __init__(
        self,
        repository: MediaRepository | None = None,
        allow_download: bool = False,
        restart_after_install: bool = True,
    ):
        """
        Initialize hotfix planner.

        Args:
            repository: Installer repositories to search
            allow_download: Queue missing installers for download instead of failing
            restart_after_install: Flag every action as requiring a restart
        """
        self.repository = repository or MediaRepository()
        self.allow_download = allow_download
        self.restart_after_install = restart_after_install

    def plan(
        self,
        inventory: Mapping[str, list[Component]],
        specs: list[VersionSpec | Policy],
        table: BuildTable,
        continue_: bool = False,
    ) -> list[ComputerPlan]:
        """Plan every host of an inventory; failures stay on their own plan."""
        return [
            self.plan_host(computer, components, specs, table, continue_=continue_)
            for computer, components in inventory.items()
        ]

    def plan_host(
        self,
        computer_name: str,
        components: Iterable[Component],
        specs: list[VersionSpec | Policy],
        table: BuildTable,
        continue_: bool = False,
    ) -> ComputerPlan:
        """
        Create the ordered action list for one host.

        Planning fails as a unit: when any specification cannot be resolved
        for any component, the plan carries a PlanningError and no actions.
        """
        local = [copy.deepcopy(c) for c in components]
        plan = ComputerPlan(computer_name=computer_name, components=local, continue_=continue_)

        try:
            plan.actions = self.build_actions(computer_name, local, specs, table)
            self.attach_installers(plan.actions)
        except PlanningError as exc:
            logger.error("Planning failed for %s: %s", computer_name, exc)
            plan.error = exc
            plan.actions = []
            return plan

        logger.info(
            "Planned %d action(s) for %s: %s",
            len(plan.actions),
            computer_name,
            ", ".join(a.description for a in plan.actions) or "up to date",
        )
        return plan

    def build_actions(
        self,
        computer_name: str,
        components: list[Component],
        specs: list[VersionSpec | Policy],
        table: BuildTable,
    ) -> list[UpdateAction]:
        """
        Resolve specifications into actions, advancing components in place.

        A bare compliance policy (e.g. MaxBehind(0, 0)) is planned as a
        PolicySpec covering every family.

        Raises:
            PlanningError: A specification has no valid upgrade path
        """
        actions: list[UpdateAction] = []
        emitted: set[tuple[str, str]] = set()

        for spec in map(as_version_spec, specs):
            try:
                family = spec_family(spec, table)
            except (NotFoundError, ValueError) as exc:
                raise PlanningError(f"{spec}: {exc}") from exc

            selected = [c for c in components if family is None or c.family == family]
            if not selected:
                logger.debug("%s: no component matches %s", computer_name, spec)
                continue

            # Lowest build first so shared installers are emitted in chain order.
            for component in sorted(selected, key=lambda c: c.current_version):
                for action in self._actions_for(computer_name, component, spec, table):
                    key = (action.kb, normalize_architecture(action.architecture))
                    if key not in emitted:
                        emitted.add(key)
                        actions.append(action)
                    component.current_version = action.target_version

        actions.sort(key=lambda a: a.target_version)
        return actions

    def _actions_for(
        self,
        computer_name: str,
        component: Component,
        spec: VersionSpec,
        table: BuildTable,
    ) -> list[UpdateAction]:
        current = self._resolve_current(component, table)
        try:
            target, kb = self._resolve_target(spec, component, current, table)
        except NotFoundError as exc:
            raise PlanningError(
                f"{spec} cannot be resolved for {component.instance_name} "
                f"({component.current_version}): {exc}"
            ) from exc

        if component.current_version >= target.version:
            logger.debug(
                "%s\\%s already at %s, %s needs no action",
                computer_name, component.instance_name, component.current_version, spec,
            )
            return []

        steps: list[tuple[ResolvedBuild, str | None]] = []
        current_rank = sp_rank(current.service_pack)
        target_rank = sp_rank(target.service_pack)
        if target_rank is not None and current_rank is not None and target_rank > current_rank:
            bare_sp = resolve_by_family(table, component.family, target.service_pack)
            if component.current_version < bare_sp.version < target.version:
                steps.append((bare_sp, None))
        steps.append((target, kb))

        actions = []
        baseline = component.current_version
        for resolved, preferred_kb in steps:
            actions.append(self._make_action(computer_name, component, resolved, preferred_kb, baseline))
            baseline = resolved.version
        return actions

    def _resolve_current(self, component: Component, table: BuildTable) -> ResolvedBuild:
        try:
            current = resolve_by_version(table, component.current_version)
        except NotFoundError as exc:
            raise PlanningError(
                f"Installed build {component.current_version} of {component.instance_name} "
                f"is not in the build reference: {exc}"
            ) from exc
        if is_beyond_reference(table, component.current_version):
            raise PlanningError(
                f"Installed build {component.current_version} of {component.instance_name} "
                "is newer than every known build; refresh the build reference"
            )
        if current.warning:
            logger.warning("%s\\%s: %s", component.computer_name, component.instance_name, current.warning)
        return current

    def _resolve_target(
        self,
        spec: VersionSpec,
        component: Component,
        current: ResolvedBuild,
        table: BuildTable,
    ) -> tuple[ResolvedBuild, str | None]:
        match spec:
            case LatestSpec():
                return resolve_target_record(table, component.family, Latest()), None
            case BuildSpec(build=build):
                resolved = resolve_by_version(table, build)
                if not resolved.is_exact:
                    raise NotFoundError(f"build {build} is not a known release")
                return resolved, None
            case KbSpec(kb=kb):
                return resolve_by_kb(table, kb), kb
            case LevelSpec(service_pack=sp, cumulative_update=cu):
                sp = sp or current.service_pack
                if not sp:
                    raise NotFoundError("current Service Pack level is unknown")
                return resolve_by_family(table, component.family, sp, cu), None
            case PolicySpec(policy=policy):
                return resolve_target_record(table, component.family, policy), None
            case _:
                raise PlanningError(f"Unsupported version specification: {spec!r}")

    def _make_action(
        self,
        computer_name: str,
        component: Component,
        resolved: ResolvedBuild,
        preferred_kb: str | None,
        baseline: BuildVersion,
    ) -> UpdateAction:
        if preferred_kb:
            kb = preferred_kb
        elif resolved.kb_list:
            kb = max(resolved.kb_list, key=int)
        else:
            raise PlanningError(f"No KB is known for build {resolved.version}")
        return UpdateAction(
            computer_name=computer_name,
            major_version=component.major_version,
            architecture=normalize_architecture(component.architecture),
            kb=kb,
            target_version=resolved.version,
            from_version=baseline,
            service_pack=resolved.service_pack,
            cumulative_update=resolved.cumulative_update,
            family_name=resolved.family_name,
            requires_restart=self.restart_after_install,
        )

    def attach_installers(self, actions: list[UpdateAction]) -> None:
        """
        Locate installers for actions, queuing downloads where permitted.

        Raises:
            PlanningError: An installer is missing and downloading is disabled
        """
        for action in actions:
            path = self.repository.find(action.kb, action.architecture)
            if path is not None:
                action.installer_path = path
                continue
            if not self.allow_download:
                raise PlanningError(
                    f"Installer for KB{action.kb} ({action.architecture}) not found in "
                    f"{', '.join(str(p) for p in self.repository.paths) or 'any media repository'}"
                )
            action.download_pending = True
            action.add_note("Installer queued for download")

    def validate_plan(self, plans: list[ComputerPlan]) -> list[str]:
        """
        Validate plans before execution.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []
        for plan in plans:
            if plan.error is not None:
                errors.append(f"{plan.computer_name}: {plan.error}")
                continue
            for action in plan.actions:
                if action.installer_path is None and not action.download_pending:
                    errors.append(f"{plan.computer_name}: no installer for KB{action.kb}")
        return errors
