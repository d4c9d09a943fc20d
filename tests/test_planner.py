"""
Tests for the update action planner.
"""

import pytest

from autodbpatch.domain.builds import BuildTable, BuildVersion
from autodbpatch.domain.errors import PlanningError
from autodbpatch.domain.policy import MaxBehind
from autodbpatch.hotfix.media import MediaRepository
from autodbpatch.hotfix.planner import HotfixPlanner
from autodbpatch.hotfix.specs import parse_version_specs

from conftest import make_component


def v(text):
    return BuildVersion.parse(text)


@pytest.fixture
def planner(media_dir):
    return HotfixPlanner(MediaRepository([media_dir]))


def plan_for(planner, table, components, *specs, computer="SQL01"):
    return planner.plan_host(computer, components, parse_version_specs(list(specs)), table)


class TestPlanHost:

    def test_latest_from_rtm_installs_service_pack_first(self, planner, table):
        plan = plan_for(planner, table, [make_component("SQL01", "13.0.1601.5")], "Latest")

        assert plan.is_valid
        assert [a.kb for a in plan.actions] == ["4052908", "4293807"]
        assert [a.target_version for a in plan.actions] == [v("13.0.5026"), v("13.0.5161")]
        assert plan.actions[0].from_version == v("13.0.1601")
        assert plan.actions[1].from_version == v("13.0.5026")
        assert plan.actions[0].description == "SQL Server 2016 SP2 (KB4052908)"

    def test_level_spec_chain(self, planner, table):
        plan = plan_for(planner, table, [make_component("SQL01", "13.0.1601")], "SP1CU3")
        assert [str(a.target_version) for a in plan.actions] == ["13.0.4001", "13.0.4435"]

    def test_bare_service_pack_target_is_a_single_action(self, planner, table):
        plan = plan_for(planner, table, [make_component("SQL01", "13.0.1601")], "SP1")
        assert [a.kb for a in plan.actions] == ["3182545"]

    def test_cumulative_update_within_current_service_pack(self, planner, table):
        plan = plan_for(planner, table, [make_component("SQL01", "13.0.4411")], "CU3")
        assert [a.kb for a in plan.actions] == ["4019916"]
        assert plan.actions[0].service_pack == "SP1"

    def test_kb_spec_uses_requested_kb(self, planner, table):
        plan = plan_for(planner, table, [make_component("SQL01", "13.0.4001")], "KB4019916")
        assert [a.kb for a in plan.actions] == ["4019916"]

    def test_specs_apply_in_sequence(self, planner, table):
        plan = plan_for(planner, table, [make_component("SQL01", "13.0.1601")], "SP1", "SP1CU3")
        assert [a.kb for a in plan.actions] == ["3182545", "4019916"]
        assert plan.actions[1].from_version == v("13.0.4001")

    def test_already_at_target_needs_nothing(self, planner, table):
        plan = plan_for(planner, table, [make_component("SQL01", "13.0.5161.0")], "Latest")
        assert plan.is_valid
        assert plan.actions == []

    def test_lower_target_is_never_a_downgrade(self, planner, table):
        plan = plan_for(planner, table, [make_component("SQL01", "13.0.5026")], "SP1CU3")
        assert plan.actions == []

    def test_replanning_after_applying_is_empty(self, planner, table):
        component = make_component("SQL01", "13.0.1601")
        first = plan_for(planner, table, [component], "Latest")
        component.current_version = first.actions[-1].target_version

        assert plan_for(planner, table, [component], "Latest").actions == []

    def test_caller_components_are_not_modified(self, planner, table):
        component = make_component("SQL01", "13.0.1601")
        plan = plan_for(planner, table, [component], "Latest")
        assert component.current_version == v("13.0.1601")
        assert plan.components[0].current_version == v("13.0.5161")

    def test_instances_sharing_an_installer_get_one_action(self, planner, table):
        components = [
            make_component("SQL01", "13.0.1601", instance="MSSQLSERVER"),
            make_component("SQL01", "13.0.4001", instance="REPORTING"),
        ]
        plan = plan_for(planner, table, components, "Latest")
        assert [a.kb for a in plan.actions] == ["4052908", "4293807"]

    def test_several_families_sorted_by_target(self, planner, table):
        components = [make_component("SQL01", "15.0.2000"), make_component("SQL01", "13.0.1601", instance="LEGACY")]
        plan = plan_for(planner, table, components, "Latest")
        assert [str(a.target_version) for a in plan.actions] == ["13.0.5026", "13.0.5161", "15.0.4033"]

    def test_family_restricted_spec_leaves_other_families_alone(self, planner, table):
        components = [make_component("SQL01", "15.0.2000"), make_component("SQL01", "13.0.1601", instance="LEGACY")]
        plan = plan_for(planner, table, components, "2019CU2")
        assert [a.kb for a in plan.actions] == ["4536075"]

    def test_no_matching_components(self, planner, table):
        plan = plan_for(planner, table, [make_component("SQL01", "15.0.2000")], "2016Latest")
        assert plan.is_valid
        assert plan.actions == []

    def test_every_action_requires_restart_by_default(self, planner, table):
        plan = plan_for(planner, table, [make_component("SQL01", "13.0.1601")], "Latest")
        assert all(a.requires_restart for a in plan.actions)

    def test_restart_flag_can_be_disabled(self, media_dir, table):
        planner = HotfixPlanner(MediaRepository([media_dir]), restart_after_install=False)
        plan = plan_for(planner, table, [make_component("SQL01", "13.0.1601")], "Latest")
        assert not any(a.requires_restart for a in plan.actions)

    def test_continue_flag_is_carried(self, planner, table):
        plan = planner.plan_host(
            "SQL01", [make_component("SQL01", "13.0.1601")], parse_version_specs(["Latest"]), table, continue_=True
        )
        assert plan.continue_ is True


class TestPolicyTargets:

    def test_max_behind_zero_cu_moves_to_newest_cu_of_the_service_pack(self, tmp_path):
        table = BuildTable.from_payload({
            "LastUpdated": "2024-01-10T00:00:00+00:00",
            "Data": [
                {"Version": "14.0.1000", "Name": "2017", "SP": "RTM"},
                {"Version": "14.0.2000", "SP": "SP1", "KBList": ["4100001"]},
                {"Version": "14.0.2030", "CU": "CU3", "KBList": ["4100003"]},
                {"Version": "14.0.2070", "CU": "CU7", "KBList": ["4100007"]},
            ],
        })
        planner = HotfixPlanner(MediaRepository([tmp_path]), allow_download=True)

        plan = plan_for(planner, table, [make_component("SQL01", "14.0.2030")], "MaxBehind:0CU")

        assert plan.is_valid
        assert len(plan.actions) == 1
        assert plan.actions[0].kb == "4100007"
        assert plan.actions[0].target_version == v("14.0.2070")
        assert plan.actions[0].cumulative_update == "CU7"

    def test_max_behind_within_current_service_pack(self, planner, table):
        plan = plan_for(planner, table, [make_component("SQL01", "13.0.4411")], "MaxBehind:1SP1CU")
        assert [a.kb for a in plan.actions] == ["4037354"]

    def test_compliant_component_needs_nothing(self, planner, table):
        plan = plan_for(planner, table, [make_component("SQL01", "13.0.4466")], "MaxBehind:1SP0CU")
        assert plan.is_valid
        assert plan.actions == []

    def test_minimum_build_targets_first_release_reaching_it(self, planner, table):
        components = [make_component("SQL01", "13.0.4001"), make_component("SQL01", "15.0.2000", instance="NEW")]
        plan = plan_for(planner, table, components, "MinBuild:13.0.4440")
        assert [a.kb for a in plan.actions] == ["4024305"]
        assert plan.actions[0].target_version == v("13.0.4446")

    def test_bare_policy_plans_like_its_specification(self, planner, table):
        component = make_component("SQL01", "13.0.4435")
        from_policy = planner.plan_host("SQL01", [component], [MaxBehind(0, 0)], table)
        from_latest = plan_for(planner, table, [component], "Latest")

        assert from_policy.is_valid
        assert [a.kb for a in from_policy.actions] == [a.kb for a in from_latest.actions] == ["4052908", "4293807"]


class TestPlanningFailures:

    @pytest.mark.parametrize("version, spec", [
        ("13.0.1601", "2012Latest"),      # unknown release
        ("13.0.1601", "KB4535706"),       # unknown KB
        ("13.0.1601", "13.0.4440"),       # build that was never released
        ("13.0.1601", "SP3"),             # level that does not exist
        ("13.0.9999", "Latest"),          # installed build newer than the reference
        ("11.0.7001", "Latest"),          # release missing from the reference
        ("13.0.1601", "MinBuild:13.0.9999"),  # minimum beyond every known build
    ])
    def test_failure_yields_error_and_no_actions(self, planner, table, version, spec):
        plan = plan_for(planner, table, [make_component("SQL01", version)], spec)
        assert isinstance(plan.error, PlanningError)
        assert plan.actions == []
        assert not plan.is_valid

    def test_failure_is_isolated_per_host(self, planner, table):
        inventory = {
            "SQL01": [make_component("SQL01", "13.0.1601")],
            "SQL02": [make_component("SQL02", "13.0.9999")],
        }
        plans = planner.plan(inventory, parse_version_specs(["Latest"]), table)

        assert plans[0].is_valid and len(plans[0].actions) == 2
        assert plans[1].error is not None
        assert planner.validate_plan(plans) == [f"SQL02: {plans[1].error}"]


class TestInstallerResolution:

    def test_installers_are_attached(self, planner, table, media_dir):
        plan = plan_for(planner, table, [make_component("SQL01", "13.0.1601")], "Latest")
        for action in plan.actions:
            assert action.installer_path.parent.parent == media_dir
            assert f"KB{action.kb}" in action.installer_path.name

    def test_missing_media_without_download_fails(self, table, tmp_path):
        planner = HotfixPlanner(MediaRepository([tmp_path]))
        plan = plan_for(planner, table, [make_component("SQL01", "13.0.1601")], "Latest")
        assert isinstance(plan.error, PlanningError)
        assert "KB4052908" in str(plan.error)

    def test_missing_media_is_queued_for_download(self, table, tmp_path):
        planner = HotfixPlanner(MediaRepository([tmp_path]), allow_download=True)
        plan = plan_for(planner, table, [make_component("SQL01", "13.0.1601")], "Latest")
        assert plan.is_valid
        assert all(a.download_pending for a in plan.actions)
        assert [r.kb for r in plan.pending_downloads] == ["4052908", "4293807"]
        assert planner.validate_plan([plan]) == []


class TestUnsupportedSpecifications:

    def test_unsupported_value_is_a_planning_error(self, planner, table):
        plan = planner.plan_host("SQL01", [make_component("SQL01", "13.0.1601")], ["Latest"], table)
        assert isinstance(plan.error, PlanningError)
        assert plan.actions == []

    def test_other_hosts_still_plan(self, planner, table):
        inventory = {
            "SQL01": [make_component("SQL01", "13.0.1601")],
            "SQL02": [make_component("SQL02", "13.0.1601")],
        }
        plans = planner.plan(inventory, parse_version_specs(["MaxBehind:1SP"]), table)
        assert all(p.is_valid for p in plans)
        assert [a.kb for a in plans[0].actions] == ["3182545"]
