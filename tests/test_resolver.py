"""
Tests for the build resolver: version, KB and level lookups plus
compliance targets.
"""

import logging

import pytest

from autodbpatch.domain.builds import BuildTable, BuildVersion, MatchType
from autodbpatch.domain.errors import NotFoundError
from autodbpatch.domain.policy import Latest, MaxBehind, MinimumBuild
from autodbpatch.hotfix.resolver import (
    check_compliance,
    compute_compliance_target,
    is_beyond_reference,
    resolve_by_family,
    resolve_by_kb,
    resolve_by_version,
    resolve_target_record,
    walk_family,
)


def v(text):
    return BuildVersion.parse(text)


class TestResolveByVersion:

    def test_exact_match_carries_accumulated_labels(self, table):
        resolved = resolve_by_version(table, "13.0.4435")
        assert resolved.match_type is MatchType.EXACT
        assert resolved.service_pack == "SP1"
        assert resolved.cumulative_update == "CU3"
        assert resolved.family_name == "2016"
        assert resolved.kb_list == frozenset({"4019916"})
        assert resolved.warning is None

    def test_revision_does_not_prevent_exact_match(self, table):
        assert resolve_by_version(table, "13.0.4435.7").is_exact

    def test_unlabelled_record_inherits_context(self, table):
        resolved = resolve_by_version(table, "13.0.5161")
        assert resolved.is_exact
        assert resolved.level == "SP2 CU2"

    def test_service_pack_resets_cumulative_update(self, table):
        resolved = resolve_by_version(table, "13.0.5026")
        assert resolved.service_pack == "SP2"
        assert resolved.cumulative_update is None

    def test_unknown_build_is_approximated_by_nearest_lower(self, table):
        resolved = resolve_by_version(table, "13.0.4440.1")
        assert resolved.match_type is MatchType.APPROXIMATE
        assert resolved.version == v("13.0.4435")
        assert "nearest lower" in resolved.warning

    def test_every_known_build_resolves_exactly_and_unknown_never_does(self, table):
        for record in table.all_records():
            assert resolve_by_version(table, record.version).is_exact
        for build in ("13.0.4002", "13.0.5150", "15.0.4004"):
            assert not resolve_by_version(table, build).is_exact

    def test_build_older_than_family_is_not_found(self, table):
        with pytest.raises(NotFoundError):
            resolve_by_version(table, "13.0.1000")

    def test_unknown_family_is_not_found(self, table):
        with pytest.raises(NotFoundError):
            resolve_by_version(table, "11.0.7001")

    def test_build_beyond_reference_warns(self, table):
        resolved = resolve_by_version(table, "15.0.4999")
        assert resolved.match_type is MatchType.APPROXIMATE
        assert resolved.version == v("15.0.4033")
        assert "out of date" in resolved.warning
        assert is_beyond_reference(table, "15.0.4999")
        assert not is_beyond_reference(table, "15.0.4033")

    def test_retired_build_warns(self, table):
        resolved = resolve_by_version(table, "13.0.2149")
        assert resolved.is_exact
        assert resolved.retired
        assert "retired" in resolved.warning


class TestResolveByKb:

    def test_known_kb(self, table):
        resolved = resolve_by_kb(table, "KB4019916")
        assert resolved.version == v("13.0.4435")
        assert resolved.level == "SP1 CU3"

    def test_kb_as_number(self, table):
        assert resolve_by_kb(table, 4548597).version == v("15.0.4033")

    def test_unknown_kb(self, table):
        with pytest.raises(NotFoundError, match="4535706"):
            resolve_by_kb(table, "KB4535706")


class TestResolveByFamily:

    def test_bare_service_pack(self, table):
        resolved = resolve_by_family(table, "13.0", "SP1")
        assert resolved.version == v("13.0.4001")
        assert resolved.cumulative_update is None

    def test_service_pack_and_cumulative_update(self, table):
        assert resolve_by_family(table, "13.0", "sp1", "cu3").version == v("13.0.4435")

    def test_same_cu_label_in_different_service_packs(self, table):
        assert resolve_by_family(table, "13.0", "RTM", "CU1").version == v("13.0.2149")
        assert resolve_by_family(table, "13.0", "SP2", "CU1").version == v("13.0.5149")

    def test_unknown_level(self, table):
        with pytest.raises(NotFoundError):
            resolve_by_family(table, "13.0", "SP3")
        with pytest.raises(NotFoundError):
            resolve_by_family(table, "13.0", "SP2", "CU9")

    def test_unknown_family(self, table):
        with pytest.raises(NotFoundError):
            resolve_by_family(table, "12.0", "SP1")


class TestWalkFamily:

    def test_labels_never_decrease(self, table):
        ranks = {"RTM": 0, "SP1": 1, "SP2": 2}
        seen = [ranks[sp] for _, sp, _ in walk_family(table.records_for("13.0"))]
        assert seen == sorted(seen)


class TestCompliancePolicies:

    def test_latest(self, table):
        assert compute_compliance_target(table, "13.0", Latest()) == v("13.0.5161")
        assert compute_compliance_target(table, "15.0", Latest()) == v("15.0.4033")

    def test_max_behind_zero_equals_latest(self, table):
        for family in table.families():
            assert (
                compute_compliance_target(table, family, MaxBehind(0, 0))
                == compute_compliance_target(table, family, Latest())
            )

    def test_max_behind_service_pack_only_targets_bare_service_pack(self, table):
        assert compute_compliance_target(table, "13.0", MaxBehind(0)) == v("13.0.5026")
        assert compute_compliance_target(table, "13.0", MaxBehind(1)) == v("13.0.4001")

    def test_max_behind_cumulative_updates(self, table):
        assert compute_compliance_target(table, "13.0", MaxBehind(1, 0)) == v("13.0.4466")
        assert compute_compliance_target(table, "13.0", MaxBehind(1, 4)) == v("13.0.4435")
        assert compute_compliance_target(table, "15.0", MaxBehind(0, 2)) == v("15.0.4013")

    def test_max_behind_more_cus_than_published_targets_bare_service_pack(self, table):
        assert compute_compliance_target(table, "13.0", MaxBehind(0, 5)) == v("13.0.5026")

    def test_max_behind_without_cu_ignores_security_build_after_service_pack(self):
        gdr_table = BuildTable.from_payload({
            "LastUpdated": "2024-01-10T00:00:00+00:00",
            "Data": [
                {"Version": "1.0.100", "Name": "2099", "SP": "RTM"},
                {"Version": "1.0.200", "SP": "SP1", "KBList": ["1000200"]},
                {"Version": "1.0.210", "KBList": ["1000210"]},
                {"Version": "1.0.300", "CU": "CU1", "KBList": ["1000300"]},
            ],
        })
        assert compute_compliance_target(gdr_table, "1.0", MaxBehind(0, 5)) == v("1.0.200")
        assert compute_compliance_target(gdr_table, "1.0", MaxBehind(0)) == v("1.0.200")
        assert compute_compliance_target(gdr_table, "1.0", MaxBehind(0, 0)) == v("1.0.300")

    def test_max_behind_more_sps_than_published_is_clamped(self, table, caplog):
        with caplog.at_level(logging.DEBUG, logger="autodbpatch.hotfix.resolver"):
            target = compute_compliance_target(table, "13.0", MaxBehind(5))
        assert target == v("13.0.1601")
        assert "clamping" in caplog.text

    def test_minimum_build_targets_its_own_version(self, table):
        assert compute_compliance_target(table, "13.0", MinimumBuild(v("13.0.4440"))) == v("13.0.4440")

    def test_minimum_build_of_other_family(self, table):
        with pytest.raises(NotFoundError):
            compute_compliance_target(table, "15.0", MinimumBuild(v("13.0.4435")))

    def test_target_record_for_minimum_build(self, table):
        resolved = resolve_target_record(table, "13.0", MinimumBuild(v("13.0.4446")))
        assert resolved.level == "SP1 CU4"

    def test_target_record_for_unlisted_minimum_build_is_next_release(self, table):
        resolved = resolve_target_record(table, "13.0", MinimumBuild(v("13.0.4440")))
        assert resolved.version == v("13.0.4446")

    def test_minimum_build_beyond_reference_has_no_target_record(self, table):
        with pytest.raises(NotFoundError):
            resolve_target_record(table, "15.0", MinimumBuild(v("15.0.4999")))

    def test_unknown_policy_type(self, table):
        with pytest.raises(TypeError):
            resolve_target_record(table, "13.0", "Latest")


class TestCheckCompliance:
    """Installed builds RTM, SP1, SP1 CU3 and SP1 CU7 against several policies."""

    @pytest.mark.parametrize("installed, policy, compliant", [
        ("13.0.1601.5", Latest(), False),
        ("13.0.4001.0", MaxBehind(1), True),
        ("13.0.4435.0", MaxBehind(1, 4), True),
        ("13.0.4422.0", MaxBehind(1, 4), False),
        ("13.0.4466.0", MaxBehind(1, 0), True),
        ("13.0.4466.0", MaxBehind(0, 1), False),
        ("13.0.1601.5", MaxBehind(5), True),
        ("13.0.4435.0", MinimumBuild(v("13.0.4446")), False),
        ("13.0.5161.0", Latest(), True),
    ])
    def test_policies(self, table, installed, policy, compliant):
        result = check_compliance(table, installed, policy)
        assert result.compliant is compliant
        assert result.installed.version == v(installed)

    def test_approximate_installed_build_reports_warning(self, table):
        result = check_compliance(table, "13.0.4440", Latest())
        assert result.compliant is False
        assert result.warnings
        assert result.target == v("13.0.5161")
