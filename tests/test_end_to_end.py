# tests/test_end_to_end.py
"""
End-to-end tests: listing → parse → configure → analyse → findings, on the
service endpoint scenario shared through conftest.
"""

from collections import Counter

import pytest

from svctaint.analysis import AnalysisRun, analyze
from svctaint.config import Configuration
from svctaint.const_eval import UnknownConstantPolicy
from svctaint.findings import FindingCollector
from tests.conftest import ENDPOINTS_EXPECTED


EXTRA_SERVICE_METHODS = {
    "endpoints::Service2::service2_endpoint_bad": ["REMOTE_CODE_EXECUTION_RISK"],
    "endpoints::Service3::service3_endpoint_bad": ["REMOTE_CODE_EXECUTION_RISK"],
}


def _expected():
    expected = {f"endpoints::Service1::{name}": sorted(issues)
                for name, issues in ENDPOINTS_EXPECTED.items()}
    expected.update(EXTRA_SERVICE_METHODS)
    return expected


@pytest.fixture
def result(endpoints_program, endpoints_config):
    with AnalysisRun(endpoints_program, endpoints_config) as run:
        return run.run()


class TestEndpointScenario:

    @pytest.mark.parametrize("procedure, issues", sorted(_expected().items()))
    def test_issues_per_method(self, result, procedure, issues):
        assert result.issue_types(procedure) == issues

    def test_total(self, result):
        assert len(result.findings) == 24
        assert result.statistics["findings"] == 24

    def test_issue_histogram(self, result):
        assert Counter(f.issue_type for f in result.findings) == Counter({
            "REMOTE_CODE_EXECUTION_RISK": 6,
            "SQL_INJECTION": 1,
            "SHELL_INJECTION": 1,
            "USER_CONTROLLED_SQL_RISK": 1,
            "UNTRUSTED_FILE_RISK": 12,
            "UNTRUSTED_URL_RISK": 3,
        })

    def test_every_finding_names_its_entry_point(self, result):
        assert all(f.entry_point == f.procedure for f in result.findings)

    def test_c_style_file_sinks_are_distinct_sites(self, result):
        sinks = sorted(f.sink for f in result.get_findings_in(
            "endpoints::Service1::open_or_create_c_style_file_bad"))
        assert sinks == ["creat", "fopen", "freopen", "open", "openat",
                         "rename"]

    def test_stream_sinks(self, result):
        sinks = sorted(f.sink for f in result.get_findings_in(
            "endpoints::Service1::ofstream_open_file_bad"))
        assert sinks == ["std::ofstream::ofstream", "std::ofstream::open"]

    def test_origins(self, result):
        (finding,) = result.get_findings_in(
            "endpoints::Service1::service1_endpoint_struct_string_field_bad")
        (origin,) = finding.origins
        assert origin.parameter == "formal"
        assert "endpoint parameter 'formal'" in origin.describe()

    def test_statistics(self, result):
        stats = result.statistics
        assert stats["entry_points"] == 22
        assert stats["procedures"] == 23
        assert stats["summaries"] == 23
        assert stats["summary_builds"] == 23
        assert stats["provisional_summaries"] == 0
        assert stats["unconverged"] == []


class TestRunProperties:

    def test_parallel_run_matches_sequential(self, endpoints_program,
                                             endpoints_config, result):
        parallel = analyze(endpoints_program,
                           endpoints_config.with_options(workers=4))
        assert [f.key for f in parallel.findings] == \
            [f.key for f in result.findings]

    def test_runs_do_not_share_summaries(self, endpoints_program,
                                         endpoints_config):
        first = AnalysisRun(endpoints_program, endpoints_config)
        first.run()
        second = AnalysisRun(endpoints_program, endpoints_config)
        assert len(second.summaries) == 0
        assert len(first.summaries) > 0

    def test_builtins_only(self, endpoints_program):
        result = analyze(endpoints_program, Configuration())
        assert result.get_findings_by_issue("SQL_INJECTION") == []
        assert len(result.findings) == 24

    def test_extra_reporter(self, endpoints_program, endpoints_config):
        reporter = FindingCollector()
        with AnalysisRun(endpoints_program, endpoints_config,
                         reporter=reporter) as run:
            result = run.run()
        assert len(reporter) == len(result.findings)

    def test_ignore_policy_drops_unknown_key(self, endpoints_program,
                                             endpoints_config):
        config = endpoints_config.with_options(
            unknown_constant_policy=UnknownConstantPolicy.IGNORE)
        result = analyze(endpoints_program, config)
        assert result.issue_types(
            "endpoints::Service1::endpoint_to_curl_url_unknown_exp_bad") == []
        assert len(result.findings) == 23
