# tests/test_cli.py
"""
Tests for the command-line interface.
"""

import json
import logging

import pytest

from svctaint import __version__
from svctaint.cli import EXIT_FINDINGS, EXIT_INFRA, EXIT_OK, main

from tests.conftest import SERVICE_PRELUDE, service


@pytest.fixture(autouse=True)
def _detach_cli_handler():
    yield
    logger = logging.getLogger("svctaint")
    for handler in list(logger.handlers):
        if getattr(handler, "_svctaint", False):
            logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def clean_listing(tmp_path):
    path = tmp_path / "clean.listing"
    path.write_text(SERVICE_PRELUDE + service('''
        public method m(x: string) -> void { system("uptime"); }
    '''), encoding="utf-8")
    return path


class TestAnalyze:

    def test_findings_exit_code(self, listing_file, capsys):
        listing, config = listing_file
        code = main(["analyze", str(listing), "--config", str(config)])
        assert code == EXIT_FINDINGS
        out = capsys.readouterr().out
        assert "24 issue(s) detected" in out
        assert "REMOTE_CODE_EXECUTION_RISK (6)" in out

    def test_clean_program(self, clean_listing, capsys):
        assert main(["analyze", str(clean_listing)]) == EXIT_OK
        assert capsys.readouterr().out == "No taint issues detected.\n"

    def test_json_output(self, listing_file, capsys):
        listing, config = listing_file
        main(["analyze", str(listing), "-c", str(config), "--format", "json"])
        data = json.loads(capsys.readouterr().out)
        assert data["total_findings"] == 24

    def test_output_file(self, listing_file, tmp_path):
        listing, config = listing_file
        dest = tmp_path / "reports" / "out.txt"
        code = main(["analyze", str(listing), "-c", str(config),
                     "-f", "gcc", "-o", str(dest)])
        assert code == EXIT_FINDINGS
        lines = dest.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 24
        assert all(":" in line and "[" in line for line in lines)

    def test_workers(self, listing_file, capsys):
        listing, config = listing_file
        main(["analyze", str(listing), "-c", str(config), "-f", "json",
              "-j", "4"])
        assert json.loads(capsys.readouterr().out)["total_findings"] == 24

    def test_without_configuration(self, listing_file, capsys):
        listing, _ = listing_file
        main(["analyse", str(listing), "-f", "json"])
        issues = [f["issue_type"] for f in
                  json.loads(capsys.readouterr().out)["findings"]]
        # both configured methods are plain endpoints again
        assert "SQL_INJECTION" not in issues
        assert "SHELL_INJECTION" not in issues
        assert issues.count("REMOTE_CODE_EXECUTION_RISK") == 8


class TestInfrastructureErrors:

    def test_missing_listing(self, tmp_path):
        assert main(["analyze", str(tmp_path / "absent.listing")]) == EXIT_INFRA

    def test_missing_config(self, clean_listing, tmp_path):
        code = main(["analyze", str(clean_listing),
                     "-c", str(tmp_path / "absent.json")])
        assert code == EXIT_INFRA

    def test_malformed_listing(self, tmp_path):
        path = tmp_path / "bad.listing"
        path.write_text("class {", encoding="utf-8")
        assert main(["analyze", str(path)]) == EXIT_INFRA

    def test_unknown_successor(self, tmp_path):
        path = tmp_path / "bad.listing"
        path.write_text("function f() -> void { b0: goto b9; }",
                        encoding="utf-8")
        assert main(["analyze", str(path)]) == EXIT_INFRA

    def test_invalid_configuration_is_not_fatal(self, clean_listing, tmp_path):
        config = tmp_path / "broken.json"
        config.write_text("{broken", encoding="utf-8")
        assert main(["analyze", str(clean_listing), "-c", str(config)]) == \
            EXIT_OK

    def test_no_command(self, capsys):
        assert main([]) == EXIT_INFRA
        assert "usage:" in capsys.readouterr().err


class TestOtherCommands:

    def test_endpoints_text(self, listing_file, capsys):
        listing, config = listing_file
        assert main(["endpoints", str(listing), "-c", str(config)]) == EXIT_OK
        out = capsys.readouterr().out
        assert "endpoints::Service1::service1_endpoint_bad" in out
        assert "private_not_endpoint_ok" not in out
        assert "[configured]" in out
        assert "--- 22 entry point(s) ---" in out

    def test_endpoints_json(self, listing_file, capsys):
        listing, config = listing_file
        main(["endpoints", str(listing), "-c", str(config), "--json"])
        data = json.loads(capsys.readouterr().out)
        configured = sorted(e["procedure"] for e in data if e["configured"])
        assert configured == [
            "endpoints::Service1::user_controlled_endpoint_to_shell_bad",
            "endpoints::Service1::user_controlled_endpoint_to_sql_bad",
        ]
        services = {e["service"] for e in data if not e["configured"]}
        assert services == {"endpoints::Service1", "endpoints::Service2",
                            "endpoints::Service3"}

    def test_callgraph_text(self, listing_file, capsys):
        listing, _ = listing_file
        assert main(["callgraph", str(listing)]) == EXIT_OK
        out = capsys.readouterr().out
        assert "endpoints::Service1::service1_endpoint_bad -> " in out
        assert "edge(s) ---" in out

    def test_callgraph_dot(self, listing_file, capsys):
        listing, _ = listing_file
        assert main(["callgraph", str(listing), "--dot"]) == EXIT_OK
        out = capsys.readouterr().out
        assert out.startswith("digraph CallGraph {")
        assert '"system"' in out

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            main(["--version"])
        assert excinfo.value.code == 0
        assert __version__ in capsys.readouterr().out
