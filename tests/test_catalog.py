# tests/test_catalog.py
"""
Tests for the source/sink/sanitizer catalog and its built-in entries.
"""

import pytest

from svctaint.catalog import (
    CURLOPT_URL,
    RETURN,
    AnyArgument,
    Catalog,
    CatalogEntry,
    ConstantArgument,
    ParameterSource,
    Sanitizer,
    Sink,
    Source,
    merge_roles,
)
from svctaint.taint_lattice import (
    FILESYSTEM_PATH,
    NETWORK_URL,
    SHELL_COMMAND,
    SQL_QUERY,
    USER_CONTROLLED,
    kind_named,
)


@pytest.fixture
def catalog():
    return Catalog.with_builtins()


class TestBuiltins:

    @pytest.mark.parametrize("name", [
        "system", "std::system", "popen", "execl", "execlp", "execle",
        "execv", "execvp", "execvpe", "execve",
    ])
    def test_process_sinks(self, catalog, name):
        sinks = catalog.sinks_for(name)
        assert len(sinks) == 1
        assert sinks[0].kind == SHELL_COMMAND
        assert sinks[0].argument_positions == (0,)

    @pytest.mark.parametrize("name, position", [
        ("__infer_sql_sink", 0),
        ("mysql_query", 1),
        ("sqlite3_exec", 1),
        ("PQexec", 1),
    ])
    def test_sql_sinks(self, catalog, name, position):
        (sink,) = catalog.sinks_for(name)
        assert sink.kind == SQL_QUERY
        assert sink.argument_positions == (position,)

    @pytest.mark.parametrize("name, positions", [
        ("open", (0,)),
        ("openat", (1,)),
        ("creat", (0,)),
        ("fopen", (0,)),
        ("freopen", (0,)),
        ("rename", (0, 1)),
        ("std::ofstream::ofstream", (0,)),
        ("std::ifstream::open", (0,)),
        ("std::basic_fstream::basic_fstream", (0,)),
    ])
    def test_file_sinks(self, catalog, name, positions):
        (sink,) = catalog.sinks_for(name)
        assert sink.kind == FILESYSTEM_PATH
        assert sink.argument_positions == positions

    def test_curl_sink_requires_constant(self, catalog):
        (sink,) = catalog.sinks_for("curl_easy_setopt")
        assert sink.kind == NETWORK_URL
        assert sink.requires_constant
        assert sink.accepted_values == frozenset({CURLOPT_URL})
        assert sink.argument_positions == (2,)
        assert sink.matcher.key_position == 1

    def test_plain_sink_does_not_require_constant(self, catalog):
        (sink,) = catalog.sinks_for("system")
        assert not sink.requires_constant
        assert sink.accepted_values == frozenset()

    def test_sanitizers(self, catalog):
        assert catalog.sanitizers_for("__infer_shell_sanitizer") == \
            [Sanitizer(SHELL_COMMAND, 0)]
        assert catalog.sanitizers_for("__infer_sql_sanitizer") == \
            [Sanitizer(SQL_QUERY, 0)]

    def test_environment_sources(self, catalog):
        assert catalog.sources_for("getenv") == [Source(USER_CONTROLLED, RETURN)]
        assert catalog.sources_for("secure_getenv")

    def test_unknown_name(self, catalog):
        assert catalog.lookup("printf") == []

    def test_builtins_match_exact_names_only(self, catalog):
        assert catalog.lookup("my::system") == []


class TestConfiguredEntries:

    def test_configured_entry_overrides_builtin(self, catalog):
        catalog.add_sanitizer("system", SHELL_COMMAND)
        roles = catalog.lookup("system")
        assert roles == [Sanitizer(SHELL_COMMAND, 0)]

    def test_builtin_used_when_no_configured_match(self, catalog):
        catalog.add_sink("ns::Db::run", SQL_QUERY)
        assert catalog.sinks_for("system")[0].kind == SHELL_COMMAND

    def test_wildcard_pattern(self, catalog):
        catalog.add_sink("ns::*::execute", SQL_QUERY, AnyArgument((1,)))
        (sink,) = catalog.sinks_for("ns::Db::execute")
        assert sink.argument_positions == (1,)
        assert catalog.sinks_for("other::Db::execute") == []

    def test_multiple_roles_for_one_method(self, catalog):
        catalog.add_source("ns::read_and_run", USER_CONTROLLED)
        catalog.add_sink("ns::read_and_run", SHELL_COMMAND)
        sources, sinks, sanitizers = merge_roles(
            catalog.lookup("ns::read_and_run"))
        assert len(sources) == 1
        assert len(sinks) == 1
        assert sanitizers == []

    def test_constant_matcher(self, catalog):
        catalog.add_sink("set_option", kind_named("Custom"),
                         ConstantArgument(2, 1, frozenset({7})))
        (sink,) = catalog.sinks_for("set_option")
        assert sink.requires_constant
        assert sink.accepted_values == frozenset({7})

    def test_entry_id(self):
        entry = CatalogEntry("system", Sink(SHELL_COMMAND))
        assert entry.entry_id() == "sink:system:ShellCommand"
        assert not entry.is_wildcard

    def test_len_counts_both_tiers(self):
        catalog = Catalog()
        catalog.add_source("a")
        catalog.add_entry(CatalogEntry("b", Sink(SHELL_COMMAND)))
        assert len(catalog) == 2
        assert len(catalog.configured_entries()) == 1


class TestParameterSources:

    def test_every_formal(self):
        source = ParameterSource("ns::Svc::m")
        assert source.covers(0)
        assert source.covers(5)

    def test_single_position(self):
        source = ParameterSource("ns::Svc::m", 1)
        assert source.covers(1)
        assert not source.covers(0)

    def test_lookup_by_method(self):
        catalog = Catalog()
        catalog.add_parameter_source(ParameterSource("ns::Svc::*"))
        assert catalog.has_parameter_sources("ns::Svc::m")
        assert not catalog.has_parameter_sources("ns::Other::m")
        assert len(catalog.parameter_sources("ns::Svc::x")) == 1
