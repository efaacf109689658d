# tests/conftest.py
"""
Shared fixtures and listing builders for the svctaint test suite.
"""

import json

import pytest

from svctaint.analysis import AnalysisRun
from svctaint.config import Configuration, parse_config
from svctaint.listing import parse_listing


# ── Listing fragments ────────────────────────────────────────────

SERVICE_PRELUDE = '''
    interface facebook::fb303::cpp2::FacebookServiceSvIf;
    interface facebook::fb303::cpp2::FacebookServiceSvAsyncIf;

    extern function system(cmd: char*) -> int;
    extern function getenv(name: char*) -> char*;
    extern function __infer_sql_sink(query: string) -> void;
    extern function __infer_shell_sanitizer(s: string) -> string;
    extern function __infer_sql_sanitizer(s: string) -> string;
'''


ENDPOINTS_LISTING = SERVICE_PRELUDE + '''
    extern function curl_easy_setopt(handle: void*, option: int, value: char*) -> void;

    struct endpoints::request {
        s: string;
        i: int;
    }

    class endpoints::Service1 : facebook::fb303::cpp2::FacebookServiceSvIf {
        const CURLOPT_URL = 10002;

        public method service1_endpoint_bad(formal: string) -> void {
            system(formal.c_str());
        }

        public method user_controlled_endpoint_to_sql_bad(formal: string) -> void {
            __infer_sql_sink(formal);
        }

        public method user_controlled_endpoint_to_shell_bad(formal: string) -> void {
            system(formal.c_str());
        }

        public method unsanitized_sql_bad(formal: string) -> void {
            __infer_sql_sink(formal);
        }

        public method sanitized_sql_with_shell_bad(formal: string) -> void {
            __infer_sql_sink(__infer_shell_sanitizer(formal));
        }

        public method service1_endpoint_sql_sanitized_bad(formal: string) -> void {
            __infer_sql_sink(__infer_sql_sanitizer(formal));
        }

        public method service1_endpoint_shell_sanitized_ok(formal: string) -> void {
            system(__infer_shell_sanitizer(formal).c_str());
        }

        public method service1_endpoint_struct_string_field_bad(formal: endpoints::request) -> void {
            system(formal.s.c_str());
        }

        public method open_or_create_c_style_file_bad(filename: const char*) -> void {
            open(filename, 0);
            openat(1, filename, 2);
            creat(filename, 3);
            fopen(filename, "w");
            freopen(filename, "w", 0);
            rename(filename, "mud");
        }

        public method ofstream_open_file_bad(filename: string) -> void {
            local file2: std::ofstream;
            file1 = new std::ofstream(filename);
            file2.open(filename);
        }

        public method ifstream_open_file_bad(filename: string) -> void {
            local file2: std::ifstream;
            file1 = new std::ifstream(filename);
            file2.open(filename);
        }

        public method fstream_open_file_bad(filename: string) -> void {
            local file2: std::fstream;
            file1 = new std::fstream(filename);
            file2.open(filename);
        }

        public method endpoint_to_curl_url_bad(formal: endpoints::request) -> void {
            curl_easy_setopt(0, CURLOPT_URL, formal.s.c_str());
        }

        public method endpoint_to_curl_url_exp_bad(formal: endpoints::request) -> void {
            curl_easy_setopt(0, 10000 + 2, formal.s.c_str());
        }

        public method endpoint_to_curl_url_unknown_exp_bad(formal: endpoints::request, i: int) -> void {
            curl_easy_setopt(0, i + 17, formal.s.c_str());
        }

        public method endpoint_to_curl_other_const_ok(formal: endpoints::request) -> void {
            curl_easy_setopt(0, 0, formal.s.c_str());
        }

        public method endpoint_to_curl_other_exp_ok(formal: endpoints::request) -> void {
            curl_easy_setopt(0, 1 + 2, formal.s.c_str());
        }

        public method service1_endpoint_struct_int_field_ok(formal: endpoints::request) -> void {
            system(std::to_string(formal.i).c_str());
        }

        public method service_this_ok() -> void {
            system((const char*) this);
        }

        public method service_return_param_ok(&_return: string) -> void {
            system(_return.c_str());
        }

        private method private_not_endpoint_ok(formal: string) -> void {
            system(formal.c_str());
        }
    }

    class endpoints::Service2 : facebook::fb303::cpp2::FacebookServiceSvAsyncIf {
        public method service2_endpoint_bad(formal: string) -> void {
            system(formal.c_str());
        }
    }

    class endpoints::Service3 : endpoints::Service1 {
        public method service3_endpoint_bad(formal: string) -> void {
            system(formal.c_str());
        }
    }
'''


ENDPOINTS_CONFIG = {
    "user-controlled-sources": [
        "endpoints::Service1::user_controlled_endpoint_to_sql_bad",
        {"method": "endpoints::Service1::user_controlled_endpoint_to_shell_bad",
         "position": 0},
    ],
}


# Issue types expected per method of the endpoints scenario.
ENDPOINTS_EXPECTED = {
    "service1_endpoint_bad": ["REMOTE_CODE_EXECUTION_RISK"],
    "user_controlled_endpoint_to_sql_bad": ["SQL_INJECTION"],
    "user_controlled_endpoint_to_shell_bad": ["SHELL_INJECTION"],
    "unsanitized_sql_bad": ["REMOTE_CODE_EXECUTION_RISK"],
    "sanitized_sql_with_shell_bad": ["REMOTE_CODE_EXECUTION_RISK"],
    "service1_endpoint_sql_sanitized_bad": ["USER_CONTROLLED_SQL_RISK"],
    "service1_endpoint_shell_sanitized_ok": [],
    "service1_endpoint_struct_string_field_bad": ["REMOTE_CODE_EXECUTION_RISK"],
    "open_or_create_c_style_file_bad": ["UNTRUSTED_FILE_RISK"] * 6,
    "ofstream_open_file_bad": ["UNTRUSTED_FILE_RISK"] * 2,
    "ifstream_open_file_bad": ["UNTRUSTED_FILE_RISK"] * 2,
    "fstream_open_file_bad": ["UNTRUSTED_FILE_RISK"] * 2,
    "endpoint_to_curl_url_bad": ["UNTRUSTED_URL_RISK"],
    "endpoint_to_curl_url_exp_bad": ["UNTRUSTED_URL_RISK"],
    "endpoint_to_curl_url_unknown_exp_bad": ["UNTRUSTED_URL_RISK"],
    "endpoint_to_curl_other_const_ok": [],
    "endpoint_to_curl_other_exp_ok": [],
    "service1_endpoint_struct_int_field_ok": [],
    "service_this_ok": [],
    "service_return_param_ok": [],
    "private_not_endpoint_ok": [],
}


# ── Helpers ──────────────────────────────────────────────────────

def service(body: str, name: str = "ns::Svc",
            capability: str = "facebook::fb303::cpp2::FacebookServiceSvIf") -> str:
    """Wrap class members in a service class deriving from *capability*."""
    return f"class {name} : {capability} {{\n{body}\n}}\n"


def analyze_listing(text: str, config=None, **options):
    """Parse *text*, run the analysis and return the result."""
    program = parse_listing(text, "test.listing")
    if isinstance(config, dict):
        config = parse_config(config)
    config = config or Configuration()
    if options:
        config = config.with_options(**options)
    with AnalysisRun(program, config) as run:
        return run.run()


# ── Fixtures ─────────────────────────────────────────────────────

@pytest.fixture
def endpoints_program():
    return parse_listing(ENDPOINTS_LISTING, "endpoints.listing")


@pytest.fixture
def endpoints_config():
    return parse_config(ENDPOINTS_CONFIG, "endpoints.json")


@pytest.fixture
def listing_file(tmp_path):
    """Write the endpoints listing and configuration to *tmp_path*."""
    listing = tmp_path / "endpoints.listing"
    listing.write_text(ENDPOINTS_LISTING, encoding="utf-8")
    config = tmp_path / "taint.json"
    config.write_text(json.dumps(ENDPOINTS_CONFIG), encoding="utf-8")
    return listing, config
