"""Tests for hostname normalization, extraction and classification."""

from __future__ import annotations

import pytest

from sitegate.models import HostKind
from sitegate.tenancy.hostname import (
    classify,
    extract_host,
    is_dev_subdomain_host,
    is_main_app_host,
    normalize_host,
)
from tests.helpers import make_settings


# ─── normalize_host ──────────────────────────────────────


class TestNormalizeHost:
    def test_lowercases_and_strips_port(self):
        assert normalize_host("Acme.Blooms.CC:443") == "acme.blooms.cc"

    def test_strips_trailing_dot(self):
        assert normalize_host("blooms.cc.") == "blooms.cc"

    def test_bracketed_ipv6(self):
        assert normalize_host("[::1]:3000") == "::1"

    def test_empty_and_none(self):
        assert normalize_host("") == ""
        assert normalize_host(None) == ""

    def test_malformed_input_does_not_raise(self):
        assert normalize_host("badhost!!") == "badhost!!"
        assert normalize_host("[") == ""


# ─── extract_host ────────────────────────────────────────


class TestExtractHost:
    def test_prefers_forwarded_host(self):
        headers = {"host": "internal:8080", "x-forwarded-host": "acme.blooms.cc"}
        assert extract_host(headers) == "acme.blooms.cc"

    def test_falls_back_to_original_host_then_host(self):
        assert extract_host({"x-original-host": "a.example", "host": "b"}) == "a.example"
        assert extract_host({"host": "blooms.cc:3000"}) == "blooms.cc:3000"

    def test_takes_first_of_comma_list(self):
        headers = {"x-forwarded-host": "acme.blooms.cc, proxy.internal"}
        assert extract_host(headers) == "acme.blooms.cc"

    def test_ignores_forwarded_when_untrusted(self):
        headers = {"host": "blooms.cc", "x-forwarded-host": "evil.example"}
        assert extract_host(headers, trust_forwarded=False) == "blooms.cc"

    def test_missing_host(self):
        assert extract_host({}) == ""


# ─── classify ────────────────────────────────────────────


class TestClassify:
    @pytest.mark.parametrize("host", ["blooms.cc", "BLOOMS.CC", "blooms.cc:8443"])
    def test_app_domain_is_main_application(self, host):
        assert classify(host, make_settings()) == HostKind.MAIN_APPLICATION

    def test_preview_deployment_is_main_application(self):
        assert classify("sitegate-pr-12.vercel.app", make_settings()) == HostKind.MAIN_APPLICATION

    def test_alias_is_main_application(self):
        settings = make_settings(APP_DOMAIN_ALIASES=["www.blooms.cc"])
        assert classify("www.blooms.cc", settings) == HostKind.MAIN_APPLICATION

    @pytest.mark.parametrize(
        "host", ["localhost:3000", "127.0.0.1", "acme.localhost", "printer.local"]
    )
    def test_development_hosts(self, host):
        assert classify(host, make_settings()) == HostKind.DEVELOPMENT

    def test_development_environment_wins(self):
        settings = make_settings(APP_ENV="development")
        assert classify("acme.blooms.cc", settings) == HostKind.DEVELOPMENT

    @pytest.mark.parametrize("host", ["acme.blooms.cc", "www.acme.com", "badhost!!", "", None])
    def test_everything_else_is_site_domain(self, host):
        assert classify(host, make_settings()) == HostKind.SITE_DOMAIN


class TestHostHelpers:
    def test_dev_subdomain_host(self):
        assert is_dev_subdomain_host("acme.localhost") is True
        assert is_dev_subdomain_host("localhost") is False
        assert is_dev_subdomain_host(".localhost") is False

    def test_main_app_host_requires_exact_domain(self):
        settings = make_settings()
        assert is_main_app_host("blooms.cc", settings) is True
        assert is_main_app_host("acme.blooms.cc", settings) is False
