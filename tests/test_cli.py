"""Tests for domainedge CLI."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from domainedge.cli import main
from domainedge.domains import (
    DnsRecordType,
    DNSVerifier,
    DomainVerificationResult,
    VerificationIssue,
)
from domainedge.errors import ErrorKind

GOOD_ENV = {
    "ORIGIN_ENDPOINT": "https://origin.example.com",
    "ALLOWED_DOMAINS": '["shop.example.com"]',
}


@pytest.fixture
def storage():
    with tempfile.NamedTemporaryFile(mode="w", suffix=".json", delete=False) as f:
        f.write("{}")
        return str(Path(f.name))


@pytest.fixture
def no_dns():
    """Keep provider detection off the network."""
    with patch.object(DNSVerifier, "detect_provider", AsyncMock(return_value="cloudflare")):
        yield


class TestCLIBasics:
    """Basic CLI tests."""

    def test_main_with_help(self):
        runner = CliRunner()
        result = runner.invoke(main, ["--help"])

        assert result.exit_code == 0
        assert "attach custom domains to hosted sites" in result.output
        assert "domain" in result.output
        assert "config" in result.output

    def test_version_command(self):
        runner = CliRunner()
        result = runner.invoke(main, ["version"])

        assert result.exit_code == 0
        assert "Custom domains for hosted sites" in result.output
        assert "Version:" in result.output
        assert "Python:" in result.output

    def test_domain_help(self):
        runner = CliRunner()
        result = runner.invoke(main, ["domain", "--help"])

        assert result.exit_code == 0
        for command in ("init", "check", "status", "list", "disconnect", "recheck"):
            assert command in result.output


class TestConfigCommands:
    """Tests for config show / validate."""

    def test_show_json(self):
        runner = CliRunner()
        with patch.dict(os.environ, GOOD_ENV, clear=True):
            result = runner.invoke(main, ["config", "show", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["routing"]["origin_endpoint"] == "https://origin.example.com"
        assert data["routing"]["allowed_domains"] == ["shop.example.com"]
        assert data["proxy"]["bind"] == "0.0.0.0:8080"
        assert data["domains"]["proxy_hostname"] == "edge.domainedge.app"

    def test_show_json_reports_routing_error(self):
        runner = CliRunner()
        with patch.dict(os.environ, {}, clear=True):
            result = runner.invoke(main, ["config", "show", "--json"])

        assert result.exit_code == 0
        assert "ORIGIN_ENDPOINT" in json.loads(result.output)["routing"]["error"]

    def test_validate_ok(self):
        runner = CliRunner()
        with patch.dict(os.environ, GOOD_ENV, clear=True):
            result = runner.invoke(main, ["config", "validate"])

        assert result.exit_code == 0
        assert "OK - Configuration is valid" in result.output

    def test_validate_warns_without_allow_list(self):
        runner = CliRunner()
        with patch.dict(os.environ, {"ORIGIN_ENDPOINT": "https://origin.example.com"}, clear=True):
            result = runner.invoke(main, ["config", "validate"])

        assert result.exit_code == 0
        assert "ALLOWED_DOMAINS is not set" in result.output

    def test_validate_rejects_http_origin(self):
        runner = CliRunner()
        with patch.dict(os.environ, {"ORIGIN_ENDPOINT": "http://origin.example.com"}, clear=True):
            result = runner.invoke(main, ["config", "validate"])

        assert result.exit_code == 1
        assert "must be HTTPS" in result.output


class TestDomainCommands:
    """Tests for the domain command group."""

    def test_init_prints_records(self, storage, no_dns):
        runner = CliRunner()
        result = runner.invoke(
            main, ["domain", "init", "site-1", "Shop.Example.com", "--storage", storage]
        )

        assert result.exit_code == 0
        assert "Domain attachment started!" in result.output
        assert "edge.domainedge.app" in result.output
        assert "_domainedge-verification.shop.example.com" in result.output

        saved = json.loads(Path(storage).read_text())["sites"]["site-1"]
        assert saved["custom_domain_status"] == "pending_verification"
        assert saved["dns_provider"] == "cloudflare"

    def test_init_twice_reuses(self, storage, no_dns):
        runner = CliRunner()
        runner.invoke(main, ["domain", "init", "site-1", "shop.example.com", "--storage", storage])
        result = runner.invoke(
            main, ["domain", "init", "site-1", "shop.example.com", "--storage", storage]
        )

        assert result.exit_code == 0
        assert "Verification already in progress" in result.output

    def test_init_invalid_domain(self, storage, no_dns):
        runner = CliRunner()
        result = runner.invoke(main, ["domain", "init", "site-1", "localhost", "--storage", storage])

        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_init_conflict(self, storage, no_dns):
        runner = CliRunner()
        runner.invoke(main, ["domain", "init", "site-1", "shop.example.com", "--storage", storage])
        result = runner.invoke(
            main, ["domain", "init", "site-2", "shop.example.com", "--storage", storage]
        )

        assert result.exit_code == 1
        assert "already attached to another site" in result.output

    def test_check_verified(self, storage, no_dns):
        runner = CliRunner()
        runner.invoke(main, ["domain", "init", "site-1", "shop.example.com", "--storage", storage])

        passed = DomainVerificationResult("shop.example.com", cname_valid=True, txt_valid=True)
        with patch.object(DNSVerifier, "verify_domain", AsyncMock(return_value=passed)):
            result = runner.invoke(main, ["domain", "check", "site-1", "--storage", storage])

        assert result.exit_code == 0
        assert "Domain verified!" in result.output

    def test_check_failed_then_rate_limited(self, storage, no_dns):
        runner = CliRunner()
        runner.invoke(main, ["domain", "init", "site-1", "shop.example.com", "--storage", storage])

        failed = DomainVerificationResult(
            "shop.example.com",
            cname_valid=False,
            txt_valid=True,
            issues=[
                VerificationIssue(
                    ErrorKind.DNS_LOOKUP_FAILED,
                    DnsRecordType.CNAME,
                    "CNAME record for shop.example.com not found or could not be resolved",
                )
            ],
        )
        with patch.object(DNSVerifier, "verify_domain", AsyncMock(return_value=failed)) as verify:
            first = runner.invoke(main, ["domain", "check", "site-1", "--storage", storage])
            second = runner.invoke(main, ["domain", "check", "site-1", "--storage", storage])

        assert first.exit_code == 1
        assert "Invalid" in first.output
        assert "not found" in first.output
        assert second.exit_code == 1
        assert "Checked too recently" in second.output
        assert verify.await_count == 1

    def test_check_not_initialized(self, storage, no_dns):
        runner = CliRunner()
        runner.invoke(main, ["domain", "init", "site-1", "shop.example.com", "--storage", storage])
        runner.invoke(main, ["domain", "disconnect", "site-1", "-y", "--storage", storage])

        result = runner.invoke(main, ["domain", "check", "site-1", "--storage", storage])

        assert result.exit_code == 1
        assert "not initialized" in result.output

    def test_status_json(self, storage, no_dns):
        runner = CliRunner()
        runner.invoke(main, ["domain", "init", "site-1", "shop.example.com", "--storage", storage])

        result = runner.invoke(
            main, ["domain", "status", "site-1", "--json", "--storage", storage]
        )

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["status"] == "pending_verification"
        assert data["domain"] == "shop.example.com"
        assert data["verified"] is False

    def test_status_unknown_site(self, storage):
        runner = CliRunner()
        result = runner.invoke(main, ["domain", "status", "missing", "--storage", storage])

        assert result.exit_code == 1
        assert "Site missing not found" in result.output

    def test_list(self, storage, no_dns):
        runner = CliRunner()
        empty = runner.invoke(main, ["domain", "list", "--storage", storage])
        runner.invoke(main, ["domain", "init", "site-1", "shop.example.com", "--storage", storage])
        listed = runner.invoke(main, ["domain", "list", "--json", "--storage", storage])
        filtered = runner.invoke(
            main, ["domain", "list", "--status", "verified", "--json", "--storage", storage]
        )

        assert "No sites found" in empty.output
        assert [record["site_id"] for record in json.loads(listed.output)] == ["site-1"]
        assert json.loads(filtered.output) == []

    def test_disconnect_confirm_cancel(self, storage, no_dns):
        runner = CliRunner()
        runner.invoke(main, ["domain", "init", "site-1", "shop.example.com", "--storage", storage])

        result = runner.invoke(
            main, ["domain", "disconnect", "site-1", "--storage", storage], input="n\n"
        )

        assert "Cancelled" in result.output
        saved = json.loads(Path(storage).read_text())["sites"]["site-1"]
        assert saved["custom_domain_status"] == "pending_verification"

    def test_disconnect(self, storage, no_dns):
        runner = CliRunner()
        runner.invoke(main, ["domain", "init", "site-1", "shop.example.com", "--storage", storage])

        result = runner.invoke(
            main,
            ["domain", "disconnect", "site-1", "-y", "--reason", "tenant request", "--storage", storage],
        )

        assert result.exit_code == 0
        assert "Domain disconnected: shop.example.com" in result.output

    def test_recheck_nothing_pending(self, storage):
        runner = CliRunner()
        result = runner.invoke(main, ["domain", "recheck", "--storage", storage])

        assert result.exit_code == 0
        assert "No sites awaiting verification" in result.output

    def test_bad_config_file(self, storage):
        runner = CliRunner()
        result = runner.invoke(
            main,
            ["domain", "list", "--storage", storage, "--config", "/nonexistent/domainedge.yaml"],
        )

        assert result.exit_code == 1
        assert "Configuration error" in result.output
