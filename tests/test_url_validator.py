"""Tests for endpoint URL validation (SSRF protection)."""

import httpx
import pytest

from fasthook.webhook.url_validator import (
    SSRFSafeTransport,
    UnsafeURLError,
    create_delivery_client,
    is_ip_blocked,
    validate_webhook_url,
)


class TestIsIpBlocked:
    """Tests for is_ip_blocked function."""

    def test_loopback_blocked(self):
        assert is_ip_blocked("127.0.0.1") is True
        assert is_ip_blocked("::1") is True

    def test_private_ranges_blocked(self):
        assert is_ip_blocked("10.1.2.3") is True
        assert is_ip_blocked("172.16.0.1") is True
        assert is_ip_blocked("192.168.1.1") is True
        # 172.32.x.x is NOT private
        assert is_ip_blocked("172.32.0.1") is False

    def test_metadata_address_blocked(self):
        """Cloud metadata lives in link-local space."""
        assert is_ip_blocked("169.254.169.254") is True

    def test_unique_local_ipv6_blocked(self):
        assert is_ip_blocked("fd00::1") is True

    def test_public_ip_allowed(self):
        assert is_ip_blocked("8.8.8.8") is False
        assert is_ip_blocked("93.184.216.34") is False

    def test_invalid_ip_not_blocked(self):
        assert is_ip_blocked("not-an-ip") is False
        assert is_ip_blocked("") is False


class TestValidateWebhookUrl:
    """Tests for validate_webhook_url."""

    def test_public_https_url(self):
        validate_webhook_url("https://hooks.example.com/receive")

    def test_non_http_scheme_rejected(self):
        with pytest.raises(UnsafeURLError, match="scheme"):
            validate_webhook_url("ftp://hooks.example.com/receive")

    def test_missing_host_rejected(self):
        with pytest.raises(UnsafeURLError, match="hostname"):
            validate_webhook_url("https:///path")

    def test_localhost_rejected(self):
        with pytest.raises(UnsafeURLError, match="blocked"):
            validate_webhook_url("http://localhost:8080/hook")

    def test_private_ip_rejected(self):
        with pytest.raises(UnsafeURLError, match="blocked range"):
            validate_webhook_url("http://10.0.0.5/hook")

    def test_metadata_hostname_rejected(self):
        with pytest.raises(UnsafeURLError):
            validate_webhook_url("http://metadata.google.internal/computeMetadata/v1/")

    def test_allowed_internal_domain_bypasses_checks(self):
        validate_webhook_url(
            "http://billing.internal.corp/hook",
            allowed_domains=["internal.corp"],
        )

    def test_allowed_domain_matches_whole_labels(self):
        """Allow-listing a domain does not open up other hosts."""
        with pytest.raises(UnsafeURLError):
            validate_webhook_url(
                "http://127.0.0.1/hook",
                allowed_domains=["internal.corp"],
            )

    def test_bad_port_is_value_error(self):
        with pytest.raises(ValueError, match="Invalid URL"):
            validate_webhook_url("https://hooks.example.com:99999/x")


class TestDeliveryClient:
    """Tests for the delivery HTTP client."""

    @pytest.mark.asyncio
    async def test_redirects_not_followed(self):
        client = create_delivery_client(timeout=5.0, ssrf_protection=False)
        try:
            assert client.follow_redirects is False
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_protected_client_refuses_loopback(self):
        """The connection-time check blocks targets even if registration was skipped."""
        transport = SSRFSafeTransport()
        async with httpx.AsyncClient(transport=transport) as client:
            with pytest.raises(UnsafeURLError):
                await client.post("http://127.0.0.1:9/hook", content=b"{}")
