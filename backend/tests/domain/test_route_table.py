"""Tests for the static route table used by the request gate."""

import pytest

from tablexport.gate.routes import (
    get_route_config,
    is_admin_route,
    is_api_route,
    is_protected_route,
    is_public_route,
    requires_authentication,
    requires_pro_subscription,
)

pytestmark = pytest.mark.unit


class TestRouteConfig:
    def test_exact_path_has_config(self):
        config = get_route_config("/api/subscription/status")

        assert config is not None
        assert config.rate_limit.requests == 60
        assert config.rate_limit.window_seconds == 60
        assert config.allowed_methods == ("GET", "POST")

    def test_longest_prefix_wins(self):
        config = get_route_config("/api/subscription/pro-features/export")

        assert config.path == "/api/subscription/pro-features"
        assert config.requires_pro is True

    def test_unknown_path_has_no_config(self):
        assert get_route_config("/pricing") is None

    @pytest.mark.parametrize(
        ("path", "requests"),
        [
            ("/api/subscription/usage", 100),
            ("/api/subscription/check-export", 200),
            ("/api/subscription/pro-features", 1000),
            ("/api/paypal/create-order", 10),
            ("/api/paypal/capture-order", 10),
        ],
    )
    def test_rate_limits(self, path, requests):
        assert get_route_config(path).rate_limit.requests == requests

    def test_webhook_route_has_no_rate_limit_or_auth(self):
        config = get_route_config("/api/paypal/webhooks")

        assert config.rate_limit is None
        assert config.requires_auth is False


class TestClassification:
    def test_api_route(self):
        assert is_api_route("/api/subscription/status")
        assert not is_api_route("/payment")

    def test_admin_routes(self):
        assert is_admin_route("/admin")
        assert is_admin_route("/admin/payments")
        assert is_admin_route("/api/admin/payments")
        assert not is_admin_route("/api/subscription/status")

    def test_webhooks_are_public(self):
        assert is_public_route("/api/paypal/webhooks")
        assert not is_protected_route("/api/paypal/webhooks")

    @pytest.mark.parametrize(
        "path",
        [
            "/payment",
            "/success",
            "/api/subscription/status",
            "/api/subscription/usage",
            "/api/paypal/create-order",
            "/api/paypal/capture-order",
            "/api/subscription/pro-features",
        ],
    )
    def test_protected_routes(self, path):
        assert is_protected_route(path)

    def test_landing_page_is_not_protected(self):
        assert not is_protected_route("/")
        assert not requires_authentication("/")

    def test_requires_authentication_follows_config(self):
        assert requires_authentication("/api/paypal/capture-order")
        assert not requires_authentication("/api/paypal/webhooks")

    def test_only_pro_features_require_pro(self):
        assert requires_pro_subscription("/api/subscription/pro-features")
        assert not requires_pro_subscription("/api/subscription/status")
        assert not requires_pro_subscription("/payment")
