"""Static route table: which paths need a session, Pro, or a rate limit."""

from dataclasses import dataclass


@dataclass(frozen=True)
class RateLimit:
    requests: int
    window_seconds: int


@dataclass(frozen=True)
class RouteConfig:
    path: str
    requires_auth: bool = False
    requires_pro: bool = False
    rate_limit: RateLimit | None = None
    allowed_methods: tuple[str, ...] | None = None


ROUTE_CONFIGS: tuple[RouteConfig, ...] = (
    # Pages
    RouteConfig("/payment", requires_auth=True),
    RouteConfig("/success", requires_auth=True),
    # Subscription API
    RouteConfig(
        "/api/subscription/status",
        requires_auth=True,
        rate_limit=RateLimit(60, 60),
        allowed_methods=("GET", "POST"),
    ),
    RouteConfig(
        "/api/subscription/usage",
        requires_auth=True,
        rate_limit=RateLimit(100, 60),
        allowed_methods=("GET", "POST"),
    ),
    RouteConfig(
        "/api/subscription/check-export",
        requires_auth=True,
        rate_limit=RateLimit(200, 60),
        allowed_methods=("POST",),
    ),
    RouteConfig(
        "/api/subscription/pro-features",
        requires_auth=True,
        requires_pro=True,
        rate_limit=RateLimit(1000, 60),
        allowed_methods=("GET", "POST"),
    ),
    # PayPal API
    RouteConfig(
        "/api/paypal/create-order",
        requires_auth=True,
        rate_limit=RateLimit(10, 60),
        allowed_methods=("POST",),
    ),
    RouteConfig(
        "/api/paypal/capture-order",
        requires_auth=True,
        rate_limit=RateLimit(10, 60),
        allowed_methods=("POST",),
    ),
    RouteConfig("/api/paypal/webhooks", allowed_methods=("POST",)),
)

ADMIN_PREFIXES = ("/admin", "/api/admin")
PUBLIC_API_PREFIXES = ("/api/paypal/webhooks",)
PROTECTED_PREFIXES = (
    "/payment",
    "/success",
    "/api/subscription",
    "/api/paypal/create-order",
    "/api/paypal/capture-order",
)
PRO_ONLY_PREFIXES = ("/api/subscription/pro-features",)

SUCCESS_PAGE = "/success"
PAYMENT_PAGE = "/payment"


def _matches(path: str, prefixes: tuple[str, ...]) -> bool:
    return any(path.startswith(prefix) for prefix in prefixes)


def get_route_config(path: str) -> RouteConfig | None:
    """Longest configured prefix of ``path``, or None."""
    best: RouteConfig | None = None
    for config in ROUTE_CONFIGS:
        if path.startswith(config.path) and (best is None or len(config.path) > len(best.path)):
            best = config
    return best


def is_api_route(path: str) -> bool:
    return path.startswith("/api/")


def is_admin_route(path: str) -> bool:
    return _matches(path, ADMIN_PREFIXES)


def is_public_route(path: str) -> bool:
    return _matches(path, PUBLIC_API_PREFIXES)


def is_protected_route(path: str) -> bool:
    return _matches(path, PROTECTED_PREFIXES) or _matches(path, PRO_ONLY_PREFIXES)


def requires_authentication(path: str) -> bool:
    config = get_route_config(path)
    return config.requires_auth if config else False


def requires_pro_subscription(path: str) -> bool:
    config = get_route_config(path)
    if config is not None and config.requires_pro:
        return True
    return _matches(path, PRO_ONLY_PREFIXES)
