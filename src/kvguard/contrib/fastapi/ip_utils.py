"""Client IP extraction for FastAPI rate limiting and caching.

Proxy headers are only trusted when the direct connection comes from a
trusted proxy network; otherwise the connection address is used.
"""

import ipaddress
import logging

from starlette.requests import Request

logger = logging.getLogger(__name__)


# Default trusted proxy networks (Docker, Kubernetes, load balancers)
DEFAULT_TRUSTED_PROXY_NETWORKS: list[str] = [
    "10.0.0.0/8",
    "172.16.0.0/12",
    "192.168.0.0/16",
    "127.0.0.0/8",
    "::1/128",
    "fc00::/7",
]

Network = ipaddress.IPv4Network | ipaddress.IPv6Network


def _parse_networks(networks: list[str]) -> list[Network]:
    result: list[Network] = []
    for net in networks:
        try:
            result.append(ipaddress.ip_network(net, strict=False))
        except ValueError:
            logger.warning("Invalid network string: %s", net)
    return result


def _is_ip_in_networks(ip: str, networks: list[Network]) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
        return any(addr in net for net in networks)
    except ValueError:
        return False


def validate_ip(ip: str) -> str | None:
    """Validate and normalize an IP address string.

    Returns:
        Normalized IP string if valid, None otherwise.
    """
    try:
        return str(ipaddress.ip_address(ip.strip()))
    except ValueError:
        return None


def get_client_ip(request: Request, trusted_proxies: list[str] | None = None) -> str:
    """Extract the real client IP address from a request.

    Only trusts proxy headers (X-Forwarded-For, X-Real-IP) when the direct
    connection comes from a trusted proxy network. X-Forwarded-For is walked
    left to right and the first address outside the trusted networks wins.

    Args:
        request: The Starlette/FastAPI Request object.
        trusted_proxies: Trusted proxy networks in CIDR notation. Defaults to
            DEFAULT_TRUSTED_PROXY_NETWORKS (private networks).

    Returns:
        The client IP address string, or "unknown" if it cannot be determined.

    Example:
        >>> @app.get("/whoami")
        ... async def whoami(request: Request):
        ...     return {"ip": get_client_ip(request, ["10.0.0.0/8"])}
    """
    trusted_networks = _parse_networks(
        trusted_proxies if trusted_proxies is not None else DEFAULT_TRUSTED_PROXY_NETWORKS
    )

    direct_ip = request.client.host if request.client else None
    if not direct_ip:
        logger.warning("Request without client IP")
        return "unknown"

    validated_direct = validate_ip(direct_ip)
    if not validated_direct:
        # Test clients report a hostname ("testclient") here
        logger.debug("Non-IP client address: %s", direct_ip)
        return direct_ip

    if not _is_ip_in_networks(validated_direct, trusted_networks):
        return validated_direct

    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        for ip in forwarded_for.split(","):
            validated = validate_ip(ip)
            if validated and not _is_ip_in_networks(validated, trusted_networks):
                return validated

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        validated = validate_ip(real_ip)
        if validated:
            return validated

    return validated_direct


__all__ = [
    "DEFAULT_TRUSTED_PROXY_NETWORKS",
    "get_client_ip",
    "validate_ip",
]
