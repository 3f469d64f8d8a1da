# Client IP resolution for IP-keyed rate limiting.
from typing import Mapping, Optional

from studyforge.errors import IPUnresolvable


# Normalize a raw address; returns "" when nothing usable remains.
def normalize_ip(ip_address: str) -> str:
    trimmed = ip_address.strip()
    if not trimmed or trimmed.lower() == "unknown":
        return ""

    if trimmed.lower().startswith("::ffff:"):
        return trimmed[7:]

    if trimmed.startswith("["):
        closing = trimmed.find("]")
        if closing > 1:
            return trimmed[1:closing]

    # IPv4 with a forwarded port, e.g. "203.0.113.8:52144".
    if trimmed.count(":") == 1 and "." in trimmed:
        return trimmed.split(":", 1)[0]

    return trimmed


# Resolve the caller IP: X-Forwarded-For (first hop), X-Real-IP, then the peer.
def get_client_ip(headers: Mapping[str, str], peer_host: Optional[str] = None) -> Optional[str]:
    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for and forwarded_for.strip():
        normalized = normalize_ip(forwarded_for.split(",")[0])
        if normalized:
            return normalized

    real_ip = headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        normalized = normalize_ip(real_ip)
        if normalized:
            return normalized

    if peer_host:
        normalized = normalize_ip(peer_host)
        if normalized:
            return normalized

    return None


def require_client_ip(headers: Mapping[str, str], peer_host: Optional[str] = None) -> str:
    ip_address = get_client_ip(headers, peer_host)
    if ip_address is None:
        raise IPUnresolvable()
    return ip_address
