import ipaddress
import os
from dataclasses import dataclass

from mikroguard_core.keys import KEY_BYTES, PUBLIC_KEY_LENGTH, is_valid_public_key

DEFAULTS = {
    "interface_name": "wireguard1",
    "subnet": "10.10.10.0/24",
    "dns": "1.1.1.1",
    "allowed_ips": "0.0.0.0/0",
    "persistent_keepalive": 25,
    "expiration_days": 90,
    "ip_start": 2,
    "ip_end": 254,
    "cidr_suffix": "/32",
}

PORTAL_PORT = 8099
ROUTEROS_REST_PORT = 80
ROUTEROS_REST_TLS_PORT = 443
ROUTEROS_API_PORT = 8728
ROUTEROS_API_TLS_PORT = 8729
ROUTEROS_TIMEOUT = 10
ADMIN_GROUP = "wireguard-admins"
AUTH_USER_HEADER = "X-Remote-User"
AUTH_GROUPS_HEADER = "X-Remote-Groups"
PLACEHOLDER_PRIVATE_KEY = "YOUR_PRIVATE_KEY_HERE"

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off", "")


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class Settings:
    routeros_host: str = "192.168.88.1"
    routeros_port: int = ROUTEROS_REST_PORT
    routeros_username: str = "admin"
    routeros_password: str = ""
    routeros_use_tls: bool = False
    routeros_verify_tls: bool = True
    routeros_timeout: float = ROUTEROS_TIMEOUT
    routeros_transport: str = "rest"
    routeros_plaintext_login: bool = True
    interface_name: str = DEFAULTS["interface_name"]
    subnet: str = DEFAULTS["subnet"]
    dns: str = DEFAULTS["dns"]
    allowed_ips: tuple = (DEFAULTS["allowed_ips"],)
    endpoint: str = ""
    persistent_keepalive: int = DEFAULTS["persistent_keepalive"]
    expiration_days: int = DEFAULTS["expiration_days"]
    server_public_key: str | None = None
    ip_start: int = DEFAULTS["ip_start"]
    ip_end: int = DEFAULTS["ip_end"]
    cidr_suffix: str = DEFAULTS["cidr_suffix"]
    cron_secret: str = ""
    admin_group: str = ADMIN_GROUP
    auth_user_header: str = AUTH_USER_HEADER
    auth_groups_header: str = AUTH_GROUPS_HEADER
    expiry_check_interval: int = 0
    log_level: str = "INFO"
    portal_port: int = PORTAL_PORT


def _int(env, name, default, lo=None, hi=None):
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
    if lo is not None and value < lo:
        raise ConfigError(f"{name} must be >= {lo}, got {value}")
    if hi is not None and value > hi:
        raise ConfigError(f"{name} must be <= {hi}, got {value}")
    return value


def _bool(env, name, default):
    raw = env.get(name)
    if raw is None:
        return default
    raw = raw.strip().lower()
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def _split_list(raw):
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _check_key(name, key):
    if not is_valid_public_key(key):
        raise ConfigError(f"{name} must be a {PUBLIC_KEY_LENGTH}-character base64 WireGuard key of {KEY_BYTES} bytes")


def load_settings(environ=None):
    """Build :class:`Settings` from environment variables.

    Unset variables fall back to :data:`DEFAULTS`. Malformed values raise
    :class:`ConfigError` so a misconfigured portal refuses to start.
    """
    env = os.environ if environ is None else environ

    transport = env.get("ROUTEROS_TRANSPORT", "rest").strip().lower() or "rest"
    if transport not in ("rest", "api"):
        raise ConfigError(f"ROUTEROS_TRANSPORT must be 'rest' or 'api', got {transport!r}")
    use_tls = _bool(env, "ROUTEROS_USE_TLS", False)
    if transport == "rest":
        default_port = ROUTEROS_REST_TLS_PORT if use_tls else ROUTEROS_REST_PORT
    else:
        default_port = ROUTEROS_API_TLS_PORT if use_tls else ROUTEROS_API_PORT

    subnet = env.get("WG_SUBNET", "").strip() or DEFAULTS["subnet"]
    try:
        net = ipaddress.IPv4Network(subnet, strict=False)
    except ValueError:
        raise ConfigError(f"WG_SUBNET must be an IPv4 CIDR (e.g. 10.10.10.0/24), got {subnet!r}")
    if net.prefixlen > 24:
        raise ConfigError(f"WG_SUBNET must be /24 or larger, got {subnet!r}")

    ip_start = _int(env, "WG_IP_START", DEFAULTS["ip_start"], 1, 254)
    ip_end = _int(env, "WG_IP_END", DEFAULTS["ip_end"], 1, 254)
    if ip_start > ip_end:
        raise ConfigError(f"WG_IP_START ({ip_start}) is above WG_IP_END ({ip_end})")

    cidr_suffix = env.get("WG_IP_CIDR_SUFFIX", "").strip() or DEFAULTS["cidr_suffix"]
    if not cidr_suffix.startswith("/"):
        raise ConfigError(f"WG_IP_CIDR_SUFFIX must start with '/', got {cidr_suffix!r}")

    allowed_ips = _split_list(env.get("WG_DEFAULT_ALLOWED_IPS", DEFAULTS["allowed_ips"]))
    if not allowed_ips:
        raise ConfigError("WG_DEFAULT_ALLOWED_IPS must list at least one range")

    server_public_key = env.get("WG_SERVER_PUBLIC_KEY", "").strip() or None
    if server_public_key:
        _check_key("WG_SERVER_PUBLIC_KEY", server_public_key)

    timeout = env.get("ROUTEROS_TIMEOUT", "").strip()
    try:
        timeout = float(timeout) if timeout else float(ROUTEROS_TIMEOUT)
    except ValueError:
        raise ConfigError(f"ROUTEROS_TIMEOUT must be a number, got {timeout!r}")

    return Settings(
        routeros_host=env.get("ROUTEROS_HOST", "").strip() or Settings.routeros_host,
        routeros_port=_int(env, "ROUTEROS_PORT", default_port, 1, 65535),
        routeros_username=env.get("ROUTEROS_USERNAME", "").strip() or Settings.routeros_username,
        routeros_password=env.get("ROUTEROS_PASSWORD", ""),
        routeros_use_tls=use_tls,
        routeros_verify_tls=_bool(env, "ROUTEROS_VERIFY_TLS", True),
        routeros_timeout=timeout,
        routeros_transport=transport,
        routeros_plaintext_login=_bool(env, "ROUTEROS_PLAINTEXT_LOGIN", True),
        interface_name=env.get("WG_INTERFACE_NAME", "").strip() or DEFAULTS["interface_name"],
        subnet=str(net),
        dns=env.get("WG_DNS", "").strip() or DEFAULTS["dns"],
        allowed_ips=allowed_ips,
        endpoint=env.get("WG_ENDPOINT", "").strip(),
        persistent_keepalive=_int(env, "WG_PERSISTENT_KEEPALIVE", DEFAULTS["persistent_keepalive"], 0, 65535),
        expiration_days=_int(env, "WG_EXPIRATION_DAYS", DEFAULTS["expiration_days"], 1),
        server_public_key=server_public_key,
        ip_start=ip_start,
        ip_end=ip_end,
        cidr_suffix=cidr_suffix,
        cron_secret=env.get("CRON_SECRET", ""),
        admin_group=env.get("ADMIN_GROUP", "").strip() or ADMIN_GROUP,
        auth_user_header=env.get("AUTH_USER_HEADER", "").strip() or AUTH_USER_HEADER,
        auth_groups_header=env.get("AUTH_GROUPS_HEADER", "").strip() or AUTH_GROUPS_HEADER,
        expiry_check_interval=_int(env, "EXPIRY_CHECK_INTERVAL", 0, 0),
        log_level=(env.get("LOG_LEVEL", "").strip() or "INFO").upper(),
        portal_port=_int(env, "PORTAL_PORT", PORTAL_PORT, 1, 65535),
    )
