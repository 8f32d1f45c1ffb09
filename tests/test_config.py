import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest

from mikroguard_core.config import ConfigError, Settings, load_settings

KEY = "B" * 43 + "="


def test_defaults():
    s = load_settings({})
    assert s == Settings()
    assert s.subnet == "10.10.10.0/24"
    assert s.allowed_ips == ("0.0.0.0/0",)
    assert s.routeros_port == 80
    assert s.cron_secret == ""
    assert s.expiry_check_interval == 0


def test_full_environment():
    s = load_settings({
        "ROUTEROS_HOST": "10.0.0.1",
        "ROUTEROS_USERNAME": "portal",
        "ROUTEROS_PASSWORD": " pass ",
        "ROUTEROS_USE_TLS": "yes",
        "ROUTEROS_VERIFY_TLS": "false",
        "ROUTEROS_TIMEOUT": "2.5",
        "WG_INTERFACE_NAME": "wg-office",
        "WG_SUBNET": "10.20.30.7/24",
        "WG_DNS": "10.20.30.1",
        "WG_DEFAULT_ALLOWED_IPS": "10.20.30.0/24, 192.168.88.0/24",
        "WG_ENDPOINT": "vpn.example.com:51820",
        "WG_PERSISTENT_KEEPALIVE": "0",
        "WG_EXPIRATION_DAYS": "30",
        "WG_SERVER_PUBLIC_KEY": KEY,
        "WG_IP_START": "10",
        "WG_IP_END": "99",
        "CRON_SECRET": "tick",
        "EXPIRY_CHECK_INTERVAL": "3600",
        "LOG_LEVEL": "debug",
    })
    assert s.routeros_host == "10.0.0.1"
    assert s.routeros_password == " pass "
    assert s.routeros_use_tls is True
    assert s.routeros_verify_tls is False
    assert s.routeros_port == 443
    assert s.routeros_timeout == 2.5
    assert s.interface_name == "wg-office"
    assert s.subnet == "10.20.30.0/24"
    assert s.allowed_ips == ("10.20.30.0/24", "192.168.88.0/24")
    assert s.persistent_keepalive == 0
    assert s.expiration_days == 30
    assert s.server_public_key == KEY
    assert (s.ip_start, s.ip_end) == (10, 99)
    assert s.expiry_check_interval == 3600
    assert s.log_level == "DEBUG"


def test_api_transport_ports():
    assert load_settings({"ROUTEROS_TRANSPORT": "api"}).routeros_port == 8728
    assert load_settings({"ROUTEROS_TRANSPORT": "API", "ROUTEROS_USE_TLS": "1"}).routeros_port == 8729
    assert load_settings({"ROUTEROS_TRANSPORT": "api", "ROUTEROS_PORT": "18728"}).routeros_port == 18728
    assert load_settings({}).routeros_plaintext_login is True
    assert load_settings({"ROUTEROS_PLAINTEXT_LOGIN": "no"}).routeros_plaintext_login is False


@pytest.mark.parametrize("env", [
    {"ROUTEROS_TRANSPORT": "ssh"},
    {"ROUTEROS_USE_TLS": "maybe"},
    {"ROUTEROS_PORT": "70000"},
    {"ROUTEROS_TIMEOUT": "soon"},
    {"WG_SUBNET": "not-a-net"},
    {"WG_SUBNET": "10.10.10.0/28"},
    {"WG_IP_START": "200", "WG_IP_END": "100"},
    {"WG_IP_END": "255"},
    {"WG_IP_CIDR_SUFFIX": "32"},
    {"WG_DEFAULT_ALLOWED_IPS": " , "},
    {"WG_SERVER_PUBLIC_KEY": "short"},
    {"WG_SERVER_PUBLIC_KEY": "!" * 44},
    {"WG_EXPIRATION_DAYS": "0"},
    {"WG_PERSISTENT_KEEPALIVE": "x"},
])
def test_invalid_values_raise(env):
    with pytest.raises(ConfigError):
        load_settings(env)


def test_larger_subnet_accepted():
    assert load_settings({"WG_SUBNET": "10.8.0.0/16"}).subnet == "10.8.0.0/16"


def test_server_key_uses_shared_validator():
    with pytest.raises(ConfigError) as exc:
        load_settings({"WG_SERVER_PUBLIC_KEY": "A" * 44})
    assert "44-character" in str(exc.value)
    assert load_settings({"WG_SERVER_PUBLIC_KEY": KEY}).server_public_key == KEY
