import io
import logging
import threading
from dataclasses import asdict, dataclass, replace

import qrcode

from mikroguard_core.config import PLACEHOLDER_PRIVATE_KEY

from errors import InvalidTemplate

_log = logging.getLogger("mikroguard.config")

TEMPLATE_FIELDS = ("dns", "allowed_ips", "endpoint", "persistent_keepalive")


@dataclass(frozen=True)
class ClientTemplate:
    dns: str
    allowed_ips: tuple
    endpoint: str
    persistent_keepalive: int

    @classmethod
    def from_settings(cls, settings):
        return cls(
            dns=settings.dns,
            allowed_ips=tuple(settings.allowed_ips),
            endpoint=settings.endpoint,
            persistent_keepalive=settings.persistent_keepalive,
        )

    def to_dict(self):
        d = asdict(self)
        d["allowed_ips"] = list(self.allowed_ips)
        return d


@dataclass(frozen=True)
class ClientConfig:
    username: str
    private_key: str
    address: str
    dns: str
    public_key: str
    allowed_ips: tuple
    endpoint: str
    persistent_keepalive: int

    @property
    def filename(self):
        return f"{self.username}-wireguard.conf"

    def render(self):
        return render_client_config(
            self.address, self.public_key,
            ClientTemplate(self.dns, self.allowed_ips, self.endpoint, self.persistent_keepalive),
            private_key=self.private_key,
        )

    def to_dict(self):
        d = asdict(self)
        d["allowed_ips"] = list(self.allowed_ips)
        return d


def _clean_changes(changes):
    """Validate template fields; ``None`` values mean "leave unchanged"."""
    clean = {}
    for key, value in changes.items():
        if key not in TEMPLATE_FIELDS:
            raise InvalidTemplate(f"Unknown template field {key!r}")
        if value is None:
            continue
        if key in ("dns", "endpoint"):
            if not isinstance(value, str) or not value.strip():
                raise InvalidTemplate(f"{key} must be a non-empty string")
            value = value.strip()
        elif key == "allowed_ips":
            if isinstance(value, str):
                value = value.split(",")
            if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
                raise InvalidTemplate("allowed_ips must be a list of strings")
            value = tuple(v.strip() for v in value if v.strip())
            if not value:
                raise InvalidTemplate("allowed_ips must list at least one range")
        elif key == "persistent_keepalive":
            if isinstance(value, bool):
                raise InvalidTemplate("persistent_keepalive must be an integer")
            try:
                value = int(value)
            except (TypeError, ValueError):
                raise InvalidTemplate("persistent_keepalive must be an integer")
            if not 0 <= value <= 65535:
                raise InvalidTemplate("persistent_keepalive must be 0-65535")
        clean[key] = value
    return clean


class TemplateStore:
    """Process-wide client template, replaced as a whole under a lock.

    Memory only: a restart goes back to the configured defaults.
    """

    def __init__(self, initial):
        self._template = initial
        self._lock = threading.Lock()

    def get(self):
        with self._lock:
            return self._template

    def update(self, **changes):
        clean = _clean_changes(changes)
        with self._lock:
            self._template = replace(self._template, **clean)
            current = self._template
        _log.info("client template updated: %s", ", ".join(sorted(clean)) or "no changes")
        return current


def render_client_config(address, server_public_key, template, private_key=PLACEHOLDER_PRIVATE_KEY):
    lines = [
        "[Interface]",
        f"PrivateKey = {private_key}",
        f"Address = {address}",
        f"DNS = {template.dns}",
        "",
        "[Peer]",
        f"PublicKey = {server_public_key}",
        f"AllowedIPs = {', '.join(template.allowed_ips)}",
        f"Endpoint = {template.endpoint}",
        f"PersistentKeepalive = {template.persistent_keepalive}",
    ]
    return "\n".join(lines) + "\n"


def build_client_config(username, address, server_public_key, template, overrides=None):
    """Merge per-request *overrides* over *template* into a :class:`ClientConfig`.

    The private key is always the placeholder; users keep their own.
    """
    clean = _clean_changes({k: v for k, v in (overrides or {}).items() if k in TEMPLATE_FIELDS})
    effective = replace(template, **clean)
    return ClientConfig(
        username=username,
        private_key=PLACEHOLDER_PRIVATE_KEY,
        address=address,
        dns=effective.dns,
        public_key=server_public_key,
        allowed_ips=effective.allowed_ips,
        endpoint=effective.endpoint,
        persistent_keepalive=effective.persistent_keepalive,
    )


def render_qr_png(config_text):
    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_L, box_size=8, border=2)
    qr.add_data(config_text)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
