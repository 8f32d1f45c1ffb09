import ipaddress
import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from mikroguard_core.keys import KEY_BYTES, PUBLIC_KEY_LENGTH, is_valid_public_key

from errors import (
    AddressInUse,
    AlreadyExists,
    InvalidPublicKey,
    MalformedRouterResponse,
    NoAddressAvailable,
    NotFound,
    PortalError,
)

_log = logging.getLogger("mikroguard.peers")

PEERS_PATH = "/interface/wireguard/peers"
INTERFACES_PATH = "/interface/wireguard"

_TTL_RE = re.compile(r"ttl-(\d+)")
_BOOL_WORDS = {"true": True, "yes": True, "false": False, "no": False}

_ttl_thread: threading.Thread | None = None
_ttl_stop = threading.Event()


def _utcnow():
    return datetime.now(timezone.utc)


# ---------- Public keys ----------

def _require_valid_key(key):
    if not is_valid_public_key(key):
        raise InvalidPublicKey(
            f"Public key must be {PUBLIC_KEY_LENGTH} base64 characters encoding {KEY_BYTES} bytes"
        )


# ---------- TTL comments ----------

def ttl_comment(expires_at):
    return f"ttl-{int(expires_at.timestamp())}"


def parse_ttl_comment(comment):
    """Return the expiry encoded in *comment*, or ``None``."""
    m = _TTL_RE.search(comment or "")
    if not m:
        return None
    try:
        return datetime.fromtimestamp(int(m.group(1)), tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


# ---------- Models ----------

def _field(record, key, required=False):
    value = record.get(key)
    if value is None:
        if required:
            raise MalformedRouterResponse(f"router record missing {key!r}")
        return ""
    if not isinstance(value, str):
        raise MalformedRouterResponse(f"router field {key!r} is {type(value).__name__}, expected string")
    return value


def _disabled(value):
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, str) and value.lower() in _BOOL_WORDS:
        return _BOOL_WORDS[value.lower()]
    raise MalformedRouterResponse(f"router field 'disabled' has unexpected value {value!r}")


@dataclass(frozen=True)
class RouterPeerRecord:
    id: str
    interface: str
    name: str
    public_key: str
    allowed_address: str
    comment: str
    disabled: bool

    @classmethod
    def from_router(cls, record):
        if not isinstance(record, dict):
            raise MalformedRouterResponse(f"router peer record is {type(record).__name__}, expected object")
        return cls(
            id=_field(record, ".id", required=True),
            interface=_field(record, "interface", required=True),
            name=_field(record, "name"),
            public_key=_field(record, "public-key"),
            allowed_address=_field(record, "allowed-address"),
            comment=_field(record, "comment"),
            disabled=_disabled(record.get("disabled")),
        )


@dataclass
class Peer:
    name: str
    public_key: str
    allowed_address: str
    comment: str
    disabled: bool
    # RouterOS keeps no creation time; this is always the read time.
    created_at: datetime
    expires_at: datetime

    def to_dict(self):
        return {
            "name": self.name,
            "public_key": self.public_key,
            "allowed_address": self.allowed_address,
            "comment": self.comment,
            "disabled": self.disabled,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


# ---------- IP allocation ----------

def next_available_address(subnet, used_addresses, start_host=2, end_host=254, suffix="/32"):
    """First free ``a.b.c.N<suffix>`` for N in ``start_host..end_host``.

    Only the first three octets of *subnet* are used. *used_addresses* may
    carry a ``/prefix`` suffix, which is ignored.
    """
    net = ipaddress.IPv4Network(subnet, strict=False)
    base = str(net.network_address).rsplit(".", 1)[0]
    used = {a.split("/")[0].strip() for a in used_addresses if a}
    for host in range(start_host, end_host + 1):
        candidate = f"{base}.{host}"
        if candidate not in used:
            return f"{candidate}{suffix}"
    raise NoAddressAvailable(f"No available IP addresses in {base}.{start_host}-{end_host}")


# ---------- Repository ----------

class PeerRepository:
    """WireGuard peers of one interface, stored on the router.

    Nothing is cached: each call lists the router's peers again. Writes
    first resolve the router's ``.id`` for the user, then mutate it.
    """

    def __init__(self, transport, interface, expiration_days=90, subnet="10.10.10.0/24",
                 ip_start=2, ip_end=254, cidr_suffix="/32", clock=_utcnow):
        self.transport = transport
        self.interface = interface
        self.expiration_days = expiration_days
        self.subnet = subnet
        self.ip_start = ip_start
        self.ip_end = ip_end
        self.cidr_suffix = cidr_suffix
        self.clock = clock
        self._alloc_lock = threading.Lock()

    def _records(self):
        raw = self.transport.get(PEERS_PATH)
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise MalformedRouterResponse(f"peer list is {type(raw).__name__}, expected array")
        records = [RouterPeerRecord.from_router(r) for r in raw]
        return [r for r in records if r.interface == self.interface]

    def _new_expiry(self):
        return self.clock() + timedelta(days=self.expiration_days)

    def _to_peer(self, record, now):
        expires_at = parse_ttl_comment(record.comment)
        if expires_at is None:
            _log.debug("peer %s has no ttl comment (%r), assuming default expiry", record.name, record.comment)
            expires_at = now + timedelta(days=self.expiration_days)
        return Peer(
            name=record.name,
            public_key=record.public_key,
            allowed_address=record.allowed_address,
            comment=record.comment,
            disabled=record.disabled,
            created_at=now,
            expires_at=expires_at,
        )

    def _find(self, name):
        for record in self._records():
            if record.name == name:
                return record
        raise NotFound(f"Peer {name!r} not found")

    def _item_path(self, record):
        return f"{PEERS_PATH}/{record.id}"

    def list_all(self):
        now = self.clock()
        return [self._to_peer(r, now) for r in self._records()]

    def get_by_username(self, name):
        for peer in self.list_all():
            if peer.name == name:
                return peer
        return None

    def next_available_address(self):
        used = [r.allowed_address for r in self._records()]
        return next_available_address(self.subnet, used, self.ip_start, self.ip_end, self.cidr_suffix)

    def create(self, name, public_key, allowed_address):
        _require_valid_key(public_key)
        records = self._records()
        if any(r.name == name for r in records):
            raise AlreadyExists(f"Peer for {name!r} already exists")
        wanted = allowed_address.split("/")[0]
        taken = {r.allowed_address.split("/")[0] for r in records}
        if wanted in taken:
            raise AddressInUse(f"Address {allowed_address} is already assigned")
        self.transport.put(PEERS_PATH, {
            "interface": self.interface,
            "name": name,
            "public-key": public_key,
            "allowed-address": allowed_address,
            "comment": ttl_comment(self._new_expiry()),
        })
        _log.info("created peer %s at %s", name, allowed_address)

    def provision(self, name, public_key):
        """Allocate an address and create the peer as one serialized step."""
        _require_valid_key(public_key)
        with self._alloc_lock:
            address = self.next_available_address()
            self.create(name, public_key, address)
        peer = self.get_by_username(name)
        if peer is None:
            raise NotFound(f"Peer {name!r} missing after create")
        return peer

    def renew(self, name):
        record = self._find(name)
        self.transport.patch(self._item_path(record), {
            "comment": ttl_comment(self._new_expiry()),
            "disabled": "no",
        })
        _log.info("renewed peer %s", name)

    def disable(self, name):
        record = self._find(name)
        self.transport.patch(self._item_path(record), {"disabled": "yes"})
        _log.info("disabled peer %s", name)

    def enable(self, name):
        record = self._find(name)
        self.transport.patch(self._item_path(record), {"disabled": "no"})
        _log.info("enabled peer %s", name)

    def update_public_key(self, name, public_key):
        _require_valid_key(public_key)
        record = self._find(name)
        self.transport.patch(self._item_path(record), {"public-key": public_key})
        _log.info("updated public key of peer %s", name)

    def delete(self, name):
        record = self._find(name)
        self.transport.delete(self._item_path(record))
        _log.info("deleted peer %s", name)

    def server_public_key(self):
        raw = self.transport.get(INTERFACES_PATH)
        if not isinstance(raw, list):
            raise MalformedRouterResponse(f"interface list is {type(raw).__name__}, expected array")
        for item in raw:
            if not isinstance(item, dict):
                raise MalformedRouterResponse("interface record is not an object")
            if item.get("name") == self.interface:
                key = item.get("public-key")
                if not isinstance(key, str) or not key:
                    raise MalformedRouterResponse(f"interface {self.interface!r} has no public key")
                return key
        raise NotFound(f"WireGuard interface {self.interface!r} not found")


# ---------- Expiry ----------

def sweep(repository, now=None):
    """Disable every enabled peer whose expiry has passed.

    Returns the names that were disabled. A peer that fails to disable is
    logged and skipped.
    """
    now = now or repository.clock()
    disabled = []
    for peer in repository.list_all():
        if peer.disabled or peer.expires_at >= now:
            continue
        try:
            repository.disable(peer.name)
        except PortalError as e:
            _log.warning("failed to disable expired peer %s: %s", peer.name, e)
            continue
        disabled.append(peer.name)
    if disabled:
        _log.info("disabled %d expired peers: %s", len(disabled), ", ".join(disabled))
    else:
        _log.info("no expired peers found")
    return disabled


def _ttl_watcher(repository, interval):
    while not _ttl_stop.is_set():
        try:
            sweep(repository)
        except Exception:
            _log.exception("expiration check failed")
        _ttl_stop.wait(interval)


def start_expiry_watcher(repository, interval):
    global _ttl_thread
    if _ttl_thread and _ttl_thread.is_alive():
        return
    _ttl_stop.clear()
    _ttl_thread = threading.Thread(target=_ttl_watcher, args=(repository, interval), daemon=True)
    _ttl_thread.start()
    _log.info("expiry watcher running every %ss", interval)


def stop_expiry_watcher():
    global _ttl_thread
    _ttl_stop.set()
    if _ttl_thread:
        _ttl_thread.join(timeout=5)
        _ttl_thread = None
