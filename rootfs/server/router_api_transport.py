"""Peer transport over the legacy RouterOS API (TCP 8728 / TLS 8729).

Wraps the ``RouterOS-api`` connection pool behind the same ``get``/``put``/
``patch``/``delete`` calls as :class:`routeros_rest.RouterRestClient`, so
:class:`peer_manager.PeerRepository` does not care which one it talks to.
REST paths map onto API commands: ``GET <menu>`` is ``print``, ``PUT <menu>``
is ``add``, ``PATCH <menu>/<id>`` is ``set`` and ``DELETE <menu>/<id>`` is
``remove``.
"""

import logging
import threading

from routeros_api import RouterOsApiPool
from routeros_api.exceptions import (
    RouterOsApiCommunicationError,
    RouterOsApiConnectionError,
    RouterOsApiError,
)

from errors import RouterRejected, RouterUnreachable

_log = logging.getLogger("mikroguard.router")


def _api_value(value):
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)


def _split_item_path(path):
    base, _, item_id = path.rstrip("/").rpartition("/")
    if not base or not item_id:
        raise ValueError(f"path has no item id: {path!r}")
    return base, item_id


def _record(raw):
    # Depending on the library version the id comes back as "id" or ".id".
    rec = dict(raw)
    if ".id" not in rec and "id" in rec:
        rec[".id"] = rec.pop("id")
    return rec


def _error_text(e):
    original = getattr(e, "original_message", None)
    if isinstance(original, bytes):
        original = original.decode(errors="replace")
    return original or str(e)


class RouterApiClient:
    """RouterOS API client holding one lazily opened pooled connection.

    Commands are serialized on a lock. A connection failure drops the pool;
    the next call reconnects. Nothing is retried within a call.
    """

    def __init__(self, host, port=None, username="admin", password="",
                 use_tls=False, verify_tls=True, timeout=10, plaintext_login=True):
        self.host = host
        self.port = port or (8729 if use_tls else 8728)
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.verify_tls = verify_tls
        self.timeout = timeout
        self.plaintext_login = plaintext_login
        self._pool = None
        self._api = None
        self._lock = threading.Lock()

    def _connect(self):
        self._pool = RouterOsApiPool(
            self.host,
            username=self.username,
            password=self.password,
            port=self.port,
            plaintext_login=self.plaintext_login,
            use_ssl=self.use_tls,
            ssl_verify=self.verify_tls,
            ssl_verify_hostname=self.verify_tls,
        )
        self._pool.socket_timeout = self.timeout
        self._api = self._pool.get_api()
        _log.info("connected to RouterOS API at %s:%s", self.host, self.port)

    def close(self):
        if self._pool is not None:
            try:
                self._pool.disconnect()
            except (RouterOsApiError, OSError) as e:
                _log.debug("disconnect from %s failed: %s", self.host, e)
        self._pool = None
        self._api = None

    def _call(self, op, path, action):
        with self._lock:
            try:
                if self._api is None:
                    self._connect()
                _log.debug("api %s %s", op, path)
                return action(self._api)
            except RouterOsApiCommunicationError as e:
                if self._api is None:
                    # rejected login
                    self.close()
                text = _error_text(e)
                _log.warning("router api %s %s failed: %s", op, path, text)
                raise RouterRejected(f"Router {op} {path} failed: {text}", detail=text)
            except (RouterOsApiConnectionError, OSError) as e:
                self.close()
                _log.warning("router api %s %s unreachable: %s", op, path, e)
                raise RouterUnreachable(f"Router API {self.host}:{self.port} error: {e}")
            except RouterOsApiError as e:
                # Unknown protocol state; the next call starts on a fresh connection.
                self.close()
                _log.warning("router api %s %s broke the session: %s", op, path, e)
                raise RouterUnreachable(f"Router API {self.host}:{self.port} error: {e}")

    def get(self, path):
        menu = path.rstrip("/")
        return self._call("print", menu, lambda api: [_record(r) for r in api.get_resource(menu).get()])

    def put(self, path, body):
        menu = path.rstrip("/")
        args = {k: _api_value(v) for k, v in body.items()}

        def add(api):
            reply = api.get_resource(menu).add(**args)
            done = getattr(reply, "done_message", None) or {}
            return {".id": done.get("ret")}

        return self._call("add", menu, add)

    def patch(self, path, body):
        menu, item_id = _split_item_path(path)
        args = {k: _api_value(v) for k, v in body.items()}
        self._call("set", menu, lambda api: api.get_resource(menu).set(id=item_id, **args))
        return None

    def delete(self, path):
        menu, item_id = _split_item_path(path)
        self._call("remove", menu, lambda api: api.get_resource(menu).remove(id=item_id))
        return None
