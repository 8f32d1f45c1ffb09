import hmac
import logging
from datetime import datetime, timezone

from flask import Flask, Response, jsonify, request

from mikroguard_core.config import load_settings

settings = load_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    force=True,
)
logging.getLogger("werkzeug").setLevel(logging.WARNING)

import peer_manager
from client_config import (
    TEMPLATE_FIELDS,
    ClientTemplate,
    TemplateStore,
    build_client_config,
    render_qr_png,
)
from errors import (
    Forbidden,
    InvalidPublicKey,
    InvalidRequest,
    NotFound,
    PortalError,
    RouterError,
    Unauthorized,
)
from router_api_transport import RouterApiClient
from routeros_rest import RouterRestClient

_log = logging.getLogger("mikroguard.api")


def make_transport(cfg):
    common = dict(
        port=cfg.routeros_port,
        username=cfg.routeros_username,
        password=cfg.routeros_password,
        use_tls=cfg.routeros_use_tls,
        verify_tls=cfg.routeros_verify_tls,
        timeout=cfg.routeros_timeout,
    )
    if cfg.routeros_transport == "api":
        return RouterApiClient(cfg.routeros_host, plaintext_login=cfg.routeros_plaintext_login, **common)
    return RouterRestClient(cfg.routeros_host, **common)


def make_repository(cfg, transport):
    return peer_manager.PeerRepository(
        transport,
        cfg.interface_name,
        expiration_days=cfg.expiration_days,
        subnet=cfg.subnet,
        ip_start=cfg.ip_start,
        ip_end=cfg.ip_end,
        cidr_suffix=cfg.cidr_suffix,
    )


peers = make_repository(settings, make_transport(settings))
templates = TemplateStore(ClientTemplate.from_settings(settings))

app = Flask(__name__)


# ---------------------------------------------------
# Identity (set by the authenticating reverse proxy)
# ---------------------------------------------------

def _current_user():
    user = request.headers.get(settings.auth_user_header, "").strip()
    if not user:
        raise Unauthorized()
    return user


def _is_admin():
    raw = request.headers.get(settings.auth_groups_header, "")
    groups = {g.strip() for g in raw.split(",") if g.strip()}
    return settings.admin_group in groups


def _require_admin():
    user = _current_user()
    if not _is_admin():
        raise Forbidden()
    return user


def _json_body():
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _public_key_from(body):
    key = body.get("public_key")
    return key.strip() if isinstance(key, str) else key


# ---------------------------------------------------
# Helpers
# ---------------------------------------------------

def _server_public_key():
    try:
        return peers.server_public_key()
    except (RouterError, NotFound) as e:
        if settings.server_public_key:
            _log.warning("using configured server public key, router lookup failed: %s", e)
            return settings.server_public_key
        raise


def _client_config(username, peer, overrides=None):
    return build_client_config(
        username, peer.allowed_address, _server_public_key(), templates.get(), overrides,
    )


def _own_peer(user, message="No configuration found"):
    peer = peers.get_by_username(user)
    if peer is None:
        raise NotFound(message)
    return peer


@app.errorhandler(PortalError)
def _portal_error(e):
    if e.http_status >= 500:
        _log.error("%s %s failed: %s", request.method, request.path, e)
    else:
        _log.info("%s %s rejected: %s", request.method, request.path, e)
    return jsonify(ok=False, error=e.message), e.http_status


# ---------------------------------------------------
# Health
# ---------------------------------------------------

@app.route("/api/health")
def health():
    return jsonify(status="ok", ts=datetime.now(timezone.utc).isoformat())


# ---------------------------------------------------
# Self-service
# ---------------------------------------------------

@app.route("/api/config", methods=["GET"])
def config_get():
    peer = _own_peer(_current_user())
    return jsonify(ok=True, peer=peer.to_dict())


@app.route("/api/config", methods=["PUT"])
def config_put():
    """Create, re-key or renew the caller's peer depending on what exists."""
    user = _current_user()
    public_key = _public_key_from(_json_body())
    existing = peers.get_by_username(user)

    if existing and public_key:
        peers.update_public_key(user, public_key)
        return jsonify(ok=True, peer=peers.get_by_username(user).to_dict())

    if existing:
        peers.renew(user)
        return jsonify(ok=True, peer=peers.get_by_username(user).to_dict())

    if public_key:
        peer = peers.provision(user, public_key)
        return jsonify(ok=True, peer=peer.to_dict()), 201

    raise InvalidPublicKey("Public key is required to create a new configuration")


@app.route("/api/config", methods=["DELETE"])
def config_delete():
    user = _current_user()
    _own_peer(user)
    peers.delete(user)
    return jsonify(ok=True, message="Configuration deleted")


@app.route("/api/config/renew", methods=["POST"])
def config_renew():
    user = _current_user()
    existing = _own_peer(user, "No configuration found. Create one first.")
    cfg = _client_config(user, existing, _json_body())
    peers.renew(user)
    return jsonify(
        ok=True,
        peer=peers.get_by_username(user).to_dict(),
        config=cfg.to_dict(),
        config_file=cfg.render(),
    )


@app.route("/api/config/update-key", methods=["POST"])
def config_update_key():
    user = _current_user()
    existing = _own_peer(user, "No configuration found. Create one first.")
    public_key = _public_key_from(_json_body())
    if not public_key:
        raise InvalidPublicKey("Valid public key is required")
    peers.update_public_key(user, public_key)
    cfg = _client_config(user, existing)
    return jsonify(ok=True, config=cfg.to_dict(), config_file=cfg.render())


@app.route("/api/config/customize", methods=["POST"])
def config_customize():
    """Render the caller's config with body overrides; the router is not touched."""
    user = _current_user()
    peer = _own_peer(user, "No configuration found. Create one first.")
    cfg = _client_config(user, peer, _json_body())
    return jsonify(ok=True, config=cfg.to_dict(), config_file=cfg.render())


@app.route("/api/config/download")
def config_download():
    user = _current_user()
    peer = _own_peer(user)
    overrides = {
        "dns": request.args.get("dns") or None,
        "endpoint": request.args.get("endpoint") or None,
    }
    cfg = _client_config(user, peer, overrides)
    return Response(cfg.render(), mimetype="text/plain",
                    headers={"Content-Disposition": f'attachment; filename="{cfg.filename}"'})


@app.route("/api/config/qr")
def config_qr():
    user = _current_user()
    cfg = _client_config(user, _own_peer(user))
    return Response(render_qr_png(cfg.render()), mimetype="image/png")


@app.route("/api/config/template")
def config_template():
    _current_user()
    return jsonify(ok=True, template=templates.get().to_dict())


# ---------------------------------------------------
# Admin
# ---------------------------------------------------

@app.route("/api/admin/peers", methods=["GET"])
def admin_peers_list():
    _require_admin()
    return jsonify(ok=True, peers=[p.to_dict() for p in peers.list_all()])


@app.route("/api/admin/peers/<username>", methods=["GET"])
def admin_peer_get(username):
    _require_admin()
    peer = peers.get_by_username(username)
    if peer is None:
        raise NotFound()
    return jsonify(ok=True, peer=peer.to_dict())


@app.route("/api/admin/peers/<username>", methods=["DELETE"])
def admin_peer_delete(username):
    admin = _require_admin()
    peers.delete(username)
    _log.info("admin %s deleted peer %s", admin, username)
    return jsonify(ok=True, message=f"Peer {username} deleted")


_ADMIN_ACTIONS = {
    "enable": lambda name: peers.enable(name),
    "disable": lambda name: peers.disable(name),
    "renew": lambda name: peers.renew(name),
}


@app.route("/api/admin/peers/<username>", methods=["PATCH"])
def admin_peer_update(username):
    admin = _require_admin()
    action = _json_body().get("action")
    if action not in _ADMIN_ACTIONS:
        raise InvalidRequest(f"Invalid action {action!r}, expected one of: " + ", ".join(_ADMIN_ACTIONS))
    _ADMIN_ACTIONS[action](username)
    _log.info("admin %s: %s %s", admin, action, username)
    peer = peers.get_by_username(username)
    return jsonify(ok=True, peer=peer.to_dict() if peer else None)


@app.route("/api/admin/template", methods=["GET"])
def admin_template_get():
    _require_admin()
    return jsonify(ok=True, template=templates.get().to_dict())


@app.route("/api/admin/template", methods=["POST"])
def admin_template_update():
    _require_admin()
    body = _json_body()
    current = templates.update(**{k: body.get(k) for k in TEMPLATE_FIELDS})
    return jsonify(ok=True, template=current.to_dict())


@app.route("/api/admin/check-expired", methods=["POST"])
def admin_check_expired():
    _require_admin()
    expired = peer_manager.sweep(peers)
    return jsonify(ok=True, expired_count=len(expired), expired_peers=expired)


# ---------------------------------------------------
# Cron
# ---------------------------------------------------

@app.route("/api/cron/check-expired", methods=["GET", "POST"])
def cron_check_expired():
    if not settings.cron_secret:
        raise Forbidden("Cron endpoint disabled: CRON_SECRET is not set")
    if request.method == "POST":
        token = request.headers.get("X-Cron-Token", "")
    else:
        token = request.args.get("token", "")
    if not hmac.compare_digest(token.encode(), settings.cron_secret.encode()):
        raise Unauthorized()
    expired = peer_manager.sweep(peers)
    return jsonify(ok=True, message=f"Disabled {len(expired)} expired peers", expired_peers=expired)


if __name__ == "__main__":
    if settings.expiry_check_interval > 0:
        peer_manager.start_expiry_watcher(peers, settings.expiry_check_interval)
    app.run(host="0.0.0.0", port=settings.portal_port, threaded=True)
