"""
Auth tests.

Covers:
    1. API_KEYS parsing (roles, actor ids, unknown roles)
    2. Key-based identity on a small app with auth enabled
    3. require_role grants (admin includes client and system)
    4. Header identity with auth disabled
    5. Configuration guards
"""

import pytest
from flask import Flask, jsonify

from portal.auth import current_actor, init_auth, parse_api_keys, require_role
from portal.config import Config, ProductionConfig
from portal.workflow.actors import ActorRole

KEYS = "k-admin:admin:alice,k-client:client:c-42,k-billing:system"


def _make_app(enabled=True, keys=KEYS):
    app = Flask(__name__)
    app.config.update(TESTING=True, API_AUTH_ENABLED="true" if enabled else "false", API_KEYS=keys)
    init_auth(app)

    @app.route("/api/v1/whoami", methods=["GET", "POST"])
    def whoami():
        actor = current_actor()
        return jsonify({"role": actor.role.value, "actor_id": actor.actor_id})

    @app.route("/api/v1/billing", methods=["POST"])
    @require_role("system")
    def billing():
        return jsonify({"ok": True})

    @app.route("/api/v1/client-area")
    @require_role("client")
    def client_area():
        return jsonify({"ok": True})

    @app.route("/api/v1/health/ready")
    def ready():
        return jsonify({"status": "ok"})

    return app


# ═══════════════════════════════════════════════════════════════════════════
#  Key parsing
# ═══════════════════════════════════════════════════════════════════════════

class TestParseApiKeys:

    def test_roles_and_actor_ids(self):
        keys = parse_api_keys(KEYS)
        assert keys["k-admin"].role is ActorRole.ADMIN
        assert keys["k-admin"].actor_id == "alice"
        assert keys["k-client"].actor_id == "c-42"
        assert keys["k-billing"].role is ActorRole.SYSTEM
        assert keys["k-billing"].actor_id is None

    def test_missing_or_unknown_role_is_client(self):
        keys = parse_api_keys("bare, odd:root:x")
        assert keys["bare"].role is ActorRole.CLIENT
        assert keys["odd"].role is ActorRole.CLIENT
        assert keys["odd"].actor_id == "x"

    @pytest.mark.parametrize("raw", ["", "  ", ",,", None])
    def test_empty(self, raw):
        assert parse_api_keys(raw) == {}


# ═══════════════════════════════════════════════════════════════════════════
#  Auth enabled
# ═══════════════════════════════════════════════════════════════════════════

class TestKeyAuth:

    def test_missing_key(self):
        res = _make_app().test_client().get("/api/v1/whoami")
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"

    def test_invalid_key(self):
        res = _make_app().test_client().get("/api/v1/whoami", headers={"X-API-Key": "nope"})
        assert res.status_code == 401

    def test_key_resolves_actor(self):
        res = _make_app().test_client().get("/api/v1/whoami", headers={"X-API-Key": "k-client"})
        assert res.get_json() == {"role": "client", "actor_id": "c-42"}

    def test_key_in_query_string(self):
        res = _make_app().test_client().get("/api/v1/whoami?api_key=k-admin")
        assert res.get_json()["actor_id"] == "alice"

    def test_role_headers_ignored_when_enabled(self):
        res = _make_app().test_client().get(
            "/api/v1/whoami", headers={"X-API-Key": "k-client", "X-Portal-Role": "admin"})
        assert res.get_json()["role"] == "client"

    def test_health_is_open(self):
        res = _make_app().test_client().get("/api/v1/health/ready")
        assert res.status_code == 200

    def test_no_keys_configured(self):
        res = _make_app(keys="").test_client().get("/api/v1/whoami", headers={"X-API-Key": "x"})
        assert res.status_code == 500
        assert res.get_json()["code"] == "ERR_INTERNAL"


class TestRequireRole:

    @pytest.mark.parametrize("key,expected", [
        ("k-billing", 200),
        ("k-admin", 200),
        ("k-client", 403),
    ])
    def test_system_endpoint(self, key, expected):
        res = _make_app().test_client().post("/api/v1/billing", json={}, headers={"X-API-Key": key})
        assert res.status_code == expected

    def test_forbidden_details(self):
        res = _make_app().test_client().get("/api/v1/client-area", headers={"X-API-Key": "k-billing"})
        body = res.get_json()
        assert body["code"] == "ERR_FORBIDDEN"
        assert body["details"] == {"role": "system", "required": "client"}

    def test_form_post_rejected_before_auth(self):
        res = _make_app().test_client().post(
            "/api/v1/billing", data="a=1", content_type="application/x-www-form-urlencoded",
            headers={"X-API-Key": "k-billing"})
        assert res.status_code == 415
        assert res.get_json()["code"] == "ERR_UNSUPPORTED_MEDIA_TYPE"


# ═══════════════════════════════════════════════════════════════════════════
#  Auth disabled
# ═══════════════════════════════════════════════════════════════════════════

class TestHeaderIdentity:

    def test_defaults_to_admin(self):
        res = _make_app(enabled=False).test_client().get("/api/v1/whoami")
        assert res.get_json() == {"role": "admin", "actor_id": None}

    def test_role_and_user_headers(self):
        res = _make_app(enabled=False).test_client().get(
            "/api/v1/whoami", headers={"X-Portal-Role": "Client", "X-Portal-User": "c-7"})
        assert res.get_json() == {"role": "client", "actor_id": "c-7"}

    def test_unknown_role_header_falls_back(self):
        res = _make_app(enabled=False).test_client().get(
            "/api/v1/whoami", headers={"X-Portal-Role": "root"})
        assert res.get_json()["role"] == "admin"


# ═══════════════════════════════════════════════════════════════════════════
#  Configuration guards
# ═══════════════════════════════════════════════════════════════════════════

class TestConfigGuards:

    def test_defaults_are_valid(self):
        Config()

    @pytest.mark.parametrize("attr,value", [
        ("WORKFLOW_STUCK_THRESHOLD_DAYS", 0),
        ("WORKFLOW_ACTION_REMINDER_DAYS", -1),
        ("WORKFLOW_ACTION_REMINDER_REPEAT_DAYS", 0),
        ("SCHEDULER_INTERVAL_SECONDS", 0),
    ])
    def test_rejects_bad_workflow_settings(self, monkeypatch, attr, value):
        monkeypatch.setattr(Config, attr, value)
        with pytest.raises(RuntimeError, match=attr):
            Config()

    def test_reminders_may_be_disabled(self, monkeypatch):
        monkeypatch.setattr(Config, "WORKFLOW_ACTION_REMINDER_DAYS", 0)
        Config()

    def test_production_requires_database_url(self, monkeypatch):
        monkeypatch.setattr(ProductionConfig, "SQLALCHEMY_DATABASE_URI", None)
        with pytest.raises(RuntimeError, match="DATABASE_URL"):
            ProductionConfig()
