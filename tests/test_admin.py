from __future__ import annotations

import pytest

from conftest import ORG_ID, TEST_MASTER_KEY
from pulse_gateway.models.domain import KeyStatus
from pulse_gateway.models.errors import ProviderError


@pytest.mark.asyncio
async def test_requires_master_key(client):
    missing = await client.get("/admin/keys", headers={"x-pulse-org": ORG_ID})
    wrong = await client.get("/admin/keys", headers={"Authorization": "Bearer nope", "x-pulse-org": ORG_ID})

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert wrong.json()["error"]["message"] == "Invalid master key"


@pytest.mark.asyncio
async def test_requires_organization_header(client):
    response = await client.get("/admin/keys", headers={"Authorization": f"Bearer {TEST_MASTER_KEY}"})

    assert response.status_code == 400
    assert response.json()["error"]["param"] == "x-pulse-org"


@pytest.mark.asyncio
async def test_admin_disabled_without_master_key(client, test_app, admin_headers):
    test_app.state.settings = test_app.state.settings.model_copy(update={"master_key": None})

    response = await client.get("/admin/keys", headers=admin_headers)

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_upsert_organization(client, store, admin_headers):
    response = await client.put(
        "/admin/organization",
        headers=admin_headers,
        json={"name": "Acme GmbH", "plan": "PRO", "require_attribution": True},
    )

    assert response.status_code == 200
    assert response.json()["plan"] == "PRO"
    assert store.organizations[ORG_ID].require_attribution is True


@pytest.mark.asyncio
async def test_key_lifecycle(client, store, routed, admin_headers):
    created = await client.post(
        "/admin/keys",
        headers=admin_headers,
        json={"label": "backend", "default_team_id": "core", "allowed_models": ["gpt-4o-mini"]},
    )
    assert created.status_code == 201
    issued = created.json()
    secret = issued["secret"]
    assert secret.startswith("pulse_key_")
    assert issued["key_prefix"] == secret[:12]
    assert "key_hash" not in issued

    listed = await client.get("/admin/keys", headers=admin_headers)
    assert [k["id"] for k in listed.json()] == [issued["id"]]
    assert "secret" not in listed.json()[0]

    chat = await client.post(
        "/v1/chat/completions",
        headers={"Authorization": f"Bearer {secret}"},
        json={"model": "gpt-4o-mini", "messages": [{"role": "user", "content": "hi"}]},
    )
    assert chat.status_code == 200

    patched = await client.patch(f"/admin/keys/{issued['id']}", headers=admin_headers, json={"label": "renamed"})
    assert patched.json()["label"] == "renamed"
    assert patched.json()["allowed_models"] == ["gpt-4o-mini"]

    rotated = await client.post(f"/admin/keys/{issued['id']}/rotate", headers=admin_headers)
    assert rotated.status_code == 200
    new_secret = rotated.json()["secret"]
    assert new_secret != secret

    old = await client.post(
        "/v1/chat/completions",
        headers={"Authorization": f"Bearer {secret}"},
        json={"model": "gpt-4o-mini", "messages": [{"role": "user", "content": "hi"}]},
    )
    assert old.status_code == 401

    revoked = await client.delete(f"/admin/keys/{issued['id']}", headers=admin_headers)
    assert revoked.json()["status"] == "revoked"
    assert store.keys[issued["id"]].status is KeyStatus.REVOKED

    denied = await client.post(
        "/v1/chat/completions",
        headers={"Authorization": f"Bearer {new_secret}"},
        json={"model": "gpt-4o-mini", "messages": [{"role": "user", "content": "hi"}]},
    )
    assert denied.status_code == 403


@pytest.mark.asyncio
async def test_unknown_key_is_404(client, admin_headers):
    response = await client.patch("/admin/keys/missing", headers=admin_headers, json={"label": "x"})

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_provider_connection_and_route(client, store, admin_headers):
    created = await client.post(
        "/admin/providers",
        headers=admin_headers,
        json={"provider": "anthropic", "name": "main", "api_key": "sk-ant-admin-secret-9876"},
    )
    assert created.status_code == 201
    connection = created.json()
    assert connection["secret_last4"] == "9876"
    assert "sk-ant-admin-secret-9876" not in created.text
    assert "sk-ant-admin-secret-9876" not in store.connections[connection["id"]].encrypted_secret

    duplicate = await client.post(
        "/admin/providers",
        headers=admin_headers,
        json={"provider": "anthropic", "name": "main", "api_key": "sk-ant-other-0000"},
    )
    assert duplicate.status_code == 409

    tested = await client.post(f"/admin/providers/{connection['id']}/test", headers=admin_headers)
    assert tested.json()["ok"] is True

    route = await client.post(
        "/admin/routes",
        headers=admin_headers,
        json={"provider": "anthropic", "model": "claude-3-haiku", "priority": 5},
    )
    assert route.status_code == 201
    route_id = route.json()["id"]

    disabled = await client.patch(f"/admin/routes/{route_id}", headers=admin_headers, json={"enabled": False})
    assert disabled.json()["enabled"] is False
    assert disabled.json()["priority"] == 5

    paused = await client.patch(
        f"/admin/providers/{connection['id']}", headers=admin_headers, json={"status": "DISABLED"}
    )
    assert paused.json()["status"] == "DISABLED"

    listed = await client.get("/admin/routes", headers=admin_headers)
    assert [r["model"] for r in listed.json()] == ["claude-3-haiku"]


@pytest.mark.asyncio
async def test_failed_connection_test_reports_error(client, adapter, admin_headers):
    adapter.error = ProviderError("invalid x-api-key", upstream_status=401, provider="openai")
    created = await client.post(
        "/admin/providers",
        headers=admin_headers,
        json={"provider": "openai", "name": "main", "api_key": "sk-test-secret-1111"},
    )

    tested = await client.post(f"/admin/providers/{created.json()['id']}/test", headers=admin_headers)

    assert tested.status_code == 200
    assert tested.json()["ok"] is False
    assert tested.json()["code"] == "provider_error"


@pytest.mark.asyncio
async def test_starter_plan_limits_providers(client, store, admin_headers):
    store.organizations[ORG_ID].plan = "STARTER"
    body = {"provider": "openai", "name": "one", "api_key": "sk-test-secret-1111"}

    first = await client.post("/admin/providers", headers=admin_headers, json=body)
    second = await client.post("/admin/providers", headers=admin_headers, json={**body, "name": "two"})

    assert first.status_code == 201
    assert second.status_code == 403
    error = second.json()["error"]
    assert error["type"] == "upgrade_required"
    assert error["feature"] == "ai_routing_providers"
    assert error["required"] == "PRO"


@pytest.mark.asyncio
async def test_webhook_endpoints(client, store, webhook_http, admin_headers):
    created = await client.post(
        "/admin/webhooks",
        headers=admin_headers,
        json={"url": "https://hooks.example.com/pulse", "events": ["ai_request.completed"]},
    )
    assert created.status_code == 201
    webhook = created.json()
    assert webhook["secret"].startswith("whsec_")

    listed = await client.get("/admin/webhooks", headers=admin_headers)
    assert "secret" not in listed.json()[0]

    tested = await client.post(f"/admin/webhooks/{webhook['id']}/test", headers=admin_headers)
    assert tested.json() == {"delivered": True}
    assert webhook_http.received[0].headers["x-pulse-event"] == "webhook.test"

    paused = await client.patch(f"/admin/webhooks/{webhook['id']}", headers=admin_headers, json={"enabled": False})
    assert paused.json()["enabled"] is False

    deleted = await client.delete(f"/admin/webhooks/{webhook['id']}", headers=admin_headers)
    assert deleted.status_code == 204
    assert store.webhooks == {}


@pytest.mark.asyncio
async def test_webhook_rejects_unknown_event(client, admin_headers):
    response = await client.post(
        "/admin/webhooks",
        headers=admin_headers,
        json={"url": "https://hooks.example.com/pulse", "events": ["user.created"]},
    )

    assert response.status_code == 400
    assert response.json()["error"]["param"] == "events"


@pytest.mark.asyncio
async def test_policy_endpoints_enforce_on_chat(client, store, adapter, routed, issued, admin_headers):
    created = await client.post(
        "/admin/policies",
        headers=admin_headers,
        json={"name": "no-mini", "blocked_models": ["gpt-4o-mini"], "max_cost_per_day_eur": "10"},
    )
    assert created.status_code == 201
    policy = created.json()
    assert policy["blocked_models"] == ["gpt-4o-mini"]
    assert policy["enabled"] is True

    headers = {"Authorization": f"Bearer {issued.secret}"}
    body = {"model": "gpt-4o-mini", "messages": [{"role": "user", "content": "hello"}]}
    blocked = await client.post("/v1/chat/completions", headers=headers, json=body)
    assert blocked.status_code == 403
    assert blocked.json()["error"]["code"] == "policy_model_blocked"
    assert adapter.calls == []

    paused = await client.patch(f"/admin/policies/{policy['id']}", headers=admin_headers, json={"enabled": False})
    assert paused.json()["enabled"] is False
    allowed = await client.post("/v1/chat/completions", headers=headers, json=body)
    assert allowed.status_code == 200

    listed = await client.get("/admin/policies", headers=admin_headers)
    assert [p["name"] for p in listed.json()] == ["no-mini"]

    deleted = await client.delete(f"/admin/policies/{policy['id']}", headers=admin_headers)
    assert deleted.status_code == 204
    missing = await client.delete(f"/admin/policies/{policy['id']}", headers=admin_headers)
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "not_found"
    assert store.policies == {}
