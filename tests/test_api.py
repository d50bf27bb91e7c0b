from __future__ import annotations

from conftest import make_active_account
from credential_service.domain.account import AccountStatus, Role
from credential_service.domain.lifecycle import RESET_REQUESTED_MESSAGE


def _login(client, email: str, password: str):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _bearer(response) -> dict[str, str]:
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def test_invite_accept_and_login_over_http(api_client, admin_headers, notifier):
    response = api_client.post(
        "/v1/admin/invitations", json={"email": "Bob@X.com", "role": "MANAGER"}, headers=admin_headers
    )
    assert response.status_code == 201
    body = response.json()
    assert body["email"] == "bob@x.com"
    assert body["status"] == "PENDING"
    assert "password_hash" not in body and "invite_token_hash" not in body

    token = notifier.last_to("bob@x.com").token
    accepted = api_client.post(
        "/v1/auth/accept-invite",
        json={"token": token, "first_name": "Bob", "last_name": "B", "password": "Secret123!"},
    )
    assert accepted.status_code == 200
    assert accepted.json() == {"message": "Account activated successfully. You can now log in."}

    again = api_client.post(
        "/v1/auth/accept-invite",
        json={"token": token, "first_name": "Bob", "last_name": "B", "password": "Secret123!"},
    )
    assert again.status_code == 400
    assert again.json()["detail"]["kind"] == "invalid_token"

    login = _login(api_client, "bob@x.com", "Secret123!")
    assert login.status_code == 200
    assert login.json()["token_type"] == "bearer"
    assert login.json()["account"]["role"] == "MANAGER"


def test_duplicate_invite_is_conflict(api_client, admin_headers):
    payload = {"email": "bob@x.com", "role": "STAFF"}
    assert api_client.post("/v1/admin/invitations", json=payload, headers=admin_headers).status_code == 201

    response = api_client.post("/v1/admin/invitations", json=payload, headers=admin_headers)

    assert response.status_code == 409
    assert response.json()["detail"] == {
        "kind": "duplicate_account",
        "message": "An account with this email already exists or has been invited.",
    }


def test_accept_invite_enforces_password_policy(api_client):
    response = api_client.post(
        "/v1/auth/accept-invite",
        json={"token": "whatever", "first_name": "Bob", "last_name": "B", "password": "alllowercase1!"},
    )

    assert response.status_code == 422
    assert response.json() == {
        "detail": {
            "kind": "validation_error",
            "message": "Password must contain at least one uppercase letter",
        }
    }
    assert "alllowercase1!" not in response.text


def test_rejected_reset_password_is_not_echoed(api_client):
    response = api_client.post(
        "/v1/auth/reset-password", json={"token": "abc", "new_password": "hunter2-weak"}
    )

    assert response.status_code == 422
    assert response.json()["detail"]["kind"] == "validation_error"
    assert "hunter2-weak" not in response.text
    assert "input" not in response.json()["detail"]


def test_admin_routes_require_admin(api_client, repository, hasher):
    assert api_client.get("/v1/admin/accounts").status_code == 401
    assert api_client.get("/v1/admin/accounts", headers={"Authorization": "Bearer nope"}).status_code == 401

    make_active_account(repository, hasher, email="staff@x.com", password="Secret123!")
    staff_headers = _bearer(_login(api_client, "staff@x.com", "Secret123!"))

    response = api_client.post("/v1/admin/invitations", json={"email": "e@x.com"}, headers=staff_headers)
    assert response.status_code == 403
    assert response.json()["detail"]["kind"] == "forbidden"


def test_login_failures_map_to_status_codes(api_client, repository, hasher):
    make_active_account(repository, hasher, email="bob@x.com", password="Secret123!")
    make_active_account(
        repository, hasher, email="off@x.com", password="Secret123!", status=AccountStatus.SUSPENDED
    )

    wrong = _login(api_client, "bob@x.com", "Wrong123!")
    unknown = _login(api_client, "ghost@x.com", "Wrong123!")
    suspended = _login(api_client, "off@x.com", "Secret123!")

    assert wrong.status_code == unknown.status_code == 401
    assert wrong.json() == unknown.json()
    assert suspended.status_code == 403
    assert suspended.json()["detail"]["kind"] == "account_not_active"


def test_login_is_rate_limited_until_success(api_client, repository, hasher):
    make_active_account(repository, hasher, email="bob@x.com", password="Secret123!")

    for _ in range(3):
        assert _login(api_client, "bob@x.com", "Wrong123!").status_code == 401
    limited = _login(api_client, "bob@x.com", "Secret123!")

    assert limited.status_code == 429
    assert limited.json()["detail"]["kind"] == "rate_limited"
    assert _login(api_client, "other@x.com", "Wrong123!").status_code == 401


def test_forgot_password_responses_do_not_reveal_accounts(api_client, repository, hasher, notifier):
    make_active_account(repository, hasher, email="bob@x.com", password="Secret123!")

    known = api_client.post("/v1/auth/forgot-password", json={"email": "bob@x.com"})
    unknown = api_client.post("/v1/auth/forgot-password", json={"email": "ghost@x.com"})

    assert known.status_code == unknown.status_code == 200
    assert known.json() == unknown.json() == {"message": RESET_REQUESTED_MESSAGE}
    assert [message.to_address for message in notifier.sent] == ["bob@x.com"]

    reset = api_client.post(
        "/v1/auth/reset-password",
        json={"token": notifier.last_to("bob@x.com").token, "new_password": "NewPass456!"},
    )
    assert reset.status_code == 200
    assert _login(api_client, "bob@x.com", "NewPass456!").status_code == 200


def test_refresh_returns_new_pair(api_client, repository, hasher):
    make_active_account(repository, hasher, email="bob@x.com", password="Secret123!")
    session = _login(api_client, "bob@x.com", "Secret123!").json()

    refreshed = api_client.post("/v1/auth/refresh", json={"refresh_token": session["refresh_token"]})
    rejected = api_client.post("/v1/auth/refresh", json={"refresh_token": session["access_token"]})

    assert refreshed.status_code == 200
    assert refreshed.json()["account"]["email"] == "bob@x.com"
    assert rejected.status_code == 400
    assert rejected.json()["detail"]["kind"] == "invalid_token"


def test_status_changes_and_listing(api_client, admin_headers, repository, hasher):
    bob = make_active_account(repository, hasher, email="bob@x.com", password="Secret123!")

    suspended = api_client.put(
        f"/v1/admin/accounts/{bob.account_id}/status", json={"status": "SUSPENDED"}, headers=admin_headers
    )
    assert suspended.status_code == 200
    assert suspended.json()["status"] == "SUSPENDED"

    pending = api_client.put(
        f"/v1/admin/accounts/{bob.account_id}/status", json={"status": "PENDING"}, headers=admin_headers
    )
    assert pending.status_code == 409
    assert pending.json()["detail"]["kind"] == "invalid_transition"

    listed = api_client.get("/v1/admin/accounts", params={"status": "SUSPENDED"}, headers=admin_headers)
    assert [account["email"] for account in listed.json()] == ["bob@x.com"]

    missing = api_client.put(
        "/v1/admin/accounts/does-not-exist/status", json={"status": "ACTIVE"}, headers=admin_headers
    )
    assert missing.status_code == 404


def test_update_account_and_resend_invitation(api_client, admin_headers, notifier):
    invited = api_client.post(
        "/v1/admin/invitations", json={"email": "bob@x.com"}, headers=admin_headers
    ).json()

    updated = api_client.patch(
        f"/v1/admin/accounts/{invited['account_id']}",
        json={"email": "robert@x.com", "role": "MANAGER"},
        headers=admin_headers,
    )
    assert updated.status_code == 200
    assert updated.json()["email"] == "robert@x.com"
    assert updated.json()["role"] == Role.MANAGER.value

    resent = api_client.post(f"/v1/admin/accounts/{invited['account_id']}/invitation", headers=admin_headers)
    assert resent.status_code == 202
    assert notifier.sent[-1].to_address == "robert@x.com"


def test_accounts_are_visible_to_self_and_admins_only(api_client, admin_headers, admin, repository, hasher):
    bob = make_active_account(repository, hasher, email="bob@x.com", password="Secret123!")
    bob_headers = _bearer(_login(api_client, "bob@x.com", "Secret123!"))

    me = api_client.get("/v1/accounts/me", headers=bob_headers)
    assert me.status_code == 200
    assert me.json()["account_id"] == bob.account_id

    assert api_client.get(f"/v1/accounts/{bob.account_id}", headers=bob_headers).status_code == 200
    assert api_client.get(f"/v1/accounts/{bob.account_id}", headers=admin_headers).status_code == 200

    other = api_client.get(f"/v1/accounts/{admin.account_id}", headers=bob_headers)
    assert other.status_code == 403
    assert other.json()["detail"]["message"] == "You can only access your own profile"


def test_audit_logs_paginate_with_cursor(api_client, admin_headers, admin):
    for index in range(3):
        api_client.post("/v1/admin/invitations", json={"email": f"user{index}@x.com"}, headers=admin_headers)

    first = api_client.get(
        "/v1/audit/logs", params={"event_type": "account.invited", "limit": 2}, headers=admin_headers
    )
    assert first.status_code == 200
    page = first.json()
    assert len(page["items"]) == 2
    assert all(item["actor"] == admin.account_id for item in page["items"])
    assert page["next_cursor"]

    second = api_client.get(
        "/v1/audit/logs",
        params={"event_type": "account.invited", "limit": 2, "cursor": page["next_cursor"]},
        headers=admin_headers,
    )
    assert len(second.json()["items"]) == 1
    assert second.json()["next_cursor"] is None

    bad = api_client.get("/v1/audit/logs", params={"cursor": "%%%"}, headers=admin_headers)
    assert bad.status_code == 400
    assert bad.json()["detail"]["kind"] == "invalid_cursor"


def test_unexpected_errors_return_generic_body(api_client, admin_headers, monkeypatch):
    lifecycle = api_client.app.state.lifecycle

    def explode(status=None):
        raise RuntimeError("connection reset by peer")

    monkeypatch.setattr(lifecycle, "list_accounts", explode)

    response = api_client.get("/v1/admin/accounts", headers=admin_headers)

    assert response.status_code == 500
    assert response.json() == {"detail": {"kind": "internal_error", "message": "Internal error, try again."}}
