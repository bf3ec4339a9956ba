from lendingdesk.models import TenantStatus, UserRole


def _tenant_payload(**overrides):
    payload = {
        "name": "Credito Facil",
        "email": "contato@creditofacil.com",
        "document": "12.345.678/0001-90",
        "phone": "(11) 4002-8922",
        "plan": "pro",
        "adminFirstName": "Rita",
        "adminLastName": "Lee",
        "adminEmail": "rita@creditofacil.com",
        "adminPassword": "rita-password",
    }
    payload.update(overrides)
    return payload


def test_suspended_tenant_is_blocked_except_for_account_status_routes(client, seed):
    tenant = seed.tenant(status=TenantStatus.SUSPENDED)
    headers = seed.headers(seed.user(tenant))

    blocked = client.get("/api/v1/accounts", headers=headers)
    assert blocked.status_code == 403
    assert blocked.json()["details"] == {"code": "ACCOUNT_SUSPENDED"}

    assert client.get("/api/auth/me", headers=headers).status_code == 200
    subscription = client.get("/api/tenant/subscription", headers=headers)
    assert subscription.status_code == 200
    assert subscription.json()["data"]["status"] == "suspended"


def test_past_due_tenant_keeps_working(client, seed):
    tenant = seed.tenant(status=TenantStatus.PAST_DUE)
    headers = seed.headers(seed.user(tenant))
    assert client.get("/api/v1/accounts", headers=headers).status_code == 200


def test_user_without_tenant_is_forbidden(client, seed):
    orphan = seed.user(None, role=UserRole.ADMIN)
    response = client.get("/api/v1/clients", headers=seed.headers(orphan))
    assert response.status_code == 403
    assert response.json()["success"] is False


def test_viewer_can_read_but_not_write(client, seed):
    tenant = seed.tenant()
    viewer = seed.user(tenant, role=UserRole.VIEWER)
    account = seed.account(tenant, opening="10.00")
    headers = seed.headers(viewer)

    assert client.get("/api/v1/accounts", headers=headers).status_code == 200
    assert client.get(f"/api/v1/accounts/{account.id}/transactions", headers=headers).status_code == 200
    denied = client.post(f"/api/accounts/{account.id}/deposit", json={"amount": "5"}, headers=headers)
    assert denied.status_code == 403
    assert denied.json()["message"] == "Access denied for the current role"


def test_operator_writes_but_cannot_delete(client, seed):
    tenant = seed.tenant()
    operator = seed.user(tenant, role=UserRole.OPERATOR)
    account = seed.account(tenant)
    borrower = seed.client(tenant)
    headers = seed.headers(operator)

    assert client.post(f"/api/accounts/{account.id}/deposit", json={"amount": "5"}, headers=headers).status_code == 201
    assert client.delete(f"/api/v1/accounts/{account.id}", headers=headers).status_code == 403
    assert client.delete(f"/api/v1/clients/{borrower.id}", headers=headers).status_code == 403


def test_tenant_rows_are_isolated(client, seed):
    mine = seed.tenant()
    theirs = seed.tenant()
    headers = seed.headers(seed.user(mine))
    foreign_account = seed.account(theirs, opening="100.00")
    foreign_client = seed.client(theirs)
    seed.account(mine, opening="10.00")

    assert client.get(f"/api/v1/accounts/{foreign_account.id}", headers=headers).status_code == 404
    deposit = client.post(f"/api/accounts/{foreign_account.id}/deposit", json={"amount": "1"}, headers=headers)
    assert deposit.status_code == 404
    loan = client.post(
        "/api/loans",
        json={
            "clientId": foreign_client.id,
            "principalAmount": "10",
            "interestRate": "0",
            "dueDate": "2025-01-01",
        },
        headers=headers,
    )
    assert loan.status_code == 404

    # a tenant_id query parameter is ignored for regular users
    scoped = client.get("/api/v1/accounts", params={"tenant_id": theirs.id}, headers=headers)
    assert [item["tenantId"] for item in scoped.json()["data"]] == [mine.id]


def test_super_admin_scopes_requests_with_tenant_id(client, seed):
    root = seed.user(role=UserRole.SUPER_ADMIN)
    first = seed.tenant()
    second = seed.tenant()
    member = seed.user(first)
    seed.account(first, owner=member, opening="10.00")
    seed.account(second, opening="20.00")
    headers = seed.headers(root)

    everything = client.get("/api/v1/accounts", headers=headers).json()
    assert everything["meta"]["total"] == 2

    scoped = client.get("/api/v1/accounts", params={"tenant_id": first.id}, headers=headers).json()
    assert [item["tenantId"] for item in scoped["data"]] == [first.id]

    total = client.get("/api/v1/accounts/total-balance", params={"tenant_id": second.id}, headers=headers)
    assert total.json()["data"]["balance"] == "20.00"


def test_super_admin_needs_tenant_scope_to_create_rows(client, seed):
    root = seed.user(role=UserRole.SUPER_ADMIN)
    tenant = seed.tenant()
    payload = {"name": "Cofre", "bankName": "Caixa", "branch": "1", "accountNumber": "9"}

    unscoped = client.post("/api/v1/accounts", json=payload, headers=seed.headers(root))
    assert unscoped.status_code == 400

    scoped = client.post(
        "/api/v1/accounts",
        params={"tenant_id": tenant.id},
        json=payload,
        headers=seed.headers(root),
    )
    assert scoped.status_code == 201
    assert scoped.json()["data"]["tenantId"] == tenant.id
    assert scoped.json()["data"]["userId"] is None


def test_tenant_administration(client, seed):
    root = seed.user(role=UserRole.SUPER_ADMIN)
    headers = seed.headers(root)

    created = client.post("/api/admin/tenants", json=_tenant_payload(), headers=headers)
    assert created.status_code == 201
    tenant = created.json()["data"]
    assert tenant["document"] == "12345678000190"
    assert tenant["phone"] == "1140028922"
    assert tenant["plan"] == "pro"
    assert tenant["status"] == "active"

    login = client.post("/api/auth/login", json={"email": "rita@creditofacil.com", "password": "rita-password"})
    assert login.status_code == 200
    assert login.json()["user"]["role"] == "admin"
    assert login.json()["user"]["tenantId"] == tenant["id"]
    tenant_admin = {"Authorization": f"Bearer {login.json()['token']}"}

    duplicate = client.post("/api/admin/tenants", json=_tenant_payload(adminEmail="other@x.com"), headers=headers)
    assert duplicate.status_code == 409

    suspended = client.patch(f"/api/admin/tenants/{tenant['id']}", json={"status": "suspended"}, headers=headers)
    assert suspended.status_code == 200
    assert suspended.json()["data"]["status"] == "suspended"
    assert client.get("/api/v1/clients", headers=tenant_admin).status_code == 403

    listing = client.get("/api/admin/tenants", params={"status": "suspended"}, headers=headers)
    assert [item["id"] for item in listing.json()["data"]] == [tenant["id"]]
    assert client.get(f"/api/admin/tenants/{tenant['id']}", headers=headers).status_code == 200
    assert client.get("/api/admin/tenants/9999", headers=headers).status_code == 404


def test_tenant_administration_is_super_admin_only(client, seed):
    admin = seed.user(seed.tenant())
    response = client.get("/api/admin/tenants", headers=seed.headers(admin))
    assert response.status_code == 403
    assert client.delete(f"/api/admin/tenants/{admin.tenant_id}", headers=seed.headers(admin)).status_code == 403


def test_canceling_a_tenant_keeps_the_row(client, seed):
    headers = seed.headers(seed.user(role=UserRole.SUPER_ADMIN))
    tenant = seed.tenant()
    seed.account(tenant)

    response = client.delete(f"/api/admin/tenants/{tenant.id}", headers=headers)

    assert response.status_code == 204
    assert response.content == b""
    fetched = client.get(f"/api/admin/tenants/{tenant.id}", headers=headers).json()["data"]
    assert fetched["status"] == TenantStatus.CANCELED.value
    listing = client.get("/api/v1/accounts", params={"tenant_id": tenant.id}, headers=headers).json()
    assert listing["meta"]["total"] == 1
    assert client.delete("/api/admin/tenants/9999", headers=headers).status_code == 404
