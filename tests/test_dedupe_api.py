"""Integration tests for the dedupe REST API.

Uses the in-memory repository and scripted CRM from conftest, wired onto
app.state the way the lifespan wires the real services, and httpx
AsyncClient over ASGITransport. Tenant and CRM dependencies are overridden.
"""

from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.dedupe.core.tenant import TenantContext
from src.dedupe.duplicates.errors import UpstreamRejected, UpstreamUnavailable
from src.dedupe.duplicates.schemas import FetchedContact, Plan, PlanType

TENANT = "tenant-alpha"


def _make_mock_app():
    """Create a minimal FastAPI app with the v1 router and error handlers."""
    from fastapi import FastAPI

    from src.dedupe.api.errors import register_exception_handlers
    from src.dedupe.api.v1 import health
    from src.dedupe.api.v1.router import router

    app = FastAPI()
    register_exception_handlers(app)
    app.include_router(health.router)
    app.include_router(router)
    return app


def _abc() -> list[FetchedContact]:
    return [
        FetchedContact(hubspot_id="A", email="ann@example.com", first_name="Ann", phone="111"),
        FetchedContact(hubspot_id="B", email="ann@example.com", first_name="Anne", phone="222"),
        FetchedContact(hubspot_id="C", email="ann@example.com", company="Old Co"),
    ]


@pytest_asyncio.fixture
async def api(repo, crm, provisioner, quota_gate, resolver, exporter, removals, runner):
    """Yield (client, app) with every dedupe service on app.state."""
    from src.dedupe.api.deps import get_crm_adapter, get_tenant

    app = _make_mock_app()

    async def _tenant() -> TenantContext:
        return TenantContext(tenant_id=app.state.test_tenant)

    async def _crm():
        return crm

    app.dependency_overrides[get_tenant] = _tenant
    app.dependency_overrides[get_crm_adapter] = _crm

    app.state.test_tenant = TENANT
    app.state.dedupe_repository = repo
    app.state.plan_provisioner = provisioner
    app.state.quota_gate = quota_gate
    app.state.merge_resolver = resolver
    app.state.contact_exporter = exporter
    app.state.removal_queue = removals
    app.state.process_runner = runner

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client, app


# ── Processes ────────────────────────────────────────────────────────────────


class TestProcessEndpoints:
    @pytest.mark.asyncio
    async def test_start_and_poll(self, api, crm, runner):
        client, _ = api
        crm.pages = [_abc()]

        response = await client.post("/api/v1/processes", json={"name": "Cleanup"})
        assert response.status_code == 202
        assert response.json()["process_name"] == "fetching"

        await runner.wait_idle()
        response = await client.get("/api/v1/processes/latest")
        assert response.status_code == 200
        body = response.json()
        assert body["process_name"] == "manually merge"
        assert body["count"] == 3
        assert body["filters"] == ["same_email"]

    @pytest.mark.asyncio
    async def test_latest_without_run(self, api):
        client, _ = api

        response = await client.get("/api/v1/processes/latest")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_second_start_while_active(self, api, seed_groups):
        client, _ = api
        await seed_groups([_abc()])

        response = await client.post("/api/v1/processes", json={"name": "Again"})

        assert response.status_code == 409
        assert response.json()["error"] == "RunAlreadyActive"

    @pytest.mark.asyncio
    async def test_unknown_filter(self, api):
        client, _ = api

        response = await client.post(
            "/api/v1/processes", json={"name": "Bad", "filters": ["fuzzy_name"]}
        )

        assert response.status_code == 422
        assert response.json()["error"] == "InvalidFilter"

    @pytest.mark.asyncio
    async def test_finish_then_download_export(self, api, runner, seed_groups):
        client, app = api
        await seed_groups([_abc()])

        response = await client.post("/api/v1/processes/latest/finish")
        assert response.status_code == 202
        assert response.json()["process_name"] == "update hubspot"
        await runner.wait_idle()

        latest = (await client.get("/api/v1/processes/latest")).json()
        assert latest["process_name"] == "finished"
        download = await client.get(latest["export_link"])
        assert download.status_code == 200
        assert download.headers["content-type"].startswith("text/csv")
        assert download.text.splitlines()[0].startswith("ID,HubSpot ID,Email")

        app.state.test_tenant = "tenant-beta"
        assert (await client.get(latest["export_link"])).status_code == 404

    @pytest.mark.asyncio
    async def test_resume_requires_exceed(self, api, seed_groups):
        client, _ = api
        await seed_groups([_abc()])

        response = await client.post("/api/v1/processes/latest/resume")

        assert response.status_code == 409
        assert response.json()["error"] == "InvalidProcessTransition"

    @pytest.mark.asyncio
    async def test_history(self, api, seed_groups):
        client, _ = api
        run, _ = await seed_groups([_abc()])

        response = await client.get("/api/v1/processes", params={"limit": 5})

        assert response.status_code == 200
        assert [r["id"] for r in response.json()] == [run.id]


# ── Groups ───────────────────────────────────────────────────────────────────


class TestGroupEndpoints:
    @pytest.mark.asyncio
    async def test_pagination(self, api, seed_groups):
        client, _ = api
        await seed_groups(
            [
                [
                    FetchedContact(hubspot_id=f"p{i}", email=f"{i}@example.com"),
                    FetchedContact(hubspot_id=f"s{i}", email=f"{i}@example.com"),
                ]
                for i in range(25)
            ]
        )

        sizes = []
        for page in (1, 2, 3):
            body = (
                await client.get("/api/v1/groups", params={"page": page, "page_size": 10})
            ).json()
            sizes.append(len(body["groups"]))
            assert body["total"] == 25
            assert body["total_pages"] == 3
        assert sizes == [10, 10, 5]

    @pytest.mark.asyncio
    async def test_default_and_oversized_page_size(self, api, seed_groups):
        client, _ = api
        await seed_groups([_abc()])

        default = await client.get("/api/v1/groups")
        assert default.json()["page_size"] == 10

        oversized = await client.get("/api/v1/groups", params={"page_size": 500})
        assert oversized.status_code == 422

    @pytest.mark.asyncio
    async def test_list_without_run(self, api):
        client, _ = api

        assert (await client.get("/api/v1/groups")).status_code == 404

    @pytest.mark.asyncio
    async def test_field_options(self, api, seed_groups):
        client, _ = api
        _, groups = await seed_groups([_abc()])

        response = await client.get(f"/api/v1/groups/{groups[0].id}/field-options")

        assert response.status_code == 200
        body = response.json()
        assert body["first_name"] == ["Ann", "Anne"]
        assert body["phone"] == ["111", "222"]
        assert body["company"] == ["Old Co"]

    @pytest.mark.asyncio
    async def test_merge_with_selections(self, api, crm, seed_groups):
        client, _ = api
        _, groups = await seed_groups([_abc()])
        group = groups[0]
        crm.delete_errors["B"] = UpstreamRejected("locked", http_status=400)

        response = await client.post(
            f"/api/v1/groups/{group.id}/merge",
            json={
                "primary_contact_id": group.member_ids[0],
                "field_selections": {"phone": "222", "company": "Acme"},
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["details"]["partial_failure"] is True
        assert [r["success"] for r in body["details"]["delete_results"]] == [False, True]
        assert crm.update_calls == [("update", "A", {"phone": "222", "company": "Acme"})]

        detail = (await client.get(f"/api/v1/groups/{group.id}")).json()
        assert detail["merged"] is True
        assert detail["primary_contact_id"] == group.member_ids[0]

    @pytest.mark.asyncio
    async def test_merge_twice_conflicts(self, api, crm, seed_groups):
        client, _ = api
        _, groups = await seed_groups([_abc()])
        url = f"/api/v1/groups/{groups[0].id}/direct-merge"
        payload = {"primary_contact_id": groups[0].member_ids[0]}

        assert (await client.post(url, json=payload)).status_code == 200
        calls = len(crm.calls)
        second = await client.post(url, json=payload)

        assert second.status_code == 409
        assert second.json()["error"] == "AlreadyMerged"
        assert len(crm.calls) == calls

    @pytest.mark.asyncio
    async def test_update_failure_is_bad_gateway(self, api, crm, seed_groups):
        client, _ = api
        _, groups = await seed_groups([_abc()])
        crm.update_error = UpstreamUnavailable("HubSpot down")

        response = await client.post(
            f"/api/v1/groups/{groups[0].id}/merge",
            json={
                "primary_contact_id": groups[0].member_ids[0],
                "field_selections": {"phone": "999"},
            },
        )

        assert response.status_code == 502
        body = response.json()
        assert body["error"] == "UpstreamUpdateFailed"
        assert body["success"] is False
        assert body["group_id"] == groups[0].id
        assert body["details"]["update"]["success"] is False
        assert body["details"]["update"]["error"] == "HubSpot down"
        assert body["details"]["update"]["properties"] == {"phone": "999"}
        assert "HubSpot down" in body["detail"]
        assert crm.delete_calls == []

    @pytest.mark.asyncio
    async def test_primary_outside_group(self, api, seed_groups):
        client, _ = api
        _, groups = await seed_groups([_abc()])

        response = await client.post(
            f"/api/v1/groups/{groups[0].id}/direct-merge", json={"primary_contact_id": 999}
        )

        assert response.status_code == 422
        assert response.json()["error"] == "InvalidMergeRequest"

    @pytest.mark.asyncio
    async def test_unknown_group(self, api, seed_groups):
        client, _ = api
        await seed_groups([_abc()])

        response = await client.get("/api/v1/groups/999")

        assert response.status_code == 404
        assert response.json()["error"] == "GroupNotFound"

    @pytest.mark.asyncio
    async def test_merge_blocked_by_quota(self, api, repo, seed_groups):
        client, _ = api
        _, groups = await seed_groups([_abc()])
        repo.plans[TENANT] = Plan(
            tenant_id=TENANT, plan_type=PlanType.PAID, payment_status="past_due"
        )

        response = await client.post(
            f"/api/v1/groups/{groups[0].id}/direct-merge",
            json={"primary_contact_id": groups[0].member_ids[0]},
        )

        assert response.status_code == 402
        assert "past_due" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_retry_failed_secondaries(self, api, crm, seed_groups):
        client, _ = api
        # A second open group keeps the run in manually merge
        _, groups = await seed_groups(
            [
                _abc(),
                [
                    FetchedContact(hubspot_id="D", email="dee@example.com"),
                    FetchedContact(hubspot_id="E", email="dee@example.com"),
                ],
            ]
        )
        crm.delete_errors["C"] = UpstreamUnavailable("HubSpot down")
        await client.post(
            f"/api/v1/groups/{groups[0].id}/direct-merge",
            json={"primary_contact_id": groups[0].member_ids[0]},
        )
        crm.delete_errors.clear()

        response = await client.post(f"/api/v1/groups/{groups[0].id}/retry")

        assert response.status_code == 200
        assert response.json()["success"] is True


class TestMergeHistoryEndpoints:
    @pytest.mark.asyncio
    async def test_history_lists_secondary_outcomes(self, api, crm, seed_groups):
        client, _ = api
        _, groups = await seed_groups(
            [
                _abc(),
                [
                    FetchedContact(hubspot_id="D", email="dee@example.com"),
                    FetchedContact(hubspot_id="E", email="dee@example.com"),
                ],
            ]
        )
        crm.delete_errors["C"] = UpstreamRejected("locked", http_status=400)
        await client.post(
            f"/api/v1/groups/{groups[0].id}/direct-merge",
            json={"primary_contact_id": groups[0].member_ids[0]},
        )

        response = await client.get("/api/v1/groups/history")

        assert response.status_code == 200
        body = response.json()
        assert [(r["secondary_external_id"], r["merge_status"]) for r in body] == [
            ("B", "completed"),
            ("C", "failed"),
        ]
        assert body[1]["primary_external_id"] == "A"
        assert body[1]["error"]
        assert body[0]["merged_at"] is not None

        failed = await client.get(
            "/api/v1/groups/history", params={"merge_status": "failed"}
        )
        assert [r["secondary_external_id"] for r in failed.json()] == ["C"]

        other = await client.get(
            "/api/v1/groups/history", params={"group_id": groups[1].id}
        )
        assert other.json() == []

    @pytest.mark.asyncio
    async def test_history_without_run(self, api):
        client, _ = api

        response = await client.get("/api/v1/groups/history")

        assert response.status_code == 409
        assert response.json()["error"] == "NoActiveRun"


class TestRemovalEndpoints:
    @pytest.mark.asyncio
    async def test_mark_list_and_unmark(self, api, seed_groups):
        client, _ = api
        _, groups = await seed_groups([_abc()])
        contact_id = groups[0].member_ids[2]

        created = await client.post(
            "/api/v1/groups/removals",
            json={"contact_id": contact_id, "group_id": groups[0].id},
        )
        assert created.status_code == 201
        mark = created.json()
        assert mark["contact_id"] == contact_id
        assert mark["status"] == "pending"

        listed = await client.get("/api/v1/groups/removals")
        assert [m["id"] for m in listed.json()] == [mark["id"]]

        again = await client.post("/api/v1/groups/removals", json={"contact_id": contact_id})
        assert again.status_code == 409
        assert again.json()["error"] == "ContactAlreadyMarked"

        deleted = await client.delete(f"/api/v1/groups/removals/{mark['id']}")
        assert deleted.status_code == 204
        assert (await client.get("/api/v1/groups/removals")).json() == []

    @pytest.mark.asyncio
    async def test_unknown_contact_and_mark(self, api, seed_groups):
        client, _ = api
        await seed_groups([_abc()])

        response = await client.post("/api/v1/groups/removals", json={"contact_id": 999})
        assert response.status_code == 404
        assert response.json()["error"] == "ContactNotFound"

        response = await client.delete("/api/v1/groups/removals/999")
        assert response.status_code == 404
        assert response.json()["error"] == "RemovalNotFound"

    @pytest.mark.asyncio
    async def test_marked_contact_deleted_at_finish(self, api, crm, runner, seed_groups):
        client, _ = api
        _, groups = await seed_groups([_abc()])
        await client.post(
            "/api/v1/groups/removals", json={"contact_id": groups[0].member_ids[1]}
        )

        await client.post("/api/v1/processes/latest/finish")
        await runner.wait_idle()

        assert ("delete", "B", None) in crm.delete_calls
        latest = (await client.get("/api/v1/processes/latest")).json()
        assert latest["process_name"] == "finished"
        assert "removed 1 marked contacts" in latest["status"]
        marks = (await client.get("/api/v1/groups/removals")).json()
        assert marks[0]["status"] == "removed"

        late = await client.post(
            "/api/v1/groups/removals", json={"contact_id": groups[0].member_ids[2]}
        )
        assert late.status_code == 409
        assert late.json()["error"] == "RunNotMerging"


# ── Plans ────────────────────────────────────────────────────────────────────


class TestPlanEndpoints:
    @pytest.mark.asyncio
    async def test_check_provisions_free_plan(self, api):
        client, _ = api

        response = await client.post("/api/v1/plans/check", json={"contact_count": 100})

        assert response.json() == {"allowed": True, "outcome": "allow", "reason": ""}
        current = (await client.get("/api/v1/plans/current")).json()
        assert current["plan_type"] == "free"
        assert current["contact_count"] == 100

    @pytest.mark.asyncio
    async def test_check_over_free_limit(self, api):
        client, _ = api

        response = await client.post("/api/v1/plans/check", json={"contact_count": 600_000})

        body = response.json()
        assert body["allowed"] is False
        assert body["outcome"] == "exceed"
        assert "free plan limit" in body["reason"]

    @pytest.mark.asyncio
    async def test_no_plan_yet(self, api):
        client, _ = api

        assert (await client.get("/api/v1/plans/current")).status_code == 404

    @pytest.mark.asyncio
    async def test_upgrade_to_paid(self, api):
        client, _ = api
        await client.post("/api/v1/plans/check", json={"contact_count": 10})

        response = await client.post(
            "/api/v1/plans",
            json={"plan_type": "paid", "billing_type": "yearly", "contact_limit": 1_000_000},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["plan_type"] == "paid"
        assert body["contact_limit"] == 1_000_000
        assert body["billing_type"] == "yearly"

    @pytest.mark.asyncio
    async def test_inactive_payment_exceeds(self, api):
        client, _ = api
        await client.post(
            "/api/v1/plans", json={"plan_type": "paid", "payment_status": "canceled"}
        )

        body = (await client.post("/api/v1/plans/check", json={"contact_count": 10})).json()

        assert body["allowed"] is False
        assert "canceled" in body["reason"]


# ── Wiring ───────────────────────────────────────────────────────────────────


class TestWiring:
    @pytest.mark.asyncio
    async def test_uninitialized_services_answer_503(self):
        from src.dedupe.api.deps import get_tenant

        app = _make_mock_app()

        async def _tenant() -> TenantContext:
            return TenantContext(tenant_id=TENANT)

        app.dependency_overrides[get_tenant] = _tenant
        app.state.process_runner = None
        app.state.dedupe_repository = None

        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/api/v1/processes/latest")
            assert response.status_code == 503
            assert "not initialized" in response.json()["detail"]

            response = await client.get("/api/v1/groups")
            assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_tenant_header_required(self, repo, runner):
        from src.dedupe.api.middleware.tenant import TenantMiddleware

        app = _make_mock_app()
        app.add_middleware(TenantMiddleware)
        app.state.process_runner = runner

        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            missing = await client.get("/api/v1/processes/latest")
            assert missing.status_code == 400
            assert "X-Tenant-ID" in missing.json()["detail"]

            scoped = await client.get(
                "/api/v1/processes/latest", headers={"X-Tenant-ID": TENANT}
            )
            assert scoped.status_code == 404

            health = await client.get("/health")
            assert health.status_code == 200
            assert health.json()["status"] == "ok"

    @pytest.mark.asyncio
    async def test_missing_crm_token(self, monkeypatch, runner):
        from src.dedupe.api.deps import get_tenant
        from src.dedupe.config import get_settings

        monkeypatch.setenv("HUBSPOT_ACCESS_TOKEN", "")
        get_settings.cache_clear()
        app = _make_mock_app()

        async def _tenant() -> TenantContext:
            return TenantContext(tenant_id=TENANT)

        app.dependency_overrides[get_tenant] = _tenant
        app.state.process_runner = runner

        transport = ASGITransport(app=app)
        try:
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                response = await client.post("/api/v1/processes", json={"name": "x"})
        finally:
            get_settings.cache_clear()

        assert response.status_code == 401
