import asyncio
from pathlib import Path
from typing import Dict
from uuid import UUID, uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from assetdesk.core import security
from assetdesk.core.dependencies import get_dispatch_locks, get_object_storage
from assetdesk.db.session import get_session
from assetdesk.main import app
from assetdesk.models import (
    Asset,
    Base,
    Brand,
    BrandMembership,
    BrandRole,
    RenderJob,
    RenderJobStatus,
    Tenant,
    TenantMembership,
    TenantRole,
    User,
)
from assetdesk.services import render_jobs
from assetdesk.services.dispatch_lock import InMemoryLockStore
from assetdesk.services.storage import LocalObjectStorage


@pytest.fixture
def test_app(tmp_path: Path) -> Dict[str, object]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())

    storage = LocalObjectStorage(tmp_path / "objects")
    locks = InMemoryLockStore()

    async def override_get_session():
        async with SessionLocal() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_object_storage] = lambda: storage
    app.dependency_overrides[get_dispatch_locks] = lambda: locks
    client = TestClient(app)
    yield {"client": client, "session_factory": SessionLocal, "storage": storage}
    client.close()
    app.dependency_overrides.clear()


def auth_headers(user_id: UUID) -> dict[str, str]:
    return {"Authorization": f"Bearer {security.create_access_token(str(user_id))}"}


def seed_workspace(session_factory, storage: LocalObjectStorage, *, pdf_bytes: bytes | None, **asset_fields) -> Dict[str, UUID]:
    async def _seed() -> Dict[str, UUID]:
        async with session_factory() as session:
            tenant = Tenant(name="Acme", slug=f"acme-{uuid4().hex[:6]}")
            other_tenant = Tenant(name="Globex", slug=f"globex-{uuid4().hex[:6]}")
            session.add_all([tenant, other_tenant])
            await session.flush()
            brand = Brand(tenant_id=tenant.id, name="Core", slug="core")
            session.add(brand)
            await session.flush()

            users = {
                role: User(email=f"{role}-{uuid4().hex[:6]}@example.com", name=role)
                for role in ("owner", "admin", "viewer", "member", "outsider")
            }
            session.add_all(users.values())
            await session.flush()
            session.add_all(
                [
                    TenantMembership(user_id=users["owner"].id, tenant_id=tenant.id, role=TenantRole.owner),
                    TenantMembership(user_id=users["admin"].id, tenant_id=tenant.id, role=TenantRole.admin),
                    TenantMembership(user_id=users["viewer"].id, tenant_id=tenant.id, role=TenantRole.member),
                    TenantMembership(user_id=users["member"].id, tenant_id=tenant.id, role=TenantRole.member),
                    TenantMembership(user_id=users["outsider"].id, tenant_id=other_tenant.id, role=TenantRole.owner),
                    BrandMembership(user_id=users["viewer"].id, brand_id=brand.id, role=BrandRole.viewer),
                ]
            )
            values = dict(
                tenant_id=tenant.id,
                brand_id=brand.id,
                title="Brand book",
                original_filename="brand-book.pdf",
                mime_type="application/pdf",
                storage_root_path=f"tenants/{tenant.id}/originals/brand-book.pdf",
                version_number=1,
            )
            values.update(asset_fields)
            asset = Asset(**values)
            session.add(asset)
            await session.commit()
            if pdf_bytes is not None:
                storage.put_bytes(asset.storage_root_path, pdf_bytes, content_type="application/pdf")
            ids = {role: user.id for role, user in users.items()}
            ids["asset"] = asset.id
            return ids

    return asyncio.run(_seed())


def _jobs_for(session_factory, asset_id: UUID) -> list[RenderJob]:
    async def _load() -> list[RenderJob]:
        async with session_factory() as session:
            rows = await session.execute(select(RenderJob).where(RenderJob.asset_id == asset_id).order_by(RenderJob.page))
            return list(rows.scalars().all())

    return asyncio.run(_load())


def _process_job(session_factory, storage: LocalObjectStorage, job_id: UUID) -> RenderJob:
    async def _run() -> RenderJob:
        async with session_factory() as session:
            job = await session.get(RenderJob, job_id)
            return await render_jobs.process_job_inline(session, job, storage=storage)

    return asyncio.run(_run())


def test_page_is_dispatched_once_then_served_as_signed_url(test_app: Dict[str, object], make_pdf) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]
    storage: LocalObjectStorage = test_app["storage"]  # type: ignore[assignment]
    ids = seed_workspace(SessionLocal, storage, pdf_bytes=make_pdf(10))
    url = f"/api/v1/assets/{ids['asset']}/pdf-page/5"

    first = client.get(url, headers=auth_headers(ids["viewer"]))
    assert first.status_code == 200, first.text
    assert first.json() == {"status": "processing", "page": 5, "page_count": 10}

    second = client.get(url, headers=auth_headers(ids["viewer"]))
    assert second.status_code == 200, second.text
    assert second.json()["status"] == "processing"

    jobs = _jobs_for(SessionLocal, ids["asset"])
    assert [(job.page, job.status) for job in jobs] == [(5, RenderJobStatus.queued)]

    done = _process_job(SessionLocal, storage, jobs[0].id)
    assert done.status == RenderJobStatus.completed

    ready = client.get(url, headers=auth_headers(ids["viewer"]))
    assert ready.status_code == 200, ready.text
    body = ready.json()
    assert body["status"] == "ready"
    assert body["page"] == 5
    assert body["page_count"] == 10
    assert f"/assets/{ids['asset']}/v1/pdf_pages/page-5.webp" in body["url"]

    image = client.get(body["url"])
    assert image.status_code == 200
    assert image.headers["content-type"] == "image/webp"
    assert image.content[:4] == b"RIFF"
    assert len(_jobs_for(SessionLocal, ids["asset"])) == 1


def test_page_count_is_persisted_after_first_request(test_app: Dict[str, object], make_pdf) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]
    storage: LocalObjectStorage = test_app["storage"]  # type: ignore[assignment]
    ids = seed_workspace(SessionLocal, storage, pdf_bytes=make_pdf(3))

    resp = client.get(f"/api/v1/assets/{ids['asset']}/pdf-page/9", headers=auth_headers(ids["owner"]))
    assert resp.status_code == 422, resp.text
    assert resp.json() == {"message": "Requested page 9 exceeds PDF page count 3", "page_count": 3}

    async def _count() -> int | None:
        async with SessionLocal() as session:
            asset = await session.get(Asset, ids["asset"])
            return asset.pdf_page_count

    assert asyncio.run(_count()) == 3
    assert _jobs_for(SessionLocal, ids["asset"]) == []


def test_large_pdf_is_rejected_as_unsupported(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    ids = seed_workspace(test_app["session_factory"], test_app["storage"], pdf_bytes=None, pdf_page_count=900)

    resp = client.get(f"/api/v1/assets/{ids['asset']}/pdf-page/1", headers=auth_headers(ids["admin"]))

    assert resp.status_code == 422, resp.text
    body = resp.json()
    assert body["status"] == "unsupported_large"
    assert body["page_count"] == 900
    assert body["message"]


@pytest.mark.parametrize(
    ("page", "message"),
    [(0, "Page must be >= 1"), (11, "Requested page 11 exceeds PDF page count 10")],
)
def test_invalid_page_numbers_are_rejected(test_app: Dict[str, object], page: int, message: str) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    ids = seed_workspace(test_app["session_factory"], test_app["storage"], pdf_bytes=None, pdf_page_count=10)

    resp = client.get(f"/api/v1/assets/{ids['asset']}/pdf-page/{page}", headers=auth_headers(ids["owner"]))

    assert resp.status_code == 422, resp.text
    assert resp.json()["message"] == message


def test_non_pdf_asset_is_rejected(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    ids = seed_workspace(
        test_app["session_factory"],
        test_app["storage"],
        pdf_bytes=None,
        mime_type="image/png",
        original_filename="logo.png",
    )

    resp = client.get(f"/api/v1/assets/{ids['asset']}/pdf-page/1", headers=auth_headers(ids["owner"]))

    assert resp.status_code == 422
    assert resp.json() == {"message": "Asset is not a PDF"}


def test_dispatch_failure_returns_503(test_app: Dict[str, object], monkeypatch: pytest.MonkeyPatch) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    ids = seed_workspace(test_app["session_factory"], test_app["storage"], pdf_bytes=None, pdf_page_count=10)

    async def _broken_dispatch(*_args, **_kwargs):
        raise ConnectionError("queue unavailable")

    monkeypatch.setattr(render_jobs, "dispatch_page_render", _broken_dispatch)

    resp = client.get(f"/api/v1/assets/{ids['asset']}/pdf-page/2", headers=auth_headers(ids["owner"]))

    assert resp.status_code == 503
    assert resp.json() == {"message": "PDF page render could not be queued"}


def test_page_access_requires_authentication_and_membership(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    ids = seed_workspace(test_app["session_factory"], test_app["storage"], pdf_bytes=None, pdf_page_count=10)
    url = f"/api/v1/assets/{ids['asset']}/pdf-page/1"

    assert client.get(url).status_code == 401
    assert client.get(url, headers={"Authorization": "Bearer not-a-token"}).status_code == 401
    assert client.get(url, headers=auth_headers(ids["outsider"])).status_code == 403
    assert client.get(url, headers=auth_headers(ids["member"])).status_code == 403
    missing = client.get(f"/api/v1/assets/{uuid4()}/pdf-page/1", headers=auth_headers(ids["owner"]))
    assert missing.status_code == 404
    assert missing.json()["detail"] == "Asset not found"


def test_extract_all_starts_batch_once_for_admins(test_app: Dict[str, object], make_pdf) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]
    ids = seed_workspace(SessionLocal, test_app["storage"], pdf_bytes=make_pdf(4))
    url = f"/api/v1/assets/{ids['asset']}/pdf/extract-all"

    forbidden = client.post(url, headers=auth_headers(ids["viewer"]))
    assert forbidden.status_code == 403

    started = client.post(url, headers=auth_headers(ids["admin"]))
    assert started.status_code == 202, started.text
    body = started.json()
    assert body["status"] == "started"
    assert body["total_jobs"] == 4
    assert body["pending_jobs"] == 4

    repeat = client.post(url, headers=auth_headers(ids["owner"]))
    assert repeat.status_code == 202, repeat.text
    assert repeat.json()["batch_id"] == body["batch_id"]
    assert [job.page for job in _jobs_for(SessionLocal, ids["asset"])] == [1, 2, 3, 4]

    batch = client.get(f"/api/v1/assets/{ids['asset']}/pdf/batches/{body['batch_id']}", headers=auth_headers(ids["viewer"]))
    assert batch.status_code == 200, batch.text
    assert batch.json()["status"] == "running"
    assert batch.json()["total_jobs"] == 4

    unknown = client.get(f"/api/v1/assets/{ids['asset']}/pdf/batches/{uuid4()}", headers=auth_headers(ids["owner"]))
    assert unknown.status_code == 404


def test_extract_all_rejects_invalid_documents(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    ids = seed_workspace(test_app["session_factory"], test_app["storage"], pdf_bytes=None, pdf_page_count=900)

    resp = client.post(f"/api/v1/assets/{ids['asset']}/pdf/extract-all", headers=auth_headers(ids["owner"]))

    assert resp.status_code == 422
    assert resp.json()["status"] == "unsupported_large"


def test_extract_all_runtime_failure_returns_422(test_app: Dict[str, object], monkeypatch: pytest.MonkeyPatch) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    ids = seed_workspace(test_app["session_factory"], test_app["storage"], pdf_bytes=None, pdf_page_count=3)

    async def _broken(*_args, **_kwargs):
        raise RuntimeError("queue unavailable")

    monkeypatch.setattr(render_jobs, "start_full_extraction", _broken)

    resp = client.post(f"/api/v1/assets/{ids['asset']}/pdf/extract-all", headers=auth_headers(ids["owner"]))

    assert resp.status_code == 422
    assert resp.json() == {"message": "PDF extraction could not be started"}


def test_signed_object_route_rejects_bad_signatures(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    storage: LocalObjectStorage = test_app["storage"]  # type: ignore[assignment]
    storage.put_bytes("tenants/t/page-1.webp", b"RIFF0000WEBP", content_type="image/webp")
    url = storage.signed_url("tenants/t/page-1.webp", ttl_seconds=600)

    ok = client.get(url)
    assert ok.status_code == 200
    assert ok.content == b"RIFF0000WEBP"

    tampered = client.get(url.replace("page-1", "page-2"))
    assert tampered.status_code == 403
    assert client.get("/api/v1/media/objects/tenants/t/page-1.webp?exp=1&sig=abc").status_code == 403


def test_health_and_metrics(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]

    assert client.get("/api/v1/health").json() == {"status": "ok"}
    ready = client.get("/api/v1/health/ready")
    assert ready.status_code == 200
    assert ready.json() == {"status": "ready"}
    assert isinstance(client.get("/api/v1/metrics").json(), dict)
