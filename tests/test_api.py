from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import Session

from loopedin.api import welcome_text
from loopedin.db import Loop, LoopMember, Newsletter, Update, User

AuthHeaders = Callable[[User], dict[str, str]]


class FakeModel:
    async def ainvoke(self, messages: list[Any]) -> Any:
        return type("Response", (), {"content": "<h2>Highlights</h2>"})()


def test_register_normalizes_phone(client: TestClient, db: Session) -> None:
    resp = client.post(
        "/api/register",
        json={"first_name": "Ada", "last_name": "L", "phone_number": "+15551234567"},
    )
    assert resp.status_code == 201
    data = resp.json()
    assert data["user"]["phone_number"] == "15551234567"
    assert data["api_token"]

    me = client.get("/api/me", headers={"Authorization": f"Bearer {data['api_token']}"})
    assert me.status_code == 200
    assert me.json()["first_name"] == "Ada"

    dup = client.post(
        "/api/register", json={"first_name": "Other", "phone_number": "15551234567"}
    )
    assert dup.status_code == 400


def test_requires_authentication(client: TestClient) -> None:
    assert client.get("/api/loops").status_code == 401
    resp = client.get("/api/loops", headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 401
    assert resp.text == "Not authenticated"


def test_privileged_routes_reject_regular_users(
    client: TestClient, make_user: Callable[..., User], auth_headers: AuthHeaders
) -> None:
    user = make_user()
    resp = client.get("/api/admin/stats", headers=auth_headers(user))
    assert resp.status_code == 403
    assert resp.text == "Not authorized. Privileged access required."


def test_create_loop_adds_creator_as_member(
    client: TestClient,
    db: Session,
    make_user: Callable[..., User],
    auth_headers: AuthHeaders,
    sent_sms: list[tuple[str, str]],
) -> None:
    user = make_user(phone="15550001111")
    resp = client.post(
        "/api/loops",
        headers=auth_headers(user),
        json={
            "name": "Family",
            "frequency": "monthly",
            "vibe": ["warm"],
            "reminder_schedule": [
                {"day": "Friday", "time": "18:00"},
                {"day": "monday", "time": "09:00"},
            ],
        },
    )

    assert resp.status_code == 201
    data = resp.json()
    assert [m["user_id"] for m in data["members"]] == [user.id]
    assert data["members"][0]["context"] == "Loop Creator"
    # ordered by weekday, lower-cased
    assert data["reminder_schedule"] == [
        {"day": "monday", "time": "09:00"},
        {"day": "friday", "time": "18:00"},
    ]
    assert sent_sms and sent_sms[0][0] == "15550001111"


@pytest.mark.parametrize(
    "schedule",
    [
        [{"day": "monday", "time": "09:00"}, {"day": "monday", "time": "10:00"}],
        [{"day": "someday", "time": "09:00"}],
        [{"day": "monday", "time": "9am"}],
    ],
)
def test_invalid_reminder_schedule(
    client: TestClient,
    make_user: Callable[..., User],
    auth_headers: AuthHeaders,
    schedule: list[dict[str, str]],
) -> None:
    resp = client.post(
        "/api/loops",
        headers=auth_headers(make_user()),
        json={"name": "X", "frequency": "biweekly", "reminder_schedule": schedule},
    )
    assert resp.status_code == 422


def test_only_creator_can_manage_loop(
    client: TestClient,
    make_user: Callable[..., User],
    make_loop: Callable[..., Loop],
    auth_headers: AuthHeaders,
) -> None:
    owner = make_user()
    stranger = make_user()
    loop = make_loop("Family", owner)

    assert client.get(f"/api/loops/{loop.id}", headers=auth_headers(stranger)).status_code == 403
    assert client.get(f"/api/loops/{loop.id}", headers=auth_headers(owner)).status_code == 200
    assert client.get("/api/loops/999", headers=auth_headers(owner)).status_code == 404

    resp = client.put(f"/api/loops/{loop.id}", headers=auth_headers(owner), json={"name": "Fam"})
    assert resp.status_code == 200
    assert resp.json()["name"] == "Fam"


def test_add_member_reuses_existing_user_and_rejects_duplicates(
    client: TestClient,
    db: Session,
    make_user: Callable[..., User],
    make_loop: Callable[..., Loop],
    auth_headers: AuthHeaders,
) -> None:
    owner = make_user()
    existing = make_user(phone="15557654321", first_name="Sam")
    loop = make_loop("Family", owner)
    payload = {"first_name": "Samuel", "phone_number": "+15557654321", "context": "cousin"}

    resp = client.post(f"/api/loops/{loop.id}/members", headers=auth_headers(owner), json=payload)
    assert resp.status_code == 201
    assert resp.json()["user_id"] == existing.id

    again = client.post(f"/api/loops/{loop.id}/members", headers=auth_headers(owner), json=payload)
    assert again.status_code == 400
    assert again.text == "User is already a member of this loop"

    new = client.post(
        f"/api/loops/{loop.id}/members",
        headers=auth_headers(owner),
        json={"first_name": "Lee", "phone_number": "15550009999"},
    )
    assert new.status_code == 201
    assert db.scalars(select(User).where(User.phone_number == "15550009999")).one()


def test_creator_membership_cannot_be_removed(
    client: TestClient,
    db: Session,
    make_user: Callable[..., User],
    make_loop: Callable[..., Loop],
    auth_headers: AuthHeaders,
) -> None:
    owner = make_user()
    member = make_user()
    loop = make_loop("Family", owner, members=[member])
    by_user = {m.user_id: m.id for m in loop.members}

    resp = client.delete(f"/api/loops/{loop.id}/members/{by_user[owner.id]}", headers=auth_headers(owner))
    assert resp.status_code == 400
    resp = client.delete(f"/api/loops/{loop.id}/members/{by_user[member.id]}", headers=auth_headers(owner))
    assert resp.status_code == 200
    assert db.scalars(select(LoopMember).where(LoopMember.user_id == member.id)).first() is None


def test_update_permissions(
    client: TestClient,
    db: Session,
    make_user: Callable[..., User],
    make_loop: Callable[..., Loop],
    make_update: Callable[..., Update],
    auth_headers: AuthHeaders,
) -> None:
    owner = make_user()
    author = make_user()
    other = make_user()
    outsider = make_user()
    loop = make_loop("Family", owner, members=[author, other])

    resp = client.post(
        f"/api/loops/{loop.id}/updates", headers=auth_headers(outsider), json={"content": "hi"}
    )
    assert resp.status_code == 403

    resp = client.post(
        f"/api/loops/{loop.id}/updates", headers=auth_headers(author), json={"content": "hi"}
    )
    assert resp.status_code == 201
    update_id = resp.json()["id"]

    url = f"/api/loops/{loop.id}/updates/{update_id}"
    assert client.delete(url, headers=auth_headers(other)).status_code == 403
    assert client.delete(url, headers=auth_headers(owner)).status_code == 200
    assert client.delete(url, headers=auth_headers(owner)).status_code == 404


def test_delete_loop_cascades(
    client: TestClient,
    db: Session,
    make_user: Callable[..., User],
    make_loop: Callable[..., Loop],
    make_update: Callable[..., Update],
    auth_headers: AuthHeaders,
) -> None:
    owner = make_user()
    loop = make_loop("Family", owner)
    make_update(loop, owner, "hello")
    loop_id = loop.id

    assert client.delete(f"/api/loops/{loop_id}", headers=auth_headers(owner)).status_code == 200
    db.expire_all()
    assert db.get(Loop, loop_id) is None
    assert db.scalars(select(Update).where(Update.loop_id == loop_id)).first() is None
    assert db.scalars(select(LoopMember).where(LoopMember.loop_id == loop_id)).first() is None
    # users are shared, never owned by a loop
    assert db.get(User, owner.id) is not None


def test_newsletter_workflow_over_http(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
    make_user: Callable[..., User],
    make_loop: Callable[..., Loop],
    make_update: Callable[..., Update],
    auth_headers: AuthHeaders,
    sent_sms: list[tuple[str, str]],
) -> None:
    monkeypatch.setattr("loopedin.llm.get_model", lambda: FakeModel())
    admin = make_user(phone="15550000001", privileged=True)
    member = make_user(phone="15550000002")
    loop = make_loop("Family", admin, members=[member])
    make_update(loop, member, "Big news")
    headers = auth_headers(admin)
    base = f"/api/loops/{loop.id}/newsletters"

    resp = client.post(f"{base}/generate", headers=headers, json={"customHeader": "Hello"})
    assert resp.status_code == 201
    draft = resp.json()
    assert draft["status"] == "draft"
    assert draft["url"] == f"/newsletters/{draft['slug']}"
    # creator is told the draft is ready
    assert sent_sms[-1][0] == "15550000001"
    assert "draft is ready" in sent_sms[-1][1]

    page = client.get(draft["url"])
    assert page.status_code == 200
    assert "<title>Family Newsletter</title>" in page.text
    assert "<h2>Highlights</h2>" in page.text

    nid = draft["id"]
    resp = client.put(f"{base}/{nid}", headers=headers, json={"content": "<p>edited</p>"})
    assert resp.status_code == 200
    assert resp.json()["newsletter"]["content"] == "<p>edited</p>"
    assert resp.json()["suggestions"] is None

    assert client.post(f"{base}/{nid}/send", headers=headers).status_code == 409
    assert client.post(f"{base}/{nid}/finalize", headers=headers).json()["status"] == "finalized"
    assert client.post(f"{base}/{nid}/finalize", headers=headers).status_code == 409

    sent_before = len(sent_sms)
    resp = client.post(f"{base}/{nid}/send", headers=headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["newsletter"]["status"] == "sent"
    assert (body["attempted"], body["succeeded"], body["failed"]) == (2, 2, 0)
    assert len(sent_sms) == sent_before + 2

    resp = client.put(f"{base}/{nid}", headers=headers, json={"content": "<p>too late</p>"})
    assert resp.status_code == 409

    listed = client.get(base, headers=headers).json()
    assert [n["id"] for n in listed] == [nid]
    assert client.get(f"{base}/{nid}/preview", headers=headers).json()["content"] == "<p>edited</p>"


def test_generate_without_updates_is_400(
    client: TestClient,
    db: Session,
    monkeypatch: pytest.MonkeyPatch,
    make_user: Callable[..., User],
    make_loop: Callable[..., Loop],
    auth_headers: AuthHeaders,
) -> None:
    monkeypatch.setattr("loopedin.llm.get_model", lambda: FakeModel())
    admin = make_user(privileged=True)
    loop = make_loop("Empty", admin)

    resp = client.post(f"/api/loops/{loop.id}/newsletters/generate", headers=auth_headers(admin))
    assert resp.status_code == 400
    assert resp.text == "No updates available for newsletter generation"
    assert db.scalars(select(Newsletter)).first() is None


def test_unknown_newsletter_page(client: TestClient) -> None:
    assert client.get("/newsletters/doesnotexist").status_code == 404


def test_admin_views(
    client: TestClient,
    make_user: Callable[..., User],
    make_loop: Callable[..., Loop],
    make_update: Callable[..., Update],
    auth_headers: AuthHeaders,
) -> None:
    admin = make_user(privileged=True)
    member = make_user()
    family = make_loop("Family", admin, members=[member])
    make_loop("Book Club", admin)
    make_update(family, member, "hi")
    headers = auth_headers(admin)

    loops = client.get("/api/admin/loops", headers=headers, params={"search": "fam"}).json()
    assert [(s["name"], s["member_count"], s["update_count"]) for s in loops] == [("Family", 2, 1)]

    by_name = client.get("/api/admin/loops", headers=headers, params={"sort": "name"}).json()
    assert [s["name"] for s in by_name] == ["Book Club", "Family"]

    detail = client.get(f"/api/admin/loops/{family.id}", headers=headers).json()
    assert len(detail["members"]) == 2
    assert detail["updates"][0]["content"] == "hi"

    stats = client.get("/api/admin/stats", headers=headers).json()
    assert stats["total_loops"] == 2
    assert stats["total_members"] == 3


class SuggestingModel:
    def __init__(self) -> None:
        self.prompts: list[str] = []

    async def ainvoke(self, messages: list[Any]) -> Any:
        self.prompts.append(messages[1].content)
        return type("Response", (), {"content": "Open with the marathon story"})()


class UnavailableModel:
    async def ainvoke(self, messages: list[Any]) -> Any:
        raise RuntimeError("model overloaded")


def _draft_newsletter(db: Session, loop: Loop) -> Newsletter:
    newsletter = Newsletter(loop_id=loop.id, content="<p>draft</p>", slug="suggest001")
    db.add(newsletter)
    db.commit()
    db.refresh(newsletter)
    return newsletter


def test_edit_with_suggestions(
    client: TestClient,
    db: Session,
    monkeypatch: pytest.MonkeyPatch,
    make_user: Callable[..., User],
    make_loop: Callable[..., Loop],
    auth_headers: AuthHeaders,
) -> None:
    model = SuggestingModel()
    monkeypatch.setattr("loopedin.llm.get_model", lambda: model)
    admin = make_user(privileged=True)
    loop = make_loop("Family", admin, vibe=["cozy"])
    newsletter = _draft_newsletter(db, loop)

    resp = client.put(
        f"/api/loops/{loop.id}/newsletters/{newsletter.id}?suggest=true",
        headers=auth_headers(admin),
        json={"content": "<p>new draft</p>"},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["newsletter"]["content"] == "<p>new draft</p>"
    assert body["suggestions"] == "Open with the marathon story"
    assert "<p>new draft</p>" in model.prompts[0]
    assert "cozy" in model.prompts[0]


def test_edit_suggestion_failure_is_500_but_keeps_edit(
    client: TestClient,
    db: Session,
    monkeypatch: pytest.MonkeyPatch,
    make_user: Callable[..., User],
    make_loop: Callable[..., Loop],
    auth_headers: AuthHeaders,
) -> None:
    monkeypatch.setattr("loopedin.llm.get_model", lambda: UnavailableModel())
    admin = make_user(privileged=True)
    loop = make_loop("Family", admin)
    newsletter = _draft_newsletter(db, loop)

    resp = client.put(
        f"/api/loops/{loop.id}/newsletters/{newsletter.id}?suggest=true",
        headers=auth_headers(admin),
        json={"content": "<p>kept</p>"},
    )

    assert resp.status_code == 500
    assert resp.text == "Failed to analyze newsletter. Please try again later."
    db.refresh(newsletter)
    assert newsletter.content == "<p>kept</p>"
    assert newsletter.status == "draft"


def test_new_member_gets_welcome_sms(
    client: TestClient,
    make_user: Callable[..., User],
    make_loop: Callable[..., Loop],
    auth_headers: AuthHeaders,
    sent_sms: list[tuple[str, str]],
) -> None:
    owner = make_user()
    loop = make_loop("Book Club", owner)

    resp = client.post(
        f"/api/loops/{loop.id}/members",
        headers=auth_headers(owner),
        json={"first_name": "Lee", "phone_number": "15550004444"},
    )

    assert resp.status_code == 201
    assert sent_sms == [("15550004444", welcome_text("Book Club"))]
