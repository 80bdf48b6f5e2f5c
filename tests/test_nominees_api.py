from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from records.errors import ApiError, NotificationError
from records.store import store


def _nominee_payload(**overrides):
    payload = {
        "full_name": "Ravi Kumar",
        "relationship": "spouse",
        "date_of_birth": "1988-04-12",
        "email": "ravi@example.com",
        "mobile_number": "9876543210",
        "share_percentage": 50,
    }
    payload.update(overrides)
    return payload


def _create(client, **overrides):
    resp = client.post("/api/v1/nominees", json=_nominee_payload(**overrides))
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def _invite(client, nominee_id: str, **body):
    resp = client.post(f"/api/v1/nominees/{nominee_id}/invite", json=body or None)
    assert resp.status_code == 200, resp.text
    return resp.json()


def _token_from(invite_link: str) -> str:
    return invite_link.rsplit("/", 1)[-1]


def test_create_nominee_applies_defaults(client):
    resp = client.post(
        "/api/v1/nominees",
        json=_nominee_payload(pan_number="abcde1234f", address={"city": "Pune", "state": "MH"}),
    )
    assert resp.status_code == 201
    assert resp.json()["message"] == "Nominee created successfully"
    nominee = resp.json()["data"]
    assert nominee["nominee_id"].startswith("nom_")
    assert nominee["user_id"] == "user_owner"
    assert nominee["pan_number"] == "ABCDE1234F"
    assert nominee["date_of_birth"] == "1988-04-12"
    assert nominee["address"]["country"] == "India"
    assert nominee["is_active"] is True
    assert nominee["mobile_verified"] is False
    assert nominee["has_access"] is False
    assert nominee["access_level"] == "none"
    assert nominee["invite_status"] == "not_invited"
    assert "invite_token" not in nominee
    assert "mobile_otp" not in nominee


def test_create_nominee_validates_identity_fields(client):
    for field, value in (
        ("aadhaar_number", "1234"),
        ("pan_number", "ABC123"),
        ("mobile_number", "98765"),
        ("email", "not-an-email"),
        ("relationship", "friend"),
    ):
        resp = client.post("/api/v1/nominees", json=_nominee_payload(**{field: value}))
        assert resp.status_code == 400, field
        assert resp.json()["error"]["code"] == "REQ_VALIDATION_FAILED"

    blank_optional = client.post("/api/v1/nominees", json=_nominee_payload(aadhaar_number="", pan_number=""))
    assert blank_optional.status_code == 201
    assert blank_optional.json()["data"]["aadhaar_number"] is None


def test_share_total_cannot_exceed_hundred(client):
    _create(client, share_percentage=60)
    resp = client.post("/api/v1/nominees", json=_nominee_payload(full_name="Second", share_percentage=50))
    assert resp.status_code == 400
    error = resp.json()["error"]
    assert error["code"] == "NOMINEE_SHARE_EXCEEDED"
    assert error["message"] == "Total share percentage cannot exceed 100%. Current total: 60%"

    second = _create(client, full_name="Second", share_percentage=40)
    update = client.put(f"/api/v1/nominees/{second['nominee_id']}", json={"share_percentage": 45})
    assert update.status_code == 400
    assert update.json()["error"]["message"] == (
        "Total share percentage cannot exceed 100%. Current total (excluding this nominee): 60%"
    )


def test_inactive_nominees_free_their_share_until_reactivated(client):
    first = _create(client, share_percentage=70)
    deleted = client.delete(f"/api/v1/nominees/{first['nominee_id']}")
    assert deleted.status_code == 200
    assert deleted.json()["data"] == {"nominee_id": first["nominee_id"], "deleted": True}

    _create(client, full_name="Replacement", share_percentage=60)
    reactivate = client.put(f"/api/v1/nominees/{first['nominee_id']}", json={"is_active": True})
    assert reactivate.status_code == 400
    assert reactivate.json()["error"]["code"] == "NOMINEE_SHARE_EXCEEDED"


def test_list_get_and_filter_nominees(client):
    first = _create(client, full_name="First", share_percentage=10)
    second = _create(client, full_name="Second", share_percentage=10)
    client.delete(f"/api/v1/nominees/{first['nominee_id']}")

    everything = client.get("/api/v1/nominees").json()["data"]
    assert everything["total"] == 2
    assert [n["nominee_id"] for n in everything["nominees"]] == [second["nominee_id"], first["nominee_id"]]

    active = client.get("/api/v1/nominees", params={"is_active": "true"}).json()["data"]
    assert [n["full_name"] for n in active["nominees"]] == ["Second"]

    fetched = client.get(f"/api/v1/nominees/{second['nominee_id']}")
    assert fetched.status_code == 200
    assert fetched.json()["data"]["full_name"] == "Second"

    stranger = client.as_user("user_stranger").get(f"/api/v1/nominees/{second['nominee_id']}")
    assert stranger.status_code == 404
    assert stranger.json()["error"]["code"] == "NOMINEE_NOT_FOUND"


def test_update_nominee_profile_fields(client):
    nominee = _create(client)
    resp = client.put(
        f"/api/v1/nominees/{nominee['nominee_id']}",
        json={"full_name": "Ravi K", "notes": "Primary nominee", "invite_status": "accepted"},
    )
    assert resp.status_code == 200
    assert resp.json()["message"] == "Nominee updated successfully"
    updated = resp.json()["data"]
    assert updated["full_name"] == "Ravi K"
    assert updated["notes"] == "Primary nominee"
    assert updated["invite_status"] == "not_invited"

    cleared = client.put(f"/api/v1/nominees/{nominee['nominee_id']}", json={"relationship": None})
    assert cleared.status_code == 400
    assert cleared.json()["error"]["code"] == "REQ_VALIDATION_FAILED"


@pytest.mark.parametrize("field", ["full_name", "relationship", "date_of_birth", "share_percentage"])
def test_update_nominee_rejects_null_required_field(client, field):
    nominee = _create(client, share_percentage=40)
    resp = client.put(f"/api/v1/nominees/{nominee['nominee_id']}", json={field: None})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "REQ_VALIDATION_FAILED"

    current = client.get(f"/api/v1/nominees/{nominee['nominee_id']}").json()["data"]
    assert current["date_of_birth"] == nominee["date_of_birth"]
    assert current["share_percentage"] == 40


def test_store_update_nominee_refuses_to_clear_date_of_birth():
    nominee = store.create_nominee(
        user_id="user_owner",
        payload={"full_name": "Meera", "relationship": "child", "date_of_birth": "2001-02-03", "share_percentage": 10},
    )
    with pytest.raises(ApiError) as exc:
        store.update_nominee(user_id="user_owner", nominee_id=nominee["nominee_id"], payload={"date_of_birth": None})
    assert exc.value.code == "REQ_VALIDATION_FAILED"
    assert store.get_nominee(user_id="user_owner", nominee_id=nominee["nominee_id"])["date_of_birth"] == "2001-02-03"


def test_nominee_stats_summary(client):
    _create(client, full_name="A", relationship="child", share_percentage=25)
    _create(client, full_name="B", relationship="child", share_percentage=25)
    spouse = _create(client, full_name="C", relationship="spouse", share_percentage=30)
    client.delete(f"/api/v1/nominees/{spouse['nominee_id']}")

    stats = client.get("/api/v1/nominees/stats/summary").json()["data"]["stats"]
    assert stats["total_nominees"] == 2
    assert stats["total_share_allocated"] == 50
    assert stats["share_remaining"] == 50
    assert stats["by_relationship"] == {"child": {"count": 2, "total_share": 50}}


def test_invite_requires_email(client):
    nominee = _create(client, email="")
    resp = client.post(f"/api/v1/nominees/{nominee['nominee_id']}/invite", json={"access_level": "view"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "NOMINEE_EMAIL_REQUIRED"


def test_invite_sends_email_and_returns_link(client, monkeypatch):
    sent: list[tuple] = []

    def _fake_send(*args):
        sent.append(args)
        return {"success": True}

    monkeypatch.setattr("records.store_nominees.send_nominee_invitation", _fake_send)
    nominee = _create(client)
    body = _invite(client, nominee["nominee_id"], access_level="download", can_view_categories=["insurance"])

    assert body["message"] == "Invitation sent successfully"
    data = body["data"]
    assert data["email_sent"] is True
    assert data["invite_link"].startswith("http://frontend.test/nominee-invite/")
    assert len(_token_from(data["invite_link"])) == 64
    invited = data["nominee"]
    assert invited["has_access"] is True
    assert invited["access_level"] == "download"
    assert invited["invite_status"] == "pending"
    assert invited["can_view_categories"] == ["insurance"]
    assert invited["owner_name"] == "Asha Rao"
    assert "invite_token" not in invited

    email, name, owner_name, link, level, categories = sent[0]
    assert (email, name, owner_name, level) == ("ravi@example.com", "Ravi Kumar", "Asha Rao", "download")
    assert link == data["invite_link"]
    assert list(categories) == ["insurance"]


def test_invite_defaults_to_view_on_all_categories(client):
    nominee = _create(client)
    data = _invite(client, nominee["nominee_id"])["data"]
    assert data["nominee"]["access_level"] == "view"
    assert data["nominee"]["can_view_categories"] == [
        "personal",
        "investment",
        "insurance",
        "loans",
        "retirement",
    ]
    assert data["nominee"]["access_expires_at"] is None


def test_invite_email_failure_keeps_invitation(client, monkeypatch):
    def _failing_send(*args):
        raise NotificationError("smtp down")

    monkeypatch.setattr("records.store_nominees.send_nominee_invitation", _failing_send)
    monkeypatch.setenv("APP_ENV", "production")
    store.reset()
    nominee = _create(client)

    body = _invite(client, nominee["nominee_id"])
    assert body["message"] == "Invitation created but email failed to send"
    assert body["data"]["email_sent"] is False
    assert body["data"]["invite_link"]
    assert body["data"]["nominee"]["invite_status"] == "pending"


def test_production_hides_link_when_email_sent(client, monkeypatch):
    monkeypatch.setattr("records.store_nominees.send_nominee_invitation", lambda *args: {"success": True})
    monkeypatch.setenv("APP_ENV", "production")
    store.reset()
    nominee = _create(client)

    data = _invite(client, nominee["nominee_id"])["data"]
    assert data["email_sent"] is True
    assert "invite_link" not in data


def test_accept_invite_links_nominee_account(client):
    nominee = _create(client)
    link = _invite(client, nominee["nominee_id"], access_level="full")["data"]["invite_link"]
    token = _token_from(link)

    accepter = client.as_user("user_nominee", name="Ravi Kumar")
    resp = accepter.post(f"/api/v1/nominees/accept-invite/{token}")
    assert resp.status_code == 200
    assert resp.json()["message"] == "Invitation accepted successfully"
    data = resp.json()["data"]
    assert data["nominee"]["invite_status"] == "accepted"
    assert data["nominee"]["linked_user"] == "user_nominee"
    assert data["nominee"]["linked_at"]
    assert data["account_owner"] == {
        "user_id": "user_owner",
        "full_name": "Asha Rao",
        "email": "user_owner@example.com",
    }

    replay = client.as_user("user_other").post(f"/api/v1/nominees/accept-invite/{token}")
    assert replay.status_code == 404
    assert replay.json()["error"]["code"] == "INVITE_INVALID"


def test_accept_invite_rejects_owner_and_unknown_tokens(client):
    nominee = _create(client)
    token = _token_from(_invite(client, nominee["nominee_id"])["data"]["invite_link"])

    own = client.post(f"/api/v1/nominees/accept-invite/{token}")
    assert own.status_code == 400
    assert own.json()["error"]["code"] == "INVITE_SELF_ACCEPT"

    unknown = client.as_user("user_nominee").post("/api/v1/nominees/accept-invite/deadbeef")
    assert unknown.status_code == 404
    assert unknown.json()["error"]["code"] == "INVITE_INVALID"


def test_accept_invite_after_access_window_fails(client):
    nominee = _create(client)
    token = _token_from(_invite(client, nominee["nominee_id"], expires_in_days=1)["data"]["invite_link"])
    past = (datetime.now(UTC) - timedelta(hours=1)).isoformat()
    store.nominees[nominee["nominee_id"]]["access_expires_at"] = past

    resp = client.as_user("user_nominee").post(f"/api/v1/nominees/accept-invite/{token}")
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "INVITE_EXPIRED"


def test_revoke_access_invalidates_pending_invite(client):
    nominee = _create(client)
    token = _token_from(_invite(client, nominee["nominee_id"])["data"]["invite_link"])

    revoked = client.put(f"/api/v1/nominees/{nominee['nominee_id']}/revoke")
    assert revoked.status_code == 200
    assert revoked.json()["message"] == "Nominee access revoked successfully"
    data = revoked.json()["data"]
    assert data["has_access"] is False
    assert data["invite_status"] == "revoked"
    assert data["access_level"] == "none"

    resp = client.as_user("user_nominee").post(f"/api/v1/nominees/accept-invite/{token}")
    assert resp.status_code == 404


def test_my_access_lists_linked_accounts(client):
    nominee = _create(client)
    token = _token_from(_invite(client, nominee["nominee_id"], access_level="download")["data"]["invite_link"])
    accepter = client.as_user("user_nominee")
    accepter.post(f"/api/v1/nominees/accept-invite/{token}")

    resp = accepter.get("/api/v1/nominees/my-access")
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["total"] == 1
    account = data["accounts"][0]
    assert account["nominee_id"] == nominee["nominee_id"]
    assert account["access_level"] == "download"
    assert account["account_owner"]["user_id"] == "user_owner"
    assert account["account_owner"]["full_name"] == "Asha Rao"

    assert client.get("/api/v1/nominees/my-access").json()["data"]["total"] == 0

    client.put(f"/api/v1/nominees/{nominee['nominee_id']}/revoke")
    assert accepter.get("/api/v1/nominees/my-access").json()["data"]["total"] == 0


def test_access_log_records_last_access(client):
    nominee = _create(client)
    token = _token_from(_invite(client, nominee["nominee_id"])["data"]["invite_link"])
    accepter = client.as_user("user_nominee")
    accepter.post(f"/api/v1/nominees/accept-invite/{token}")

    resp = accepter.patch(f"/api/v1/nominees/{nominee['nominee_id']}/access-log")
    assert resp.status_code == 200
    assert resp.json()["message"] == "Access logged"
    stamp = resp.json()["data"]["last_accessed_at"]
    assert stamp
    owner_view = client.get(f"/api/v1/nominees/{nominee['nominee_id']}").json()["data"]
    assert owner_view["last_accessed_at"] == stamp

    stranger = client.as_user("user_stranger").patch(f"/api/v1/nominees/{nominee['nominee_id']}/access-log")
    assert stranger.status_code == 403
    assert stranger.json()["error"]["code"] == "NOMINEE_ACCESS_DENIED"
    assert stranger.json()["error"]["message"] == "Access denied"


def test_mobile_otp_verification_flow(client, monkeypatch):
    delivered: list[tuple[str, str]] = []

    def _capture(mobile, otp):
        delivered.append((mobile, otp))
        return {"success": True}

    monkeypatch.setattr("records.store_nominees.send_otp_via_sms", _capture)
    nominee = _create(client)

    sent = client.post(f"/api/v1/nominees/{nominee['nominee_id']}/verify-mobile")
    assert sent.status_code == 200
    assert sent.json()["data"]["sms_sent"] is True
    assert sent.json()["data"]["expires_at"]
    mobile, otp = delivered[0]
    assert mobile == "9876543210"
    assert len(otp) == 6 and otp.isdigit()
    assert "mobile_otp" not in client.get(f"/api/v1/nominees/{nominee['nominee_id']}").json()["data"]

    wrong = "000000" if otp != "000000" else "111111"
    bad = client.post(f"/api/v1/nominees/{nominee['nominee_id']}/verify-mobile/confirm", json={"otp": wrong})
    assert bad.status_code == 400
    assert bad.json()["error"]["code"] == "OTP_INVALID"

    malformed = client.post(f"/api/v1/nominees/{nominee['nominee_id']}/verify-mobile/confirm", json={"otp": "12ab"})
    assert malformed.status_code == 400
    assert malformed.json()["error"]["code"] == "REQ_VALIDATION_FAILED"

    ok = client.post(f"/api/v1/nominees/{nominee['nominee_id']}/verify-mobile/confirm", json={"otp": otp})
    assert ok.status_code == 200
    assert ok.json()["message"] == "Mobile number verified"
    assert ok.json()["data"]["mobile_verified"] is True

    reused = client.post(f"/api/v1/nominees/{nominee['nominee_id']}/verify-mobile/confirm", json={"otp": otp})
    assert reused.status_code == 400
    assert reused.json()["error"]["code"] == "OTP_INVALID"

    changed = client.put(f"/api/v1/nominees/{nominee['nominee_id']}", json={"mobile_number": "9123456780"})
    assert changed.json()["data"]["mobile_verified"] is False


def test_mobile_otp_expiry_and_missing_mobile(client, monkeypatch):
    delivered: list[str] = []
    monkeypatch.setattr(
        "records.store_nominees.send_otp_via_sms",
        lambda mobile, otp: delivered.append(otp) or {"success": False},
    )
    no_mobile = _create(client, mobile_number="", share_percentage=10)
    resp = client.post(f"/api/v1/nominees/{no_mobile['nominee_id']}/verify-mobile")
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "NOMINEE_MOBILE_REQUIRED"

    nominee = _create(client, share_percentage=10)
    sent = client.post(f"/api/v1/nominees/{nominee['nominee_id']}/verify-mobile").json()["data"]
    assert sent["sms_sent"] is False

    pending = store.nominees[nominee["nominee_id"]]["mobile_otp"]
    pending["expires_at"] = (datetime.now(UTC) - timedelta(seconds=1)).isoformat()
    expired = client.post(
        f"/api/v1/nominees/{nominee['nominee_id']}/verify-mobile/confirm",
        json={"otp": delivered[0]},
    )
    assert expired.status_code == 400
    assert expired.json()["error"]["code"] == "OTP_EXPIRED"
