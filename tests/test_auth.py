import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from src.voicechat.api.main import app
from src.voicechat.security.auth import JwtConfig, User, create_access_token, decode_token

client = TestClient(app)


def _headers(user_id):
    return {"Authorization": f"Bearer {create_access_token(User(id=user_id, name=user_id))}"}


def test_missing_token_rejected_outside_public_mode(monkeypatch):
    monkeypatch.setenv("VOICECHAT_PUBLIC_MODE", "0")
    assert client.get("/chat/conversations").status_code == 401
    assert client.get("/chat/conversations", headers={"Authorization": "Bearer junk"}).status_code == 401


def test_public_mode_uses_guest(monkeypatch):
    monkeypatch.setenv("VOICECHAT_PUBLIC_MODE", "1")
    res = client.post("/chat/conversations", json={}, headers={"Authorization": "Bearer junk"})
    assert res.status_code == 201
    assert res.json()["owner"] == "guest"


def test_conversations_are_isolated_per_user(monkeypatch):
    monkeypatch.setenv("VOICECHAT_PUBLIC_MODE", "0")
    cid = client.post("/chat/conversations", json={"title": "Private"}, headers=_headers("alice")).json()["conversation_id"]
    assert client.get(f"/chat/conversations/{cid}", headers=_headers("alice")).status_code == 200
    assert client.get(f"/chat/conversations/{cid}", headers=_headers("bob")).status_code == 404
    assert client.get("/chat/conversations", headers=_headers("bob")).json() == []


def test_token_round_trip_and_expiry():
    cfg = JwtConfig(secret="s3cret", expires_min=5)
    assert decode_token(create_access_token(User(id="u-9", name="Nine"), cfg), cfg) == User(id="u-9", name="Nine")
    expired = JwtConfig(secret="s3cret", expires_min=-1)
    with pytest.raises(HTTPException) as info:
        decode_token(create_access_token(User(id="u-9"), expired), expired)
    assert info.value.detail == "Token expired"
