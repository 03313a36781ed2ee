#!/usr/bin/env python3
"""
End-to-end tests for the webhook service. Platform APIs are served by an
httpx.MockTransport and the chat pipeline is replaced with a stub, both
through FastAPI dependency overrides.
"""
import json

import httpx
from fastapi.testclient import TestClient

from chatbridge.main import (
    DISCORD_HELP_TEXT,
    ERROR_REPLIES,
    app,
    get_channel_config,
    get_chat_handler,
    get_http_client,
)
from chatbridge.models import ChannelConfig


def platform_api(request):
    """Fake Telegram, Discord and Feishu APIs."""
    path = request.url.path
    if request.url.host == "api.telegram.org":
        return httpx.Response(200, json={"ok": True, "result": {"message_id": 500}})
    if path.endswith("/tenant_access_token/internal"):
        return httpx.Response(200, json={"code": 0, "tenant_access_token": "t-1", "expire": 7200})
    if request.url.host == "open.feishu.cn":
        return httpx.Response(200, json={"code": 0, "data": {"message_id": "om_reply"}})
    return httpx.Response(200, json={"id": "discord-msg"})


def make_client(chat_reply="Here is my answer.", fail_chat=False, **custom_settings):
    api_calls = []
    chat_calls = []

    def recorder(request):
        payload = json.loads(request.content) if request.content else None
        api_calls.append((request.method, request.url.path, payload))
        return platform_api(request)

    async def fake_chat(platform, platform_user_id, platform_user_name, platform_chat_id, message):
        chat_calls.append((platform, platform_user_id, platform_chat_id, message))
        if fail_chat:
            raise RuntimeError("pipeline exploded")
        return chat_reply

    channel_config = ChannelConfig(
        telegram_bot_token="TG",
        discord_bot_token="DC",
        discord_application_id="APP",
        feishu_app_id="cli_app",
        feishu_app_secret="secret",
        feishu_verification_token="vt",
        custom_settings=custom_settings,
    )
    shared_client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))

    app.dependency_overrides.clear()
    app.dependency_overrides[get_channel_config] = lambda: channel_config
    app.dependency_overrides[get_http_client] = lambda: shared_client
    app.dependency_overrides[get_chat_handler] = lambda: fake_chat
    return TestClient(app), api_calls, chat_calls


def telegram_update(text="hello", user_id=42, username="ada"):
    return {
        "update_id": 1,
        "message": {
            "message_id": 10,
            "from": {"id": user_id, "first_name": "Ada", "username": username},
            "chat": {"id": user_id, "type": "private"},
            "date": 1700000000,
            "text": text,
        },
    }


def discord_command(name, value=None, bot=False):
    data = {"name": name}
    if value is not None:
        data["options"] = [{"name": "message", "value": value}]
    return {
        "type": 2,
        "id": "int-1",
        "token": "int-token",
        "channel_id": "chan-1",
        "user": {"id": "user-1", "username": "nick", "bot": bot},
        "data": data,
    }


def feishu_event(text="你好"):
    return {
        "schema": "2.0",
        "header": {"event_id": "e1", "event_type": "im.message.receive_v1", "token": "vt"},
        "event": {
            "sender": {"sender_id": {"open_id": "ou_1"}, "sender_type": "user"},
            "message": {
                "message_id": "om_1",
                "chat_id": "oc_1",
                "chat_type": "p2p",
                "message_type": "text",
                "content": json.dumps({"text": text}),
            },
        },
    }


# ------------------------------- Service -------------------------------

def test_root_and_channel_listing():
    client, _, _ = make_client()
    assert client.get("/").status_code == 200
    platforms = client.get("/channels").json()["platforms"]
    assert {"telegram", "discord", "feishu"} <= set(platforms)


def test_unknown_platform_is_404():
    client, _, _ = make_client()
    assert client.post("/webhook/myspace", json={}).status_code == 404
    assert client.get("/channels/myspace/health").status_code == 404


def test_non_object_bodies_are_acknowledged():
    client, api_calls, chat_calls = make_client()
    for platform in ("telegram", "discord", "feishu"):
        for body in ([], "hello", 42):
            response = client.post(f"/webhook/{platform}", json=body)
            assert response.status_code == 200
            assert response.json() == {"ok": True, "status": "ignored"}
    assert chat_calls == []
    assert api_calls == []


def test_health_endpoint():
    client, api_calls, _ = make_client()
    response = client.get("/channels/telegram/health")
    assert response.json() == {"platform": "telegram", "healthy": True, "error": None}
    assert api_calls[0][:2] == ("GET", "/botTG/getMe")


# ------------------------------ Telegram ------------------------------

def test_telegram_message_gets_threaded_reply():
    client, api_calls, chat_calls = make_client(chat_reply="**Sure!**")
    response = client.post("/webhook/telegram", json=telegram_update("hello"))
    assert response.status_code == 200
    assert chat_calls == [("telegram", "42|ada", "42", "hello")]

    methods = [path.rsplit("/", 1)[-1] for _, path, _ in api_calls]
    assert methods == ["sendChatAction", "sendMessage"]
    sent = api_calls[1][2]
    assert sent["text"] == "<b>Sure!</b>"
    assert sent["reply_to_message_id"] == 10


def test_telegram_bad_secret_is_401():
    client, api_calls, chat_calls = make_client(telegramSecretToken="expected")
    response = client.post(
        "/webhook/telegram",
        json=telegram_update(),
        headers={"X-Telegram-Bot-Api-Secret-Token": "guess"},
    )
    assert response.status_code == 401
    assert chat_calls == []
    assert api_calls == []


def test_telegram_non_message_update_is_acknowledged():
    client, _, chat_calls = make_client()
    response = client.post("/webhook/telegram", json={"update_id": 5, "my_chat_member": {}})
    assert response.status_code == 200
    assert response.json()["status"] == "ignored"
    assert chat_calls == []


def test_telegram_start_command_is_answered_locally():
    client, api_calls, chat_calls = make_client()
    client.post("/webhook/telegram", json=telegram_update("/start"))
    assert chat_calls == []
    assert "Hi Ada" in api_calls[-1][2]["text"]


def test_telegram_allowlist_drops_strangers():
    client, api_calls, chat_calls = make_client(telegramAllowedUsers=["@grace"])
    response = client.post("/webhook/telegram", json=telegram_update())
    assert response.json()["status"] == "ignored"
    assert chat_calls == []
    assert api_calls == []

    client.post("/webhook/telegram", json=telegram_update(user_id=7, username="grace"))
    assert len(chat_calls) == 1


def test_telegram_callback_query_is_acknowledged_and_answered():
    client, api_calls, chat_calls = make_client()
    update = {
        "update_id": 9,
        "callback_query": {
            "id": "cb-7",
            "from": {"id": 42, "first_name": "Ada", "username": "ada"},
            "message": {"message_id": 11, "chat": {"id": 42, "type": "private"}},
            "data": "show menu",
        },
    }
    assert client.post("/webhook/telegram", json=update).status_code == 200
    assert chat_calls == [("telegram", "42|ada", "42", "show menu")]

    by_method = {path.rsplit("/", 1)[-1]: payload for _, path, payload in api_calls}
    assert by_method["answerCallbackQuery"] == {"callback_query_id": "cb-7"}
    assert "reply_to_message_id" not in by_method["sendMessage"]


def test_telegram_callback_query_without_user_is_ignored():
    client, api_calls, chat_calls = make_client()
    update = {"update_id": 10, "callback_query": {"id": "cb-8", "data": "show menu"}}
    response = client.post("/webhook/telegram", json=update)
    assert response.json() == {"ok": True, "status": "ignored"}
    assert chat_calls == []
    assert api_calls == []


def test_chat_failure_sends_apology():
    client, api_calls, _ = make_client(fail_chat=True)
    response = client.post("/webhook/telegram", json=telegram_update())
    assert response.status_code == 200
    assert api_calls[-1][2]["text"] == ERROR_REPLIES["telegram"]


# ------------------------------- Discord -------------------------------

def test_discord_ping_gets_pong():
    client, _, _ = make_client()
    response = client.post("/webhook/discord", json={"type": 1, "id": "p1"})
    assert response.json() == {"type": 1}


def test_discord_builtin_commands():
    client, _, chat_calls = make_client()
    help_response = client.post("/webhook/discord", json=discord_command("help")).json()
    assert help_response["type"] == 4
    assert help_response["data"]["content"] == DISCORD_HELP_TEXT

    whoami = client.post("/webhook/discord", json=discord_command("whoami")).json()
    assert "user-1" in whoami["data"]["content"]

    unknown = client.post("/webhook/discord", json=discord_command("dance")).json()
    assert unknown["data"]["content"] == "Unknown command: dance"
    assert chat_calls == []


def test_discord_ask_is_deferred_then_followed_up():
    client, api_calls, chat_calls = make_client(chat_reply="It is sunny.")
    response = client.post("/webhook/discord", json=discord_command("ask", "weather?"))
    assert response.json() == {"type": 5}
    assert chat_calls == [("discord", "user-1", "chan-1", "weather?")]
    assert api_calls == [("POST", "/api/v10/webhooks/APP/int-token", {"content": "It is sunny."})]


def test_discord_bot_interactions_are_dropped():
    client, api_calls, chat_calls = make_client()
    response = client.post("/webhook/discord", json=discord_command("ask", "hi", bot=True))
    assert response.json() == {"type": 1}
    assert chat_calls == []
    assert api_calls == []


# ------------------------------- Feishu -------------------------------

def test_feishu_challenge_is_echoed():
    client, _, _ = make_client()
    response = client.post("/webhook/feishu", json={"type": "url_verification", "challenge": "c-42", "token": "vt"})
    assert response.json() == {"challenge": "c-42"}


def test_feishu_bad_token_is_401():
    client, _, _ = make_client()
    body = feishu_event()
    body["header"]["token"] = "forged"
    assert client.post("/webhook/feishu", json=body).status_code == 401


def test_feishu_message_gets_reaction_and_card():
    client, api_calls, chat_calls = make_client(chat_reply="收到")
    response = client.post("/webhook/feishu", json=feishu_event("你好"))
    assert response.json() == {"status": "ok"}
    assert chat_calls == [("feishu", "ou_1", "ou_1", "你好")]

    paths = [path for _, path, _ in api_calls]
    assert paths == [
        "/open-apis/auth/v3/tenant_access_token/internal",
        "/open-apis/im/v1/messages/om_1/reactions",
        "/open-apis/im/v1/messages",
    ]
    card = json.loads(api_calls[-1][2]["content"])
    assert card["elements"] == [{"tag": "markdown", "content": "收到"}]


def test_feishu_text_that_is_not_a_json_object_is_passed_through():
    client, _, chat_calls = make_client()
    body = feishu_event()
    body["event"]["message"]["content"] = "[]"
    response = client.post("/webhook/feishu", json=body)
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert chat_calls == [("feishu", "ou_1", "ou_1", "[]")]


if __name__ == "__main__":
    for name, func in list(globals().items()):
        if name.startswith("test_") and callable(func):
            func()
            print(f"✅ {name}")
