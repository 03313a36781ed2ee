#!/usr/bin/env python3
"""
Tests for the chat pipeline client and the webhook security helpers.
"""
import asyncio
import json

import httpx
from nacl.signing import SigningKey

from chatbridge import config, security
from chatbridge.clients import chat_client


def test_request_reply_posts_message_and_returns_content():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["api_key"] = request.headers["X-Channel-API-Key"]
        seen["payload"] = json.loads(request.content)
        return httpx.Response(200, json={"content": "Hi Ada!", "conversationId": "conv-1"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    reply = asyncio.run(chat_client.request_reply("telegram", "42|ada", "Ada", "42", "hello", http_client=client))

    assert reply == "Hi Ada!"
    assert seen["url"] == f"{config.CHAT_API_URL.rstrip('/')}/api/channels/chat"
    assert seen["api_key"] == config.CHANNEL_API_KEY
    assert seen["payload"] == {
        "platform": "telegram",
        "platformUserId": "42|ada",
        "platformUserName": "Ada",
        "platformChatId": "42",
        "message": "hello",
    }


def test_request_reply_returns_none_on_errors():
    def server_error(request):
        return httpx.Response(500, text="boom")

    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    for handler in (server_error, unreachable):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        assert asyncio.run(chat_client.request_reply("discord", "u", None, "c", "hi", http_client=client)) is None


def test_request_reply_treats_empty_content_as_no_reply():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"content": ""})))
    assert asyncio.run(chat_client.request_reply("feishu", "ou", None, "ou", "hi", http_client=client)) is None


def test_secrets_match_and_hash():
    assert security.secrets_match("abc", "abc")
    assert not security.secrets_match("abd", "abc")
    assert not security.secrets_match(None, "abc")
    digest = security.hash_secret("abc")
    assert len(digest) == 8
    assert "abc" not in digest


def test_default_ed25519_verifier():
    signing_key = SigningKey.generate()
    public_key = signing_key.verify_key.encode().hex()
    signature = signing_key.sign(b"1700000000{}").signature.hex()
    verify = security.create_ed25519_verifier()

    assert verify(public_key, signature, "1700000000", "{}")
    assert not verify(public_key, signature, "1700000001", "{}")
    assert not verify(public_key, "not-hex", "1700000000", "{}")
    assert not verify("zz", signature, "1700000000", "{}")


if __name__ == "__main__":
    for name, func in list(globals().items()):
        if name.startswith("test_") and callable(func):
            func()
            print(f"✅ {name}")
