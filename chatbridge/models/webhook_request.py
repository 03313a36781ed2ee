"""Buffered webhook request.

Verification and parsing both need the full body, so the HTTP body is read
once and kept here together with the headers.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from fastapi import Request


@dataclass(frozen=True)
class WebhookRequest:
    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)
    client_ip: Optional[str] = None

    @classmethod
    def build(
        cls,
        body: Any,
        headers: Optional[Mapping[str, str]] = None,
        client_ip: Optional[str] = None,
    ) -> "WebhookRequest":
        """Create a request from bytes, text or a JSON-serializable object."""
        if isinstance(body, bytes):
            raw = body
        elif isinstance(body, str):
            raw = body.encode("utf-8")
        else:
            raw = json.dumps(body).encode("utf-8")
        lowered = {k.lower(): v for k, v in (headers or {}).items()}
        return cls(body=raw, headers=lowered, client_ip=client_ip)

    @classmethod
    async def from_request(cls, request: Request, client_ip: Optional[str] = None) -> "WebhookRequest":
        body = await request.body()
        return cls.build(body, dict(request.headers), client_ip)

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    @property
    def text(self) -> str:
        return self.body.decode("utf-8")

    def json(self) -> Dict[str, Any]:
        """Decode the body as a JSON object.

        Raises ValueError on malformed input or when the top level is not an object.
        """
        data = json.loads(self.body)
        if not isinstance(data, dict):
            raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
        return data
