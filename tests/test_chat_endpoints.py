from __future__ import annotations

import os
from pathlib import Path
import sys
import unittest
from unittest.mock import patch

import httpx
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from app.main import create_app


_ENV = {"REDIS_URL": "", "SUPABASE_URL": "", "OPENAI_API_KEY": "sk-test"}

_REPLY = [
    "Your barrier needs a break. ",
    '[PRODUCT]{"name":"Cicaplast Baume B5","brand":"La Roche-Posay","category":"moisturizer"}',
    "[/PRODUCT]",
]


async def _fake_stream(**kwargs):
    _fake_stream.calls.append(kwargs)
    for chunk in _REPLY:
        yield chunk


_fake_stream.calls = []


async def _failing_stream(**kwargs):
    _ = kwargs
    raise httpx.ConnectError("connection refused")
    yield ""


class TestChatEndpoint(unittest.TestCase):
    def setUp(self) -> None:
        _fake_stream.calls.clear()

    def test_streams_assistant_text(self) -> None:
        with patch.dict(os.environ, _ENV):
            app = create_app()
            with patch("app.routes.v1.stream_chat_completion", new=_fake_stream):
                with TestClient(app) as client:
                    res = client.post(
                        "/v1/chat",
                        headers={"X-User-ID": "uid_chat_1"},
                        json={
                            "messages": [{"role": "user", "content": "My cheeks sting"}],
                            "context": {"page": "cabinet"},
                        },
                    )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.text, "".join(_REPLY))
        self.assertEqual(len(_fake_stream.calls), 1)
        call = _fake_stream.calls[0]
        self.assertEqual(call["messages"], [{"role": "user", "content": "My cheeks sting"}])
        self.assertIn("[PRODUCT]", call["system_prompt"])
        self.assertIn("cabinet", call["system_prompt"])

    def test_invalid_messages(self) -> None:
        with patch.dict(os.environ, _ENV):
            with TestClient(create_app()) as client:
                res = client.post("/v1/chat", headers={"X-User-ID": "u"}, json={"messages": "hi"})
                self.assertEqual(res.status_code, 400)
                res = client.post(
                    "/v1/chat",
                    headers={"X-User-ID": "u"},
                    json={"messages": [{"role": "system", "content": "x"}]},
                )
                self.assertEqual(res.status_code, 400)

    def test_missing_user_id(self) -> None:
        with patch.dict(os.environ, _ENV):
            with TestClient(create_app()) as client:
                res = client.post("/v1/chat", json={"messages": []})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["detail"], "Missing X-User-ID")

    def test_missing_api_key(self) -> None:
        with patch.dict(os.environ, {**_ENV, "OPENAI_API_KEY": ""}):
            with TestClient(create_app()) as client:
                res = client.post("/v1/chat", headers={"X-User-ID": "u"}, json={"messages": []})
        self.assertEqual(res.status_code, 503)

    def test_upstream_failure_is_502(self) -> None:
        with patch.dict(os.environ, _ENV):
            app = create_app()
            with patch("app.routes.v1.stream_chat_completion", new=_failing_stream):
                with TestClient(app) as client:
                    res = client.post(
                        "/v1/chat",
                        headers={"X-User-ID": "u"},
                        json={"messages": [{"role": "user", "content": "hi"}]},
                    )
        self.assertEqual(res.status_code, 502)
        self.assertEqual(res.json()["detail"]["upstream"], "llm")


class TestParseAndDetectEndpoints(unittest.TestCase):
    def test_parse_returns_records_and_cleaned_text(self) -> None:
        content = (
            "**Good news**: keep it simple.\n"
            '[PRODUCT]{"name":"Cicaplast","brand":"LRP"}[/PRODUCT]'
            '[CHECKIN_ACTION]{"notes":"calm"}[/CHECKIN_ACTION]'
        )
        with patch.dict(os.environ, _ENV):
            with TestClient(create_app()) as client:
                res = client.post("/v1/chat/parse", json={"content": content})
        self.assertEqual(res.status_code, 200)
        data = res.json()
        self.assertEqual(data["parsed"]["products"][0]["name"], "Cicaplast")
        self.assertEqual(data["checkin_actions"], [{"notes": "calm", "lighting": None, "photo_urls": []}])
        self.assertEqual(data["weekly_routines"], [])
        self.assertEqual(data["cleaned"], "**Good news**: keep it simple.")
        self.assertEqual(data["html"], "<strong>Good news</strong>: keep it simple.")

    def test_parse_requires_content(self) -> None:
        with patch.dict(os.environ, _ENV):
            with TestClient(create_app()) as client:
                res = client.post("/v1/chat/parse", json={})
        self.assertEqual(res.status_code, 400)

    def test_detect_partial_stream(self) -> None:
        with patch.dict(os.environ, _ENV):
            with TestClient(create_app()) as client:
                res = client.post("/v1/chat/detect", json={"content": 'Adding it [CABINET_ACTION]{"action":"add"'})
        self.assertEqual(res.status_code, 200)
        data = res.json()
        self.assertTrue(data["incomplete"])
        self.assertEqual(data["component_type"], "cabinet_action")
        self.assertEqual(data["text_before"], "Adding it")
        self.assertEqual(data["loading_message"], "Managing your cabinet...")


class TestHealthz(unittest.TestCase):
    def test_reports_backends(self) -> None:
        with patch.dict(os.environ, _ENV):
            with TestClient(create_app()) as client:
                res = client.get("/healthz")
        self.assertEqual(res.status_code, 200)
        data = res.json()
        self.assertTrue(data["ok"])
        self.assertEqual(data["database_backend"], "memory")
        self.assertEqual(data["action_state_backend"], "memory")
