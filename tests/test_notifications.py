"""Tests for transactional email delivery."""

import json

import httpx

from tokenwarden.service.notifications import NotificationContent, NotificationService

CONTENT = NotificationContent(subject="Hello", html="<p>Hi</p>", text="Hi")


def _service(handler):
    return NotificationService(
        api_url="https://mail.example.test/",
        api_key="mail-key",
        from_address="Tokenwarden <noreply@example.test>",
        transport=httpx.MockTransport(handler),
    )


class TestNotificationService:
    async def test_posts_message_with_bearer_key(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "msg-1"})

        service = _service(handler)
        result = await service.send("reader@example.com", CONTENT)
        await service.aclose()

        assert result.ok
        assert result.status_code == 200
        assert captured["url"] == "https://mail.example.test/emails"
        assert captured["auth"] == "Bearer mail-key"
        assert captured["body"] == {
            "from": "Tokenwarden <noreply@example.test>",
            "to": ["reader@example.com"],
            "subject": "Hello",
            "html": "<p>Hi</p>",
            "text": "Hi",
        }

    async def test_provider_rejection(self):
        service = _service(lambda request: httpx.Response(422, json={"message": "bad"}))
        result = await service.send("reader@example.com", CONTENT)
        await service.aclose()
        assert not result.ok
        assert result.error == "provider_rejected"
        assert result.status_code == 422

    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        service = _service(handler)
        result = await service.send("reader@example.com", CONTENT)
        await service.aclose()
        assert result.error == "timeout"

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        service = _service(handler)
        result = await service.send("reader@example.com", CONTENT)
        await service.aclose()
        assert result.error == "transport_error"

    async def test_dev_mode_without_key_reports_success(self):
        def handler(request):
            raise AssertionError("no request expected in dev mode")

        service = NotificationService(transport=httpx.MockTransport(handler))
        assert not service.is_configured
        result = await service.send("reader@example.com", CONTENT)
        assert result.ok

    def test_password_change_template_contains_code(self):
        content = NotificationService(app_name="Tokenwarden").render_password_change_code("042917", 15)
        assert "042917" in content.html
        assert "042917" in content.text
        assert "15 minutes" in content.text
        assert content.subject == "Your Tokenwarden verification code"
