"""Tests for the emailed-code password change flow."""

import json
import re
from datetime import timedelta

import httpx
import pytest

from tokenwarden.service.credentials import PASSWORD_CHANGE_PURPOSE, CredentialService
from tokenwarden.service.errors import (
    NotFoundError,
    RateLimitedError,
    ServerError,
    ValidationError,
)
from tokenwarden.service.notifications import NotificationService
from tokenwarden.service.passwords import CredentialHasher


class Mailbox:
    """Captures outgoing messages sent through a mock transport."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.messages = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.messages.append(json.loads(request.content))
        return httpx.Response(self.status_code, json={"id": "msg"})

    def last_code(self) -> str:
        return re.search(r"code is (\d+)", self.messages[-1]["text"]).group(1)


@pytest.fixture
def mailbox():
    return Mailbox()


@pytest.fixture
def service(settings, mailbox, clock):
    notifier = NotificationService(
        api_url="https://mail.example.test",
        api_key="mail-key",
        transport=httpx.MockTransport(mailbox),
    )
    return CredentialService(settings, notifier=notifier, clock=clock)


@pytest.fixture
def principal(memory_store):
    principal = memory_store.create_principal("reader@example.com")
    memory_store.save_password_hash(principal.id, CredentialHasher().hash_password("OldPassw0rd"))
    return principal


class TestRequestCode:
    async def test_code_is_sent_and_stored_hashed(self, service, memory_store, principal, mailbox, clock):
        result = await service.request_password_change_code(memory_store, principal.id)
        assert result.ok
        assert result.value.expires_at == clock() + timedelta(minutes=15)
        code = mailbox.last_code()
        assert len(code) == 6
        stored = memory_store.latest_verification_code(principal.id, PASSWORD_CHANGE_PURPOSE)
        assert stored.code_hash != code
        assert CredentialHasher().verification_code_matches(code, stored.code_hash)
        assert mailbox.messages[-1]["to"] == ["reader@example.com"]

    async def test_new_code_invalidates_previous(self, service, memory_store, principal, mailbox):
        await service.request_password_change_code(memory_store, principal.id)
        await service.request_password_change_code(memory_store, principal.id)
        unused = [code for code in memory_store.codes.values() if not code.used]
        assert len(unused) == 1
        second = mailbox.last_code()
        assert (await service.change_password(memory_store, principal.id, second, "NewPassw0rd")).ok

    async def test_unknown_principal(self, service, memory_store):
        result = await service.request_password_change_code(memory_store, "ghost")
        assert isinstance(result.error, NotFoundError)

    async def test_principal_without_email(self, service, memory_store):
        principal = memory_store.create_principal(None)
        result = await service.request_password_change_code(memory_store, principal.id)
        assert isinstance(result.error, ValidationError)

    async def test_delivery_failure(self, settings, memory_store, principal, clock):
        notifier = NotificationService(
            api_key="mail-key", transport=httpx.MockTransport(Mailbox(status_code=503))
        )
        service = CredentialService(settings, notifier=notifier, clock=clock)
        result = await service.request_password_change_code(memory_store, principal.id)
        assert isinstance(result.error, ServerError)
        assert result.error.message == "could not send verification code"

    async def test_request_rate_limited(self, service, memory_store, principal):
        for _ in range(5):
            assert (await service.request_password_change_code(memory_store, principal.id)).ok
        result = await service.request_password_change_code(memory_store, principal.id)
        assert isinstance(result.error, RateLimitedError)


class TestChangePassword:
    async def test_change_with_valid_code(self, service, memory_store, principal, mailbox):
        await service.request_password_change_code(memory_store, principal.id)
        result = await service.change_password(
            memory_store, principal.id, f" {mailbox.last_code()} ", "NewPassw0rd"
        )
        assert result.ok
        hasher = CredentialHasher()
        stored = memory_store.get_password_hash(principal.id)
        assert hasher.verify_password("NewPassw0rd", stored)
        assert not hasher.verify_password("OldPassw0rd", stored)
        events = memory_store.list_audit_events(principal.id)
        assert [event.action for event in events] == ["password_change"]

    async def test_code_is_single_use(self, service, memory_store, principal, mailbox):
        await service.request_password_change_code(memory_store, principal.id)
        code = mailbox.last_code()
        assert (await service.change_password(memory_store, principal.id, code, "NewPassw0rd")).ok
        again = await service.change_password(memory_store, principal.id, code, "Newer0Password")
        assert isinstance(again.error, ValidationError)

    async def test_wrong_code(self, service, memory_store, principal, mailbox):
        await service.request_password_change_code(memory_store, principal.id)
        wrong = "".join(str((int(d) + 1) % 10) for d in mailbox.last_code())
        result = await service.change_password(memory_store, principal.id, wrong, "NewPassw0rd")
        assert isinstance(result.error, ValidationError)
        assert result.error.message == "invalid verification code"
        assert CredentialHasher().verify_password(
            "OldPassw0rd", memory_store.get_password_hash(principal.id)
        )

    async def test_expired_code(self, service, memory_store, principal, mailbox, clock):
        await service.request_password_change_code(memory_store, principal.id)
        clock.advance(minutes=16)
        result = await service.change_password(
            memory_store, principal.id, mailbox.last_code(), "NewPassw0rd"
        )
        assert isinstance(result.error, ValidationError)

    async def test_without_any_code(self, service, memory_store, principal):
        result = await service.change_password(memory_store, principal.id, "123456", "NewPassw0rd")
        assert "no valid verification code" in result.error.message

    async def test_weak_password_rejected(self, service, memory_store, principal, mailbox):
        await service.request_password_change_code(memory_store, principal.id)
        result = await service.change_password(memory_store, principal.id, mailbox.last_code(), "weak")
        assert isinstance(result.error, ValidationError)

    async def test_register_password(self, service, memory_store):
        principal = memory_store.create_principal("new@example.com")
        assert (await service.register_password(memory_store, principal.id, "Initial0Pass")).ok
        assert CredentialHasher().verify_password(
            "Initial0Pass", memory_store.get_password_hash(principal.id)
        )
