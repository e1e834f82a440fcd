"""
Tests for the mail transport supervisor.

These tests cover:
- Port ordering and per-provider transport options
- Brevo port probing and Gmail fallback
- Lazy and single-flight re-initialization
- Fire-and-forget delivery
- The aiosmtplib-backed pool
"""

import asyncio
import logging
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from jv_backend.core import email
from jv_backend.core.email import (
    Attachment,
    MailTransportError,
    MailTransportSupervisor,
    Provider,
    SmtpPool,
    TransportOptions,
    brevo_options,
    build_message,
    candidate_ports,
    gmail_options,
)


class FakeTransport:
    def __init__(self, options: TransportOptions, fails: bool, gate: asyncio.Event | None):
        self.options = options
        self.fails = fails
        self.gate = gate
        self.verified = 0
        self.closed = False
        self.sent = []

    async def verify(self) -> None:
        if self.gate is not None:
            await self.gate.wait()
        self.verified += 1
        if self.fails:
            raise ConnectionRefusedError(f"connection refused on {self.options.port}")

    async def send(self, message) -> str:
        self.sent.append(message)
        return message["Message-ID"]

    async def close(self) -> None:
        self.closed = True


class FakeFactory:
    """Builds FakeTransports; ports and hosts listed as failing refuse verify()."""

    def __init__(self, failing_ports=(), failing_hosts=(), gate=None):
        self.failing_ports = set(failing_ports)
        self.failing_hosts = set(failing_hosts)
        self.gate = gate
        self.created: list[FakeTransport] = []

    def __call__(self, options: TransportOptions) -> FakeTransport:
        fails = options.port in self.failing_ports or options.host in self.failing_hosts
        transport = FakeTransport(options, fails, self.gate)
        self.created.append(transport)
        return transport


@pytest.fixture
def brevo_settings(settings_factory):
    return settings_factory(
        email_provider="brevo",
        brevo_smtp_user=" relay-user ",
        brevo_smtp_pass="relay-pass",
        gmail_user="jv@gmail.com",
        gmail_pass="app-password",
    )


@pytest.fixture
def gmail_settings(settings_factory):
    return settings_factory(gmail_user="jv@gmail.com", gmail_pass="app-password")


class TestTransportOptions:
    """Tests for port ordering and options."""

    def test_default_port_order(self):
        assert candidate_ports(None) == [2525, 587, 465]

    def test_configured_port_goes_first_without_duplicates(self):
        assert candidate_ports(587) == [587, 2525, 465]
        assert candidate_ports(2525) == [2525, 587, 465]
        assert candidate_ports(25) == [25, 2525, 587, 465]

    def test_brevo_probe_options(self, brevo_settings):
        options = brevo_options(brevo_settings, 587, probing=True)

        assert options.host == "smtp-relay.brevo.com"
        assert options.username == "relay-user"
        assert options.secure is False
        assert (options.connect_timeout, options.greeting_timeout, options.socket_timeout) == (
            10.0,
            10.0,
            20.0,
        )
        assert options.max_connections == 3
        assert options.max_messages == 100
        assert (options.rate_limit, options.rate_delta) == (5, 1.0)

    def test_brevo_steady_options_have_longer_timeouts(self, brevo_settings):
        options = brevo_options(brevo_settings, 465, probing=False)

        assert options.secure is True
        assert (options.connect_timeout, options.greeting_timeout) == (20.0, 20.0)

    def test_gmail_options(self, gmail_settings):
        options = gmail_options(gmail_settings)

        assert (options.host, options.port, options.secure) == ("smtp.gmail.com", 465, True)
        assert options.max_connections == 5


class TestInitialize:
    """Tests for provider selection."""

    @pytest.mark.asyncio
    async def test_first_verified_brevo_port_is_published(self, brevo_settings, caplog):
        factory = FakeFactory()
        supervisor = MailTransportSupervisor(brevo_settings, transport_factory=factory)

        with caplog.at_level(logging.INFO, logger="jv_backend.core.email"):
            session = await supervisor.initialize()

        assert session is supervisor.session
        assert session.provider is Provider.BREVO
        assert session.port == 2525
        assert "SUCCESS: Connected to Brevo on Port 2525" in caplog.text

        probe, published = factory.created
        assert probe.closed is True
        assert published is session.transport
        assert published.options.connect_timeout == 20.0

    @pytest.mark.asyncio
    async def test_failing_ports_are_skipped(self, brevo_settings, caplog):
        factory = FakeFactory(failing_ports={2525})
        supervisor = MailTransportSupervisor(brevo_settings, transport_factory=factory)

        with caplog.at_level(logging.INFO, logger="jv_backend.core.email"):
            session = await supervisor.initialize()

        assert session.port == 587
        assert "Failed to connect on Port 2525" in caplog.text

    @pytest.mark.asyncio
    async def test_all_brevo_ports_failing_falls_back_to_gmail(self, brevo_settings, caplog):
        factory = FakeFactory(failing_ports={2525, 587}, failing_hosts={"smtp-relay.brevo.com"})
        supervisor = MailTransportSupervisor(brevo_settings, transport_factory=factory)

        with caplog.at_level(logging.INFO, logger="jv_backend.core.email"):
            session = await supervisor.initialize()

        assert session.provider is Provider.GMAIL
        assert session.port == 465
        assert session.transport.options.host == "smtp.gmail.com"
        assert "ALL PORTS FAILED" in caplog.text
        assert "Gmail SMTP Ready" in caplog.text
        assert all(t.closed for t in factory.created[:3])

        message_id = await supervisor.send("student@example.com", "Welcome", "<p>Hi</p>")

        assert session.transport.sent[0]["Message-ID"] == message_id

    @pytest.mark.asyncio
    async def test_missing_brevo_credentials_disable_mail(self, settings_factory, caplog):
        settings = settings_factory(
            email_provider="brevo",
            brevo_smtp_user="  ",
            gmail_user="jv@gmail.com",
            gmail_pass="app-password",
        )
        factory = FakeFactory()
        supervisor = MailTransportSupervisor(settings, transport_factory=factory)

        with caplog.at_level(logging.ERROR, logger="jv_backend.core.email"):
            session = await supervisor.initialize()

        assert session is None
        assert factory.created == []
        assert "Brevo SMTP credentials missing" in caplog.text

    @pytest.mark.asyncio
    async def test_missing_gmail_credentials_disable_mail(self, settings_factory, caplog):
        factory = FakeFactory()
        supervisor = MailTransportSupervisor(settings_factory(), transport_factory=factory)

        with caplog.at_level(logging.CRITICAL, logger="jv_backend.core.email"):
            session = await supervisor.initialize()

        assert session is None
        assert supervisor.is_ready is False
        assert any(r.levelno == logging.CRITICAL for r in caplog.records)

    @pytest.mark.asyncio
    async def test_everything_failing_publishes_nothing(self, brevo_settings, caplog):
        factory = FakeFactory(failing_hosts={"smtp-relay.brevo.com", "smtp.gmail.com"})
        supervisor = MailTransportSupervisor(brevo_settings, transport_factory=factory)

        with caplog.at_level(logging.CRITICAL, logger="jv_backend.core.email"):
            session = await supervisor.initialize()

        assert session is None
        assert supervisor.session is None
        assert all(t.closed for t in factory.created)
        assert any(r.levelno == logging.CRITICAL for r in caplog.records)

    @pytest.mark.asyncio
    async def test_reinitialize_replaces_and_closes_previous_session(self, gmail_settings):
        factory = FakeFactory()
        supervisor = MailTransportSupervisor(gmail_settings, transport_factory=factory)

        first = await supervisor.initialize()
        second = await supervisor.initialize()

        assert supervisor.session is second
        assert first.transport.closed is True
        assert second.transport.closed is False


class TestSend:
    """Tests for MailTransportSupervisor.send."""

    @pytest.mark.asyncio
    async def test_send_without_any_provider_fails(self, settings_factory):
        supervisor = MailTransportSupervisor(settings_factory(), transport_factory=FakeFactory())

        with pytest.raises(MailTransportError, match="Email transporter not initialized"):
            await supervisor.send("student@example.com", "Hello", "<p>Hi</p>")

    @pytest.mark.asyncio
    async def test_send_initializes_lazily(self, gmail_settings):
        factory = FakeFactory()
        supervisor = MailTransportSupervisor(gmail_settings, transport_factory=factory)

        await supervisor.send("student@example.com", "Hello", "<p>Hi</p>")

        assert supervisor.is_ready
        assert len(supervisor.session.transport.sent) == 1

    @pytest.mark.asyncio
    async def test_send_recovers_after_an_outage(self, gmail_settings):
        factory = FakeFactory(failing_hosts={"smtp.gmail.com"})
        supervisor = MailTransportSupervisor(gmail_settings, transport_factory=factory)
        assert await supervisor.initialize() is None

        factory.failing_hosts.clear()
        await supervisor.send("student@example.com", "Hello", "<p>Hi</p>")

        assert supervisor.session.provider is Provider.GMAIL

    @pytest.mark.asyncio
    async def test_concurrent_sends_share_one_initialization(self, gmail_settings):
        gate = asyncio.Event()
        factory = FakeFactory(gate=gate)
        supervisor = MailTransportSupervisor(gmail_settings, transport_factory=factory)

        sends = [
            asyncio.create_task(supervisor.send(f"user{i}@example.com", "Hello", "<p>Hi</p>"))
            for i in range(5)
        ]
        await asyncio.sleep(0)
        gate.set()
        await asyncio.gather(*sends)

        assert len(factory.created) == 1
        assert len(factory.created[0].sent) == 5

    @pytest.mark.asyncio
    async def test_concurrent_reinitialize_calls_join_the_same_attempt(self, gmail_settings):
        gate = asyncio.Event()
        factory = FakeFactory(gate=gate)
        supervisor = MailTransportSupervisor(gmail_settings, transport_factory=factory)

        calls = [asyncio.create_task(supervisor.reinitialize()) for _ in range(3)]
        await asyncio.sleep(0)
        gate.set()
        sessions = await asyncio.gather(*calls)

        assert sessions[0] is sessions[1] is sessions[2]
        assert len(factory.created) == 1


class TestBuildMessage:
    """Tests for build_message."""

    def test_headers_and_html_body(self, gmail_settings):
        message = build_message(
            gmail_settings, ["a@example.com", "b@example.com"], "Offer Letter", "<p>Hi</p>"
        )

        assert message["To"] == "a@example.com, b@example.com"
        assert message["Subject"] == "Offer Letter"
        assert "JV Overseas" in message["From"]
        assert message["Message-ID"].startswith("<")
        assert message.get_content_type() == "text/html"

    def test_attachments_make_a_multipart_message(self, gmail_settings):
        message = build_message(
            gmail_settings,
            "a@example.com",
            "Receipt",
            "<p>Attached</p>",
            [Attachment("receipt.pdf", b"%PDF-1.4", "application/pdf")],
        )

        attachments = list(message.iter_attachments())
        assert message.get_content_type() == "multipart/mixed"
        assert attachments[0].get_filename() == "receipt.pdf"
        assert attachments[0].get_content_type() == "application/pdf"


class TestFireAndForget:
    """Tests for send_mail."""

    @staticmethod
    async def _drain() -> None:
        await asyncio.gather(*list(email._pending_deliveries))

    @pytest.mark.asyncio
    async def test_delivery_is_logged(self, caplog):
        supervisor = MagicMock()
        supervisor.send = AsyncMock(return_value="<id@jvoverseas.com>")

        with (
            patch.object(email, "mail_supervisor", supervisor),
            caplog.at_level(logging.INFO, logger="jv_backend.core.email"),
        ):
            assert email.send_mail("student@example.com", "Hello", "<p>Hi</p>") is True
            await self._drain()

        supervisor.send.assert_awaited_once_with("student@example.com", "Hello", "<p>Hi</p>", None)
        assert "Email sent to student@example.com (ID: <id@jvoverseas.com>)" in caplog.text

    @pytest.mark.asyncio
    async def test_failures_are_logged_not_raised(self, caplog):
        supervisor = MagicMock()
        supervisor.send = AsyncMock(side_effect=MailTransportError("relay down"))

        with (
            patch.object(email, "mail_supervisor", supervisor),
            caplog.at_level(logging.ERROR, logger="jv_backend.core.email"),
        ):
            assert email.send_mail("student@example.com", "Hello", "<p>Hi</p>") is True
            await self._drain()

        assert "Delivery Failed [student@example.com]: relay down" in caplog.text

    @pytest.mark.asyncio
    async def test_send_mail_returns_before_delivery(self):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_send(*args):
            started.set()
            await release.wait()
            return "<id>"

        supervisor = MagicMock()
        supervisor.send = slow_send

        with patch.object(email, "mail_supervisor", supervisor):
            assert email.send_mail("student@example.com", "Hello", "<p>Hi</p>") is True
            assert len(email._pending_deliveries) == 1
            await started.wait()
            release.set()
            await self._drain()

        assert email._pending_deliveries == set()


def _smtp_client():
    client = MagicMock()
    client.connect = AsyncMock()
    client.send_message = AsyncMock(return_value=({}, "250 OK"))
    client.quit = AsyncMock()
    client.is_connected = True
    return client


class TestSmtpPool:
    """Tests for the aiosmtplib-backed pool."""

    @pytest.fixture
    def options(self):
        return TransportOptions(
            host="smtp.example.com",
            port=587,
            username="user",
            password="pass",
            secure=False,
            max_connections=2,
            max_messages=2,
        )

    @pytest.mark.asyncio
    async def test_verify_connects_and_quits(self, options):
        client = _smtp_client()
        with patch.object(email.aiosmtplib, "SMTP", return_value=client) as smtp_cls:
            await SmtpPool(options).verify()

        smtp_cls.assert_called_once_with(
            hostname="smtp.example.com",
            port=587,
            username="user",
            password="pass",
            use_tls=False,
            timeout=options.socket_timeout,
        )
        client.connect.assert_awaited_once()
        client.quit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_connections_are_reused_then_retired(self, options, gmail_settings):
        clients = [_smtp_client(), _smtp_client()]
        with patch.object(email.aiosmtplib, "SMTP", side_effect=clients):
            pool = SmtpPool(options)
            for _ in range(3):
                await pool.send(build_message(gmail_settings, "a@example.com", "s", "<p>b</p>"))

        assert clients[0].send_message.await_count == 2
        clients[0].quit.assert_awaited_once()
        assert clients[1].send_message.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_send_discards_the_connection(self, options, gmail_settings):
        client = _smtp_client()
        client.send_message = AsyncMock(side_effect=OSError("reset"))
        with patch.object(email.aiosmtplib, "SMTP", return_value=client):
            pool = SmtpPool(options)
            with pytest.raises(OSError):
                await pool.send(build_message(gmail_settings, "a@example.com", "s", "<p>b</p>"))

        client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_sends_are_paced_to_the_rate_limit(self, options, gmail_settings):
        paced = replace(options, rate_limit=2, max_messages=100)
        with (
            patch.object(email.aiosmtplib, "SMTP", return_value=_smtp_client()),
            patch.object(email.asyncio, "sleep", new=AsyncMock()) as sleep,
        ):
            pool = SmtpPool(paced)
            for _ in range(3):
                await pool.send(build_message(gmail_settings, "a@example.com", "s", "<p>b</p>"))

        sleep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_closed_pool_refuses_to_send(self, options, gmail_settings):
        pool = SmtpPool(options)
        await pool.close()

        with pytest.raises(MailTransportError):
            await pool.send(build_message(gmail_settings, "a@example.com", "s", "<p>b</p>"))
