"""
Email Transport Supervisor

Keeps at most one verified, pooled SMTP transport and hands it to senders.

Initialization:
1. EMAIL_PROVIDER=brevo: probe the Brevo relay on the configured port, then
   2525, 587 and 465 (duplicates dropped). The first port that passes
   verify() is rebuilt with steady-state timeouts and published.
2. Otherwise, or when every Brevo port fails: Gmail on 465 (implicit TLS).
3. Nothing verifies: no transport is published and sending is disabled until
   a later send triggers re-initialization.

A transport is only published after verify() succeeded. The current session is
swapped in a single assignment, so readers see either the old or the new one.
Concurrent re-initializations share one in-flight attempt.

send_mail() is fire-and-forget: the request path never waits on SMTP, and
delivery failures are logged, never raised.
"""

import asyncio
import enum
import logging
import time
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from email.message import EmailMessage
from email.utils import formataddr, make_msgid

import aiosmtplib

from jv_backend.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

BREVO_FALLBACK_PORTS = (2525, 587, 465)
IMPLICIT_TLS_PORT = 465

GMAIL_HOST = "smtp.gmail.com"
GMAIL_PORT = 465


class MailTransportError(Exception):
    """Raised when a message cannot be handed to any transport."""


class Provider(str, enum.Enum):
    BREVO = "brevo"
    GMAIL = "gmail"


@dataclass(frozen=True)
class TransportOptions:
    """Connection and pooling options for one SMTP relay endpoint."""

    host: str
    port: int
    username: str | None
    password: str | None
    secure: bool
    max_connections: int = 5
    max_messages: int = 100
    rate_limit: int | None = None  # messages per rate_delta seconds
    rate_delta: float = 1.0
    connect_timeout: float = 20.0
    greeting_timeout: float = 20.0
    socket_timeout: float = 60.0
    debug: bool = False


@dataclass(frozen=True)
class Attachment:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


def candidate_ports(preferred: int | None) -> list[int]:
    """Ports to probe: the configured one first, then the fallbacks, without repeats."""
    ports = [preferred] if preferred else []
    ports.extend(BREVO_FALLBACK_PORTS)
    return list(dict.fromkeys(ports))


def brevo_options(settings: Settings, port: int, probing: bool = True) -> TransportOptions:
    """
    Brevo relay options.

    Probing uses short timeouts so a blocked port fails fast; the published
    transport gets longer connect and greeting timeouts.
    """
    options = TransportOptions(
        host=settings.brevo_smtp_host,
        port=port,
        username=settings.brevo_smtp_user,
        password=settings.brevo_smtp_pass,
        secure=port == IMPLICIT_TLS_PORT,
        max_connections=3,
        max_messages=100,
        rate_limit=5,
        rate_delta=1.0,
        connect_timeout=10.0,
        greeting_timeout=10.0,
        socket_timeout=20.0,
    )
    if probing:
        return options
    return replace(
        options,
        connect_timeout=20.0,
        greeting_timeout=20.0,
        debug=settings.is_development,
    )


def gmail_options(settings: Settings) -> TransportOptions:
    return TransportOptions(
        host=GMAIL_HOST,
        port=GMAIL_PORT,
        username=settings.gmail_user,
        password=settings.gmail_pass,
        secure=True,
        max_connections=5,
        debug=settings.is_development,
    )


class _PooledConnection:
    def __init__(self, client: aiosmtplib.SMTP) -> None:
        self.client = client
        self.messages = 0


class SmtpPool:
    """
    Pooled SMTP transport built on aiosmtplib.

    At most max_connections sessions are open at once. A session is retired
    after max_messages deliveries, and sends are paced to rate_limit per
    rate_delta seconds.
    """

    def __init__(self, options: TransportOptions) -> None:
        self.options = options
        self._slots = asyncio.Semaphore(options.max_connections)
        self._idle: list[_PooledConnection] = []
        self._sent_at: deque[float] = deque()
        self._pace_lock = asyncio.Lock()
        self._closed = False

        if options.debug:
            logging.getLogger("aiosmtplib").setLevel(logging.DEBUG)

    def __repr__(self) -> str:
        return f"SmtpPool({self.options.host}:{self.options.port})"

    def _new_client(self) -> aiosmtplib.SMTP:
        return aiosmtplib.SMTP(
            hostname=self.options.host,
            port=self.options.port,
            username=self.options.username,
            password=self.options.password,
            use_tls=self.options.secure,
            timeout=self.options.socket_timeout,
        )

    async def _connect(self, client: aiosmtplib.SMTP) -> None:
        # connect() covers TCP setup, the server greeting, TLS and login
        await asyncio.wait_for(
            client.connect(timeout=self.options.connect_timeout),
            timeout=self.options.connect_timeout + self.options.greeting_timeout,
        )

    @staticmethod
    async def _quit(client: aiosmtplib.SMTP) -> None:
        try:
            await client.quit()
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError):
            client.close()

    async def verify(self) -> None:
        """
        Open a session, authenticate and close it again.

        Raises:
            aiosmtplib.SMTPException, OSError, asyncio.TimeoutError on failure
        """
        client = self._new_client()
        await self._connect(client)
        await self._quit(client)

    async def send(self, message: EmailMessage) -> str:
        """Deliver `message` and return its Message-ID."""
        if self._closed:
            raise MailTransportError("Transport has been closed")

        await self._pace()
        async with self._slots:
            conn = await self._acquire()
            try:
                await conn.client.send_message(message)
            except BaseException:
                conn.client.close()
                raise
            conn.messages += 1
            await self._release(conn)
        return message["Message-ID"]

    async def _acquire(self) -> _PooledConnection:
        while self._idle:
            conn = self._idle.pop()
            if conn.client.is_connected:
                return conn
        client = self._new_client()
        await self._connect(client)
        return _PooledConnection(client)

    async def _release(self, conn: _PooledConnection) -> None:
        if self._closed or conn.messages >= self.options.max_messages:
            await self._quit(conn.client)
        else:
            self._idle.append(conn)

    async def _pace(self) -> None:
        if not self.options.rate_limit:
            return
        async with self._pace_lock:
            now = time.monotonic()
            while self._sent_at and now - self._sent_at[0] >= self.options.rate_delta:
                self._sent_at.popleft()
            if len(self._sent_at) >= self.options.rate_limit:
                await asyncio.sleep(self.options.rate_delta - (now - self._sent_at[0]))
                self._sent_at.popleft()
            self._sent_at.append(time.monotonic())

    async def close(self) -> None:
        self._closed = True
        idle, self._idle = self._idle, []
        for conn in idle:
            await self._quit(conn.client)


TransportFactory = Callable[[TransportOptions], SmtpPool]


@dataclass(frozen=True)
class TransportSession:
    """A verified transport and where it is connected."""

    transport: SmtpPool
    provider: Provider
    port: int


class MailTransportSupervisor:
    """
    Owns the current TransportSession.

    Args:
        settings: Settings to read provider credentials from (defaults to
            the process settings at call time)
        transport_factory: Builds a transport from TransportOptions
    """

    def __init__(
        self,
        settings: Settings | None = None,
        transport_factory: TransportFactory = SmtpPool,
    ) -> None:
        self._settings = settings
        self._factory = transport_factory
        self._session: TransportSession | None = None
        self._init_task: asyncio.Future | None = None

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    @property
    def session(self) -> TransportSession | None:
        return self._session

    @property
    def is_ready(self) -> bool:
        return self._session is not None

    async def initialize(self) -> TransportSession | None:
        """
        Select a provider and publish a verified transport.

        Returns:
            The published session, or None if no provider could be verified
        """
        settings = self.settings
        provider = settings.email_provider.strip().lower()

        if provider == Provider.BREVO.value:
            if not settings.brevo_configured:
                logger.error("CRITICAL: Brevo SMTP credentials missing.")
                return None
            session = await self._connect_brevo(settings)
            if session is not None:
                return await self._publish(session)
            logger.warning(
                "ALL PORTS FAILED: Could not connect to Brevo SMTP. Attempting fallback to Gmail..."
            )

        if not settings.gmail_configured:
            if provider == Provider.BREVO.value:
                logger.critical(
                    "CRITICAL: Brevo failed and Gmail credentials missing. Cannot send emails."
                )
            else:
                logger.critical("CRITICAL: Gmail SMTP credentials missing.")
            return None

        session = await self._connect_gmail(settings)
        if session is None:
            logger.critical("CRITICAL: No SMTP provider could be verified. Email is disabled.")
            return None
        return await self._publish(session)

    async def _connect_brevo(self, settings: Settings) -> TransportSession | None:
        ports = candidate_ports(settings.brevo_smtp_port)
        logger.info(
            f"Email Provider: BREVO. Attempting connection on ports: {', '.join(map(str, ports))}..."
        )

        for port in ports:
            logger.info(f"Probing Brevo SMTP on Port {port}...")
            probe = self._factory(brevo_options(settings, port, probing=True))
            try:
                await probe.verify()
            except Exception as e:
                logger.warning(f"Failed to connect on Port {port}: {e}")
                continue
            finally:
                await probe.close()

            logger.info(f"SUCCESS: Connected to Brevo on Port {port}")
            transport = self._factory(brevo_options(settings, port, probing=False))
            return TransportSession(transport=transport, provider=Provider.BREVO, port=port)

        return None

    async def _connect_gmail(self, settings: Settings) -> TransportSession | None:
        logger.info("Initializing Gmail SMTP Provider...")
        transport = self._factory(gmail_options(settings))
        try:
            await transport.verify()
        except Exception as e:
            logger.error(f"Gmail Connection Failed: {e}")
            await transport.close()
            return None

        logger.info("Gmail SMTP Ready")
        return TransportSession(transport=transport, provider=Provider.GMAIL, port=GMAIL_PORT)

    async def _publish(self, session: TransportSession) -> TransportSession:
        previous, self._session = self._session, session
        if previous is not None and previous.transport is not session.transport:
            await previous.transport.close()
        return session

    async def reinitialize(self) -> TransportSession | None:
        """Run initialize(), joining an attempt already in flight."""
        if self._init_task is None or self._init_task.done():
            self._init_task = asyncio.ensure_future(self.initialize())
        return await asyncio.shield(self._init_task)

    async def send(
        self,
        to: str | Sequence[str],
        subject: str,
        html: str,
        attachments: Sequence[Attachment] | None = None,
    ) -> str:
        """
        Deliver a message through the current session.

        Re-initializes first when no session is published.

        Returns:
            The delivered message's Message-ID

        Raises:
            MailTransportError: If no transport could be initialized
        """
        session = self._session
        if session is None:
            session = await self.reinitialize()
            if session is None:
                raise MailTransportError("Email transporter not initialized (Check logs)")

        message = build_message(self.settings, to, subject, html, attachments)
        return await session.transport.send(message)

    async def close(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await session.transport.close()


def build_message(
    settings: Settings,
    to: str | Sequence[str],
    subject: str,
    html: str,
    attachments: Sequence[Attachment] | None = None,
) -> EmailMessage:
    message = EmailMessage()
    message["From"] = formataddr((settings.email_from_name, settings.email_from_address))
    message["To"] = to if isinstance(to, str) else ", ".join(to)
    message["Subject"] = subject
    message["Message-ID"] = make_msgid(domain=settings.email_from_address.rpartition("@")[2])
    message.set_content(html, subtype="html")

    for attachment in attachments or ():
        maintype, _, subtype = attachment.content_type.partition("/")
        message.add_attachment(
            attachment.content,
            maintype=maintype,
            subtype=subtype or "octet-stream",
            filename=attachment.filename,
        )
    return message


# Process-wide supervisor used by request handlers
mail_supervisor = MailTransportSupervisor()

# Strong references to in-flight deliveries so they are not garbage collected
_pending_deliveries: set[asyncio.Task] = set()


async def init_mail_transport() -> bool:
    """Initialize the process-wide transport. Call on application startup."""
    return await mail_supervisor.reinitialize() is not None


async def close_mail_transport() -> None:
    await mail_supervisor.close()


async def send_email(
    to: str | Sequence[str],
    subject: str,
    html: str,
    attachments: Sequence[Attachment] | None = None,
) -> str:
    """Send and wait for the relay to accept the message."""
    return await mail_supervisor.send(to, subject, html, attachments)


async def _deliver(
    to: str | Sequence[str],
    subject: str,
    html: str,
    attachments: Sequence[Attachment] | None,
) -> None:
    try:
        message_id = await mail_supervisor.send(to, subject, html, attachments)
    except Exception as e:
        logger.error(f"Delivery Failed [{to}]: {e}")
        return
    logger.info(f"Email sent to {to} (ID: {message_id})")


def send_mail(
    to: str | Sequence[str],
    subject: str,
    html: str,
    attachments: Sequence[Attachment] | None = None,
) -> bool:
    """
    Queue a message for delivery without waiting for it.

    Must be called from the running event loop (any request handler).

    Returns:
        Always True; the outcome is only logged
    """
    task = asyncio.get_running_loop().create_task(_deliver(to, subject, html, attachments))
    _pending_deliveries.add(task)
    task.add_done_callback(_pending_deliveries.discard)
    return True


__all__ = [
    "Attachment",
    "MailTransportError",
    "MailTransportSupervisor",
    "Provider",
    "SmtpPool",
    "TransportOptions",
    "TransportSession",
    "candidate_ports",
    "close_mail_transport",
    "init_mail_transport",
    "mail_supervisor",
    "send_email",
    "send_mail",
]
