"""
Primary delivery transport over SMTP.

smtplib is blocking, so every network step runs in a worker thread.
Authenticated connections are kept in a small idle pool and reused by
later sends. Sends are bounded by ``max_connections`` concurrent
connections and spaced to at most ``rate_limit_per_second`` messages.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
import threading
import time
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable

import anyio

from officiant.core.config import settings
from officiant.db.enums import EmailTransport
from officiant.services.email_errors import (
    DeliveryConfigError,
    DeliveryError,
    DeliveryTransientError,
)
from officiant.services.email_transport import OutboundEmail

logger = logging.getLogger(__name__)


class TransportState(str, Enum):
    NOT_INITIALIZED = "not_initialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


class TransportUnavailableError(DeliveryError):
    """Initialization failed recently and is backing off. Not retried."""


ConnectionFactory = Callable[..., Any]


class _Handoff:
    """Passes a connection from a send thread back to the waiting caller, unless it gave up."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._abandoned = False
        self._connection: Any = None

    def finish(self, connection: Any) -> bool:
        with self._lock:
            if self._abandoned:
                return False
            self._connection = connection
            return True

    def abandon(self) -> Any:
        """Mark the send abandoned; return the connection if the thread already finished."""
        with self._lock:
            self._abandoned = True
            connection, self._connection = self._connection, None
            return connection


def _default_connection_factory(
    host: str, port: int, *, timeout: float, secure: bool
) -> smtplib.SMTP:
    context = ssl.create_default_context()
    if secure:
        return smtplib.SMTP_SSL(host, port, context=context, timeout=timeout)
    server = smtplib.SMTP(host, port, timeout=timeout)
    server.starttls(context=context)
    return server


def build_mime_message(message: OutboundEmail, from_address: str) -> MIMEMultipart:
    msg = MIMEMultipart("alternative")
    msg["Subject"] = message.subject
    msg["From"] = from_address
    msg["To"] = message.to
    if message.cc:
        msg["Cc"] = ", ".join(message.cc)
    msg["Date"] = formatdate(localtime=False)
    msg["Message-ID"] = make_msgid()
    msg.attach(MIMEText(message.text, "plain", "utf-8"))
    msg.attach(MIMEText(message.html, "html", "utf-8"))
    return msg


class SmtpTransport:
    name = EmailTransport.SMTP

    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        user: str = "",
        password: str = "",
        from_address: str = "",
        secure: bool = False,
        connection_timeout: float = 5.0,
        command_timeout: float = 8.0,
        max_connections: int = 5,
        rate_limit_per_second: float = 5.0,
        init_retry_interval: float = 5.0,
        connection_factory: ConnectionFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_address = from_address or user
        self.secure = secure or port == 465
        self.connection_timeout = connection_timeout
        self.command_timeout = command_timeout
        self.max_connections = max_connections
        self.init_retry_interval = init_retry_interval
        self._min_interval = 1.0 / rate_limit_per_second if rate_limit_per_second > 0 else 0.0
        self._connection_factory = connection_factory or _default_connection_factory
        self._clock = clock
        self._sleep = sleep

        self.state = TransportState.NOT_INITIALIZED
        self.last_init_error: str | None = None
        self._last_init_attempt: float | None = None
        self._idle: list[Any] = []
        self._init_lock = anyio.Lock()
        self._rate_lock = anyio.Lock()
        self._next_slot = 0.0
        self._limiter = anyio.CapacityLimiter(max(1, max_connections))

    @classmethod
    def from_settings(cls) -> "SmtpTransport":
        return cls(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            user=settings.SMTP_USER,
            password=settings.SMTP_PASSWORD,
            from_address=settings.smtp_from_address,
            secure=settings.SMTP_SECURE,
            connection_timeout=settings.EMAIL_SMTP_CONNECTION_TIMEOUT,
            command_timeout=settings.EMAIL_SMTP_COMMAND_TIMEOUT,
            max_connections=settings.SMTP_MAX_CONNECTIONS,
            rate_limit_per_second=settings.SMTP_RATE_LIMIT_PER_SECOND,
            init_retry_interval=settings.SMTP_INIT_RETRY_INTERVAL_SECONDS,
        )

    @property
    def configured(self) -> bool:
        return bool(self.host and self.user and self.password)

    async def ensure_ready(self) -> None:
        """
        Open and verify the first connection.

        A failed initialization is not attempted again until
        ``init_retry_interval`` seconds have passed.
        """
        if self.state is TransportState.READY:
            return
        if not self.configured:
            raise DeliveryConfigError("SMTP transport is not configured")

        async with self._init_lock:
            if self.state is TransportState.READY:
                return
            if (
                self.state is TransportState.FAILED
                and self._last_init_attempt is not None
                and self._clock() - self._last_init_attempt < self.init_retry_interval
            ):
                raise TransportUnavailableError(
                    f"SMTP initialization failed recently: {self.last_init_error}"
                )

            self.state = TransportState.INITIALIZING
            self._last_init_attempt = self._clock()
            try:
                with anyio.fail_after(self.connection_timeout + self.command_timeout):
                    connection = await anyio.to_thread.run_sync(
                        self._open_connection, abandon_on_cancel=True
                    )
            except smtplib.SMTPAuthenticationError as exc:
                self._mark_failed(f"authentication failed ({exc.smtp_code})")
                raise DeliveryConfigError("SMTP authentication failed") from exc
            except TimeoutError as exc:
                self._mark_failed("connection timed out")
                raise DeliveryTransientError("SMTP connection timed out") from exc
            except (smtplib.SMTPException, OSError) as exc:
                self._mark_failed(f"{exc.__class__.__name__}: {exc}")
                raise DeliveryTransientError(f"SMTP connection failed: {exc}") from exc

            self._idle.append(connection)
            self.state = TransportState.READY
            self.last_init_error = None
            logger.info("SMTP transport ready (%s:%s)", self.host, self.port)

    def _mark_failed(self, reason: str) -> None:
        self.state = TransportState.FAILED
        self.last_init_error = reason
        logger.error("SMTP transport initialization failed: %s", reason)

    def _open_connection(self) -> Any:
        connection = self._connection_factory(
            self.host, self.port, timeout=self.connection_timeout, secure=self.secure
        )
        try:
            connection.login(self.user, self.password)
        except BaseException:
            self._close(connection)
            raise
        sock = getattr(connection, "sock", None)
        if sock is not None:
            sock.settimeout(self.command_timeout)
        return connection

    @staticmethod
    def _close(connection: Any) -> None:
        try:
            connection.quit()
        except (smtplib.SMTPException, OSError):
            connection.close()

    def _deliver(
        self,
        connection: Any | None,
        message: OutboundEmail,
        handoff: _Handoff,
    ) -> Any:
        if connection is None:
            connection = self._open_connection()
        mime = build_mime_message(message, self.from_address)
        try:
            connection.sendmail(self.from_address, message.all_recipients, mime.as_string())
        except BaseException:
            self._close(connection)
            raise
        if not handoff.finish(connection):
            self._close(connection)
        return connection, mime["Message-ID"]

    async def _throttle(self) -> None:
        if not self._min_interval:
            return
        async with self._rate_lock:
            now = self._clock()
            wait = self._next_slot - now
            if wait > 0:
                await self._sleep(wait)
            self._next_slot = max(now, self._next_slot) + self._min_interval

    async def send(self, message: OutboundEmail) -> str | None:
        await self.ensure_ready()
        async with self._limiter:
            await self._throttle()
            connection = self._idle.pop() if self._idle else None
            handoff = _Handoff()
            try:
                with anyio.fail_after(self.command_timeout):
                    connection, message_id = await anyio.to_thread.run_sync(
                        partial(self._deliver, connection, message, handoff),
                        abandon_on_cancel=True,
                    )
            except TimeoutError as exc:
                finished = handoff.abandon()
                if finished is not None:
                    await anyio.to_thread.run_sync(self._close, finished)
                raise DeliveryTransientError("SMTP send timed out") from exc
            except smtplib.SMTPRecipientsRefused as exc:
                raise DeliveryConfigError(
                    f"SMTP recipients refused: {', '.join(exc.recipients)}"
                ) from exc
            except smtplib.SMTPAuthenticationError as exc:
                self.state = TransportState.NOT_INITIALIZED
                raise DeliveryConfigError("SMTP authentication failed") from exc
            except (smtplib.SMTPException, OSError) as exc:
                raise DeliveryTransientError(f"SMTP send failed: {exc}") from exc

            if len(self._idle) < self.max_connections:
                self._idle.append(connection)
            else:
                self._close(connection)
            return message_id

    async def close(self) -> None:
        idle, self._idle = self._idle, []
        for connection in idle:
            await anyio.to_thread.run_sync(self._close, connection)
        self.state = TransportState.NOT_INITIALIZED
