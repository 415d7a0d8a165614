"""IMAP mailbox poller for newsletter ingestion.

Connects once per check, searches UNSEEN messages from the sender allow-list,
then fetches, parses and hands each message to a handler one at a time. A
failure on one message is counted and logged; it never stops the batch. The
connection is logged out exactly once, whatever happens.
"""

from __future__ import annotations

import email
import imaplib
from dataclasses import dataclass
from email import policy
from email.message import EmailMessage
from email.utils import parsedate_to_datetime
from typing import Callable

from tracker.config import MailboxAccount
from tracker.errors import MailboxUnavailable, ParseError
from tracker.log import get_logger

logger = get_logger(__name__)

_TIMEOUT = 30  # seconds, connect + login

ConnectionFactory = Callable[[MailboxAccount, float], imaplib.IMAP4]


@dataclass
class NewsletterMessage:
    """A parsed newsletter email."""

    sender: str
    subject: str
    date: str | None
    html: str = ""
    text: str = ""

    @property
    def body(self) -> str:
        """HTML body when present, else the plain-text body."""
        return self.html or self.text


@dataclass
class MailboxResult:
    found: int = 0
    emails_processed: int = 0
    failed: int = 0


MessageHandler = Callable[[NewsletterMessage], object]


# ------------------------------------------------------------------
# Connection + search helpers
# ------------------------------------------------------------------


def connect_imap(account: MailboxAccount, timeout: float = _TIMEOUT) -> imaplib.IMAP4:
    """Open and authenticate an IMAP connection for *account*.

    Raises:
        imaplib.IMAP4.error: Login rejected.
        OSError: Connection failed or timed out.
    """
    if account.secure:
        conn: imaplib.IMAP4 = imaplib.IMAP4_SSL(account.server, account.port, timeout=timeout)
    else:
        conn = imaplib.IMAP4(account.server, account.port, timeout=timeout)
    try:
        conn.login(account.username, account.password)
    except imaplib.IMAP4.error:
        conn.shutdown()
        raise
    return conn


def build_search_criteria(senders: list[str]) -> str:
    """IMAP search string: UNSEEN plus a nested OR over ``FROM <sender>``.

    IMAP ``OR`` takes exactly two keys, so three senders become
    ``UNSEEN OR FROM "a" OR FROM "b" FROM "c"``.
    """
    if not senders:
        raise ValueError("At least one sender is required")
    keys = [f'FROM "{s}"' for s in senders]
    expr = keys[-1]
    for key in reversed(keys[:-1]):
        expr = f"OR {key} {expr}"
    return f"UNSEEN {expr}"


def parse_message(raw: bytes) -> NewsletterMessage:
    """Parse raw RFC 822 bytes into a NewsletterMessage.

    Raises:
        ParseError: The message cannot be parsed or carries no text body.
    """
    msg = email.message_from_bytes(raw, policy=policy.default)
    if not isinstance(msg, EmailMessage):
        raise ParseError("Unparseable email: not an RFC 822 message")
    try:
        html_part = msg.get_body(preferencelist=("html",))
        text_part = msg.get_body(preferencelist=("plain",))
        html = html_part.get_content() if html_part is not None else ""
        text = text_part.get_content() if text_part is not None else ""
    except (LookupError, ValueError, TypeError) as exc:
        raise ParseError(f"Unparseable email: {exc}") from exc

    if not html and not text:
        raise ParseError("Email has no HTML or text body")

    date = None
    if msg["Date"]:
        try:
            date = parsedate_to_datetime(str(msg["Date"])).isoformat()
        except (TypeError, ValueError):
            date = None

    return NewsletterMessage(
        sender=str(msg["From"] or ""),
        subject=str(msg["Subject"] or ""),
        date=date,
        html=html,
        text=text,
    )


def _raw_from_fetch(data: list) -> bytes:
    for part in data or []:
        if isinstance(part, tuple) and len(part) >= 2 and isinstance(part[1], bytes):
            return part[1]
    raise ParseError("FETCH returned no message body")


# ------------------------------------------------------------------
# Poller
# ------------------------------------------------------------------


class MailboxPoller:
    """Polls one mailbox account at a time.

    Args:
        connect: Factory returning an authenticated IMAP connection. Swapped
            out in tests.
        timeout: Connect/login timeout in seconds.
    """

    def __init__(
        self,
        connect: ConnectionFactory = connect_imap,
        timeout: float = _TIMEOUT,
    ) -> None:
        self._connect = connect
        self._timeout = timeout

    def check_mailbox(
        self,
        account: MailboxAccount,
        handler: MessageHandler,
        sender_allow_list: list[str] | None = None,
    ) -> MailboxResult:
        """Process every unseen allow-listed message in *account*'s INBOX.

        Args:
            account: Mailbox to poll (environment fallbacks already applied).
            handler: Called once per parsed message; raising marks it failed.
            sender_allow_list: Senders to match; empty or None uses the
                account's list, then the built-in defaults.

        Returns:
            Counts of messages found, processed and failed.

        Raises:
            MailboxUnavailable: Connection, login, INBOX selection or search failed.
        """
        senders = list(sender_allow_list or account.allow_list())
        result = MailboxResult()

        try:
            conn = self._connect(account, self._timeout)
        except (imaplib.IMAP4.error, OSError) as exc:
            raise MailboxUnavailable(
                f"Cannot connect to {account.server}:{account.port} as {account.username}: {exc}"
            ) from exc

        try:
            msg_ids = self._search(conn, senders)
            result.found = len(msg_ids)
            if not msg_ids:
                logger.info("No new newsletter emails for %s", account.username)
            for msg_id in msg_ids:
                if self._process_one(conn, msg_id, handler):
                    result.emails_processed += 1
                else:
                    result.failed += 1
        finally:
            try:
                conn.logout()
            except (imaplib.IMAP4.error, OSError) as exc:
                logger.warning("IMAP logout failed: %s", exc)

        logger.info(
            "Mailbox %s: %d found, %d processed, %d failed",
            account.username,
            result.found,
            result.emails_processed,
            result.failed,
        )
        return result

    @staticmethod
    def _search(conn: imaplib.IMAP4, senders: list[str]) -> list[bytes]:
        try:
            status, _ = conn.select("INBOX")
            if status != "OK":
                raise MailboxUnavailable("Cannot open INBOX")
            status, data = conn.search(None, build_search_criteria(senders))
        except (imaplib.IMAP4.error, OSError) as exc:
            raise MailboxUnavailable(f"IMAP search failed: {exc}") from exc
        if status != "OK":
            raise MailboxUnavailable(f"IMAP search returned {status}")
        return data[0].split() if data and data[0] else []

    @staticmethod
    def _process_one(conn: imaplib.IMAP4, msg_id: bytes, handler: MessageHandler) -> bool:
        try:
            # RFC822 fetch sets \Seen, so a processed message is not picked up again.
            status, data = conn.fetch(msg_id, "(RFC822)")
            if status != "OK":
                raise ParseError(f"FETCH {msg_id!r} returned {status}")
            message = parse_message(_raw_from_fetch(data))
            logger.info("Processing email %r from %s", message.subject, message.sender)
            handler(message)
        except Exception as exc:  # one bad message never aborts the batch
            logger.error("Failed to process email %s: %s", msg_id.decode(errors="replace"), exc)
            return False
        return True
