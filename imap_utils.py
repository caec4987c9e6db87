# -*- coding: utf-8 -*-
"""
IMAP protocol utilities: IDLE implementation, session wrapper, credentials.
"""

import contextlib
import getpass
import imaplib
import logging
import os
import re
import select
import sys
import threading
from collections import namedtuple

import email_utils

logger = logging.getLogger(__name__)

CRLF = b"\r\n"
FETCH_CHUNK_SIZE = 50
_FETCH_UID = re.compile(rb"UID (\d+)")
imaplib.Commands["IDLE"] = ("AUTH", "SELECTED")

FetchedMessage = namedtuple("FetchedMessage", ["uid", "raw_source", "envelope"])


class ConnectionEnded(imaplib.IMAP4.abort):
    """Server closed the session with BYE."""


def get_credential(env_var, arg_name, prompt):
    """
    Get credential from environment, command line args, or prompt.

    Priority:
    1. Environment variable
    2. Command line --arg=value or --arg value
    3. Interactive prompt (masked input), skipped when prompt is None
    """
    value = os.environ.get(env_var)
    if value:
        return value

    for i, arg in enumerate(sys.argv):
        if arg.startswith(f"--{arg_name}="):
            return arg.split("=", 1)[1]
        elif arg == f"--{arg_name}" and i + 1 < len(sys.argv):
            return sys.argv[i + 1]

    if prompt is None:
        return None
    return getpass.getpass(prompt)


def idle(connection, timeout=(29 * 60 - 1)):
    """
    Implements IMAP IDLE extension as described in RFC 2177.
    Waits until state of current mailbox changes.

    Args:
        connection: IMAP4 connection
        timeout: Maximum idle time in seconds (default: 29 minutes)

    Returns:
        (typ, untagged_responses) tuple
    """
    if "IDLE" not in connection.capabilities:
        raise connection.error("server does not support IDLE command.")

    connection.untagged_responses = {}
    tag = connection._command("IDLE")
    connection._get_response()

    select.select([connection.socket()], [], [], timeout)

    connection.send(b"DONE" + CRLF)
    typ, data = connection._command_complete("IDLE", tag)
    return typ, connection.untagged_responses


def quote_mailbox(name):
    """Quote a mailbox name for SELECT (names may contain spaces or slashes)."""
    return '"' + name.replace("\\", "\\\\").replace('"', '\\"') + '"'


def check_ok(typ, data, what):
    if typ != "OK":
        raise imaplib.IMAP4.error(f"{what} failed: {typ} {data!r}")


def parse_uid_list(data):
    """Turn a UID SEARCH response payload into sorted ints."""
    if not data or not data[0]:
        return []
    return sorted(int(uid) for uid in data[0].split())


def parse_fetch_response(data):
    """
    Map UIDs to message sources in a UID FETCH response payload.

    The UID attribute may come before the literal (in the tuple header) or
    after it (in the closing bytes element).
    """
    sources = {}
    data = data or []
    for i, item in enumerate(data):
        if not (isinstance(item, tuple) and len(item) > 1):
            continue
        match = _FETCH_UID.search(item[0])
        if match is None and i + 1 < len(data) and isinstance(data[i + 1], bytes):
            match = _FETCH_UID.search(data[i + 1])
        if match is not None:
            sources[int(match.group(1))] = item[1]
    return sources


class ImapSession:
    """
    One IMAP connection with the operations the fetcher and watcher need.

    Every command runs under a single lock so the listener's IDLE and the
    fetch worker's SEARCH/FETCH never interleave on the wire.
    """

    def __init__(self, server, user, password, port=993, timeout=30):
        self.server = server
        self.user = user
        self.password = password
        self.port = port
        self.timeout = timeout
        self.connection = None
        self.mailbox_name = None
        self._lock = threading.RLock()

    def connect(self):
        """
        Open the SSL connection and log in.

        Raises:
            OSError, imaplib.IMAP4.error on connection or login failures
        """
        self.connection = imaplib.IMAP4_SSL(
            self.server, self.port, timeout=self.timeout
        )
        self.connection.login(self.user, self.password)

    def _require_connection(self):
        if self.connection is None:
            raise imaplib.IMAP4.abort("not connected")
        return self.connection

    def open_mailbox(self, name):
        with self._lock:
            typ, data = self._require_connection().select(quote_mailbox(name))
            check_ok(typ, data, f"SELECT {name}")
            self.mailbox_name = name

    @contextlib.contextmanager
    def mailbox_lock(self, name):
        """Exclusive use of the session for one command sequence on a mailbox."""
        with self._lock:
            if name != self.mailbox_name:
                raise imaplib.IMAP4.error(
                    f"mailbox {name!r} is not open (open: {self.mailbox_name!r})"
                )
            yield self

    def noop(self):
        with self._lock:
            typ, data = self._require_connection().noop()
            check_ok(typ, data, "NOOP")

    def search_ids_from(self, start_id):
        """
        UIDs greater or equal to start_id, ascending.

        "n:*" also matches the last message when n is past the end, so the
        result is filtered.
        """
        with self._lock:
            typ, data = self._require_connection().uid(
                "SEARCH", None, f"UID {start_id}:*"
            )
            check_ok(typ, data, "UID SEARCH")
        return [uid for uid in parse_uid_list(data) if uid >= start_id]

    def highest_id(self):
        """Largest UID currently in the mailbox, 0 when empty."""
        with self._lock:
            typ, data = self._require_connection().uid("SEARCH", None, "ALL")
            check_ok(typ, data, "UID SEARCH ALL")
        uids = parse_uid_list(data)
        return uids[-1] if uids else 0

    def fetch_messages(self, ids, chunk_size=FETCH_CHUNK_SIZE):
        """
        Lazily fetch full sources without setting the \\Seen flag.

        One UID FETCH per chunk of ids; messages are yielded in the order of
        ids. Messages that no longer exist are skipped.

        Yields:
            FetchedMessage(uid, raw_source, envelope)
        """
        ids = list(ids)
        for start in range(0, len(ids), chunk_size):
            chunk = ids[start:start + chunk_size]
            uid_set = ",".join(str(uid) for uid in chunk)
            with self._lock:
                typ, data = self._require_connection().uid(
                    "FETCH", uid_set, "(UID BODY.PEEK[])"
                )
                check_ok(typ, data, f"UID FETCH {uid_set}")

            sources = parse_fetch_response(data)
            for uid in chunk:
                raw_source = sources.get(uid)
                if raw_source is None:
                    logger.info("UID %s vanished before it could be fetched", uid)
                    continue
                yield FetchedMessage(
                    uid, raw_source, email_utils.envelope_summary(raw_source)
                )

    def wait_for_events(self, timeout):
        """
        Block in IDLE until the mailbox changes or timeout passes.

        Returns:
            List of event names ("exists"); empty on timeout

        Raises:
            ConnectionEnded when the server said BYE,
            OSError / imaplib.IMAP4.abort on a broken connection
        """
        with self._lock:
            connection = self._require_connection()

            # EXISTS can arrive as a side note to SEARCH/FETCH/NOOP
            if connection.untagged_responses.pop("EXISTS", None):
                return ["exists"]

            try:
                typ, responses = idle(connection, timeout)
            except imaplib.IMAP4.abort as e:
                if "BYE" in connection.untagged_responses:
                    raise ConnectionEnded(str(e)) from e
                raise

        if "BYE" in responses:
            raise ConnectionEnded("server said BYE")
        if "EXISTS" in responses:
            return ["exists"]
        return []

    def close(self):
        """Cleanly close IMAP connection, ignoring errors from a dead socket"""
        connection, self.connection = self.connection, None
        if connection is None:
            return

        if not self._lock.acquire(blocking=False):
            # Another thread is in IDLE; dropping the socket wakes it up
            try:
                connection.shutdown()
            except OSError as e:
                logger.debug("Ignoring error while dropping socket: %s", e)
            return

        try:
            if self.mailbox_name:
                connection.close()
            connection.logout()
        except (OSError, imaplib.IMAP4.error) as e:
            logger.debug("Ignoring error while closing session: %s", e)
        finally:
            self._lock.release()
