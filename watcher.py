# -*- coding: utf-8 -*-
"""
Connection manager: keeps one IMAP session alive, turns IDLE notifications into
fetch requests for a single worker thread, reconnects with backoff on faults.

Threads:
- listener (one per connection): IDLE, then queue a fetch request on EXISTS
- worker (one per process): runs FetchCycle for each queued request
- timers: delayed reconnects
"""

import imaplib
import json
import logging
import queue
import signal
import threading
import time

import fetcher
import http_utils
import imap_utils
import retry_utils
import state_store

logger = logging.getLogger(__name__)

_STOP = object()


class MissingCredentialsError(Exception):
    """User or password is not configured. Fatal, never retried."""


def start_timer(delay, fn):
    timer = threading.Timer(delay, fn)
    timer.daemon = True
    timer.start()
    return timer


def classify_fault(error):
    """Map a connection exception onto the terminal event it represents."""
    if isinstance(error, imap_utils.ConnectionEnded):
        return "ended"
    if isinstance(error, EOFError) or "EOF" in str(error):
        return "closed"
    return "error"


class ConnectionStats:
    """Process-lifetime counters, for monitoring only."""

    def __init__(self, clock=time.time):
        self.clock = clock
        self.start_time = clock()
        self.total_connections = 0
        self.total_reconnects = 0
        self.last_connection_time = None

    def record_connect(self, was_retry):
        self.total_connections += 1
        self.last_connection_time = self.clock()
        if was_retry:
            self.total_reconnects += 1

    def as_dict(self):
        now = self.clock()
        current_uptime = None
        if self.last_connection_time is not None:
            current_uptime = now - self.last_connection_time
        return {
            "start_time": self.start_time,
            "total_connections": self.total_connections,
            "total_reconnects": self.total_reconnects,
            "last_connection_time": self.last_connection_time,
            "current_uptime": current_uptime,
            "total_uptime": now - self.start_time,
        }


class ConnectionManager:
    """
    Watches one mailbox and feeds the FetchCycle.

    Args:
        config: Configuration module (server, mailbox, timeouts, backoff)
        fetch_cycle: FetchCycle owning the mailbox state
        user, password: IMAP credentials
        on_task_event: Downstream callback, receives TaskEvent
        notifier: Optional callable(message) for status notifications
        session_factory: Builds a session; defaults to ImapSession
        scheduler: callable(delay, fn) -> timer; defaults to threading.Timer
    """

    def __init__(
        self,
        config,
        fetch_cycle,
        user,
        password,
        on_task_event,
        notifier=None,
        session_factory=None,
        scheduler=None,
    ):
        self.config = config
        self.mailbox_name = config.mailbox_name
        self.fetch_cycle = fetch_cycle
        self.user = user
        self.password = password
        self.on_task_event = on_task_event
        self.notifier = notifier
        self.session_factory = session_factory or self._make_session
        self.scheduler = scheduler or start_timer

        self.session = None
        self.stats = ConnectionStats()
        self.retry_count = 0

        self._lock = threading.RLock()
        self._connecting = False
        self._reconnecting = False
        self._paused = False
        self._stopping = False
        self._generation = 0
        self._fault_handled = True
        self._timer = None
        self._fetch_requests = queue.Queue(maxsize=1)
        self._worker = None

    def _make_session(self):
        return imap_utils.ImapSession(
            self.config.imap_server,
            self.user,
            self.password,
            port=self.config.imap_port,
            timeout=self.config.connection_timeout,
        )

    def _notify(self, message):
        if self.notifier is None:
            return
        try:
            self.notifier(message)
        except Exception as e:
            logger.warning("Notifier failed: %s", e)

    # ------------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------------

    def start(self):
        """
        Start the fetch worker and the first connection.

        Raises:
            MissingCredentialsError: user or password missing
        """
        self._check_credentials()
        if self._worker is None:
            self._worker = threading.Thread(
                target=self._worker_loop, name="fetch-worker", daemon=True
            )
            self._worker.start()
        self.connect()

    def _check_credentials(self):
        if not self.user or not self.password:
            logger.error("Missing EMAIL_USER or EMAIL_PASSWORD")
            raise MissingCredentialsError("IMAP user and password are required")

    def connect(self):
        """Establish a session; on failure schedule a reconnect. One attempt at a time."""
        self._check_credentials()
        with self._lock:
            if self._connecting or self._stopping:
                return
            self._connecting = True

        session = None
        try:
            started = time.monotonic()
            logger.info("Connecting to IMAP %s...", self.config.imap_server)
            session = self.session_factory()
            session.connect()
            logger.info(
                "IMAP connection established (%dms)",
                int((time.monotonic() - started) * 1000),
            )

            with self._lock:
                self.stats.record_connect(was_retry=self.retry_count > 0)
                self.retry_count = 0

            session.open_mailbox(self.mailbox_name)
            logger.info('Mailbox "%s" opened', self.mailbox_name)
            self.fetch_cycle.load_state(self.mailbox_name, session)

            with self._lock:
                self._generation += 1
                generation = self._generation
                self._fault_handled = False
                self.session = session

            uptime_min = round((self.stats.last_connection_time - self.stats.start_time) / 60)
            self._notify(
                f"System online ({self.stats.total_connections} connections, "
                f"{uptime_min} min uptime)"
            )

            # Catch up on mail that arrived while disconnected.
            # Must be queued before the listener starts.
            if not self._paused:
                self.request_fetch()

            listener = threading.Thread(
                target=self._listen,
                args=(session, generation),
                name=f"imap-listener-{generation}",
                daemon=True,
            )
            listener.start()

        except (OSError, imaplib.IMAP4.error) as e:
            logger.error(
                "IMAP setup failed: %s (code=%s, host=%s, port=%s, retry=%d)",
                e,
                getattr(e, "errno", None),
                self.config.imap_server,
                self.config.imap_port,
                self.retry_count,
            )
            self._notify(f"IMAP setup failed: {e} (attempt {self.retry_count + 1})")
            if session is not None:
                session.close()
            self.reconnect()
        finally:
            with self._lock:
                self._connecting = False

    def shutdown(self):
        """Stop listening, flush dedup state. An in-flight cycle is not awaited."""
        with self._lock:
            self._stopping = True
            timer, self._timer = self._timer, None
            session, self.session = self.session, None
            self._generation += 1

        if timer is not None:
            timer.cancel()

        try:
            self._fetch_requests.put_nowait(_STOP)
        except queue.Full:
            pass

        self.fetch_cycle.flush()
        logger.info("Seen ids saved during shutdown")

        if session is not None:
            session.close()

    # ------------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------------

    def _listen(self, session, generation):
        while self._is_current(generation):
            # No IDLE while a fetch is pending: the worker needs the session
            self._fetch_requests.join()
            if not self._is_current(generation):
                return
            try:
                events = session.wait_for_events(self.config.idle_timeout)
            except (OSError, EOFError, imaplib.IMAP4.error) as e:
                self.handle_terminal_event(generation, classify_fault(e), e)
                return

            if "exists" in events:
                self.on_new_message()

    def _is_current(self, generation):
        with self._lock:
            return generation == self._generation and not self._stopping

    def on_new_message(self):
        """Server reported new mail."""
        if self._paused:
            return
        logger.info("New mail detected")
        self.request_fetch()

    def request_fetch(self):
        """Queue a fetch; a request already pending absorbs this one."""
        try:
            self._fetch_requests.put_nowait(True)
            return True
        except queue.Full:
            logger.info("Fetch already pending, trigger coalesced")
            return False

    def _worker_loop(self):
        while True:
            item = self._fetch_requests.get()
            try:
                if item is _STOP:
                    return
                session = self.session
                if session is not None:
                    self.fetch_cycle.run(session, self.mailbox_name, self.on_task_event)
            finally:
                self._fetch_requests.task_done()

    def handle_terminal_event(self, generation, kind, error=None):
        """
        React to error/closed/ended of a connection. Handled once per connection.

        Args:
            generation: Connection generation the event belongs to
            kind: "error", "closed" or "ended"
            error: Exception, if any
        """
        with self._lock:
            if generation != self._generation or self._fault_handled or self._stopping:
                return
            self._fault_handled = True
            session, self.session = self.session, None

        if kind == "error":
            logger.error(
                "IMAP error: %s (code=%s, retry=%d, uptime=%ds)",
                error,
                getattr(error, "errno", None),
                self.retry_count,
                int(time.time() - self.stats.start_time),
            )
            self._notify(
                f"IMAP error: {error} (retry {self.retry_count}/"
                f"{self.config.max_reconnect_attempts})"
            )
        elif kind == "ended":
            logger.error("IMAP connection ended by server")
            self._notify("IMAP connection ended by server")
        else:
            logger.error("IMAP connection closed")

        if session is not None:
            session.close()
        self.reconnect()

    # ------------------------------------------------------------------------
    # Reconnect
    # ------------------------------------------------------------------------

    def reconnect(self, base_delay=None):
        """
        Schedule the next connect() with exponential backoff.

        After max_reconnect_attempts, wait reconnect_cooldown and start over.
        """
        if base_delay is None:
            base_delay = self.config.initial_backoff

        with self._lock:
            if self._reconnecting or self._stopping:
                return
            self._reconnecting = True

            if self.retry_count >= self.config.max_reconnect_attempts:
                cooldown = self.config.reconnect_cooldown
                logger.error(
                    "Max retries reached. Will try again in %d minutes.", cooldown // 60
                )
                message = (
                    f"IMAP failed {self.config.max_reconnect_attempts} times. "
                    f"Will retry after {cooldown // 60} minutes."
                )
                self._timer = self.scheduler(cooldown, self._cooldown_connect)
            else:
                self.retry_count += 1
                delay = retry_utils.backoff_delay(
                    base_delay, self.retry_count, self.config.max_backoff
                )
                logger.info(
                    "Reconnecting to IMAP in %ss (attempt %d/%d)",
                    delay,
                    self.retry_count,
                    self.config.max_reconnect_attempts,
                )
                message = (
                    f"IMAP disconnected. Attempting reconnect ({self.retry_count}/"
                    f"{self.config.max_reconnect_attempts}) in {round(delay)}s..."
                )
                self._timer = self.scheduler(delay, self._scheduled_connect)

        self._notify(message)

    def _scheduled_connect(self):
        with self._lock:
            self._reconnecting = False
        self.connect()

    def _cooldown_connect(self):
        with self._lock:
            self.retry_count = 0
            self._reconnecting = False
        self.connect()

    # ------------------------------------------------------------------------
    # Control and monitoring
    # ------------------------------------------------------------------------

    def health_check(self):
        """
        NOOP round trip on the current session. Waits for a running IDLE to end.

        Returns:
            dict with "healthy" and either "uptime" or "error"
        """
        session = self.session
        if session is None:
            return {"healthy": False, "error": "No client connection"}
        try:
            session.noop()
        except (OSError, imaplib.IMAP4.error) as e:
            return {"healthy": False, "error": str(e)}
        return {"healthy": True, "uptime": time.time() - self.stats.last_connection_time}

    def pause(self):
        self._paused = True
        logger.info("IMAP paused by user")

    def resume(self):
        """Re-enable fetch triggers and catch up on mail that arrived while paused."""
        self._paused = False
        logger.info("IMAP resumed by user")
        self.request_fetch()

    def is_paused(self):
        return self._paused

    def get_connection_stats(self):
        stats = self.stats.as_dict()
        with self._lock:
            stats.update(
                {
                    "current_retry_count": self.retry_count,
                    "is_paused": self._paused,
                    "is_connecting": self._connecting,
                    "is_reconnecting": self._reconnecting,
                    "is_healthy": self.session is not None,
                }
            )
        return stats


# ============================================================================
# Entry points
# ============================================================================


def log_task_event(event):
    """Default downstream callback: write the task event to the log as JSON."""
    logger.info("Task event: %s", json.dumps(event.as_dict(), ensure_ascii=False))


def run_once(config, user, password, on_task_event=log_task_event):
    """
    Connect, run a single fetch cycle, persist state and disconnect.

    Raises:
        MissingCredentialsError, OSError, imaplib.IMAP4.error
    """
    if not user or not password:
        raise MissingCredentialsError("IMAP user and password are required")

    store = state_store.StateStore(config.state_dir)
    fetch_cycle = fetcher.FetchCycle.from_config(config, store)
    session = imap_utils.ImapSession(
        config.imap_server,
        user,
        password,
        port=config.imap_port,
        timeout=config.connection_timeout,
    )
    session.connect()
    try:
        session.open_mailbox(config.mailbox_name)
        fetch_cycle.load_state(config.mailbox_name, session)
        fetch_cycle.run(session, config.mailbox_name, on_task_event)
    finally:
        fetch_cycle.flush()
        session.close()


def run(config, user, password, on_task_event=log_task_event, stop_event=None):
    """
    Watch the mailbox until SIGINT/SIGTERM (or stop_event) and flush state on exit.

    Args:
        config: Configuration module
        user: IMAP user
        password: IMAP password
        on_task_event: Downstream callback for TaskEvent
        stop_event: Optional threading.Event; installs signal handlers when None

    Raises:
        MissingCredentialsError: before anything is started
    """
    store = state_store.StateStore(config.state_dir)
    fetch_cycle = fetcher.FetchCycle.from_config(config, store)
    notifier = http_utils.Notifier(config)
    manager = ConnectionManager(
        config, fetch_cycle, user, password, on_task_event, notifier=notifier
    )

    if stop_event is None:
        stop_event = threading.Event()

        def on_signal(signum, frame):
            logger.info("%s received", signal.Signals(signum).name)
            stop_event.set()

        signal.signal(signal.SIGINT, on_signal)
        signal.signal(signal.SIGTERM, on_signal)

    manager.start()
    try:
        while not stop_event.wait(1):
            pass
    finally:
        notifier("System shutdown initiated")
        manager.shutdown()

    return manager
