# -*- coding: utf-8 -*-
"""
Fetch cycle: search new UIDs, fetch, deduplicate, extract tasks, deliver, commit.

One cycle runs at a time. Callbacks are delivered before state is persisted,
so a crash mid-batch re-delivers rather than drops (at-least-once, with the
seen-set as the idempotence backstop).
"""

import dataclasses
import imaplib
import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional

import email_utils
import extractor
import retry_utils
from state_store import MailboxState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskEvent:
    """One accept link plus the task data of the message it came from."""

    order_id: Optional[str]
    workflow_name: Optional[str]
    url: str
    amount_words: Optional[float]
    planned_end_date: Optional[str]

    def as_dict(self):
        return dataclasses.asdict(self)


def events_from_record(record):
    """One TaskEvent per link, in document order."""
    return [
        TaskEvent(
            order_id=record.order_id,
            workflow_name=record.workflow_name,
            url=link,
            amount_words=record.metrics.amount_words,
            planned_end_date=record.metrics.planned_end_date,
        )
        for link in record.links
    ]


def _ms_since(started):
    return int((time.monotonic() - started) * 1000)


class Batch:
    """Outcome of one fetched id range, applied to the state on commit."""

    def __init__(self):
        self.processed = []
        self.failed = []
        self.fetched = set()
        self.completed = False


class FetchCycle:
    """
    Owns the MailboxState of every watched mailbox and runs fetch cycles.

    Args:
        store: StateStore for persistence
        retention_limit: Size of the seen-id window
        attempts: Attempts of the retry wrapper around one cycle
        retry_delay: Linear retry delay unit in seconds
        allow_backfill: Deliver mail already present when no state is stored
        max_parse_attempts: Failed parses before a message is abandoned
        sleep: Sleep function used between retries
        extract: (content, raw_text) -> TaskRecord
    """

    def __init__(
        self,
        store,
        retention_limit=1000,
        attempts=3,
        retry_delay=1.0,
        allow_backfill=True,
        max_parse_attempts=3,
        sleep=time.sleep,
        extract=extractor.extract_task_record,
    ):
        self.store = store
        self.retention_limit = retention_limit
        self.attempts = attempts
        self.retry_delay = retry_delay
        self.allow_backfill = allow_backfill
        self.max_parse_attempts = max_parse_attempts
        self.sleep = sleep
        self.extract = extract
        self.states = {}
        self._running = threading.Lock()

    @classmethod
    def from_config(cls, config, store):
        return cls(
            store,
            retention_limit=config.seen_id_retention_limit,
            attempts=config.fetch_attempts,
            retry_delay=config.fetch_retry_delay,
            allow_backfill=config.allow_backfill,
            max_parse_attempts=config.max_parse_attempts,
        )

    # ------------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------------

    def load_state(self, mailbox_name, session=None):
        """
        State of a mailbox; read from the store only the first time.

        Without stored state and with backfill disabled, the high-water mark
        starts at the newest UID in the mailbox.
        """
        state = self.states.get(mailbox_name)
        if state is not None:
            return state

        state = self.store.load(mailbox_name)
        if state is None:
            state = MailboxState(mailbox_name)
            if not self.allow_backfill and session is not None:
                state.last_seen_id = session.highest_id()
                self.store.save(state)
                logger.info(
                    "No stored state for %s, starting after UID %d",
                    mailbox_name,
                    state.last_seen_id,
                )

        logger.info("Loaded last_seen_id for %s: %d", mailbox_name, state.last_seen_id)
        self.states[mailbox_name] = state
        return state

    def flush(self):
        """Persist the in-memory state of every mailbox (shutdown)."""
        self.store.flush_on_shutdown(list(self.states.values()))

    def is_running(self):
        return self._running.locked()

    # ------------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------------

    def run(self, session, mailbox_name, on_task_event):
        """
        Run one fetch cycle. Never raises.

        Returns:
            False when skipped because another cycle is running, else True
        """
        if not self._running.acquire(blocking=False):
            logger.info("Skip fetch: already running")
            return False

        started = time.monotonic()
        state = None
        try:
            state = self.load_state(mailbox_name, session)
            retry_utils.retry(
                lambda: self._attempt(session, state, on_task_event),
                max_attempts=self.attempts,
                base_delay=self.retry_delay,
                sleep=self.sleep,
            )
        except Exception as e:
            logger.error(
                "Email fetch failed after retry: %s (code=%s, %dms, mailbox=%s, last_seen_id=%s)",
                e,
                getattr(e, "errno", None),
                _ms_since(started),
                mailbox_name,
                state.last_seen_id if state else None,
                exc_info=True,
            )
        finally:
            logger.info("Fetch cycle completed in %dms", _ms_since(started))
            self._running.release()

        return True

    def _health_check(self, session):
        started = time.monotonic()
        try:
            session.noop()
        except (OSError, imaplib.IMAP4.error) as e:
            logger.error(
                "Connection health check failed: %s (%dms)", e, _ms_since(started)
            )
            raise
        logger.info("Connection healthy (%dms)", _ms_since(started))

    def _attempt(self, session, state, on_task_event):
        self._health_check(session)

        with session.mailbox_lock(state.mailbox_name):
            start_id = state.last_seen_id + 1
            search_started = time.monotonic()
            try:
                found = session.search_ids_from(start_id)
            except (OSError, imaplib.IMAP4.error) as e:
                logger.error(
                    "Search failed: %s (range %d:*, %dms)",
                    e,
                    start_id,
                    _ms_since(search_started),
                )
                return
            logger.info(
                "Search completed: %d UIDs (%dms)", len(found), _ms_since(search_started)
            )

            ids = sorted(set(found) | set(state.failed_ids))
            if not ids:
                logger.info("No new emails found from UID %d", start_id)
                return

            logger.info("Processing %d emails: %s", len(ids), ids)
            self._process_batch(session, state, ids, on_task_event)

    def _process_batch(self, session, state, ids, on_task_event):
        batch = Batch()
        started = time.monotonic()
        try:
            for message in session.fetch_messages(ids):
                batch.fetched.add(message.uid)
                if message.uid in state.seen_ids:
                    logger.info("Skipping duplicate UID %s", message.uid)
                    continue
                if self._process_message(message, on_task_event):
                    batch.processed.append(message.uid)
                else:
                    batch.failed.append(message.uid)
            batch.completed = True
        finally:
            self._commit(state, batch, started)

    def _process_message(self, message, on_task_event):
        """Parse, extract and deliver one message. False if it could not be parsed."""
        started = time.monotonic()
        try:
            parsed = email_utils.parse_message(message.raw_source)
            content, raw_text = email_utils.message_content(parsed)
            record = self.extract(content, raw_text)
        except Exception as e:
            envelope = message.envelope or {}
            logger.error(
                "Failed to process UID %s: %s (subject=%r, from=%r, %dms)",
                message.uid,
                e,
                envelope.get("subject"),
                envelope.get("from"),
                _ms_since(started),
                exc_info=True,
            )
            return False

        logger.info("UID %s | Subject: %s", message.uid, parsed.subject)
        logger.info("Order: %s | Workflow: %s", record.order_id, record.workflow_name)
        logger.info(
            "Words: %s | Deadline: %s",
            record.metrics.amount_words,
            record.metrics.planned_end_date,
        )

        if not record.links:
            logger.info("No task links found in UID %s", message.uid)

        for event in events_from_record(record):
            logger.info("Delivering task link: %s", event.url)
            try:
                on_task_event(event)
            except Exception as e:
                logger.error(
                    "Callback failed for UID %s: %s (link=%s, order=%s)",
                    message.uid,
                    e,
                    event.url,
                    event.order_id,
                    exc_info=True,
                )

        logger.info("UID %s processed in %dms", message.uid, _ms_since(started))
        return True

    def _commit(self, state, batch, started):
        """Persist the batch outcome, then apply it to the in-memory state."""
        vanished = []
        if batch.completed:
            vanished = [uid for uid in state.failed_ids if uid not in batch.fetched]
        if not (batch.processed or batch.failed or vanished):
            return

        new_state = state.copy()
        new_state.commit(batch.processed, self.retention_limit)

        abandoned = []
        for uid in batch.failed:
            attempts = new_state.failed_ids.get(uid, 0) + 1
            if attempts >= self.max_parse_attempts:
                new_state.failed_ids.pop(uid, None)
                abandoned.append(uid)
            else:
                new_state.failed_ids[uid] = attempts
        new_state.commit(abandoned, self.retention_limit)

        for uid in vanished:
            new_state.failed_ids.pop(uid, None)
            logger.info("Dropping failed UID %s: no longer in mailbox", uid)

        self.store.save(new_state)
        state.last_seen_id = new_state.last_seen_id
        state.seen_ids = new_state.seen_ids
        state.failed_ids = new_state.failed_ids

        for uid in abandoned:
            logger.error(
                "Giving up on UID %s after %d failed parse attempts",
                uid,
                self.max_parse_attempts,
            )
        if batch.failed:
            logger.warning("Unparsed UIDs kept for retry: %s", sorted(state.failed_ids))

        logger.info(
            "Batch complete: %d emails processed in %dms",
            len(batch.processed),
            _ms_since(started),
        )
        logger.info(
            "Updated last_seen_id -> %d | seen ids: %d",
            state.last_seen_id,
            len(state.seen_ids),
        )
