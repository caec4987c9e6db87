# -*- coding: utf-8 -*-
"""
Durable per-mailbox state: high-water mark, recently seen ids, failed ids.
One JSON record per mailbox, overwritten atomically on every save.
"""

import hashlib
import json
import logging
import os
import tempfile

logger = logging.getLogger(__name__)


class MailboxState:
    """
    In-memory state of one watched mailbox.

    last_seen_id is the largest committed message id and never decreases.
    seen_ids is a bounded recency window, not a full history.
    failed_ids maps ids whose parsing failed to their attempt count.
    """

    def __init__(self, mailbox_name, last_seen_id=0, seen_ids=(), failed_ids=None):
        self.mailbox_name = mailbox_name
        self.last_seen_id = last_seen_id
        self.seen_ids = set(seen_ids)
        self.failed_ids = dict(failed_ids or {})

    def __repr__(self):
        return (
            f"MailboxState({self.mailbox_name!r}, last_seen_id={self.last_seen_id}, "
            f"seen={len(self.seen_ids)}, failed={len(self.failed_ids)})"
        )

    def commit(self, processed_ids, retention_limit=1000):
        """
        Mark ids as processed and advance the high-water mark.

        Args:
            processed_ids: Iterable of message ids
            retention_limit: Number of largest ids kept in seen_ids
        """
        processed_ids = list(processed_ids)
        if not processed_ids:
            return
        self.seen_ids.update(processed_ids)
        for uid in processed_ids:
            self.failed_ids.pop(uid, None)
        self.trim(retention_limit)
        self.last_seen_id = max(self.last_seen_id, max(processed_ids))

    def trim(self, retention_limit):
        """Keep only the retention_limit numerically largest seen ids."""
        if len(self.seen_ids) > retention_limit:
            kept = sorted(self.seen_ids, reverse=True)[:retention_limit]
            self.seen_ids = set(kept)
            logger.info("Trimmed seen ids: kept %d recent ids", len(self.seen_ids))

    def copy(self):
        return MailboxState(
            self.mailbox_name, self.last_seen_id, self.seen_ids, self.failed_ids
        )

    def to_record(self):
        return {
            "mailbox": self.mailbox_name,
            "last_seen_id": self.last_seen_id,
            "seen_ids": sorted(self.seen_ids),
            "failed_ids": {str(k): v for k, v in sorted(self.failed_ids.items())},
        }

    @classmethod
    def from_record(cls, record):
        return cls(
            record["mailbox"],
            last_seen_id=int(record.get("last_seen_id", 0)),
            seen_ids=(int(uid) for uid in record.get("seen_ids", [])),
            failed_ids={int(k): int(v) for k, v in record.get("failed_ids", {}).items()},
        )


class StateStore:
    """JSON file store keyed by mailbox name. Assumes a single writer."""

    def __init__(self, state_dir):
        self.state_dir = os.path.expanduser(state_dir)

    def path_for(self, mailbox_name):
        key = hashlib.sha256(mailbox_name.encode("utf-8")).hexdigest()
        return os.path.join(self.state_dir, key + ".json")

    def load(self, mailbox_name):
        """
        Load the persisted state of a mailbox.

        Args:
            mailbox_name: Mailbox the state belongs to

        Returns:
            MailboxState, or None when nothing usable is stored
        """
        path = self.path_for(mailbox_name)
        if not os.path.isfile(path):
            return None

        try:
            with open(path, "r", encoding="utf-8") as f:
                state = MailboxState.from_record(json.load(f))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error("Corrupt state record %s: %s; moving it aside", path, e)
            os.replace(path, path + ".corrupt")
            return None

        logger.info(
            "Loaded state for %s: last_seen_id=%d, %d seen ids",
            mailbox_name,
            state.last_seen_id,
            len(state.seen_ids),
        )
        return state

    def save(self, state):
        """Write the state record via a temporary file and an atomic rename."""
        os.makedirs(self.state_dir, exist_ok=True)
        path = self.path_for(state.mailbox_name)

        fd, tmp_path = tempfile.mkstemp(dir=self.state_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state.to_record(), f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def flush_on_shutdown(self, states):
        """Save every state; one failing record does not stop the others."""
        for state in states:
            try:
                self.save(state)
                logger.info("State of %s saved during shutdown", state.mailbox_name)
            except OSError as e:
                logger.error("Failed to save state of %s: %s", state.mailbox_name, e)
