# -*- coding: utf-8 -*-
"""
Configuration data: server, mailbox, reconnect/backoff, dedup, storage and notifier settings.
Pure data only - no functions, no side effects at import time.
"""

import os

# ============================================================================
# SERVER SETTINGS
# ============================================================================

imap_server = os.environ.get("IMAP_SERVER", "imap.gmail.com")
imap_port = 993

# Folder the task notifications are filed into
mailbox_name = os.environ.get("MAILBOX", "INBOX")

# ============================================================================
# CONNECTION SETTINGS (seconds)
# ============================================================================

connection_timeout = 30
idle_timeout = 5 * 60

max_reconnect_attempts = 5
initial_backoff = 5
max_backoff = 10 * 60

# Wait after max_reconnect_attempts failures before starting over
reconnect_cooldown = 10 * 60

# ============================================================================
# FETCH SETTINGS
# ============================================================================

fetch_attempts = 3
fetch_retry_delay = 1

seen_id_retention_limit = 1000

# Failed parses of one message before it is abandoned
max_parse_attempts = 3

# False: a mailbox without stored state starts at its newest message
allow_backfill = os.environ.get("ALLOW_BACKFILL", "").lower() == "true"

# ============================================================================
# TASK LINKS
# ============================================================================

accept_link_pattern = (
    r"https://projects\.moravia\.com/Task/[^\s<>\"']*/detail/notification\?command=Accept"
)

# ============================================================================
# STATE AND LOG FILES
# ============================================================================

state_dir = os.path.expanduser(os.environ.get("STATE_DIR", "~/.taskmail_state"))

log_file = os.path.expanduser(
    os.environ.get("LOG_FILE", os.path.join(state_dir, "system.log"))
)
log_retention_days = 7

# ============================================================================
# NOTIFIER
# ============================================================================

notify_webhook_url = os.environ.get("NOTIFY_WEBHOOK_URL")
notify_prefix = "[taskmail]"
notify_timeout = 10
