#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Single-run task-mail fetch.
Connects to IMAP, forwards task links of new notifications once, and exits.
"""

import sys

import config_data
import imap_utils
import log_utils
import watcher

log_utils.setup_logging(config_data)

user = imap_utils.get_credential("EMAIL_USER", "user", None)
password = imap_utils.get_credential("EMAIL_PASSWORD", "password", "Password: ")

try:
    watcher.run_once(config_data, user, password)
except watcher.MissingCredentialsError as e:
    sys.exit(f"Configuration error: {e}")
