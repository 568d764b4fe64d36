"""Inbox Actions - turns incoming mail into a short list of concrete to-dos.

Metadata is synced from Gmail, IMAP or Microsoft Graph mailboxes, and each
message body is read exactly once, in memory, to extract explicit requests
(send, call, follow up, pay, validate) as structured actions.
"""

__version__ = "0.1.0"
