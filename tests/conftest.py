"""Shared fixtures: SQLite mailbox exports built on the fly in tmp_path."""

import json
import sqlite3

import pytest

SCHEMA = """
CREATE TABLE Attachments (
    _id INTEGER PRIMARY KEY,
    attachmentId TEXT,
    contentType TEXT,
    transferEncoding TEXT,
    hash TEXT,
    size INTEGER,
    body TEXT
);
CREATE TABLE Mailboxes (_id TEXT PRIMARY KEY, path TEXT);
CREATE TABLE Messages (
    _id TEXT PRIMARY KEY,
    mailbox TEXT,
    subject TEXT,
    mimeTree TEXT,
    uid INTEGER
);
"""

@pytest.fixture
def make_store(tmp_path):
    """Return a factory writing a SQLite export and returning its path.

    Message trees given as dicts are serialized to JSON; strings are stored verbatim.
    """

    def _make(attachments=(), mailboxes=(), messages=(), name="backup.sqlite"):
        path = tmp_path / name
        connection = sqlite3.connect(path)
        try:
            connection.executescript(SCHEMA)
            connection.executemany(
                "INSERT INTO Attachments VALUES (?, ?, ?, ?, ?, ?, ?)", list(attachments)
            )
            connection.executemany("INSERT INTO Mailboxes VALUES (?, ?)", list(mailboxes))
            connection.executemany(
                "INSERT INTO Messages VALUES (?, ?, ?, ?, ?)",
                [
                    (msg_id, mailbox, subject, tree if isinstance(tree, str) else json.dumps(tree), uid)
                    for msg_id, mailbox, subject, tree, uid in messages
                ],
            )
            connection.commit()
        finally:
            connection.close()
        return path

    return _make

@pytest.fixture
def counter_tokens():
    """Deterministic boundary tokens: "1", "2", "3", ..."""
    state = {"n": 0}

    def _next():
        state["n"] += 1
        return str(state["n"])

    return _next
