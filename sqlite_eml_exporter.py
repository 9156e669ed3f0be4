#!/usr/bin/env python3
"""
SQLite Mailbox to EML Exporter

A Python script for converting an archived mailbox export (a SQLite backup holding
messages as stored MIME trees plus a side table of attachment blobs) back into
standard RFC 5322 / MIME ``.eml`` files, one per message, organized by mailbox.

Features:
- Reverses the two-stage at-rest attachment encoding (hex layer, then the declared
  transfer encoding) and saves every decoded attachment
- Rebuilds nested multipart MIME structure from stored mime trees whose headers
  may be partial or missing
- Guarantees unique multipart boundaries across all nesting levels of a message
- Re-attaches out-of-band attachment payloads as base64 parts
- Fixes common mis-encoded punctuation and invisible characters in headers and bodies
- Maps non-ASCII mailbox names to ASCII-compatible (punycode) directory names
- Isolates failures: one broken message or attachment never stops the export

Usage:
    python sqlite_eml_exporter.py path-to-backup.sqlite [path-to-output]

    Examples:
    python sqlite_eml_exporter.py ~/backups/alias.sqlite ./export
    SQLITE_PATH=~/backups/alias.sqlite ALIAS_ID=alias python sqlite_eml_exporter.py

The backup must already be decrypted; opening encrypted stores is not handled here.

License: MIT
Version: 1.0.0
"""

import os
import re
import sys
import html
import json
import time
import uuid
import base64
import logging
import sqlite3
import argparse
from enum import Enum
from pathlib import Path
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from dateutil.parser import parse as date_parse
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

CRLF = "\r\n"
PREAMBLE = "This is a multi-part message in MIME format."
BASE64_LINE_LENGTH = 76
DEFAULT_CONTENT_TYPE = "application/octet-stream"
DEFAULT_TRANSFER_ENCODING = "quoted-printable"
ATTACHMENTS_DIRNAME = "_attachments"
UNKNOWN_MAILBOX = "unknown"
PROGRESS_EVERY = 100
TRACEBACK_LIMIT = 5

# Headers owned by the message-level header block
TOP_LEVEL_HEADERS = frozenset(("from", "subject", "to", "date", "mime-version"))

# Known mis-transcoded sequences (UTF-8 read as Windows-1252), longest first
MOJIBAKE_FIXES = (
    ("\u00e2\u20ac\u2122", "'"),
    ("\u00e2\u20ac\u02dc", "'"),
    ("\u00e2\u20ac\u0153", '"'),
    ("\u00e2\u20ac\u009d", '"'),
    ("\u00e2\u20ac\u00af", " "),
    ("\u00e2\u00af", " "),
    ("\u00c2\u00a0", " "),
    ("\u00c2", ""),
)

WHITESPACE_RE = re.compile(r"\s+")
HEX_RE = re.compile(r"[0-9A-Fa-f]+")
BOUNDARY_RE = re.compile(r'boundary="?([^";\s]+)"?', re.IGNORECASE)
DATE_COMMENT_RE = re.compile(r"\([^)]*\)")

class AttachmentDecodeError(Exception):
    """Raised when an attachment body cannot be turned into binary content."""

class MimeTreeError(ValueError):
    """Raised when a stored mime tree cannot be loaded."""

def safe_filename(s):
    """
    Convert a string to a safe filename by removing invalid characters.

    Args:
        s (str): The input string to sanitize

    Returns:
        str: A safe filename string containing only alphanumeric characters,
             periods, underscores, hyphens, and spaces
    """
    return "".join(c for c in s if c.isalnum() or c in "._- ").strip()

def normalize_text(text):
    """
    Remove encoding artifacts from text headed for a header or a text body.

    Strips byte-order marks, turns non-breaking spaces into plain spaces and
    repairs a fixed set of mis-transcoded punctuation sequences.

    Args:
        text (str): Text to clean, may be None

    Returns:
        str: The normalized text, empty when there was no input
    """
    if not text:
        return ""

    text = text.replace("\ufeff", "")
    for broken, fixed in MOJIBAKE_FIXES:
        text = text.replace(broken, fixed)
    return text.replace("\u00a0", " ")

class TransferEncoding(Enum):
    BASE64 = "base64"
    SEVEN_BIT = "7bit"
    EIGHT_BIT = "8bit"
    BINARY = "binary"
    QUOTED_PRINTABLE = "quoted-printable"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value):
        """Map a declared transfer encoding (any case) onto a member, UNKNOWN if unrecognized."""
        key = (value or "").strip().lower()
        for member in cls:
            if member is not cls.UNKNOWN and member.value == key:
                return member
        return cls.UNKNOWN

PASSTHROUGH_ENCODINGS = (TransferEncoding.SEVEN_BIT, TransferEncoding.EIGHT_BIT, TransferEncoding.BINARY)

class DirectoryDiagnosticSink:
    """
    Write intermediate attachment decode stages to files for forensic inspection.

    Every stage lands next to the attachments as ``<prefix>_<stage>``.
    """

    def __init__(self, directory, prefix):
        self.directory = Path(directory)
        self.prefix = prefix

    def write(self, stage, data):
        if isinstance(data, str):
            data = data.encode("utf-8", "surrogateescape")
        self.directory.mkdir(parents=True, exist_ok=True)
        (self.directory / f"{self.prefix}_{stage}").write_bytes(data)

def _trace(sink, stage, data):
    if sink is not None:
        sink.write(stage, data)

def decode_hex(text):
    """
    Decode the at-rest hex layer of an attachment body.

    Args:
        text (str): Stored body, may contain line breaks and other whitespace

    Returns:
        bytes: The decoded bytes, or None if the body is not an even-length
               run of hex digits once whitespace is removed. An odd-length
               run is rejected whole and goes through the raw-bytes
               fallback
    """
    cleaned = WHITESPACE_RE.sub("", text)
    if not cleaned or not HEX_RE.fullmatch(cleaned) or len(cleaned) % 2:
        return None
    return bytes.fromhex(cleaned)

def decode_attachment(raw_body, transfer_encoding, sink=None):
    """
    Reverse the two-stage at-rest encoding of one attachment body.

    Stage 1 removes the hex layer. A body that is not pure hex is used as-is
    (its own bytes become the wire bytes) and a warning is logged.
    Stage 2 undoes the declared transfer encoding:

    - ``base64``: whitespace is stripped, missing ``=`` padding is
      restored and the payload is base64 decoded
    - ``7bit`` / ``8bit`` / ``binary``: the wire bytes are the content
    - ``quoted-printable``: the UTF-8 text of the wire bytes is the content;
      ``=XX`` escapes are left untouched
    - anything else: the wire bytes are the content and a warning is logged

    Args:
        raw_body (str): Stored attachment body
        transfer_encoding (str): Declared Content-Transfer-Encoding
        sink: Optional object with a ``write(stage, data)`` method receiving
              intermediate stages

    Returns:
        bytes: Final binary content of the attachment

    Raises:
        AttachmentDecodeError: If the body is empty or the base64 stage fails
    """
    if not raw_body:
        raise AttachmentDecodeError("attachment body is empty")

    _trace(sink, "1_original.txt", raw_body)

    wire = decode_hex(raw_body)
    if wire is None:
        logger.warning("Attachment body is not hex encoded, using raw body bytes")
        wire = raw_body.encode("utf-8", "surrogateescape")
    else:
        _trace(sink, "2_hexdecoded.bin", wire)

    encoding = TransferEncoding.parse(transfer_encoding)

    if encoding is TransferEncoding.BASE64:
        try:
            clean_base64 = WHITESPACE_RE.sub("", wire.decode("utf-8"))
            clean_base64 += "=" * (-len(clean_base64) % 4)
            _trace(sink, "3_cleanbase64.txt", clean_base64)
            content = base64.b64decode(clean_base64, validate=True)
        except ValueError as e:
            raise AttachmentDecodeError(f"invalid base64 payload: {e}") from e
    elif encoding in PASSTHROUGH_ENCODINGS:
        content = wire
    elif encoding is TransferEncoding.QUOTED_PRINTABLE:
        # Escapes are not interpreted here, only the text is carried over
        content = wire.decode("utf-8", errors="replace").encode("utf-8")
    else:
        logger.warning("Unknown transfer encoding %r, using decoded bytes as-is", transfer_encoding)
        content = wire

    _trace(sink, "5_final.bin", content)
    _trace(sink, "5_final.hex", content.hex())
    _trace(sink, "5_final.b64", base64.b64encode(content))
    return content

@dataclass
class AttachmentRow:
    row_id: object
    attachment_id: str
    content_type: str = None
    transfer_encoding: str = None
    hash: str = None
    size: int = None
    body: str = None

@dataclass
class DecodedAttachment:
    attachment_id: str
    content: bytes
    content_type: str
    filename: str

    @property
    def size(self):
        return len(self.content)

def resolve_content_type(content_type):
    """Return the bare MIME type of a declared content type, or the generic binary type."""
    mime_type = (content_type or "").split(";")[0].strip().lower()
    return mime_type or DEFAULT_CONTENT_TYPE

def attachment_extension(content_type):
    """
    Infer a file extension for an attachment from its declared content type.

    The extension is the sanitized subtype (``image/jpeg`` gives ``.jpeg``),
    independent of any MIME registry on the host. Wildcard subtypes get none.

    Args:
        content_type (str): Declared content type, may be None

    Returns:
        str: Extension including the leading dot, or an empty string
    """
    mime_type = (content_type or "").split(";")[0].strip().lower()
    if not mime_type:
        return ""

    subtype = mime_type.partition("/")[2]
    if subtype and "*" not in subtype:
        return "." + safe_filename(subtype)
    return ""

def attachment_basename(row):
    """Stem shared by an attachment's output file and its diagnostic files."""
    stem = row.hash if row.hash else row.row_id
    return f"{safe_filename(str(stem))}_{safe_filename(str(row.attachment_id))}"

def decode_attachment_row(row, sink=None):
    """
    Decode one stored attachment row into a DecodedAttachment.

    A decoded length that differs from the declared size only produces a warning.

    Args:
        row (AttachmentRow): Stored attachment record
        sink: Optional diagnostic sink passed on to decode_attachment

    Returns:
        DecodedAttachment: Content, resolved content type and output filename

    Raises:
        AttachmentDecodeError: If decode_attachment fails
    """
    content = decode_attachment(row.body, row.transfer_encoding, sink=sink)
    filename = attachment_basename(row) + attachment_extension(row.content_type)

    if row.size and len(content) != row.size:
        logger.warning(
            "Size mismatch for %s - Expected: %s, Got: %s", filename, row.size, len(content)
        )

    return DecodedAttachment(
        attachment_id=str(row.attachment_id),
        content=content,
        content_type=resolve_content_type(row.content_type),
        filename=filename,
    )

def unbox_body(value):
    """
    Turn a stored node body into text, bytes or None.

    Bodies are stored as plain strings, as serialized byte buffers
    (``{"type": "Buffer", "data": [...]}``) or as objects with a ``content`` string.
    """
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, dict):
        if value.get("type") == "Buffer" and isinstance(value.get("data"), list):
            try:
                return bytes(value["data"])
            except (TypeError, ValueError) as e:
                raise MimeTreeError(f"invalid byte buffer in body: {e}") from e
        if isinstance(value.get("content"), str):
            return value["content"]
    return None

@dataclass
class MimeNode:
    headers: list = field(default_factory=list)
    body: object = None
    attachment_id: str = None
    children: list = field(default_factory=list)

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict):
            raise MimeTreeError(f"mime node must be an object, got {type(data).__name__}")

        headers = data.get("header")
        if not isinstance(headers, list):
            headers = []

        attachment_id = data.get("attachmentId")
        return cls(
            headers=[h for h in headers if isinstance(h, str)],
            body=unbox_body(data.get("body")),
            attachment_id=str(attachment_id) if attachment_id not in (None, "") else None,
            children=[cls.from_dict(c) for c in data.get("childNodes") or [] if isinstance(c, dict)],
        )

    @classmethod
    def from_json(cls, raw):
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise MimeTreeError(f"invalid mime tree JSON: {e}") from e
        return cls.from_dict(data)

    def body_text(self):
        if isinstance(self.body, bytes):
            return self.body.decode("utf-8", errors="replace")
        return self.body or ""

    def walk(self):
        yield self
        for child in self.children:
            yield from child.walk()

@dataclass
class ParsedHeaders:
    lines: list = field(default_factory=list)
    lookup: dict = field(default_factory=dict)
    content_type: str = ""
    boundary: str = ""

    def get(self, name, default=None):
        entry = self.lookup.get(name.strip().lower())
        return entry[1] if entry else default

    def __contains__(self, name):
        return name.strip().lower() in self.lookup

def parse_headers(raw_lines):
    """
    Parse stored ``Name: value`` header lines.

    Each line is split on its first colon; lines without a colon or name are
    dropped. Lookups are case-insensitive and the first occurrence of a name wins.

    Args:
        raw_lines (list): Header lines in stored order

    Returns:
        ParsedHeaders: Ordered (name, value) pairs, lookup, content type and boundary
    """
    parsed = ParsedHeaders()
    for line in raw_lines or []:
        name, sep, value = line.partition(":")
        name = name.strip()
        if not sep or not name:
            logger.debug("Dropping malformed header line %r", line)
            continue

        value = value.strip()
        parsed.lines.append((name, value))

        key = name.lower()
        if key in parsed.lookup:
            continue
        parsed.lookup[key] = (name, value)
        if key == "content-type":
            parsed.content_type = value
            match = BOUNDARY_RE.search(value)
            if match:
                parsed.boundary = match.group(1)
    return parsed

def infer_content_type(body_text):
    if body_text.lstrip().lower().startswith("<!doctype html"):
        return "text/html; charset=UTF-8"
    return "text/plain; charset=UTF-8"

def build_header_lines(parsed, body_text, skip=()):
    """
    Produce output header lines for one node.

    Args:
        parsed (ParsedHeaders): Parsed stored headers
        body_text (str): The node body, used to infer a missing content type
        skip: Lower-cased header names to leave out

    Returns:
        tuple: (header lines, resolved content type or empty string)
    """
    lines = [f"{name}: {normalize_text(value)}" for name, value in parsed.lines if name.lower() not in skip]

    content_type = parsed.content_type
    if not content_type and body_text:
        content_type = infer_content_type(body_text)
        lines.append(f"Content-Type: {content_type}")

    if "content-transfer-encoding" not in parsed:
        lines.append(f"Content-Transfer-Encoding: {DEFAULT_TRANSFER_ENCODING}")

    return lines, content_type

def _header_name(line):
    return line.partition(":")[0].strip().lower()

def parse_date_string(date_string):
    """
    Parse various date formats into a datetime object.

    RFC 2822 dates are tried first, then dateutil's parser, then a list of
    common manual formats.

    Args:
        date_string (str): Date string in various formats

    Returns:
        datetime: Parsed datetime object

    Raises:
        ValueError: If the date string cannot be parsed
    """
    cleaned = DATE_COMMENT_RE.sub("", date_string).strip()
    try:
        return parsedate_to_datetime(cleaned)
    except (TypeError, ValueError, IndexError):
        pass

    try:
        return date_parse(cleaned)
    except (ValueError, OverflowError):
        # If that fails, try some common formats manually
        formats = [
            "%Y-%m-%d",
            "%Y-%m-%d %H:%M:%S",
            "%Y/%m/%d",
            "%d.%m.%Y",
            "%d/%m/%Y",
            "%m/%d/%Y"
        ]

        for fmt in formats:
            try:
                return datetime.strptime(cleaned, fmt)
            except ValueError:
                continue

        raise ValueError(f"Unable to parse date: {date_string}")

def format_date(value):
    """
    Normalize a stored Date header value to ``Mon, 01 Jan 2024 00:00:00 GMT``.

    Naive dates are taken as UTC. Values that cannot be parsed are returned unchanged.
    """
    try:
        parsed = parse_date_string(value)
    except ValueError as e:
        logger.warning("%s, keeping it as-is", e)
        return value

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return format_datetime(parsed.astimezone(timezone.utc), usegmt=True)

@dataclass
class Envelope:
    sender: str = None
    to: str = None
    date: str = None
    subject: str = None

def hydrate_envelope(root, subject=None):
    """
    Collect the top-level From/To/Date/Subject fields of a message.

    From, To and Date come from the root node's stored headers. When a name
    repeats, its first line is used. The stored message subject wins over
    the root's Subject header.
    """
    parsed = parse_headers(root.headers)
    return Envelope(
        sender=parsed.get("from"),
        to=parsed.get("to"),
        date=parsed.get("date"),
        subject=subject if subject else parsed.get("subject"),
    )

def build_message_headers(envelope):
    headers = []
    if envelope.sender:
        headers.append(f"From: {normalize_text(envelope.sender)}")
    if envelope.subject:
        headers.append(f"Subject: {normalize_text(envelope.subject)}")
    if envelope.to:
        headers.append(f"To: {normalize_text(envelope.to)}")
    if envelope.date:
        headers.append(f"Date: {format_date(envelope.date)}")
    headers.append("MIME-Version: 1.0")
    return headers

class BoundaryRegistry:
    """
    Hands out multipart boundaries that are unique within one message.

    Boundaries declared by the stored tree are claimed up front so that a
    synthesized boundary can never collide with one of them.

    Args:
        token_factory: Callable returning a fresh opaque token, defaults to uuid4 hex
    """

    MAX_ATTEMPTS = 1000

    def __init__(self, token_factory=None):
        self._token_factory = token_factory or (lambda: uuid.uuid4().hex)
        self._used = set()

    def __contains__(self, boundary):
        return boundary in self._used

    def __len__(self):
        return len(self._used)

    def claim(self, boundary):
        self._used.add(boundary)

    def new(self):
        for _ in range(self.MAX_ATTEMPTS):
            candidate = f"----=_Part_{self._token_factory()}"
            if candidate not in self._used:
                self._used.add(candidate)
                return candidate
        raise RuntimeError("Unable to generate a unique MIME boundary")

def claim_declared_boundaries(root, registry):
    for node in root.walk():
        boundary = parse_headers(node.headers).boundary
        if boundary:
            registry.claim(boundary)

def wrap_base64(content):
    encoded = base64.b64encode(content).decode("ascii")
    return [encoded[i:i + BASE64_LINE_LENGTH] for i in range(0, len(encoded), BASE64_LINE_LENGTH)]

def render_attachment_part(attachment):
    """Render a decoded attachment as a base64 body part."""
    return CRLF.join([
        f'Content-Type: {attachment.content_type}; name="{attachment.filename}"',
        "Content-Transfer-Encoding: base64",
        f'Content-Disposition: attachment; filename="{attachment.filename}"',
        "",
        *wrap_base64(attachment.content),
    ])

def is_multipart(content_type):
    return content_type.strip().lower().startswith("multipart/")

def _resolve_attachment(node, attachments):
    if not node.attachment_id:
        return None
    return attachments.get(node.attachment_id)

def render_node(node, attachments, registry, skip_headers=()):
    """
    Recursively render a mime node into MIME text.

    Args:
        node (MimeNode): Node to render
        attachments (dict): Decoded attachments keyed by attachment id
        registry (BoundaryRegistry): Boundary registry of the current message
        skip_headers: Lower-cased header names to omit on this node only

    Returns:
        str: The rendered part, CRLF separated
    """
    parsed = parse_headers(node.headers)
    text = node.body_text()
    header_lines, content_type = build_header_lines(parsed, text, skip=skip_headers)

    if "text/html" in content_type.lower():
        text = html.unescape(text)
    body = normalize_text(text)

    attachment = _resolve_attachment(node, attachments)
    children = [render_node(child, attachments, registry) for child in node.children]

    if is_multipart(content_type):
        parts = list(children)
        if attachment is not None:
            parts.append(render_attachment_part(attachment))
        return CRLF.join(_render_multipart(header_lines, content_type, parsed.boundary, body, parts, registry))

    if attachment is not None:
        return CRLF.join(_render_with_attachment(header_lines, body, children, attachment, registry))

    # Children under a non-multipart node are not expected; keep them in order
    return CRLF.join([*header_lines, "", body, *children])

def _render_multipart(header_lines, content_type, boundary, body, parts, registry):
    lines = list(header_lines)
    if parts and not boundary:
        boundary = registry.new()
        header = f'Content-Type: {content_type}; boundary="{boundary}"'
        for i, line in enumerate(lines):
            if _header_name(line) == "content-type":
                lines[i] = header
                break
        else:
            lines.insert(0, header)

    lines.append("")
    if body:
        lines.append(body)
    if parts:
        for part in parts:
            lines.extend([f"--{boundary}", part])
        lines.append(f"--{boundary}--")
    return lines

def _render_with_attachment(header_lines, body, children, attachment, registry):
    # The node becomes a multipart/mixed envelope; its content-* headers move
    # to the first part, next to the original body.
    boundary = registry.new()
    envelope = [line for line in header_lines if not _header_name(line).startswith("content-")]
    first_part = [line for line in header_lines if _header_name(line).startswith("content-")]
    return [
        *envelope,
        f'Content-Type: multipart/mixed; boundary="{boundary}"',
        "",
        f"--{boundary}",
        *first_part,
        "",
        body,
        *children,
        f"--{boundary}",
        render_attachment_part(attachment),
        f"--{boundary}--",
    ]

def has_attachments(root, attachments):
    nodes = [root, *root.children]
    return any(_resolve_attachment(node, attachments) is not None for node in nodes)

def serialize_message(root, attachments, envelope=None, registry=None):
    """
    Serialize a complete message: top-level headers plus the rendered mime tree.

    When the root or one of its direct children carries an attachment, the
    rendered root is wrapped in an outer multipart/mixed envelope.

    Args:
        root (MimeNode): Root of the message's mime tree
        attachments (dict): Decoded attachments keyed by attachment id
        envelope (Envelope): Top-level fields, hydrated from the root if omitted
        registry (BoundaryRegistry): Boundary registry, a fresh one if omitted

    Returns:
        str: The message text, CRLF line terminators, ending with one CRLF
    """
    registry = registry if registry is not None else BoundaryRegistry()
    envelope = envelope if envelope is not None else hydrate_envelope(root)
    claim_declared_boundaries(root, registry)

    rendered = render_node(root, attachments, registry, skip_headers=TOP_LEVEL_HEADERS)

    lines = build_message_headers(envelope)
    if has_attachments(root, attachments):
        main_boundary = registry.new()
        lines.extend([
            f'Content-Type: multipart/mixed; boundary="{main_boundary}"',
            "",
            PREAMBLE,
            "",
            f"--{main_boundary}",
            rendered,
            f"--{main_boundary}--",
        ])
    else:
        lines.append(rendered)

    return CRLF.join(lines).strip() + CRLF

@dataclass
class MailboxRow:
    mailbox_id: object
    path: str

@dataclass
class MessageRow:
    message_id: object
    mailbox: object
    subject: str
    mime_tree: str
    uid: int = None

def _body_to_text(body):
    if isinstance(body, (bytes, bytearray, memoryview)):
        return bytes(body).decode("utf-8", "surrogateescape")
    return body

class SqliteMailStore:
    """
    Read-only access to a decrypted SQLite mailbox export.

    Usage:
        with SqliteMailStore(path) as store:
            for row in store.messages():
                ...
    """

    def __init__(self, path):
        self.path = Path(path)
        self.connection = None

    def __enter__(self):
        uri = f"{self.path.resolve().as_uri()}?mode=ro"
        self.connection = sqlite3.connect(uri, uri=True)
        self.connection.row_factory = sqlite3.Row
        return self

    def __exit__(self, exc_type, exc, tb):
        if self.connection is not None:
            self.connection.close()
            self.connection = None

    def _query(self, sql):
        if self.connection is None:
            raise RuntimeError("SqliteMailStore is not open")
        return self.connection.execute(sql)

    def attachments(self):
        rows = self._query(
            "SELECT _id, attachmentId, contentType, transferEncoding, hash, size, body FROM Attachments"
        )
        for row in rows:
            yield AttachmentRow(
                row_id=row["_id"],
                attachment_id=row["attachmentId"],
                content_type=row["contentType"],
                transfer_encoding=row["transferEncoding"],
                hash=row["hash"],
                size=row["size"],
                body=_body_to_text(row["body"]),
            )

    def mailboxes(self):
        for row in self._query("SELECT _id, path FROM Mailboxes"):
            yield MailboxRow(mailbox_id=row["_id"], path=row["path"])

    def messages(self):
        rows = self._query("SELECT _id, mailbox, subject, mimeTree, uid FROM Messages ORDER BY uid")
        for row in rows:
            yield MessageRow(
                message_id=row["_id"],
                mailbox=row["mailbox"],
                subject=row["subject"],
                mime_tree=row["mimeTree"],
                uid=row["uid"],
            )

@dataclass
class ExportStats:
    total: int = 0
    processed: int = 0
    errors: int = 0
    skipped: int = 0
    attachments_saved: int = 0
    attachments_skipped: int = 0
    attachments_failed: int = 0

def safe_mailbox_path(path):
    """
    Convert a mailbox path into an ASCII-compatible relative directory path.

    Path segments are split on ``/``; empty, ``.`` and ``..`` segments are
    dropped and non-ASCII segments are punycode encoded with an ``xn--`` prefix.
    For example ``INBOX/Jérôme`` keeps ``INBOX`` and encodes the second segment.

    Args:
        path (str): Original mailbox path

    Returns:
        str: Relative, ASCII-only path, or "unknown" if nothing usable remains
    """
    segments = []
    for segment in str(path or "").split("/"):
        segment = segment.strip()
        if segment in ("", ".", ".."):
            continue
        if not segment.isascii():
            segment = "xn--" + segment.encode("punycode").decode("ascii")
        segments.append(segment)
    return "/".join(segments) or UNKNOWN_MAILBOX

def decode_attachments(rows, attachments_dir, stats, debug=False):
    """
    Decode every stored attachment once and save it to the attachments directory.

    Args:
        rows: Iterable of AttachmentRow
        attachments_dir (Path): Directory receiving decoded attachment files
        stats (ExportStats): Counters updated in place
        debug (bool): Also write intermediate decode stages for each attachment

    Returns:
        dict: DecodedAttachment values keyed by attachment id
    """
    attachments_dir = Path(attachments_dir)
    attachments_dir.mkdir(parents=True, exist_ok=True)
    table = {}

    for row in rows:
        attachment_id = str(row.attachment_id)
        if not row.body:
            logger.warning("Skipping attachment %s - no data", attachment_id)
            stats.attachments_skipped += 1
            continue
        if attachment_id in table:
            logger.warning("Duplicate attachment %s, keeping the first one", attachment_id)
            stats.attachments_skipped += 1
            continue

        logger.debug(
            "Processing attachment %s (type=%s, encoding=%s, size=%s)",
            attachment_id, row.content_type, row.transfer_encoding, row.size,
        )
        sink = None
        if debug:
            sink = DirectoryDiagnosticSink(attachments_dir, attachment_basename(row) + "_debug")

        try:
            attachment = decode_attachment_row(row, sink=sink)
        except AttachmentDecodeError as e:
            logger.error("Failed to decode attachment %s: %s", attachment_id, e)
            stats.attachments_failed += 1
            continue

        (attachments_dir / attachment.filename).write_bytes(attachment.content)
        table[attachment_id] = attachment
        stats.attachments_saved += 1
        logger.debug("Saved attachment %s (%d bytes) as %s", attachment_id, attachment.size, attachment.filename)

    logger.info("Processed %d attachments", len(table))
    return table

def prepare_mailboxes(rows, output_dir):
    """
    Create one directory per mailbox.

    Returns:
        dict: Safe relative mailbox paths keyed by mailbox id
    """
    mailbox_paths = {}
    for row in rows:
        safe_path = safe_mailbox_path(row.path)
        (Path(output_dir) / safe_path).mkdir(parents=True, exist_ok=True)
        mailbox_paths[row.mailbox_id] = safe_path
        logger.debug("Mailbox %r -> %s", row.path, safe_path)
    logger.info("Found %d mailboxes", len(mailbox_paths))
    return mailbox_paths

def ordered_messages(rows):
    """Sort message rows by ascending uid, rows without a uid last, stable otherwise."""
    return sorted(rows, key=lambda row: (row.uid is None, row.uid if row.uid is not None else 0))

def export_message(row, attachments, target_dir):
    """
    Serialize one message row and write it as ``<message id>.eml``.

    Args:
        row (MessageRow): Stored message
        attachments (dict): Decoded attachments keyed by attachment id
        target_dir (Path): Mailbox directory

    Returns:
        Path: The written file, or None if the message rendered empty

    Raises:
        MimeTreeError: If the stored tree cannot be loaded
    """
    root = MimeNode.from_json(row.mime_tree)
    envelope = hydrate_envelope(root, subject=row.subject)
    content = serialize_message(root, attachments, envelope=envelope)
    if not content.strip():
        return None

    target_dir = Path(target_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    eml_path = target_dir / f"{safe_filename(str(row.message_id))}.eml"
    eml_path.write_bytes(content.encode("utf-8", errors="replace"))
    return eml_path

def export_messages(rows, attachments, mailbox_paths, output_dir, stats):
    """
    Write every message in ascending uid order, isolating per-message failures.

    Args:
        rows: Iterable of MessageRow
        attachments (dict): Decoded attachments keyed by attachment id
        mailbox_paths (dict): Safe mailbox paths keyed by mailbox id
        output_dir (Path): Export root
        stats (ExportStats): Counters updated in place
    """
    messages = ordered_messages(rows)
    stats.total += len(messages)
    logger.info("Found %d messages to process", len(messages))
    start_time = time.monotonic()

    for row in messages:
        target_dir = Path(output_dir) / mailbox_paths.get(row.mailbox, UNKNOWN_MAILBOX)
        try:
            written = export_message(row, attachments, target_dir)
        except MimeTreeError as e:
            stats.errors += 1
            logger.error("Failed to parse MIME tree for message %s: %s", row.message_id, e)
            continue
        except Exception:
            stats.errors += 1
            if stats.errors <= TRACEBACK_LIMIT:
                logger.exception("Error processing message %s", row.message_id)
            else:
                logger.error("Error processing message %s", row.message_id)
            continue

        if written is None:
            stats.skipped += 1
            continue

        stats.processed += 1
        if stats.processed % PROGRESS_EVERY == 0:
            elapsed = time.monotonic() - start_time
            remaining = (elapsed / stats.processed) * (len(messages) - stats.processed)
            logger.info(
                "Processed %d/%d messages (%.2f%%) - Est. remaining: %d seconds",
                stats.processed, len(messages), stats.processed / len(messages) * 100, round(remaining),
            )

def export_mailbox(store, output_dir, debug_attachments=False):
    """
    Export a whole store: attachments first, then mailboxes, then messages.

    Args:
        store: Object providing attachments(), mailboxes() and messages()
        output_dir (str | Path): Export root, created if missing
        debug_attachments (bool): Write intermediate attachment decode stages

    Returns:
        ExportStats: Aggregate counters of the run
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    stats = ExportStats()

    attachments = decode_attachments(
        store.attachments(), output_dir / ATTACHMENTS_DIRNAME, stats, debug=debug_attachments
    )
    mailbox_paths = prepare_mailboxes(store.mailboxes(), output_dir)
    export_messages(store.messages(), attachments, mailbox_paths, output_dir, stats)
    return stats

def default_output_dir(alias_id=None, now=None):
    """Default export location: ~/Downloads/email-export-<alias>-<timestamp>."""
    now = now or datetime.now(timezone.utc)
    timestamp = now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S.") + f"{now.microsecond // 1000:03d}Z"
    return Path.home() / "Downloads" / f"email-export-{safe_filename(alias_id or 'mailbox')}-{timestamp}"

def build_parser():
    parser = argparse.ArgumentParser(
        description="Convert a decrypted SQLite mailbox backup into .eml files + attachments",
        epilog="""
Examples:
  Export to a chosen directory:
    %(prog)s ~/backups/alias.sqlite ./export

  Use settings from the environment or a .env file (SQLITE_PATH, ALIAS_ID):
    %(prog)s

  Keep intermediate attachment decode stages for inspection:
    %(prog)s ~/backups/alias.sqlite ./export --debug-attachments
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument("sqlite_path", nargs="?", default=os.getenv("SQLITE_PATH"),
                        help="Path to the decrypted SQLite backup (default: $SQLITE_PATH)")
    parser.add_argument("output", nargs="?",
                        help="Path to the output directory (default: ~/Downloads/email-export-<alias>-<timestamp>)")
    parser.add_argument("--alias-id", default=os.getenv("ALIAS_ID"),
                        help="Alias name used for the default output directory (default: $ALIAS_ID)")
    parser.add_argument("--debug-attachments", action="store_true",
                        help="Write intermediate decode stages next to each attachment")
    parser.add_argument("--verbose", action="store_true",
                        help="Enable debug logging")
    return parser

def main(argv=None):
    """
    Main entry point for the SQLite to EML export script.

    Loads .env settings, parses the command line and runs the export.

    Returns:
        int: Process exit status
    """
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.sqlite_path:
        parser.error("a SQLite path is required (argument or SQLITE_PATH)")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    output_path = Path(args.output).resolve() if args.output else default_output_dir(args.alias_id)

    print(f"📥 SQLite backup: {args.sqlite_path}")
    print(f"📤 Writing export to: {output_path}\n")

    try:
        with SqliteMailStore(args.sqlite_path) as store:
            stats = export_mailbox(store, output_path, debug_attachments=args.debug_attachments)
    except sqlite3.Error as e:
        print(f"❌ Fatal error reading {args.sqlite_path}: {e}")
        return 1

    print(f"\n🎉 Export complete!")
    print(f"📊 Total messages: {stats.total}")
    print(f"✔️ Successfully processed: {stats.processed}")
    if stats.skipped:
        print(f"⏭️ Skipped (empty): {stats.skipped}")
    print(f"⚠️ Errors: {stats.errors}")
    print(f"📎 Attachments: {stats.attachments_saved} saved, "
          f"{stats.attachments_failed} failed, {stats.attachments_skipped} skipped")
    print(f"📁 Exported to: {output_path}")
    return 0

if __name__ == "__main__":
    sys.exit(main())
