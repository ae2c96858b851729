"""
Transcript Export - render a chat session as a PDF with PyMuPDF.

Layout: header (session id, creation date), participant block, one entry
per message (``SENDER (provider)`` line, wrapped content, timestamp) and a
footer on every page. Pages are added as the text runs out.
"""

import logging
import textwrap
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import fitz  # PyMuPDF

from config import runtime_config
from routers.chat_orchestration.session import ChatSession, Message

logger = logging.getLogger(__name__)

# Letter size, 1 inch margins
PAGE_WIDTH = 612
PAGE_HEIGHT = 792
MARGIN = 72
FONTSIZE = 10
LINE_HEIGHT = FONTSIZE * 1.4
WRAP_CHARS = 90

FOOTER_TEXT = "Generated by Atelier chat"


def _fmt(ts: Optional[datetime]) -> str:
    return ts.strftime("%Y-%m-%d %H:%M:%S UTC") if ts else "-"


def _message_heading(message: Message) -> str:
    heading = message.sender.value.upper()
    if message.provider_used:
        heading += f" ({message.provider_used.value})"
    return heading


def _wrap(text: str) -> List[str]:
    lines: List[str] = []
    for paragraph in text.splitlines() or [""]:
        lines.extend(textwrap.wrap(paragraph, WRAP_CHARS) or [""])
    return lines


class _PageWriter:
    """Keeps a cursor and opens a new page whenever the current one is full."""

    def __init__(self, doc: "fitz.Document"):
        self.doc = doc
        self.page = None
        self.y_pos = 0.0
        self.max_y = PAGE_HEIGHT - MARGIN

    def _new_page(self) -> None:
        self.page = self.doc.new_page(width=PAGE_WIDTH, height=PAGE_HEIGHT)
        self.page.insert_text(
            fitz.Point(MARGIN, PAGE_HEIGHT - MARGIN / 2),
            f"{FOOTER_TEXT} - page {self.doc.page_count}",
            fontname="helv",
            fontsize=8,
        )
        self.y_pos = MARGIN

    def line(self, text: str, fontname: str = "helv", fontsize: float = FONTSIZE) -> None:
        if self.page is None or self.y_pos > self.max_y:
            self._new_page()
        self.page.insert_text(fitz.Point(MARGIN, self.y_pos), text, fontname=fontname, fontsize=fontsize)
        self.y_pos += LINE_HEIGHT

    def gap(self, factor: float = 0.5) -> None:
        self.y_pos += LINE_HEIGHT * factor


def render_transcript(session: ChatSession) -> bytes:
    """Render ``session`` (with messages) to PDF bytes."""
    doc = fitz.open()
    try:
        writer = _PageWriter(doc)

        writer.line("Chat Transcript", fontname="hebo", fontsize=16)
        writer.gap()
        writer.line(f"Session: {session.session_id}")
        writer.line(f"Created: {_fmt(session.created_at)}")
        writer.gap()

        person = session.participant
        writer.line("Participant", fontname="hebo", fontsize=12)
        writer.line(f"Name: {person.name}")
        writer.line(f"Email: {person.email}")
        writer.line(f"Country: {person.country}")
        writer.line(f"Mode: {session.mode.value}")
        writer.line(f"Status: {session.status.value}")
        if session.close_reason:
            writer.line(f"Closed: {session.close_reason} ({session.closed_by or '-'}, {_fmt(session.closed_at)})")
        writer.gap(1.0)

        writer.line(f"Messages ({len(session.messages)})", fontname="hebo", fontsize=12)
        writer.gap()
        for message in session.messages:
            writer.line(_message_heading(message), fontname="hebo")
            for text in _wrap(message.content):
                writer.line(text)
            writer.line(_fmt(message.timestamp), fontsize=8)
            writer.gap()

        return doc.tobytes()
    finally:
        doc.close()


def save_transcript(session: ChatSession, pdf: bytes, export_dir: Optional[str] = None) -> Path:
    """Write ``pdf`` under ``export_dir`` (default from config); returns the path."""
    directory = Path(export_dir or runtime_config.export_dir)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / transcript_filename(session)
    path.write_bytes(pdf)
    logger.info(f"Transcript for {session.session_id[:8]} saved to {path}")
    return path


def transcript_filename(session: ChatSession) -> str:
    return f"chat-{session.session_id}.pdf"
