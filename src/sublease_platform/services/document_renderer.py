"""Final agreement PDF rendering with ReportLab.

The agreement body is stored as simple HTML (headings, paragraphs, list
items, line breaks). It is flattened into ReportLab paragraphs. Each block is
sanitized with bleach: bold, italic and underline survive as ReportLab inline
markup, any other tag is stripped and its text kept.
"""

import html
import io
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import bleach
from reportlab.lib import colors
from reportlab.lib.enums import TA_JUSTIFY
from reportlab.lib.pagesizes import LETTER
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Image, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

logger = logging.getLogger(__name__)

_BLOCK_PATTERN = re.compile(
    r"<(h[1-6]|p|li|div)\b[^>]*>(.*?)</\1\s*>", re.IGNORECASE | re.DOTALL
)
_BREAK_PATTERN = re.compile(r"<br\s*/?>", re.IGNORECASE)
_INLINE_TAGS = {"b", "strong", "i", "em", "u", "br"}
_INLINE_RENAMES = {"strong": "b", "em": "i"}
_RENAME_PATTERN = re.compile(r"<(/?)(strong|em)>")
_WHITESPACE = re.compile(r"[ \t\r\f\v]+")

FOOTER_TEXT = (
    "This agreement is solely between the parties named above. The platform "
    "that facilitated it is not a party to the agreement."
)


@dataclass(frozen=True)
class SignatureBlock:
    """One party's signature as printed on the final document."""

    label: str
    name: str
    signed_at: Optional[datetime]
    image: Optional[bytes] = None


def _sanitize(fragment: str, tags=frozenset()) -> str:
    """Strip disallowed markup. The result is entity-escaped ReportLab markup."""
    clean = bleach.clean(fragment, tags=tags, attributes={}, strip=True)
    return _RENAME_PATTERN.sub(lambda m: f"<{m.group(1)}{_INLINE_RENAMES[m.group(2)]}>", clean)


def _clean_text(fragment: str) -> str:
    text = _BREAK_PATTERN.sub("\n", _sanitize(fragment, _INLINE_TAGS))
    lines = [_WHITESPACE.sub(" ", line).strip() for line in text.split("\n")]
    return "<br/>".join(line for line in lines if line)


def html_to_blocks(body: str) -> list[tuple[str, str]]:
    """Split an HTML-ish body into ``(kind, text)`` blocks.

    ``kind`` is ``"heading"`` for h1-h6 and ``"body"`` otherwise. Text
    outside any block element becomes its own body paragraph, one per line.
    """
    blocks: list[tuple[str, str]] = []
    position = 0
    for match in _BLOCK_PATTERN.finditer(body or ""):
        blocks.extend(_loose_text(body[position:match.start()]))
        tag, inner = match.group(1).lower(), match.group(2)
        # Nested blocks (div > p) are flattened by recursing into the inner markup
        if _BLOCK_PATTERN.search(inner):
            blocks.extend(html_to_blocks(inner))
        else:
            text = _clean_text(inner)
            if text:
                kind = "heading" if tag.startswith("h") else "body"
                prefix = "• " if tag == "li" else ""
                blocks.append((kind, prefix + text))
        position = match.end()
    blocks.extend(_loose_text((body or "")[position:]))
    return blocks


def _loose_text(fragment: str) -> list[tuple[str, str]]:
    # Each line becomes its own paragraph, so inline markup is not kept here
    text = _sanitize(_BREAK_PATTERN.sub("\n", fragment))
    return [
        ("body", _WHITESPACE.sub(" ", line).strip())
        for line in text.split("\n")
        if line.strip()
    ]


def _styles() -> dict[str, ParagraphStyle]:
    styles = getSampleStyleSheet()
    return {
        "title": ParagraphStyle(
            "AgreementTitle",
            parent=styles["Title"],
            fontName="Helvetica-Bold",
            fontSize=18,
            leading=24,
            spaceAfter=12,
            alignment=1,
        ),
        "meta": ParagraphStyle(
            "AgreementMeta",
            parent=styles["Normal"],
            fontName="Helvetica",
            fontSize=9,
            leading=12,
            spaceAfter=8,
            alignment=1,
        ),
        "heading": ParagraphStyle(
            "AgreementSection",
            parent=styles["Heading4"],
            fontName="Helvetica-Bold",
            fontSize=12,
            leading=18,
            spaceBefore=12,
            spaceAfter=6,
        ),
        "body": ParagraphStyle(
            "AgreementBody",
            parent=styles["Normal"],
            fontName="Helvetica",
            fontSize=11,
            leading=16,
            spaceAfter=8,
            alignment=TA_JUSTIFY,
        ),
        "footer": ParagraphStyle(
            "AgreementFooter",
            parent=styles["Normal"],
            fontName="Helvetica",
            fontSize=8,
            leading=10,
            textColor=colors.HexColor("#666666"),
            alignment=1,
        ),
    }


def _signature_cell(block: SignatureBlock, styles: dict[str, ParagraphStyle]) -> list:
    cell = [Paragraph(f"<b>{html.escape(block.label)}</b>", styles["body"])]
    if block.image:
        cell.append(Image(io.BytesIO(block.image), width=2 * inch, height=0.75 * inch, kind="proportional"))
    cell.append(Paragraph(html.escape(block.name), styles["body"]))
    if block.signed_at:
        cell.append(Paragraph(f"Date: {block.signed_at:%B %d, %Y}", styles["body"]))
    return cell


def render_agreement_pdf(
    rendered_body: str,
    signatures: list[SignatureBlock],
    agreement_id: str,
    title: str = "Sublease Agreement",
    generated_at: Optional[datetime] = None,
) -> bytes:
    """Render the final agreement to PDF bytes.

    *rendered_body* must already have its placeholders substituted.
    """
    styles = _styles()
    generated_at = generated_at or datetime.now(timezone.utc)

    story = [
        Paragraph(html.escape(title), styles["title"]),
        Paragraph(f"Agreement {html.escape(agreement_id)}", styles["meta"]),
        Spacer(1, 10),
    ]
    for kind, text in html_to_blocks(rendered_body):
        story.append(Paragraph(text, styles[kind]))

    if signatures:
        story.append(Spacer(1, 30))
        table = Table(
            [[_signature_cell(block, styles) for block in signatures]],
            colWidths=[3.2 * inch] * len(signatures),
        )
        table.setStyle(TableStyle([
            ("VALIGN", (0, 0), (-1, -1), "TOP"),
            ("LINEABOVE", (0, 0), (-1, 0), 0.5, colors.HexColor("#cccccc")),
        ]))
        story.append(table)

    story.append(Spacer(1, 30))
    story.append(Paragraph(FOOTER_TEXT, styles["footer"]))
    story.append(Paragraph(f"Generated on {generated_at:%Y-%m-%d %H:%M} UTC", styles["footer"]))

    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=LETTER,
        leftMargin=72,
        rightMargin=72,
        topMargin=72,
        bottomMargin=72,
        title=title,
    )
    doc.build(story)
    pdf = buffer.getvalue()
    logger.debug("Rendered agreement %s PDF (%d bytes)", agreement_id, len(pdf))
    return pdf
