from __future__ import annotations

import html
import re
import shlex
import subprocess
import tempfile
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, Tuple

# ReportLab
from reportlab.lib import colors
from reportlab.lib.pagesizes import landscape, letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle
from reportlab.platypus.doctemplate import LayoutError
from xml.sax.saxutils import escape

from plansheet_core import ConversionFailed, MarkupWriteFailed, RenderedDocument, slugify

STDERR_EXCERPT = 400
TAG_RE = re.compile(r"<[^>]+>")
BREAK_RE = re.compile(r"<br\s*/?>|</p>", re.IGNORECASE)

ROW_TINTS = {
    "song": colors.HexColor("#F2F6FF"),
    "breaker": colors.HexColor("#E6E6E6"),
    "start": colors.HexColor("#FFF4D6"),
}


class Converter(Protocol):
    def convert(self, document: RenderedDocument, markup: str, out_path: Path) -> None:
        ...


def output_paths(
    out_dir: Path, profile_name: str, plan_title: str, run_stamp: datetime, seq: int = 1
) -> Tuple[Path, Path]:
    stem = f"{slugify(profile_name)}_{slugify(plan_title)}_{run_stamp.strftime('%Y%m%d-%H%M%S')}"
    if seq > 1:
        stem = f"{stem}-{seq}"
    return out_dir / f"{stem}.pdf", out_dir / f"{stem}.html"


def write_markup(markup: str, path: Path) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(markup, encoding="utf-8")
    except OSError as exc:
        raise MarkupWriteFailed(f"Could not write HTML to {path}: {exc}") from exc


class CommandConverter:
    """
    Runs an external HTML-to-PDF program as `<command...> <input.html> <output.pdf>`.
    The HTML lives in a temp file that is removed whatever the outcome.
    """

    def __init__(self, command: Sequence[str] | str = "weasyprint") -> None:
        self.command: List[str] = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.command:
            raise ValueError("Converter command is empty")

    def convert(self, document: RenderedDocument, markup: str, out_path: Path) -> None:
        label = document.profile_name
        with tempfile.NamedTemporaryFile(
            "w", prefix="plansheet_", suffix=".html", encoding="utf-8", delete=False
        ) as tmp:
            tmp.write(markup)
            html_path = Path(tmp.name)
        try:
            out_path.parent.mkdir(parents=True, exist_ok=True)
            try:
                p = subprocess.run(
                    self.command + [str(html_path), str(out_path)],
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    check=False,
                )
            except OSError as exc:
                raise ConversionFailed(f"Profile {label!r}: could not run {self.command[0]}: {exc}") from exc
            if p.returncode != 0:
                detail = (p.stderr or p.stdout or "").strip()[:STDERR_EXCERPT]
                raise ConversionFailed(
                    f"Profile {label!r}: {self.command[0]} exited with {p.returncode}" + (f": {detail}" if detail else "")
                )
        finally:
            html_path.unlink(missing_ok=True)


def _styles() -> dict:
    base = getSampleStyleSheet()
    return {
        "title": ParagraphStyle("title", parent=base["Title"], fontName="Helvetica-Bold", fontSize=15, leading=18, spaceAfter=2, alignment=0),
        "start": ParagraphStyle("start", parent=base["Normal"], fontName="Helvetica-Bold", fontSize=11, leading=13),
        "profile": ParagraphStyle("profile", parent=base["Normal"], fontSize=10, leading=12),
        "version": ParagraphStyle("version", parent=base["Normal"], fontSize=7, leading=8.5, textColor=colors.HexColor("#555555")),
        "head": ParagraphStyle("head", parent=base["Normal"], fontName="Helvetica-Bold", fontSize=8.5, leading=10, textColor=colors.white),
        "cell": ParagraphStyle("cell", parent=base["Normal"], fontSize=8.5, leading=10),
        "caption": ParagraphStyle("caption", parent=base["Normal"], fontSize=6.5, leading=8, textColor=colors.HexColor("#666666")),
    }


def _para_text(text: str) -> str:
    return escape(text).replace("\n", "<br/>")


def _plain_detail(detail: str) -> str:
    # Upstream detail is inline HTML; ReportLab only gets its text.
    text = BREAK_RE.sub("\n", detail)
    return html.unescape(TAG_RE.sub("", text)).strip()


class ReportlabConverter:
    """
    Draws the plansheet table directly with ReportLab, for hosts without an
    HTML renderer. The markup is ignored; styling is fixed.
    """

    def __init__(self, margin: float = 0.4 * inch) -> None:
        self.margin = margin

    def convert(self, document: RenderedDocument, markup: str, out_path: Path) -> None:
        try:
            out_path.parent.mkdir(parents=True, exist_ok=True)
            self._build(document, out_path)
        except LayoutError as exc:
            out_path.unlink(missing_ok=True)
            raise ConversionFailed(f"Profile {document.profile_name!r}: content does not fit the page: {exc}") from exc
        except (OSError, ValueError) as exc:
            raise ConversionFailed(f"Profile {document.profile_name!r}: ReportLab render failed: {exc}") from exc

    def _build(self, document: RenderedDocument, out_path: Path) -> None:
        page_size = landscape(letter) if document.orientation == "landscape" else letter
        doc = SimpleDocTemplate(
            str(out_path),
            pagesize=page_size,
            leftMargin=self.margin,
            rightMargin=self.margin,
            topMargin=self.margin,
            bottomMargin=self.margin,
            title=f"{document.service_title} - {document.profile_name}",
        )
        st = _styles()
        story = [
            Paragraph(_para_text(document.service_title), st["title"]),
            Paragraph(_para_text(document.start_label), st["start"]),
            Paragraph(_para_text(document.profile_name), st["profile"]),
            Paragraph(
                _para_text(
                    f"Last updated: {document.updated_label} | Updated by: {document.updated_by or 'unknown'}"
                    f" | Printed: {document.printed_label}"
                ),
                st["version"],
            ),
            Spacer(1, 0.08 * inch),
        ]

        data = [[Paragraph(_para_text(c.label), st["head"]) for c in document.columns]]
        tints: List[Tuple[int, colors.Color]] = []
        for idx, row in enumerate(document.rows, start=1):
            time_cell = [Paragraph(row.time, st["cell"])]
            if row.duration_caption:
                time_cell.append(Paragraph(row.duration_caption, st["caption"]))
            detail_parts = []
            if row.title:
                detail_parts.append(f"<b>{_para_text(row.title)}</b>")
            if row.detail:
                detail_parts.append(_para_text(_plain_detail(row.detail)))
            data.append(
                [time_cell, Paragraph("<br/>".join(detail_parts), st["cell"])]
                + [Paragraph(_para_text(text), st["cell"]) for text in row.cells]
            )
            tint = ROW_TINTS.get(row.kind_class)
            if tint is not None:
                tints.append((idx, tint))

        usable = page_size[0] - 2 * self.margin
        time_w = 0.6 * inch
        rest = max(1, len(document.columns) - 1)
        col_widths = [time_w] + [(usable - time_w) / rest] * rest

        commands = [
            ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#222222")),
            ("GRID", (0, 0), (-1, -1), 0.5, colors.HexColor("#999999")),
            ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ]
        for idx, tint in tints:
            commands.append(("BACKGROUND", (0, idx), (-1, idx), tint))

        table = Table(data, colWidths=col_widths, repeatRows=1)
        table.setStyle(TableStyle(commands))
        story.append(table)
        doc.build(story)


def make_converter(name: str, command: Optional[str] = None) -> Converter:
    key = (name or "weasyprint").strip().lower()
    if key == "reportlab":
        return ReportlabConverter()
    if key == "weasyprint":
        return CommandConverter(command or "weasyprint")
    if key == "command":
        if not command:
            raise ValueError("converter 'command' needs converter_command")
        return CommandConverter(command)
    raise ValueError(f"Unknown converter: {name!r}. Use weasyprint, reportlab or command")
