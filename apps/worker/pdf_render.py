"""
PDF rendering for clinical documents.

Rendering is a pure function of the payload. ``invariant=1`` pins the PDF
creation date and document id so identical payloads produce identical bytes.
"""
from __future__ import annotations

from io import BytesIO
from typing import Any
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from packages.shared.document_types import document_title

FLAG_COLORS = {
    "LOW": colors.HexColor("#1D4ED8"),
    "HIGH": colors.HexColor("#B91C1C"),
}


def _text(value: Any) -> str:
    if value is None or value == "":
        return "-"
    if isinstance(value, bool):
        return "Yes" if value else "No"
    return escape(str(value))


def _label(key: str) -> str:
    words = []
    current = ""
    for ch in key:
        if ch.isupper() and current:
            words.append(current)
            current = ch.lower()
        else:
            current += ch
    if current:
        words.append(current)
    return " ".join(words).capitalize()


def _table_style(header: bool = True) -> TableStyle:
    commands = [
        ("ALIGN", (0, 0), (-1, -1), "LEFT"),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ("LEFTPADDING", (0, 0), (-1, -1), 6),
        ("RIGHTPADDING", (0, 0), (-1, -1), 6),
        ("TOPPADDING", (0, 0), (-1, -1), 4),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
    ]
    if header:
        commands.extend(
            [
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#F0F4F8")),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.HexColor("#2E548A")),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
            ]
        )
    return TableStyle(commands)


def _key_value_table(section: dict, normal: ParagraphStyle) -> Table:
    rows = [
        [Paragraph(_label(key), normal), Paragraph(_text(value), normal)]
        for key, value in sorted(section.items())
    ]
    table = Table(rows, colWidths=[2.2 * inch, 4.8 * inch])
    table.setStyle(_table_style(header=False))
    return table


def _record_flowables(title: str, section: dict | None, h2: ParagraphStyle, normal: ParagraphStyle) -> list:
    flowables: list = [Paragraph(title, h2)]
    if not section:
        flowables.append(Paragraph("Not recorded.", normal))
        return flowables
    # Summary payloads nest one slot per encounter type.
    if all(isinstance(v, dict) or v is None for v in section.values()) and any(
        isinstance(v, dict) for v in section.values()
    ):
        for value in section.values():
            if isinstance(value, dict):
                flowables.append(_key_value_table(value, normal))
        return flowables
    flowables.append(_key_value_table(section, normal))
    return flowables


def _lab_flowables(lab: dict, h2: ParagraphStyle, normal: ParagraphStyle, small: ParagraphStyle) -> list:
    flowables: list = [Paragraph("Results", h2)]
    for test in lab.get("tests") or []:
        flowables.append(
            Paragraph(
                f"<b>{_text(test.get('name'))}</b> ({_text(test.get('code'))}) - {_text(test.get('department'))}",
                normal,
            )
        )
        table_data = [["Parameter", "Value", "Unit", "Flag", "Reference"]]
        flag_styles = []
        for idx, row in enumerate(test.get("parameters") or [], start=1):
            flag = row.get("flag") or "UNKNOWN"
            table_data.append(
                [
                    Paragraph(_text(row.get("name")), normal),
                    Paragraph(_text(row.get("value")), normal),
                    Paragraph(_text(row.get("unit")), normal),
                    Paragraph(_text(flag if flag != "UNKNOWN" else ""), normal),
                    Paragraph(_text(row.get("reference")), normal),
                ]
            )
            if flag in FLAG_COLORS:
                flag_styles.append(("TEXTCOLOR", (1, idx), (1, idx), FLAG_COLORS[flag]))
        table = Table(table_data, colWidths=[2.2 * inch, 1.2 * inch, 0.9 * inch, 0.8 * inch, 1.9 * inch])
        style = _table_style()
        for command in flag_styles:
            style.add(*command)
        table.setStyle(style)
        flowables.append(table)
        flowables.append(Spacer(1, 0.15 * inch))

    summary = lab.get("verifiedSummary") or {}
    if summary:
        flowables.append(
            Paragraph(
                f"Verified by {_text(summary.get('verifiedBy'))} at {_text(summary.get('verifiedAt'))}",
                small,
            )
        )
    return flowables


def render_document_pdf(payload: dict) -> bytes:
    """Render a document payload to PDF bytes."""
    meta = payload.get("meta") or {}
    patient = payload.get("patient") or {}
    encounter = payload.get("encounter") or {}
    title = document_title(meta.get("requestedDocumentType") or "")

    buffer = BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=letter,
        topMargin=0.75 * inch,
        bottomMargin=0.75 * inch,
        leftMargin=0.75 * inch,
        rightMargin=0.75 * inch,
        title=title,
        author="clinflow",
        invariant=1,
    )
    styles = getSampleStyleSheet()
    title_style = ParagraphStyle("TitleStyle", parent=styles["Title"], fontSize=18, spaceAfter=12)
    h2_style = ParagraphStyle(
        "H2Style",
        parent=styles["Heading2"],
        fontSize=12,
        spaceBefore=10,
        spaceAfter=4,
        textColor=colors.HexColor("#2E548A"),
    )
    normal_style = styles["Normal"]
    small_style = ParagraphStyle("SmallStyle", parent=normal_style, fontSize=8, textColor=colors.grey)

    flowables: list = [Paragraph(escape(title), title_style)]

    header = Table(
        [
            [Paragraph("Patient", normal_style), Paragraph(_text(patient.get("name")), normal_style),
             Paragraph("Reg No", normal_style), Paragraph(_text(patient.get("regNo")), normal_style)],
            [Paragraph("DOB", normal_style), Paragraph(_text(patient.get("dob")), normal_style),
             Paragraph("Gender", normal_style), Paragraph(_text(patient.get("gender")), normal_style)],
            [Paragraph("Encounter", normal_style), Paragraph(_text(encounter.get("encounterCode")), normal_style),
             Paragraph("Type", normal_style), Paragraph(_text(encounter.get("type")), normal_style)],
            [Paragraph("Started", normal_style), Paragraph(_text(encounter.get("startedAt")), normal_style),
             Paragraph("Ended", normal_style), Paragraph(_text(encounter.get("endedAt")), normal_style)],
        ],
        colWidths=[1.0 * inch, 2.5 * inch, 1.0 * inch, 2.5 * inch],
    )
    header.setStyle(_table_style(header=False))
    flowables.append(header)
    flowables.append(Spacer(1, 0.2 * inch))

    flowables.extend(_record_flowables("Preparation", payload.get("prep"), h2_style, normal_style))
    flowables.extend(_record_flowables("Clinical Details", payload.get("main"), h2_style, normal_style))

    if payload.get("lab"):
        flowables.append(Spacer(1, 0.1 * inch))
        flowables.extend(_lab_flowables(payload["lab"], h2_style, normal_style, small_style))

    flowables.append(Spacer(1, 0.3 * inch))
    flowables.append(
        Paragraph(
            f"Template {_text(meta.get('templateKey'))} v{_text(meta.get('templateVersion'))}",
            small_style,
        )
    )

    doc.build(flowables)
    return buffer.getvalue()
