"""Invoice PDF rendering using reportlab."""
import io
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import LETTER
from reportlab.lib.units import mm
from reportlab.platypus import SimpleDocTemplate, Table, TableStyle, Paragraph, Spacer
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle

from src.invoicing.storage.invoice_repository import Company, ExpenseCategory, Invoice, User


def format_cents(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    dollars, rem = divmod(abs(cents), 100)
    return f"{sign}${dollars:,}.{rem:02d}"


def _format_quantity(minutes: int, hourly: bool) -> str:
    if not hourly:
        return str(minutes)
    hours, rem = divmod(minutes, 60)
    return f"{hours}:{rem:02d}"


def render_invoice_pdf(
    invoice: Invoice,
    contractor_user: User,
    company: Company,
    categories: list[ExpenseCategory] | None = None,
) -> bytes:
    """Render the invoice in memory and return the PDF bytes."""
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=LETTER,
        leftMargin=20 * mm,
        rightMargin=20 * mm,
        topMargin=20 * mm,
        bottomMargin=20 * mm,
    )

    styles = getSampleStyleSheet()
    title_style = ParagraphStyle(
        "InvoiceTitle", parent=styles["Title"], fontSize=24, spaceAfter=6 * mm,
    )
    heading_style = ParagraphStyle(
        "SectionHeading", parent=styles["Heading3"], fontSize=11,
        spaceBefore=4 * mm, spaceAfter=2 * mm,
    )
    normal_style = styles["Normal"]
    small_style = ParagraphStyle(
        "Small", parent=normal_style, fontSize=9, textColor=colors.grey,
    )

    elements = []
    elements.append(Paragraph("INVOICE", title_style))

    meta_data = [
        ["Invoice No:", invoice.invoice_number or ""],
        ["Date:", invoice.invoice_date or ""],
        ["Status:", invoice.status.capitalize()],
    ]
    meta_table = Table(meta_data, colWidths=[30 * mm, 50 * mm])
    meta_table.setStyle(TableStyle([
        ("FONTSIZE", (0, 0), (-1, -1), 9),
        ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 2),
        ("TOPPADDING", (0, 0), (-1, -1), 2),
    ]))
    elements.append(meta_table)
    elements.append(Spacer(1, 6 * mm))

    # From (contractor, address as billed) / Bill To (company)
    from_lines = [contractor_user.legal_name]
    city_line = " ".join(p for p in (invoice.city, invoice.state, invoice.zip_code) if p)
    for line in (invoice.street_address, city_line, invoice.country_code, contractor_user.email):
        if line:
            from_lines.append(line)

    addr_data = [
        [Paragraph("<b>From:</b>", normal_style), Paragraph("<b>Bill To:</b>", normal_style)],
        [Paragraph("<br/>".join(escape(line) for line in from_lines), small_style),
         Paragraph(escape(company.name), small_style)],
    ]
    addr_table = Table(addr_data, colWidths=[85 * mm, 85 * mm])
    addr_table.setStyle(TableStyle([
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 2),
    ]))
    elements.append(addr_table)
    elements.append(Spacer(1, 8 * mm))

    table_style = TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#f3f4f6")),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 9),
        ("ALIGN", (1, 0), (-1, -1), "RIGHT"),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.HexColor("#d1d5db")),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
        ("TOPPADDING", (0, 0), (-1, -1), 4),
    ])

    elements.append(Paragraph("Services", heading_style))
    table_data = [["Description", "Qty / Hours", "Rate", "Total"]]
    for item in invoice.line_items:
        table_data.append([
            item.description,
            _format_quantity(item.quantity, item.hourly),
            format_cents(item.pay_rate_in_subunits) + (" / hr" if item.hourly else ""),
            format_cents(item.total_amount_cents),
        ])
    items_table = Table(table_data, colWidths=[85 * mm, 25 * mm, 30 * mm, 30 * mm])
    items_table.setStyle(table_style)
    elements.append(items_table)

    if invoice.expenses:
        names = {c.id: c.name for c in categories or []}
        elements.append(Paragraph("Expenses", heading_style))
        expense_data = [["Description", "Category", "Amount"]]
        for expense in invoice.expenses:
            expense_data.append([
                expense.description,
                names.get(expense.expense_category_id, ""),
                format_cents(expense.total_amount_in_cents),
            ])
        expense_table = Table(expense_data, colWidths=[85 * mm, 55 * mm, 30 * mm])
        expense_table.setStyle(table_style)
        elements.append(expense_table)
    elements.append(Spacer(1, 4 * mm))

    # Totals
    totals_data = [["Total:", format_cents(invoice.total_amount_in_usd_cents)]]
    if invoice.equity_amount_in_cents:
        totals_data.append([
            f"Equity ({invoice.equity_percentage}%, {invoice.equity_amount_in_options:,} options):",
            format_cents(invoice.equity_amount_in_cents),
        ])
    totals_data.append(["Cash:", format_cents(invoice.cash_amount_in_cents)])

    totals_table = Table(totals_data, colWidths=[130 * mm, 40 * mm])
    totals_table.setStyle(TableStyle([
        ("FONTSIZE", (0, 0), (-1, -1), 10),
        ("ALIGN", (0, 0), (0, -1), "RIGHT"),
        ("ALIGN", (1, 0), (1, -1), "RIGHT"),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("LINEBELOW", (0, 0), (-1, 0), 1, colors.black),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 3),
        ("TOPPADDING", (0, 0), (-1, -1), 3),
    ]))
    elements.append(totals_table)

    if invoice.notes:
        elements.append(Spacer(1, 6 * mm))
        elements.append(Paragraph("Notes", heading_style))
        elements.append(Paragraph(escape(invoice.notes), normal_style))

    doc.build(elements)
    return buffer.getvalue()
