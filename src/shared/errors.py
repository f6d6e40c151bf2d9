"""
Shared error messages for the invoicing service.

User-visible errors must be a single readable sentence.
"""


class AppErrors:
    """Centralized user-facing error messages."""

    SETTLEMENT_UNAVAILABLE = (
        "Something went wrong. Please contact the company administrator."
    )

    PDF_ONLY = (
        "Only PDF files are allowed for the invoice attachment"
    )

    PDF_TOO_LARGE = (
        "PDF file size exceeds the 2MB limit"
    )

    INVOICE_NOT_FOUND = (
        "Invoice not found."
    )

    NOT_SIGNED_IN = (
        "Not signed in. Choose a user first."
    )

    NOT_A_CONTRACTOR = (
        "You are not a contractor of this company."
    )

    ATTACHMENT_NOT_FOUND = (
        "No attachment for this invoice."
    )


def to_sentence(messages: list[str]) -> str:
    """Join messages as "a", "a and b" or "a, b, and c"."""
    if not messages:
        return ""
    if len(messages) == 1:
        return messages[0]
    if len(messages) == 2:
        return f"{messages[0]} and {messages[1]}"
    return f"{', '.join(messages[:-1])}, and {messages[-1]}"
