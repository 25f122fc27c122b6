"""Default prompt templates for receipt extraction.

Keeping prompts in a central location makes it easier to iterate on
their content and ensure consistency between the system instructions
and the JSON schema requested from the model.
"""

from __future__ import annotations

from textwrap import dedent


def get_extraction_system_prompt() -> str:
    """Return the system instructions for the document-understanding model."""
    return dedent(
        """
        You are a receipt scanning assistant. Your role is to accurately
        extract and structure information from scanned receipts:
          - Merchant information: store name, address, contact details.
          - Transaction details: date, receipt number and payment method.
          - Itemised purchases: product names, quantities, unit and total prices.
          - Totals: subtotal, taxes, total paid and the currency.
        Detect obvious OCR errors and correct them where possible. Normalise
        dates to YYYY-MM-DD and amounts to plain numbers. When a value is
        missing or unreadable use null rather than guessing.
        """
    ).strip()


def get_default_extraction_prompt() -> str:
    """Return the user instruction sent alongside the PDF.

    The structure matches ``ReceiptDraft`` (camelCase keys).  The model is
    also asked for a display name and a short summary, both optional.
    """
    return dedent(
        """
        Extract the data from the receipt and return the structured output as follows:
        {
          "merchant": {
            "name": "Store Name",
            "address": "123 Main St, City, State, Zip",
            "contact": "+123456789"
          },
          "transaction": {
            "date": "YYYY-MM-DD",
            "receiptNumber": "123456",
            "paymentMethod": "Credit Card"
          },
          "items": [
            {"name": "Item Name", "quantity": 1, "unitPrice": 9.99, "totalPrice": 9.99}
          ],
          "totals": {"subtotal": 19.99, "tax": 1.50, "total": 21.49, "currency": "USD"},
          "displayName": "Readable name for the receipt, e.g. 'Store Name - 2024-05-01'",
          "summary": "Human readable summary: merchant, address, contact, date, amount and currency, receipt and invoice numbers when present, and key details about the items."
        }
        Return ONLY valid JSON.
        """
    ).strip()
