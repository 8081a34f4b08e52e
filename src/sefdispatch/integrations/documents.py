"""
Authority document generation (UBL 2.1 sales invoice).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Protocol
from xml.etree import ElementTree as ET

from sefdispatch.models.invoice import Invoice

UBL_NS = "urn:oasis:names:specification:ubl:schema:xsd:Invoice-2"
CAC_NS = "urn:oasis:names:specification:ubl:schema:xsd:CommonAggregateComponents-2"
CBC_NS = "urn:oasis:names:specification:ubl:schema:xsd:CommonBasicComponents-2"
CUSTOMIZATION_ID = "urn:cen.eu:en16931:2017#compliant#urn:mfin.gov.rs:srbdt:2021"
XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>\n'

ET.register_namespace("", UBL_NS)
ET.register_namespace("cac", CAC_NS)
ET.register_namespace("cbc", CBC_NS)


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


class DocumentGenerator(Protocol):
    def generate_invoice_document(self, invoice: Invoice) -> str: ...

    def validate_invoice(self, invoice: Invoice) -> ValidationResult: ...


def _money(value) -> str:
    return f"{Decimal(value or 0).quantize(Decimal('0.01'))}"


def _cbc(parent: ET.Element, tag: str, text=None, **attrib) -> ET.Element:
    el = ET.SubElement(parent, f"{{{CBC_NS}}}{tag}", attrib)
    if text is not None:
        el.text = str(text)
    return el


def _cac(parent: ET.Element, tag: str) -> ET.Element:
    return ET.SubElement(parent, f"{{{CAC_NS}}}{tag}")


def _party(parent: ET.Element, tag: str, *, name, tax_id, address, city, postal_code, country):
    party = _cac(_cac(parent, tag), "Party")
    _cbc(_cac(party, "PartyName"), "Name", name)
    postal = _cac(party, "PostalAddress")
    _cbc(postal, "StreetName", address or "")
    _cbc(postal, "CityName", city or "")
    _cbc(postal, "PostalZone", postal_code or "")
    _cbc(_cac(postal, "Country"), "IdentificationCode", country or "RS")
    scheme = _cac(party, "PartyTaxScheme")
    _cbc(scheme, "CompanyID", f"RS{tax_id}" if tax_id else "")
    _cbc(_cac(scheme, "TaxScheme"), "ID", "VAT")
    _cbc(_cac(party, "PartyLegalEntity"), "RegistrationName", name)


class UblDocumentGenerator:
    """Builds the UBL XML the authority accepts for sales invoices."""

    def validate_invoice(self, invoice: Invoice) -> ValidationResult:
        errors = []
        if not invoice.invoice_number:
            errors.append("invoice number is required")
        if not invoice.company or not invoice.company.tax_id:
            errors.append("supplier tax id is required")
        if not invoice.partner:
            errors.append("buyer is required")
        if not invoice.lines:
            errors.append("invoice has no lines")
        return ValidationResult(valid=not errors, errors=errors)

    def generate_invoice_document(self, invoice: Invoice) -> str:
        currency = invoice.currency or "RSD"
        company = invoice.company
        partner = invoice.partner

        root = ET.Element(f"{{{UBL_NS}}}Invoice")
        _cbc(root, "CustomizationID", CUSTOMIZATION_ID)
        _cbc(root, "ID", invoice.invoice_number)
        _cbc(root, "IssueDate", invoice.issue_date.isoformat())
        if invoice.due_date:
            _cbc(root, "DueDate", invoice.due_date.isoformat())
        _cbc(root, "InvoiceTypeCode", "380")
        if invoice.remarks:
            _cbc(root, "Note", invoice.remarks)
        _cbc(root, "DocumentCurrencyCode", currency)

        _party(
            root,
            "AccountingSupplierParty",
            name=company.name,
            tax_id=company.tax_id,
            address=company.address,
            city=company.city,
            postal_code=company.postal_code,
            country=company.country,
        )
        _party(
            root,
            "AccountingCustomerParty",
            name=partner.name if partner else "N/A",
            tax_id=partner.tax_id if partner else None,
            address=partner.address if partner else None,
            city=partner.city if partner else None,
            postal_code=partner.postal_code if partner else None,
            country="RS",
        )

        tax_total = _cac(root, "TaxTotal")
        _cbc(tax_total, "TaxAmount", _money(invoice.tax_amount), currencyID=currency)
        by_rate = {}
        for line in invoice.lines:
            taxable, tax = by_rate.get(Decimal(line.tax_rate), (Decimal(0), Decimal(0)))
            by_rate[Decimal(line.tax_rate)] = (
                taxable + Decimal(line.amount),
                tax + Decimal(line.tax_amount),
            )
        for rate, (taxable, tax) in sorted(by_rate.items()):
            sub = _cac(tax_total, "TaxSubtotal")
            _cbc(sub, "TaxableAmount", _money(taxable), currencyID=currency)
            _cbc(sub, "TaxAmount", _money(tax), currencyID=currency)
            category = _cac(sub, "TaxCategory")
            _cbc(category, "ID", "S" if rate > 0 else "Z")
            _cbc(category, "Percent", f"{rate:.2f}")
            _cbc(_cac(category, "TaxScheme"), "ID", "VAT")

        totals = _cac(root, "LegalMonetaryTotal")
        _cbc(totals, "LineExtensionAmount", _money(invoice.subtotal), currencyID=currency)
        _cbc(totals, "TaxExclusiveAmount", _money(invoice.subtotal), currencyID=currency)
        _cbc(totals, "TaxInclusiveAmount", _money(invoice.total_amount), currencyID=currency)
        _cbc(totals, "PayableAmount", _money(invoice.total_amount), currencyID=currency)

        for line in invoice.lines:
            el = _cac(root, "InvoiceLine")
            _cbc(el, "ID", line.line_number)
            _cbc(el, "InvoicedQuantity", line.quantity, unitCode="H87")
            _cbc(el, "LineExtensionAmount", _money(line.amount), currencyID=currency)
            item = _cac(el, "Item")
            _cbc(item, "Name", line.item_name)
            category = _cac(item, "ClassifiedTaxCategory")
            _cbc(category, "ID", "S" if Decimal(line.tax_rate) > 0 else "Z")
            _cbc(category, "Percent", f"{Decimal(line.tax_rate):.2f}")
            _cbc(_cac(category, "TaxScheme"), "ID", "VAT")
            _cbc(_cac(el, "Price"), "PriceAmount", line.unit_price, currencyID=currency)

        return XML_DECLARATION + ET.tostring(root, encoding="unicode")
