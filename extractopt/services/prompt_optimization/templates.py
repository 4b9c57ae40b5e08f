"""Known-good extraction instructions keyed by field name and type.

Rules are evaluated in order and the first matching predicate wins, so
specific field rules come before the per-type defaults. Every rendered
template satisfies the prompt quality rules as-is.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Optional

from extractopt.core.models import FieldContext


logger = logging.getLogger(__name__)

ENUM_TYPES = frozenset({"enum", "multiselect", "dropdown_multi", "taxonomy"})
MULTI_VALUE_TYPES = frozenset({"multiselect", "dropdown_multi"})
DATE_TYPES = frozenset({"date", "datetime"})
NUMBER_TYPES = frozenset({"number", "float", "integer", "currency"})

_COUNTER_PARTY_PATTERN = re.compile(r"counter\s*-?\s*party|other party", re.IGNORECASE)
_QUOTE_CHARS = str.maketrans({'"': "'", "“": "'", "”": "'"})


def is_counter_party_field(field_name: str) -> bool:
    return bool(_COUNTER_PARTY_PATTERN.search(field_name or ""))


def _clean(text: str) -> str:
    """Replace double quotes so interpolated text cannot unbalance quoted phrases."""
    return (text or "").translate(_QUOTE_CHARS).strip()


def _options_clause(ctx: FieldContext) -> str:
    options = [_clean(o) for o in ctx.options if _clean(o)]
    if not options:
        return ""
    return f" ({', '.join(options)})"


def _exclusion_clause(ctx: FieldContext, subject: str) -> str:
    entity = _clean(ctx.exclusionEntity or "")
    if entity:
        return f'Do NOT return "{entity}" or its {subject}; that is our own company, not the counter party.'
    return f"Do NOT return our own company or its {subject}; the counter party is the other signing entity."


# ============================================================================
# Contract fields
# ============================================================================


def _counter_party_name(ctx: FieldContext) -> str:
    return (
        "Look in (1) the opening paragraph that names the parties, (2) the signature blocks, "
        "and (3) the Notices section. Search for the party introduced with phrases like "
        '"Customer", "Client", "Vendor", "Supplier", "Licensee", "Recipient", or "Contractor". '
        "Return the full legal entity name exactly as written, including suffixes such as Inc., LLC, or Ltd. "
        f"{_exclusion_clause(ctx, 'affiliates')} "
        "Do not return a person, a signatory title, or an address. "
        'If no other party is identified, return "Not Present".'
    )


def _counter_party_address(ctx: FieldContext) -> str:
    return (
        "Look in (1) the opening paragraph next to the other party name, (2) the Notices section, "
        "and (3) the signature block. Search for phrases like "
        '"principal place of business", "located at", "with offices at", "registered office", '
        '"address for notices", and "mailing address". '
        "Return the complete address on a single line, including street, suite, city, state, "
        "zip code and country where given. "
        f"{_exclusion_clause(ctx, 'address')} "
        "Do not return an email address or a phone number. "
        'If no address is given for the counter party, return "Not Present".'
    )


def _end_date(ctx: FieldContext) -> str:
    return (
        "Look in (1) the Term section, (2) the first paragraph stating the agreement period, "
        "and (3) any renewal or expiration clause. Search for phrases like "
        '"expires on", "shall terminate on", "end date", "expiration date", "until", '
        '"through", and "term ending". '
        "Return the date in YYYY-MM-DD format. If only a duration is given, such as "
        '"three years from the Effective Date", calculate the end date from the effective date. '
        "Do NOT return the effective date, the signature date, or a notice deadline. "
        'If the agreement is perpetual or no end date exists, return "Not Present".'
    )


def _effective_date(ctx: FieldContext) -> str:
    return (
        "Look in (1) the opening paragraph, (2) the first section defining the term, "
        "and (3) the dates in the signature block. Search for phrases like "
        '"effective as of", "effective date", "commencement date", "dated as of", '
        '"entered into as of", and "start date". '
        "Return the date in YYYY-MM-DD format. If the agreement becomes effective upon the last "
        "signature, return the latest signature date. "
        "Do NOT return the end date, a renewal date, or the date an amendment was signed. "
        'If no effective date can be determined, return "Not Present".'
    )


def _renewal(ctx: FieldContext) -> str:
    return (
        "Look in (1) the Term and Renewal section, (2) the termination section, and (3) any clause "
        "following the initial term. Search for phrases like "
        '"automatically renew", "auto-renewal", "successive terms", "renewal term", '
        '"unless either party gives notice", and "may be renewed by mutual agreement". '
        f"Return exactly one value from the available options{_options_clause(ctx)}: automatic renewal "
        "when the term extends without action, optional renewal when a party must elect to renew, "
        "and no renewal when the agreement simply ends. "
        "Do NOT infer renewal from a notice period alone. "
        'If the agreement does not address renewal, return "Not Present".'
    )


def _termination_convenience(ctx: FieldContext) -> str:
    return (
        "Look in (1) the Termination section, (2) any sub-clause about terminating without cause, "
        "and (3) the Term section. Search for phrases like "
        '"for convenience", "without cause", "for any reason", "at any time upon written notice", '
        '"terminate this agreement upon", and "with or without cause". '
        f"Return exactly one value from the available options{_options_clause(ctx)}, or the notice period "
        "in days when the field asks for a period. "
        "Do NOT confuse this with termination for cause or for material breach. "
        'If there is no right to terminate for convenience, return "Not Present".'
    )


def _termination_cause(ctx: FieldContext) -> str:
    return (
        "Look in (1) the Termination section, (2) clauses about default or material breach, "
        "and (3) any cure period provisions. Search for phrases like "
        '"for cause", "material breach", "failure to cure", "cure period", '
        '"upon written notice of breach", and "insolvency". '
        "Return the condition and its cure period as a single line, using the wording of the document. "
        "Do NOT return termination for convenience rights or expiration terms. "
        'If the agreement has no termination for cause clause, return "Not Present".'
    )


def _governing_law(ctx: FieldContext) -> str:
    return (
        "Look in (1) the Governing Law section, (2) the Miscellaneous or General Provisions section "
        "near the end, and (3) any dispute resolution clause. Search for phrases like "
        '"governed by the laws of", "governing law", "construed in accordance with", '
        '"laws of the State of", "jurisdiction of", and "venue". '
        "Return only the state or country name exactly as written, for example Delaware or England and Wales. "
        "Do NOT return the venue city or the arbitration body. "
        'If no governing law is stated, return "Not Present".'
    )


def _contract_type(ctx: FieldContext) -> str:
    return (
        "Look in (1) the document title on the first page, (2) the opening paragraph, and (3) the "
        "header area. Search for titles like "
        '"Master Services Agreement", "Non-Disclosure Agreement", "Statement of Work", '
        '"Amendment", "Order Form", and "License Agreement". '
        f"Return exactly one value from the available options{_options_clause(ctx)} that best matches the title. "
        "Do NOT return the name of a referenced or parent agreement. "
        'If the document type cannot be determined, return "Not Present".'
    )


def _notice_period(ctx: FieldContext) -> str:
    return (
        "Look in (1) the Termination section, (2) the Term and Renewal section, and (3) the Notices "
        "section. Search for phrases like "
        '"days prior written notice", "notice period", "upon written notice", "advance notice", '
        '"prior to the end of the term", and "days notice". '
        "Return the number of days as digits only, for example 30, converting months to days at 30 days "
        "per month. "
        "Do NOT return the cure period or a payment due period. "
        'If no notice period is stated, return "Not Present".'
    )


# ============================================================================
# Invoice fields
# ============================================================================


def _vendor(ctx: FieldContext) -> str:
    return (
        "Look in (1) the header area at the top of the invoice, (2) the logo and letterhead, and "
        "(3) the remit-to block. Search for labels like "
        '"Remit To", "Bill From", "Vendor", "Supplier", "Sold By", and "Payee". '
        "Return the full legal entity name exactly as it appears, including Inc., LLC, or Ltd. "
        "Do NOT return the Bill To or Ship To customer, or a contact person. "
        "When several names appear, prefer the one printed with the remittance address. "
        'If no vendor is identified, return "Not Present".'
    )


def _subtotal(ctx: FieldContext) -> str:
    return (
        "Look in (1) the totals block directly below the line items, (2) the summary table, and "
        "(3) the last page of the invoice. Search for labels like "
        '"Subtotal", "Sub-total", "Net Amount", "Total Before Tax", "Merchandise Total", and "Total Net". '
        "Return the numeric value with 2 decimal places and no currency symbol or commas, for example 1150.00. "
        "Do NOT return the grand total, tax, or shipping. "
        'If no subtotal is shown, return "Not Present".'
    )


def _amount_due(ctx: FieldContext) -> str:
    return (
        "Look in (1) the totals block at the bottom of the invoice, (2) the summary table, and "
        "(3) the payment stub. Search for labels like "
        '"Amount Due", "Total Due", "Balance Due", "Grand Total", "Invoice Total", and "Please Pay". '
        "Return the numeric value with 2 decimal places and no currency symbol or commas, for example 1234.50. "
        "Do NOT return the subtotal, a tax amount, or a line item amount. "
        'If no total is shown, return "Not Present".'
    )


def _sales_tax(ctx: FieldContext) -> str:
    return (
        "Look in (1) the totals block below the line items, (2) the tax summary table, and "
        "(3) the footer area. Search for labels like "
        '"Sales Tax", "Tax Amount", "VAT", "GST", "State Tax", and "Use Tax". '
        "Return the numeric value with 2 decimal places and no currency symbol, for example 85.00. "
        "When several tax lines appear, return their sum. "
        "Do NOT return the tax rate percentage or the total including tax. "
        'If no tax is charged, return "Not Present".'
    )


def _freight(ctx: FieldContext) -> str:
    return (
        "Look in (1) the totals block, (2) the line items table, and (3) the charges summary area. "
        "Search for labels like "
        '"Freight", "Shipping", "Shipping & Handling", "Delivery", "Carriage", and "Postage". '
        "Return the numeric value with 2 decimal places and no currency symbol. "
        "When several freight lines appear, return their sum. "
        "Do NOT return the ship-to address or a tracking number. "
        'If no freight charge appears, return "Not Present".'
    )


def _po_number(ctx: FieldContext) -> str:
    return (
        "Look in (1) the header area of the invoice, (2) the reference fields block, and "
        "(3) the line items table. Search for labels like "
        '"PO Number", "PO #", "Purchase Order", "P.O.", "Customer PO", and "Order Reference". '
        "Return the identifier exactly as written, including letters, dashes and leading zeros. "
        "Do NOT return the invoice number or a sales order number. "
        'If no purchase order is referenced, return "Not Present".'
    )


def _payment_terms(ctx: FieldContext) -> str:
    return (
        "Look in (1) the header area near the invoice date, (2) the footer area, and (3) the terms "
        "and conditions section. Search for labels like "
        '"Payment Terms", "Terms", "Net 30", "Due on Receipt", "Due Date", and "2/10 Net 30". '
        "Return the terms exactly as written, for example Net 30. "
        "Do NOT return the due date itself or a late fee clause. "
        'If no payment terms are stated, return "Not Present".'
    )


def _description(ctx: FieldContext) -> str:
    return (
        "Look in (1) the line items table, (2) the description column, and (3) the memo or notes area. "
        "Search for labels like "
        '"Description", "Item Description", "Services", "Product", "Details", and "Memo". '
        "Return a concise single line summarizing the goods or services exactly as described. "
        "Do NOT return quantities, prices, or part numbers on their own. "
        'If no description is given, return "Not Present".'
    )


def _line_items(ctx: FieldContext) -> str:
    return (
        "Look in (1) the line items table, (2) any continuation table on later pages, and "
        "(3) the itemized charges section. Search for column headers like "
        '"Item", "Description", "Quantity", "Unit Price", "Amount", and "Line Total". '
        "Return each line in the format description | quantity | unit price | amount, one per line. "
        "Do NOT include subtotal, tax, or total rows. "
        'If no line items are listed, return "Not Present".'
    )


# ============================================================================
# Type defaults
# ============================================================================


def _generic_enum(ctx: FieldContext) -> str:
    name = _clean(ctx.fieldName)
    if ctx.fieldType.lower() in MULTI_VALUE_TYPES:
        selection = (
            f"Return one or more values from the available options{_options_clause(ctx)}, separated by "
            "commas, matching the option wording exactly."
        )
    else:
        selection = (
            f"Return exactly one value from the available options{_options_clause(ctx)}, matching the "
            "option wording exactly."
        )
    return (
        f"Look in (1) the section whose heading relates to {name}, (2) the opening paragraph, and "
        "(3) any table or checkbox area. Search for wording that signals the value, such as "
        '"selected", "applies", "shall be", "is hereby", "checked", and "elected". '
        f"{selection} "
        "Do NOT return text that is not one of the options. "
        f'If the document does not address {name}, return "Not Present".'
    )


def _generic_date(ctx: FieldContext) -> str:
    name = _clean(ctx.fieldName)
    return (
        f"Look in (1) the opening paragraph, (2) the section that discusses {name}, and "
        "(3) the signature block. Search for phrases like "
        '"dated", "as of", "effective", "on or before", "no later than", and "commencing on". '
        "Return the date in YYYY-MM-DD format. "
        "Do NOT return a different date that appears nearby, such as a signature or notice date. "
        f'If no {name} is stated, return "Not Present".'
    )


def _generic_number(ctx: FieldContext) -> str:
    name = _clean(ctx.fieldName)
    return (
        f"Look in (1) the section that discusses {name}, (2) any table or schedule, and "
        "(3) the totals or summary area. Search for phrases like "
        '"amount", "total", "number of", "quantity", "count", and "sum of". '
        "Return the numeric value only, using digits with no currency symbols or commas and a decimal "
        "point where needed. "
        "Do NOT return a percentage, a date, or a value belonging to another field. "
        f'If no value for {name} is stated, return "Not Present".'
    )


def _generic_string(ctx: FieldContext) -> str:
    name = _clean(ctx.fieldName)
    return (
        f"Look in (1) the opening paragraph, (2) the section whose heading relates to {name}, and "
        "(3) any table, header area, or signature block. Search for phrases like "
        '"means", "refers to", "is defined as", "shall be", "identified as", and "known as". '
        "Return the value exactly as written in the document, on a single line, without commentary. "
        "Do NOT return a label, a heading, or text belonging to a different field. "
        f'If no {name} appears in the document, return "Not Present".'
    )


# ============================================================================
# Rule table
# ============================================================================


@dataclass(frozen=True)
class TemplateRule:
    """One entry of the template table: when to apply and what to render."""

    name: str
    predicate: Callable[[str, str], bool]
    render: Callable[[FieldContext], str]


def _has(*needles: str) -> Callable[[str, str], bool]:
    return lambda name, _type: any(n in name for n in needles)


TEMPLATE_RULES: tuple[TemplateRule, ...] = (
    TemplateRule(
        "counter_party_address",
        lambda name, _type: is_counter_party_field(name) and "address" in name,
        _counter_party_address,
    ),
    TemplateRule("counter_party_name", lambda name, _type: is_counter_party_field(name), _counter_party_name),
    TemplateRule("end_date", _has("end date", "expiration", "expiry", "termination date"), _end_date),
    TemplateRule("effective_date", _has("effective date", "start date", "commencement"), _effective_date),
    TemplateRule("renewal", _has("renewal", "renew"), _renewal),
    TemplateRule(
        "termination_convenience",
        lambda name, _type: "termination" in name and "convenience" in name,
        _termination_convenience,
    ),
    TemplateRule(
        "termination_cause",
        lambda name, _type: "termination" in name and ("cause" in name or "breach" in name),
        _termination_cause,
    ),
    TemplateRule("governing_law", _has("governing law", "jurisdiction", "choice of law"), _governing_law),
    TemplateRule("contract_type", _has("contract type", "agreement type", "document type"), _contract_type),
    TemplateRule("notice_period", _has("notice period", "notice days"), _notice_period),
    TemplateRule(
        "vendor",
        lambda name, _type: ("vendor" in name or "supplier" in name) and "address" not in name,
        _vendor,
    ),
    TemplateRule("subtotal", _has("subtotal", "sub-total", "sub total"), _subtotal),
    TemplateRule(
        "amount_due",
        _has("amount due", "total amount", "invoice total", "balance due", "grand total"),
        _amount_due,
    ),
    TemplateRule("sales_tax", _has("tax"), _sales_tax),
    TemplateRule("freight", _has("freight", "shipping"), _freight),
    TemplateRule(
        "po_number",
        lambda name, _type: "purchase order" in name or bool(re.search(r"\bpo\b|p\.o\.", name)),
        _po_number,
    ),
    TemplateRule("payment_terms", _has("payment terms"), _payment_terms),
    TemplateRule("line_items", _has("line item"), _line_items),
    TemplateRule("description", _has("description"), _description),
    TemplateRule("enum", lambda _name, field_type: field_type in ENUM_TYPES, _generic_enum),
    TemplateRule("date", lambda _name, field_type: field_type in DATE_TYPES, _generic_date),
    TemplateRule("number", lambda _name, field_type: field_type in NUMBER_TYPES, _generic_number),
)

DEFAULT_RULE = TemplateRule("string", lambda _name, _type: True, _generic_string)


class FallbackTemplateLibrary:
    """Selects and renders the first matching template rule."""

    def __init__(self, rules: Sequence[TemplateRule] = TEMPLATE_RULES, default: TemplateRule = DEFAULT_RULE):
        self.rules = tuple(rules)
        self.default = default

    def match(self, field_name: str, field_type: str = "string") -> TemplateRule:
        name = (field_name or "").lower()
        type_key = (field_type or "string").lower()
        for rule in self.rules:
            if rule.predicate(name, type_key):
                return rule
        return self.default

    def render(self, ctx: FieldContext) -> str:
        rule = self.match(ctx.fieldName, ctx.fieldType)
        logger.debug(f"Fallback template '{rule.name}' selected for field {ctx.fieldKey}")
        return rule.render(ctx)


_default_library = FallbackTemplateLibrary()


def template_for(
    field_name: str,
    field_type: str = "string",
    options: Optional[Sequence[str]] = None,
    exclude_entity: Optional[str] = None,
) -> str:
    """Render the known-good instruction for a field."""
    ctx = FieldContext(
        fieldKey=field_name,
        fieldName=field_name,
        fieldType=field_type or "string",
        options=tuple(options or ()),
        exclusionEntity=exclude_entity,
    )
    return _default_library.render(ctx)
