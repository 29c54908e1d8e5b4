"""
Invoice normalizer — FA / UBL XML and JSON metadata → InvoiceRecord.

Adapter layer — pure mapping functions using lxml for XML parsing.

Two XML dialects describe the same invoice semantics:
  - FA:  the Polish structured invoice (Faktura / Podmiot1 / Fa / FaWiersz)
  - UBL: the OASIS-style international invoice (Invoice / cac:* / cbc:*)

Every field is looked up through an ordered list of path candidates; the
first structural match wins. Matching compares local element names only,
so namespace prefixes never matter. A path matches an element when the
element's ancestry ends with that path.

Monetary sums use Decimal and are formatted to two decimal places.
"""

from __future__ import annotations

import re
from collections.abc import Iterator, Mapping, Sequence
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

import structlog
from lxml import etree

from ksef_client.domain.errors import DataError
from ksef_client.domain.models import (
    DataSource,
    InvoiceLineItem,
    InvoiceRecord,
    JsonValue,
    Party,
)

log = structlog.get_logger()

type Path = tuple[str, ...]

_CENT = Decimal("0.01")

# ─────────────────────── Path candidates (FA first, then UBL) ───────────────────────

FIELD_PATHS: dict[str, tuple[Path, ...]] = {
    "invoice_number": (("Fa", "P_2"), ("Invoice", "ID")),
    "invoice_type": (("Fa", "RodzajFaktury"), ("Invoice", "InvoiceTypeCode")),
    "issue_date": (("Fa", "P_1"), ("Invoice", "IssueDate")),
    "invoicing_date": (("Fa", "P_6"), ("Invoice", "TaxPointDate")),
    # Precedence between TerminPlatnosci and P_18A follows observed documents;
    # not verified against the published FA schema.
    "payment_due_date": (
        ("Fa", "TerminPlatnosci"),
        ("Fa", "P_18A"),
        ("Invoice", "PaymentMeans", "PaymentDueDate"),
        ("Invoice", "DueDate"),
    ),
    "payment_method": (
        ("Fa", "FormaPlatnosci"),
        ("Fa", "P_18B"),
        ("Invoice", "PaymentMeans", "PaymentMeansCode"),
    ),
    "currency": (("Fa", "KodWaluty"), ("Invoice", "DocumentCurrencyCode")),
    "net_amount": (("Invoice", "LegalMonetaryTotal", "TaxExclusiveAmount"),),
    "vat_amount": (("Invoice", "TaxTotal", "TaxAmount"),),
}

GROSS_AMOUNT_PATHS: tuple[Path, ...] = (
    ("Invoice", "LegalMonetaryTotal", "TaxInclusiveAmount"),
    ("Fa", "P_15"),
)

NET_ITEMIZED_PATTERN = re.compile(r"^P_13_\d+$")
VAT_ITEMIZED_PATTERN = re.compile(r"^P_14_\d+$")

PARTY_PATHS: dict[str, dict[str, tuple[Path, ...]]] = {
    "seller": {
        "name": (
            ("Podmiot1", "DaneIdentyfikacyjne", "Nazwa"),
            ("Invoice", "AccountingSupplierParty", "Party", "PartyName", "Name"),
            ("Invoice", "AccountingSupplierParty", "Party", "PartyLegalEntity", "RegistrationName"),
        ),
        "nip": (
            ("Podmiot1", "DaneIdentyfikacyjne", "NIP"),
            ("Invoice", "AccountingSupplierParty", "Party", "PartyTaxScheme", "CompanyID"),
        ),
        "address": (
            ("Podmiot1", "Adres"),
            ("Invoice", "AccountingSupplierParty", "Party", "PostalAddress"),
        ),
    },
    "buyer": {
        "name": (
            ("Podmiot2", "DaneIdentyfikacyjne", "Nazwa"),
            ("Invoice", "AccountingCustomerParty", "Party", "PartyName", "Name"),
            ("Invoice", "AccountingCustomerParty", "Party", "PartyLegalEntity", "RegistrationName"),
        ),
        "nip": (
            ("Podmiot2", "DaneIdentyfikacyjne", "NIP"),
            ("Invoice", "AccountingCustomerParty", "Party", "PartyTaxScheme", "CompanyID"),
        ),
        "address": (
            ("Podmiot2", "Adres"),
            ("Invoice", "AccountingCustomerParty", "Party", "PostalAddress"),
        ),
    },
}

ADDRESS_PATHS: dict[str, tuple[Path, ...]] = {
    "street": (("Ulica",), ("StreetName",)),
    "building": (("NrDomu",), ("BuildingNumber",)),
    "apartment": (("NrLokalu",),),
    "postal_code": (("KodPocztowy",), ("PostalZone",)),
    "city": (("Miejscowosc",), ("CityName",)),
    "post_office": (("Poczta",),),
    "municipality": (("Gmina",),),
    "county": (("Powiat",),),
    "province": (("Wojewodztwo",), ("CountrySubentity",)),
    "country": (
        ("KodKraju",),
        ("Country", "IdentificationCode"),
        ("IdentificationCode",),
        ("CountryCode",),
    ),
    # Free-form address lines used by newer FA revisions
    "line1": (("AdresL1",),),
    "line2": (("AdresL2",),),
}

FA_ROW = "FaWiersz"
UBL_ROW = "InvoiceLine"

FA_ROW_PATHS: dict[str, tuple[Path, ...]] = {
    "position": (("NrWierszaFa",), ("LpFa",)),
    "description": (("P_7",), ("NazwaTowaruUslugi",)),
    "quantity": (("P_8B",), ("Ilosc",)),
    "unit": (("P_8A",), ("JednostkaMiary",)),
    "unit_price": (("P_9A",), ("CenaJednostkowaNetto",), ("CenaJednostkowa",)),
    "net_amount": (("P_11",), ("WartoscNetto",)),
    "vat_rate": (("P_12",), ("StawkaPodatku",)),
    "vat_amount": (("P_11Vat",), ("KwotaVat",), ("KwotaPodatku",)),
    "gross_amount": (("P_11A",), ("WartoscBrutto",)),
}

_ITEM_CONTENT_FIELDS = (
    "description",
    "quantity",
    "unit",
    "unit_price",
    "net_amount",
    "vat_rate",
    "vat_amount",
    "gross_amount",
)

# ─────────────────────── Tree matching ───────────────────────


def _local_name(element: etree._Element) -> str:
    return etree.QName(element).localname


def _children(element: etree._Element) -> Iterator[etree._Element]:
    # Comments and processing instructions have non-string tags
    return (child for child in element if isinstance(child.tag, str))


def _find_by_path(
    element: etree._Element, target: Path, current: tuple[str, ...]
) -> etree._Element | None:
    """Depth-first search for the first element whose ancestry ends with ``target``."""
    if current[-len(target) :] == target:
        return element
    for child in _children(element):
        match = _find_by_path(child, target, (*current, _local_name(child)))
        if match is not None:
            return match
    return None


def _node_from_paths(element: etree._Element, paths: Sequence[Path]) -> etree._Element | None:
    for path in paths:
        node = _find_by_path(element, path, (_local_name(element),))
        if node is not None:
            return node
    return None


def _node_text(node: etree._Element | None) -> str | None:
    if node is None:
        return None
    value = (node.text or "").strip()
    return value or None


def _text_from_paths(element: etree._Element, paths: Sequence[Path]) -> str | None:
    """First non-blank text among the path candidates, tried in order."""
    for path in paths:
        value = _node_text(_node_from_paths(element, (path,)))
        if value is not None:
            return value
    return None


def _iter_by_local_name(root: etree._Element, name: str) -> list[etree._Element]:
    return [el for el in root.iter() if isinstance(el.tag, str) and _local_name(el) == name]


# ─────────────────────── Decimal helpers ───────────────────────


def _decimal(text: str | None) -> Decimal | None:
    normalized = (text or "").strip().replace(",", ".")
    if not normalized:
        return None
    try:
        value = Decimal(normalized)
    except InvalidOperation:
        return None
    return value if value.is_finite() else None


def format_amount(value: Decimal) -> str:
    return str(value.quantize(_CENT, rounding=ROUND_HALF_UP))


def _sum_by_local_name(root: etree._Element, pattern: re.Pattern[str]) -> str | None:
    """Sum every element whose local name matches ``pattern``; None when nothing matched."""
    total = Decimal(0)
    found = False
    for element in root.iter():
        if not isinstance(element.tag, str) or not pattern.match(_local_name(element)):
            continue
        amount = _decimal(element.text)
        if amount is None:
            continue
        total += amount
        found = True
    return format_amount(total) if found else None


def _sum_amounts(first: str | None, second: str | None) -> str | None:
    a, b = _decimal(first), _decimal(second)
    if a is None or b is None:
        return None
    return format_amount(a + b)


# ─────────────────────── Parties ───────────────────────


def _compose_address(node: etree._Element | None) -> str | None:
    """
    Build a single address line.

    Order: "street building/apartment", "postal city", post office,
    "municipality, county, province", country. Blank components are skipped;
    None when nothing is present.
    """
    if node is None:
        return None
    part = {key: _text_from_paths(node, paths) for key, paths in ADDRESS_PATHS.items()}

    street_line = " ".join(v for v in (part["street"], part["building"]) if v)
    if part["apartment"]:
        street_line = f"{street_line}/{part['apartment']}" if street_line else part["apartment"]
    locality_line = " ".join(v for v in (part["postal_code"], part["city"]) if v)
    region_line = ", ".join(v for v in (part["municipality"], part["county"], part["province"]) if v)
    street_line = street_line or part["line1"] or ""
    locality_line = locality_line or part["line2"] or ""

    lines = [street_line, locality_line, part["post_office"], region_line, part["country"]]
    composed = [line.strip() for line in lines if line and line.strip()]
    return ", ".join(composed) if composed else None


def _party(root: etree._Element, role: str) -> Party | None:
    paths = PARTY_PATHS[role]
    party = Party(
        name=_text_from_paths(root, paths["name"]),
        nip=_text_from_paths(root, paths["nip"]),
        address=_compose_address(_node_from_paths(root, paths["address"])),
    )
    return None if party.is_empty else party


# ─────────────────────── Line items ───────────────────────


def _has_content(item: InvoiceLineItem) -> bool:
    return any(getattr(item, name) for name in _ITEM_CONTENT_FIELDS)


def _map_fa_row(row: etree._Element, fallback_position: int) -> InvoiceLineItem:
    values = {key: _text_from_paths(row, paths) for key, paths in FA_ROW_PATHS.items()}
    if values["position"] is None:
        values["position"] = str(fallback_position)
    return InvoiceLineItem(**values)


def _map_ubl_row(row: etree._Element) -> InvoiceLineItem:
    quantity_node = _node_from_paths(row, (("InvoicedQuantity",),))
    unit = (quantity_node.get("unitCode") or "").strip() if quantity_node is not None else ""
    net_amount = _text_from_paths(row, (("LineExtensionAmount",),))
    vat_amount = _text_from_paths(row, (("TaxTotal", "TaxAmount"),))
    gross_amount = _text_from_paths(row, (("ItemPriceExtension", "Amount"),))
    return InvoiceLineItem(
        position=_text_from_paths(row, (("InvoiceLine", "ID"),)),
        description=_text_from_paths(row, (("Item", "Name"),)),
        quantity=_node_text(quantity_node),
        unit=unit or None,
        unit_price=_text_from_paths(row, (("Price", "PriceAmount"),)),
        net_amount=net_amount,
        vat_rate=_text_from_paths(row, (("Item", "ClassifiedTaxCategory", "Percent"),)),
        vat_amount=vat_amount,
        gross_amount=gross_amount or _sum_amounts(net_amount, vat_amount),
    )


def _extract_items(root: etree._Element) -> tuple[InvoiceLineItem, ...]:
    fa_rows = _iter_by_local_name(root, FA_ROW)
    if fa_rows:
        items = [_map_fa_row(row, index) for index, row in enumerate(fa_rows, start=1)]
    else:
        items = [_map_ubl_row(row) for row in _iter_by_local_name(root, UBL_ROW)]
    return tuple(item for item in items if _has_content(item))


# ─────────────────────── Public API ───────────────────────


def _parse_document(xml: str) -> etree._Element:
    parser = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=False)
    try:
        root = etree.fromstring(xml.encode("utf-8"), parser=parser)
    except (etree.XMLSyntaxError, ValueError) as exc:
        raise DataError(f"Invalid invoice XML: {exc}") from exc
    if root is None:
        raise DataError("Invalid invoice XML: empty document")
    return root


def from_xml(ksef_number: str | None, xml: str) -> InvoiceRecord:
    """
    Map an FA or UBL invoice document to an InvoiceRecord.

    Raises DataError when the document cannot be parsed.
    """
    if not isinstance(xml, str) or not xml.strip():
        raise DataError("Invalid invoice XML: document is empty")
    root = _parse_document(xml)

    gross_node = _node_from_paths(root, GROSS_AMOUNT_PATHS)
    currency = _text_from_paths(root, FIELD_PATHS["currency"])
    if currency is None and gross_node is not None:
        currency = (gross_node.get("currencyID") or "").strip() or None

    record = InvoiceRecord(
        data_source=DataSource.XML,
        ksef_number=ksef_number,
        invoice_number=_text_from_paths(root, FIELD_PATHS["invoice_number"]),
        invoice_type=_text_from_paths(root, FIELD_PATHS["invoice_type"]),
        issue_date=_text_from_paths(root, FIELD_PATHS["issue_date"]),
        invoicing_date=_text_from_paths(root, FIELD_PATHS["invoicing_date"]),
        payment_due_date=_text_from_paths(root, FIELD_PATHS["payment_due_date"]),
        payment_method=_text_from_paths(root, FIELD_PATHS["payment_method"]),
        net_amount=(
            _text_from_paths(root, FIELD_PATHS["net_amount"])
            or _sum_by_local_name(root, NET_ITEMIZED_PATTERN)
        ),
        vat_amount=(
            _text_from_paths(root, FIELD_PATHS["vat_amount"])
            or _sum_by_local_name(root, VAT_ITEMIZED_PATTERN)
        ),
        gross_amount=_node_text(gross_node),
        currency=currency,
        seller=_party(root, "seller"),
        buyer=_party(root, "buyer"),
        items=_extract_items(root),
        xml=xml,
    )
    log.debug(
        "invoice.mapped_xml",
        ksef_number=ksef_number,
        root=_local_name(root),
        items=len(record.items),
    )
    return record


def _normalize_keys(value: object) -> JsonValue:
    """Recursively turn every mapping key into a string, through lists too."""
    if isinstance(value, Mapping):
        return {str(key): _normalize_keys(nested) for key, nested in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_keys(item) for item in value]
    return value  # type: ignore[return-value]


def _metadata_text(data: Mapping[str, JsonValue], *keys: str) -> str | None:
    value: JsonValue = data
    for key in keys:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    if value is None or isinstance(value, (dict, list)):
        return None
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float):
        return str(Decimal(str(value)))
    text = str(value).strip()
    return text or None


def _metadata_party(data: Mapping[str, JsonValue], role: str) -> Party | None:
    if not isinstance(data.get(role), dict):
        return None
    party = Party(
        name=_metadata_text(data, role, "name"),
        nip=_metadata_text(data, role, "nip") or _metadata_text(data, role, "identifier", "value"),
        address=_metadata_text(data, role, "address"),
    )
    return None if party.is_empty else party


def from_json_metadata(raw: object) -> InvoiceRecord:
    """
    Map one entry of a metadata query response to an InvoiceRecord.

    Only fields present in the entry are populated. The record is tagged
    ``json_fallback`` and never carries raw XML.
    """
    if not isinstance(raw, Mapping):
        raise DataError("Invalid invoice entry")
    data = _normalize_keys(raw)
    assert isinstance(data, dict)

    return InvoiceRecord(
        data_source=DataSource.JSON_FALLBACK,
        ksef_number=_metadata_text(data, "ksefNumber"),
        invoice_number=_metadata_text(data, "invoiceNumber"),
        invoice_type=_metadata_text(data, "invoiceType"),
        issue_date=_metadata_text(data, "issueDate"),
        invoicing_date=_metadata_text(data, "invoicingDate"),
        payment_due_date=_metadata_text(data, "paymentDueDate"),
        payment_method=_metadata_text(data, "paymentMethod"),
        net_amount=_metadata_text(data, "netAmount"),
        vat_amount=_metadata_text(data, "vatAmount"),
        gross_amount=_metadata_text(data, "grossAmount"),
        currency=_metadata_text(data, "currency"),
        seller=_metadata_party(data, "seller"),
        buyer=_metadata_party(data, "buyer"),
        xml=None,
        data=data,
    )
