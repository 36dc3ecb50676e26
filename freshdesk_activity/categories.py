"""
Ticket status codes, group-name cleanup and keyword categorisation.

Group names in the helpdesk carry storefront suffixes ("Diesel Online South
Africa"); reports show the brand only.
"""

from typing import Iterable

from .models import Group, Ticket

TICKET_STATUS_MAP = {
    2: "Open",
    3: "Pending",
    4: "Resolved",
    5: "Closed",
    6: "Waiting on Customer",
    7: "Waiting on Third Party",
    8: "Pending_2",
    9: "Reopened",
    12: "Waiting on Collection",
    13: "Waiting on Delivery",
    14: "Waiting on Feedback",
    15: "Waiting on Refund",
    17: "Waiting on Warehouse",
    18: "Custom Status 18",
}

STATUS_RESOLVED = 4
STATUS_CLOSED = 5
STATUS_REOPENED = 9
CLOSED_STATUSES = frozenset({STATUS_RESOLVED, STATUS_CLOSED})

# Every status that is neither Resolved nor Closed
ACTIVE_TICKET_STATUSES = [2, 3, 6, 7, 8, 9, 12, 13, 14, 15, 17, 18]

GROUP_NAME_SUFFIXES = ("Online South Africa", "Clothing Online", "South Africa Online")
FALLBACK_GROUP_NAME = "Other"

CATEGORIES = [
    "Shipments",
    "Returns",
    "Refunds",
    "Exchanges",
    "Incorrect items",
    "Damages/defects",
    "Discount/Voucher",
    "Stock/product",
    "Spam",
    "Other",
]

# First matching rule wins; order matters ("return for refund" is a Return).
CATEGORY_KEYWORDS = [
    ("Shipments", ("shipping", "delivery", "courier", "tracking", "waybill", "shipment")),
    ("Returns", ("return", "collection")),
    ("Refunds", ("refund", "money back", "credit")),
    ("Exchanges", ("exchange", "swap")),
    ("Incorrect items", ("wrong item", "incorrect", "received wrong")),
    ("Damages/defects", ("damaged", "broken", "defect", "faulty")),
    ("Discount/Voucher", ("code", "coupon", "voucher", "promo", "discount")),
    ("Stock/product", ("stock", "availability", "product info", "size")),
    ("Spam", ("spam", "seo", "marketing")),
]


def status_label(status: int) -> str:
    return TICKET_STATUS_MAP.get(status, f"Status {status}")


def is_closed_status(status: int) -> bool:
    return status in CLOSED_STATUSES


def clean_group_name(name: str) -> str:
    """Strip storefront suffixes; blank or "Unknown" names become "Other"."""
    cleaned = name or ""
    for suffix in GROUP_NAME_SUFFIXES:
        cleaned = cleaned.replace(suffix, "")
    cleaned = cleaned.strip()
    if cleaned in ("", "Unknown"):
        return FALLBACK_GROUP_NAME
    return cleaned


def clean_group_map(groups: Iterable[Group]) -> dict[int, str]:
    return {group.id: clean_group_name(group.name) for group in groups}


def auto_categorize_ticket(ticket: Ticket) -> str:
    """Keyword-based category from subject + description. Falls back to "Other"."""
    text = f"{ticket.subject} {ticket.description_text or ''}".lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    return "Other"
