"""
Boundary for the legacy XML (Trading) API.

Requests are rendered and responses parsed here; the rest of the package only
sees ``EngagementCounters`` keyed by listing id and plain user ids.
"""

import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Dict, List, Optional

from marketplace_bridge.utils.exceptions import MarketplaceAPIError


TRADING_NS = "urn:ebay:apis:eBLBaseComponents"
NS = {"ebay": TRADING_NS}

CALL_GET_MY_EBAY_SELLING = "GetMyeBaySelling"
CALL_GET_USER = "GetUser"


@dataclass(frozen=True)
class EngagementCounters:
    view_count: int = 0
    watch_count: int = 0


def trading_headers(call_name: str, access_token: str, site_id: str = "0",
                    compatibility_level: str = "967") -> Dict[str, str]:
    """Headers for a Trading call authenticated with an OAuth access token."""
    return {
        "X-EBAY-API-SITEID": site_id,
        "X-EBAY-API-COMPATIBILITY-LEVEL": compatibility_level,
        "X-EBAY-API-CALL-NAME": call_name,
        "X-EBAY-API-IAF-TOKEN": access_token,
        "Content-Type": "text/xml",
    }


def build_selling_request(entries_per_page: int = 200, page_number: int = 1) -> str:
    return f"""<?xml version="1.0" encoding="utf-8"?>
<GetMyeBaySellingRequest xmlns="{TRADING_NS}">
  <ActiveList>
    <Include>true</Include>
    <Pagination>
      <EntriesPerPage>{int(entries_per_page)}</EntriesPerPage>
      <PageNumber>{int(page_number)}</PageNumber>
    </Pagination>
  </ActiveList>
  <DetailLevel>ReturnAll</DetailLevel>
  <WarningLevel>High</WarningLevel>
</GetMyeBaySellingRequest>"""


def build_get_user_request() -> str:
    return f"""<?xml version="1.0" encoding="utf-8"?>
<GetUserRequest xmlns="{TRADING_NS}">
  <DetailLevel>ReturnSummary</DetailLevel>
</GetUserRequest>"""


def _parse_root(raw_xml: str, call_name: str) -> ET.Element:
    try:
        root = ET.fromstring(raw_xml)
    except ET.ParseError as e:
        raise MarketplaceAPIError(f"{call_name} returned malformed XML: {e}",
                                  endpoint=call_name) from e

    ack = root.findtext("ebay:Ack", default="", namespaces=NS)
    if ack == "Failure":
        errors = _error_messages(root)
        raise MarketplaceAPIError(
            f"{call_name} failed: {'; '.join(errors) or 'unknown error'}",
            endpoint=call_name,
            response_data={"errors": errors},
        )
    return root


def _error_messages(root: ET.Element) -> List[str]:
    messages = []
    for error in root.findall("ebay:Errors", NS):
        if error.findtext("ebay:SeverityCode", default="Error", namespaces=NS) != "Error":
            continue
        message = (error.findtext("ebay:LongMessage", namespaces=NS)
                   or error.findtext("ebay:ShortMessage", namespaces=NS))
        if message:
            messages.append(message.strip())
    return messages


def _int(text: Optional[str]) -> int:
    try:
        return int(text) if text else 0
    except ValueError:
        return 0


def parse_selling_statistics(raw_xml: str) -> Dict[str, EngagementCounters]:
    """
    Parse a GetMyeBaySelling response into counters keyed by listing id.

    Raises:
        MarketplaceAPIError: Malformed XML or ``Ack`` of Failure
    """
    root = _parse_root(raw_xml, CALL_GET_MY_EBAY_SELLING)

    counters: Dict[str, EngagementCounters] = {}
    for item in root.findall(".//ebay:ActiveList/ebay:ItemArray/ebay:Item", NS):
        item_id = item.findtext("ebay:ItemID", namespaces=NS)
        if not item_id:
            continue
        counters[item_id.strip()] = EngagementCounters(
            view_count=_int(item.findtext("ebay:HitCount", namespaces=NS)),
            watch_count=_int(item.findtext("ebay:WatchCount", namespaces=NS)),
        )
    return counters


def parse_user_id(raw_xml: str) -> Optional[str]:
    """Extract the seller's user id from a GetUser response."""
    root = _parse_root(raw_xml, CALL_GET_USER)
    user_id = root.findtext(".//ebay:User/ebay:UserID", namespaces=NS)
    return user_id.strip() if user_id else None
