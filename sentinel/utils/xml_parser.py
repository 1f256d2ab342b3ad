# sentinel/utils/xml_parser.py
"""
Helpers for parsing remote container listings.
The object store answers `?restype=container&comp=list` with an
EnumerationResults XML document.
"""

import xml.etree.ElementTree as ET
from email.utils import parsedate_to_datetime
from typing import Optional

from sentinel.schemas.sync import RemoteObject
from sentinel.utils.clock import as_naive_utc


def find_text(parent: ET.Element, tag: str) -> Optional[str]:
    """Find a direct child tag and return its stripped text."""
    el = parent.find(tag)
    return el.text.strip() if el is not None and el.text else None


def safe_parse_xml(raw_body: bytes) -> Optional[ET.Element]:
    """Parse XML bytes safely. Returns None on parse error."""
    try:
        return ET.fromstring(raw_body.decode("utf-8-sig", errors="replace"))
    except ET.ParseError:
        return None


def _parse_http_date(value: Optional[str]):
    if not value:
        return None
    try:
        return as_naive_utc(parsedate_to_datetime(value))
    except (TypeError, ValueError):
        return None


def parse_blob_listing(raw_body: bytes) -> tuple[list[RemoteObject], Optional[str]]:
    """
    Extract objects and the continuation marker from one listing page.
    Raises ValueError when the body is not a listing document.
    """
    root = safe_parse_xml(raw_body)
    if root is None or root.tag != "EnumerationResults":
        raise ValueError("Response is not a container listing")

    objects: list[RemoteObject] = []
    blobs = root.find("Blobs")
    for blob in (blobs.findall("Blob") if blobs is not None else []):
        name = find_text(blob, "Name")
        if not name:
            continue
        props = blob.find("Properties")
        size = find_text(props, "Content-Length") if props is not None else None
        modified = find_text(props, "Last-Modified") if props is not None else None
        objects.append(RemoteObject(
            name=name,
            size=int(size) if size and size.isdigit() else None,
            last_modified=_parse_http_date(modified),
        ))

    return objects, find_text(root, "NextMarker")
