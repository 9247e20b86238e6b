"""
Character References — binds [Bracket] mentions in page prompts to uploaded
character reference images.

A prompt like:
    [Alex] looks at [REF_IMG_2: "Mentor.png"] across the desk.
mentions two characters. Each bracket is resolved against the asset pool:
1. Inclusion match: the (normalized) asset name appears inside the bracket
   text; the longest such name wins so "Al" never beats "Alex".
2. Clean-exact match: speaker label and quotes removed, compared to the
   asset name with and without file extension.

analyze_links() produces the advisory report shown next to the script:
linked brackets, brackets that look like a missing file, unused images.
"""

import io
import re
import unicodedata
from dataclasses import dataclass
from typing import List, Optional

from PIL import Image, UnidentifiedImageError


BRACKET_PATTERN = re.compile(r'[\[［]\s*([^\]］]+?)\s*[\]］]')
EXTENSION_PATTERN = re.compile(r'\.[^/.]+$')
FILE_SHAPE_PATTERN = re.compile(r'\.[a-zA-Z0-9]{3,4}$')
REF_PREFIX_PATTERN = re.compile(r'^(REF|IMG|CHAR|FILE)', re.IGNORECASE)
QUOTE_CHARS = "'\"“”‘’「」"

LINKED = "linked"
MISSING_IMAGE = "missing_image"
UNUSED_IMAGE = "unused_image"

_STATUS_ORDER = {MISSING_IMAGE: 0, LINKED: 1, UNUSED_IMAGE: 2}

_PIL_MIME = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
    "WEBP": "image/webp",
    "GIF": "image/gif",
}


@dataclass
class CharacterAsset:
    name: str
    image_bytes: bytes
    mime_type: str = "image/png"


@dataclass
class LinkReport:
    name: str
    clean_name: str
    status: str
    matched_image_name: Optional[str] = None

    def to_dict(self):
        return {
            "name": self.name,
            "cleanName": self.clean_name,
            "status": self.status,
            "matchedImageName": self.matched_image_name,
        }


def _normalize(text: str) -> str:
    return unicodedata.normalize("NFC", text).lower().strip()


def _strip_extension(text: str) -> str:
    return EXTENSION_PATTERN.sub("", text)


def extract_references(prompt_text: str) -> List[str]:
    """All [..] / ［..］ contents in source order, brackets and padding removed."""
    if not prompt_text:
        return []
    return [m.group(1).strip() for m in BRACKET_PATTERN.finditer(prompt_text)]


def clean_bracket_content(content: str) -> str:
    """Drop a leading 'Speaker:' label and quote characters."""
    clean = content
    cut = [i for i in (clean.find(":"), clean.find("：")) if i != -1]
    if cut:
        clean = clean[min(cut) + 1:]
    for q in QUOTE_CHARS:
        clean = clean.replace(q, "")
    return clean.strip()


def resolve_reference(raw_reference: str, pool: List[CharacterAsset]) -> Optional[CharacterAsset]:
    """Return the asset a bracket refers to, or None."""
    norm_content = _normalize(raw_reference)

    # Priority 1: inclusion, longest name first
    best = None
    for asset in pool:
        norm_name = _normalize(asset.name)
        if norm_name and norm_name in norm_content:
            if best is None or len(norm_name) > len(_normalize(best.name)):
                best = asset
    if best is not None:
        return best

    # Priority 2: cleaned exact match
    norm_clean = _normalize(clean_bracket_content(raw_reference))
    norm_clean_no_ext = _strip_extension(norm_clean)
    for asset in pool:
        norm_name = _normalize(asset.name)
        if norm_clean == norm_name:
            return asset
        if norm_clean_no_ext and norm_clean_no_ext == _strip_extension(norm_name):
            return asset

    return None


def resolve_page_refs(page, pool: List[CharacterAsset]) -> List[CharacterAsset]:
    """
    Distinct assets referenced by one page, first-seen order.

    Also records the asset names on page.resolved_refs.
    """
    resolved = []
    seen = set()
    for raw in extract_references(page.prompt):
        asset = resolve_reference(raw, pool)
        if asset is not None and asset.name not in seen:
            seen.add(asset.name)
            resolved.append(asset)
    page.resolved_refs = [a.name for a in resolved]
    return resolved


def _looks_like_file(clean: str) -> bool:
    return bool(FILE_SHAPE_PATTERN.search(clean) or REF_PREFIX_PATTERN.match(clean))


def analyze_links(pages, pool: List[CharacterAsset]) -> List[LinkReport]:
    """
    Classify every distinct bracket string across all pages, then list
    images no bracket linked to.

    Plain names with no asset and no file shape are left out of the report.
    """
    reports = []
    seen = set()

    for page in pages:
        for raw in extract_references(page.prompt):
            if raw in seen:
                continue
            seen.add(raw)

            match = resolve_reference(raw, pool)
            clean = clean_bracket_content(raw)
            if match is not None:
                reports.append(LinkReport(raw, clean, LINKED, match.name))
            elif _looks_like_file(clean):
                reports.append(LinkReport(raw, clean, MISSING_IMAGE))

    used = {r.matched_image_name for r in reports if r.status == LINKED}
    for asset in pool:
        if asset.name not in used:
            reports.append(LinkReport(asset.name, asset.name, UNUSED_IMAGE))

    reports.sort(key=lambda r: _STATUS_ORDER[r.status])
    return reports


def merge_assets(existing: List[CharacterAsset], incoming: List[CharacterAsset]) -> List[CharacterAsset]:
    """Add new assets to the pool; a name already present keeps its first image."""
    merged = list(existing)
    names = {a.name for a in existing}
    for asset in incoming:
        if asset.name in names:
            continue
        names.add(asset.name)
        merged.append(asset)
    return merged


def detect_mime_type(data: bytes, default: str = "image/png") -> str:
    try:
        with Image.open(io.BytesIO(data)) as img:
            return _PIL_MIME.get(img.format, default)
    except (UnidentifiedImageError, OSError):
        return default


def asset_from_bytes(name: str, data: bytes, mime_type: Optional[str] = None) -> CharacterAsset:
    """Build an asset from an upload; sniff the MIME type when the client sent none."""
    if not mime_type or mime_type == "application/octet-stream":
        mime_type = detect_mime_type(data)
    return CharacterAsset(name=name, image_bytes=data, mime_type=mime_type)
