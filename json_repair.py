"""
JSON Repair — recovers page-plan arrays from truncated model output.

The model is asked for one JSON array of {pageNumber, template, prompt}
objects. Long plans hit the output token limit and stop mid-object, e.g.

    [{"pageNumber": "Page 1", ...}, {"pageNumber": "Page 2", "templ

repair_batch_json() keeps every complete object and closes the array.
reconcile_pages() then lines the recovered items up with the pages that
were asked for, filling any gap with an explicit "skipped" placeholder.
"""

import json
import re
from typing import Dict, List


FENCE_OPEN_PATTERN = re.compile(r'^```(?:json)?\s*', re.IGNORECASE)
FENCE_CLOSE_PATTERN = re.compile(r'\s*```$')
COVER_KEY_PATTERN = re.compile(r'cover|title|表紙', re.IGNORECASE)

PLACEHOLDER_TEMPLATE = "T01_FULL"


class JsonRepairError(ValueError):
    """Raised when model output cannot be turned into a JSON array."""


def strip_code_fences(text: str) -> str:
    text = text.strip()
    text = FENCE_OPEN_PATTERN.sub("", text)
    text = FENCE_CLOSE_PATTERN.sub("", text)
    return text.strip()


def extract_array_text(text: str) -> str:
    """Cut away prose before the first '[' and after the last ']'."""
    start = text.find("[")
    if start == -1:
        return text
    end = text.rfind("]")
    if end > start:
        return text[start:end + 1]
    return text[start:]


def repair_batch_json(raw_text: str) -> list:
    """
    Parse a (possibly truncated) JSON array of page results.

    Returns:
        The parsed list, with any incomplete trailing object dropped.

    Raises:
        JsonRepairError: if the text is not an array even after repair.
    """
    if not raw_text or not raw_text.strip():
        raise JsonRepairError("Empty response text")

    clean = extract_array_text(strip_code_fences(raw_text))

    # Try normal parse first
    try:
        parsed = json.loads(clean)
        if isinstance(parsed, list):
            return parsed
    except json.JSONDecodeError:
        pass

    clean = clean.rstrip()
    if clean.endswith(","):
        clean = clean[:-1]

    candidates = [clean] if clean.endswith("]") else []
    # Cut after the last complete object. A '}' inside a truncated
    # string is not one, so walk back until the cut parses.
    end = clean.rfind("}")
    while end != -1:
        candidates.append(clean[:end + 1] + "]")
        end = clean.rfind("}", 0, end)
    if not candidates:
        candidates.append(clean + "]")

    last_error = None
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError as e:
            last_error = e
            continue
        if not isinstance(parsed, list):
            raise JsonRepairError(f"Expected a JSON array, got {type(parsed).__name__}")
        print(f"[json_repair] Repaired truncated JSON. Recovered {len(parsed)} items.")
        return parsed

    print(f"[json_repair] Repair failed: {last_error}")
    raise JsonRepairError(f"Model output is not valid JSON even after repair: {last_error}")


def normalize_page_key(token) -> str:
    """'Page 1' -> 'page1', 'COVER' / '表紙' -> 'cover'."""
    key = re.sub(r'\s+', '', str(token)).lower()
    if COVER_KEY_PATTERN.search(key):
        return "cover"
    return key


def _page_digits(key: str):
    digits = re.sub(r'\D', '', key)
    return int(digits) if digits else None


def placeholder_row(label: str) -> dict:
    return {
        "pageNumber": label,
        "template": PLACEHOLDER_TEMPLATE,
        "prompt": (
            "(⚠️ AI skipped this page generation. Please regenerate or edit manually.)\n\n"
            f"[Context from Blueprint]\nThis page was intended for: {label}"
        ),
        "skipped": True,
    }


def reconcile_pages(items: list, expected_labels: List[str]) -> List[dict]:
    """
    Exactly one row per expected page label, in expected order.

    Items are matched by normalized page token, then by page number
    ('Page01' matches 'Page 1'). The first item for a page wins.
    """
    generated: Dict[str, dict] = {}
    for item in items or []:
        if not isinstance(item, dict) or item.get("pageNumber") in (None, ""):
            continue
        key = normalize_page_key(item["pageNumber"])
        if key not in generated:
            generated[key] = item

    by_number = {}
    for key, item in generated.items():
        if key == "cover":
            continue
        num = _page_digits(key)
        if num is not None and num not in by_number:
            by_number[num] = item

    rows = []
    for label in expected_labels:
        key = normalize_page_key(label)
        match = generated.get(key)
        if match is None and key != "cover":
            num = _page_digits(key)
            if num is not None:
                match = by_number.get(num)

        if match is not None:
            rows.append({
                "pageNumber": label,
                "template": match.get("template") or "template1",
                "prompt": match.get("prompt") or "",
                "skipped": False,
            })
        else:
            print(f"[json_repair] Missing page detected: {label}. Filling with placeholder.")
            rows.append(placeholder_row(label))

    return rows
