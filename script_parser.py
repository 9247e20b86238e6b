"""
Script Parser — Converts an uploaded tabular page script into PageSpec rows.

Parses delimited text (comma or tab) of the form:
- Header row (always discarded), e.g. Page,Template,Prompt
- One row per output page: page token, layout template, prompt

For each row, extracts:
- page_number: 0 for a cover/title row, otherwise the first digit run
- template: free-form layout identifier (T01, template8, ...)
- prompt: free text, may embed [Character] references and a hidden header

Also owns the hidden prompt header (everything up to the story marker) and
the reverse direction: serializing rows back to quoted CSV.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional


class PageStatus:
    IDLE = "idle"
    GENERATING = "generating"
    COMPLETED = "completed"
    ERROR = "error"


COVER_PATTERN = re.compile(r'cover|title|表紙', re.IGNORECASE)
DIGITS_PATTERN = re.compile(r'(\d+)')

# ◆【ストーリー】, ◆ 【ストーリー】, ◆【 Story_Description 】 ...
STORY_MARKER_PATTERN = re.compile(r'◆\s*【\s*(?:ストーリー|Story_Description)\s*】')

SCRIPT_HEADER = ["Page", "Template", "Prompt"]
LEGACY_ENCODING = "cp932"


class ScriptParseError(ValueError):
    """Raised when a script yields no usable page rows."""


@dataclass
class PageSpec:
    page_number: int
    template: str
    prompt: str
    status: str = PageStatus.IDLE
    result_artifact: Optional[bytes] = None
    result_mime_type: Optional[str] = None
    last_error: Optional[str] = None
    resolved_refs: List[str] = field(default_factory=list)

    @property
    def is_cover(self) -> bool:
        return self.page_number == 0

    def to_dict(self) -> dict:
        """JSON-safe view (artifact bytes are not included)."""
        return {
            "pageNumber": self.page_number,
            "template": self.template,
            "prompt": self.prompt,
            "status": self.status,
            "hasResult": self.result_artifact is not None,
            "resultMimeType": self.result_mime_type,
            "error": self.last_error,
            "resolvedRefs": list(self.resolved_refs),
        }


@dataclass(frozen=True)
class PromptParts:
    header: str
    body: str


def parse_script(raw_text: str, delimiter: Optional[str] = None) -> List[PageSpec]:
    """
    Parse raw script text into PageSpec rows sorted by page number.

    Malformed rows are skipped. Duplicate page numbers are all kept, in
    source order next to each other.

    Raises:
        ScriptParseError: if no row yields a page.
    """
    if delimiter is None:
        delimiter = detect_delimiter(raw_text)

    rows = split_rows(raw_text, delimiter)

    pages = []
    # Row 0 is the header
    for cols in rows[1:]:
        if len(cols) < 3:
            continue

        token = cols[0].strip()
        if not token:
            continue

        page_number = parse_page_token(token)
        if page_number is None:
            continue

        pages.append(PageSpec(
            page_number=page_number,
            template=cols[1].strip(),
            prompt=cols[2].strip(),
        ))

    if not pages:
        raise ScriptParseError("No valid page rows found in script (need a header row and at least 3 columns).")

    # sort() is stable, so duplicates stay in source order
    pages.sort(key=lambda p: p.page_number)
    return pages


def parse_page_token(token: str) -> Optional[int]:
    """'Cover' / 'Title' / '表紙' -> 0, 'Page 7' / 'P.7' / '7' -> 7, else None."""
    token = token.strip()
    if not token:
        return None
    if COVER_PATTERN.search(token):
        return 0
    match = DIGITS_PATTERN.search(token)
    if match:
        return int(match.group(1))
    return None


def split_rows(text: str, delimiter: str = ",") -> List[List[str]]:
    """
    Split delimited text into rows of fields.

    Single pass over the characters with one flag (inside / outside quotes).
    A doubled quote inside a quoted field is a literal quote. Delimiters and
    newlines inside quotes belong to the field.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")

    rows = []
    row = []
    buf = []
    in_quotes = False
    i = 0
    n = len(text)

    while i < n:
        ch = text[i]
        if ch == '"':
            if in_quotes and i + 1 < n and text[i + 1] == '"':
                buf.append('"')
                i += 1
            else:
                in_quotes = not in_quotes
        elif ch == delimiter and not in_quotes:
            row.append("".join(buf))
            buf = []
        elif ch == "\n" and not in_quotes:
            row.append("".join(buf))
            rows.append(row)
            row = []
            buf = []
        else:
            buf.append(ch)
        i += 1

    # Last row without trailing newline
    if buf or row:
        row.append("".join(buf))
        rows.append(row)

    return rows


def detect_delimiter(text: str) -> str:
    """Pick tab or comma by counting them in the header row."""
    first_line = re.split(r'\r\n|\r|\n', text, maxsplit=1)[0]
    if first_line.count("\t") > first_line.count(","):
        return "\t"
    return ","


def decode_script_bytes(data: bytes) -> str:
    """Decode an uploaded script: UTF-8 (BOM stripped), else the legacy 8-bit encoding."""
    if data.startswith(b"\xef\xbb\xbf"):
        data = data[3:]
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        print(f"[script_parser] Not valid UTF-8, falling back to {LEGACY_ENCODING}")
        text = data.decode(LEGACY_ENCODING, errors="replace")
    return text.lstrip("\ufeff")


def _quote(value) -> str:
    return '"' + str(value).replace('"', '""') + '"'


def serialize_script(rows: List[List[str]], delimiter: str = ",", header: Optional[List[str]] = None) -> str:
    """Write rows back out, every field quoted, quotes doubled."""
    lines = [delimiter.join(_quote(h) for h in (header or SCRIPT_HEADER))]
    for row in rows:
        lines.append(delimiter.join(_quote(v) for v in row))
    return "\n".join(lines)


def pages_to_script(pages: List[PageSpec], delimiter: str = ",") -> str:
    rows = []
    for p in pages:
        label = "Cover" if p.is_cover else f"Page {p.page_number}"
        rows.append([label, p.template, p.prompt])
    return serialize_script(rows, delimiter)


def split_prompt(full_prompt: str) -> PromptParts:
    """
    Split a prompt into the hidden header (config, up to and including the
    story marker) and the user-editable body.

    No marker means everything is body.
    """
    match = STORY_MARKER_PATTERN.search(full_prompt)
    if not match:
        return PromptParts(header="", body=full_prompt)
    return PromptParts(header=full_prompt[:match.end()], body=full_prompt[match.end():])


def combine_prompt(parts: PromptParts) -> str:
    return f"{parts.header}{parts.body}"


# Quick test when run directly
if __name__ == "__main__":
    import json
    import sys
    if len(sys.argv) > 1:
        with open(sys.argv[1], "rb") as f:
            raw = decode_script_bytes(f.read())
        result = parse_script(raw)
        print(json.dumps([p.to_dict() for p in result], indent=2, ensure_ascii=False))
    else:
        print("Usage: python script_parser.py <script.csv>")
