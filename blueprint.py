"""
Blueprint — turns a flat page count into a per-page narrative plan.

Each page slot gets:
- narrative_role: Cover / Hook, then ratio bands over the content pages
  (Introduction → Development → Climax → Resolution for stories,
  Introduction → Theory → Practice → Summary for explanatory books, ...)
- volume / chapter: from a fixed volume, flat chapters-per-volume division,
  or a volume plan parsed from free-form planning text such as:

    #### Vol.1: The Beginning
      Chapter 1: Arrival (18 pages)
      Chapter 2: The Storm (20 pages)
    #### Vol.2: Rebuild
      ...

The slots are not stored on pages; the scheduler joins them in when it asks
the model for a page plan.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Tuple


VOLUME_HEADER_PATTERN = re.compile(r'(?:\bVol(?:ume)?\.?\s*(\d+)|第\s*(\d+)\s*巻)', re.IGNORECASE)
CHAPTER_MARKER_PATTERN = re.compile(r'(?:\bCh(?:apter)?\.?\s*(\d+)|第\s*(\d+)\s*章)', re.IGNORECASE)

COVER = "Cover"
HOOK = "Hook"

# Upper ratio bound (inclusive) → role. The last band must reach 1.0.
ROLE_POLICIES = {
    "story": [
        (0.25, "Introduction"),
        (0.75, "Development"),
        (0.9, "Climax"),
        (1.0, "Resolution"),
    ],
    "explanatory": [
        (0.2, "Introduction"),
        (0.5, "Theory"),
        (0.8, "Practice"),
        (1.0, "Summary"),
    ],
    "business": [
        (0.3, "Struggle"),
        (0.6, "Solution"),
        (0.8, "Application"),
        (1.0, "Resolution"),
    ],
}

ROLE_DESCRIPTIONS = {
    COVER: "Series cover. Main title, high-quality key illustration.",
    HOOK: "Chapter title page (Template: T01_CHAPTER_COVER). Symbolic full-page illustration that hooks the reader.",
    "Introduction": "Hook, setting, character introduction.",
    "Development": "Rising action, conflict, dialogue.",
    "Climax": "Peak emotional or physical moment.",
    "Resolution": "Resolution and aftermath.",
    "Theory": "Main explanation. Visualize the specific concepts.",
    "Practice": "Practical case using the scenario's own examples.",
    "Summary": "Conclusion, recap or Q&A.",
    "Struggle": "The protagonist tries and fails. Make the problem feel real.",
    "Solution": "The mentor explains the core concept (Template: T01_MENTOR).",
    "Application": "The protagonist applies the method with concrete actions.",
}


@dataclass
class BlueprintSlot:
    page_number: int
    narrative_role: str
    volume: int
    chapter: Optional[int]

    @property
    def label(self) -> str:
        return "Cover" if self.page_number == 0 else f"Page {self.page_number}"

    def to_dict(self):
        return {
            "pageNumber": self.label,
            "narrativeRole": self.narrative_role,
            "volume": self.volume,
            "chapter": self.chapter,
        }


def parse_volume_plan(plan_text: Optional[str], chapters_per_volume: int) -> List[Tuple[int, int]]:
    """
    Read (volume, chapter_count) pairs out of planning text.

    Volume headers split the text into spans; chapter markers are counted
    inside each span. A span with no chapter markers counts as
    chapters_per_volume. No volume headers → empty plan.
    """
    if not plan_text:
        return []

    headers = list(VOLUME_HEADER_PATTERN.finditer(plan_text))
    plan = []
    for idx, match in enumerate(headers):
        volume = int(match.group(1) or match.group(2))
        span_end = headers[idx + 1].start() if idx + 1 < len(headers) else len(plan_text)
        span = plan_text[match.end():span_end]
        count = len(CHAPTER_MARKER_PATTERN.findall(span))
        plan.append((volume, count or chapters_per_volume))
    return plan


def locate_chapter(absolute: int, plan: List[Tuple[int, int]]) -> Tuple[int, int]:
    """Map a 1-based running chapter number onto (volume, chapter) using a plan."""
    remaining = absolute
    for volume, count in plan:
        if remaining <= count:
            return volume, remaining
        remaining -= count
    # Past the end of the plan: one extra volume
    return plan[-1][0] + 1, remaining


def narrative_role(ratio: float, mode: str = "story") -> str:
    bands = ROLE_POLICIES.get(mode, ROLE_POLICIES["story"])
    for upper, role in bands:
        if ratio <= upper:
            return role
    return bands[-1][1]


def allocate(page_count: int, include_cover: bool = False, volume_start: int = 1,
             chapter_start: int = 1, auto_increment: bool = False,
             chapters_per_volume: int = 4, existing_plan_text: Optional[str] = None,
             mode: str = "story") -> List[BlueprintSlot]:
    """
    Assign narrative role and volume/chapter coordinates to every page.

    Returns:
        Slots in page order; the cover (if any) first as page 0.
    """
    if page_count < 0:
        raise ValueError("page_count must be >= 0")
    if chapter_start < 1:
        raise ValueError("chapter_start must be >= 1")
    if chapters_per_volume < 1:
        raise ValueError("chapters_per_volume must be >= 1")

    plan = parse_volume_plan(existing_plan_text, chapters_per_volume)
    slots = []

    if include_cover:
        slots.append(BlueprintSlot(0, COVER, volume_start, None))

    single_page = page_count == 1
    total_content = 1 if single_page else page_count - 1

    for i in range(page_count):
        page_number = i + 1
        absolute = chapter_start + i

        if not auto_increment:
            volume, chapter = volume_start, absolute
        elif plan:
            volume, chapter = locate_chapter(absolute, plan)
        else:
            volume = volume_start + (absolute - 1) // chapters_per_volume
            chapter = ((absolute - 1) % chapters_per_volume) + 1

        if page_number == 1 and not single_page:
            role = HOOK
        else:
            content_index = 0 if single_page else page_number - 2
            role = narrative_role((content_index + 1) / total_content, mode)

        slots.append(BlueprintSlot(page_number, role, volume, chapter))

    return slots


def expected_page_labels(page_count: int, include_cover: bool = False) -> List[str]:
    labels = [f"Page {i + 1}" for i in range(page_count)]
    return ["Cover"] + labels if include_cover else labels


def render_blueprint(slots: List[BlueprintSlot]) -> str:
    """One allocation line per slot for the plan prompt."""
    lines = []
    for slot in slots:
        where = f"Vol.{slot.volume}"
        if slot.chapter is not None:
            where += f" Chapter {slot.chapter}"
        desc = ROLE_DESCRIPTIONS.get(slot.narrative_role, "")
        lines.append(f'- "{slot.label}": 【{slot.narrative_role}】 ({where}) {desc}'.rstrip())
    return "\n".join(lines)
